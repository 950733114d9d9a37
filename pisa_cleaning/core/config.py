"""
config.py

Run configuration for the PISA 2022 cleaning pipeline.

Every threshold, sentinel code and variable list consumed by a stage lives
here so that a stage function never carries survey-specific constants of
its own. Defaults reproduce the 2022 Thailand extract; ``from_json``
overlays a project file on top of them.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple

from .composites import COMPOSITE_REGISTRY
from .spec import CompositeSpec, StraightLineSpec

logger = logging.getLogger(__name__)


DEFAULT_PREFIX_MAP: Dict[str, str] = {
    "student_questionnaire": "st_",
    "ict_questionnaire": "ic_",
    "school_questionnaire": "sc_",
    "student_derived": "stdv_",
    "ict_derived": "icdv_",
    "school_derived": "scdv_",
}

DEFAULT_BATTERIES: Tuple[StraightLineSpec, ...] = (
    StraightLineSpec(
        name="perception_straight_line_flag",
        items=(
            "teacher_respectful", "teacher_concerned", "teacher_receptive",
            "teacher_intimidating", "teacher_inquisitive", "teacher_friendly",
            "teacher_wellbeing_interest", "teacher_mean",
        ),
        anchor="teacher_mean",
        required_any=("teacher_intimidating", "teacher_mean"),
    ),
    StraightLineSpec(
        name="feeling_straight_line_flag",
        items=(
            "student_feels_outsider", "student_makes_friends", "student_belongs",
            "student_feels_awkward", "student_liked_by_others", "student_feels_lonely",
        ),
        anchor="student_feels_lonely",
    ),
    StraightLineSpec(
        name="persistence_straight_line_flag",
        items=(
            "persistence_task_finished", "extra_effort_challenging",
            "persistence_boring_task", "stop_difficult_task",
            "more_persistent_than_others", "give_up_after_mistakes",
            "quit_long_homework", "persistence_difficult_task",
            "finish_what_start", "give_up_easily",
        ),
        anchor="give_up_easily",
    ),
)


@dataclass(frozen=True)
class PipelineConfig:
    # =====================
    # Paths
    # =====================
    raw_data_path: str = "data/raw/2022/pisa2022_data.csv"
    registry_path: str = "data/private/metadata/2022/pisa2022_variable_mapping_table.csv"
    snapshot_dir: str = "data/private/processed/2022"
    output_path: str = "data/private/processed/2022/pisa2022_final.csv"
    final_registry_path: str = "data/private/metadata/2022/pisa2022_variable_mapping_table_final.csv"
    log_dir: str = "logs"
    cycle: int = 2022

    # =====================
    # Missingness thresholds (percent)
    # =====================
    variable_flag_threshold: float = 50.0
    variable_drop_threshold: float = 100.0
    record_threshold: float = 20.0

    # =====================
    # Missing-code taxonomy
    # =====================
    valid_skip_code: float = 95
    random_skip_code: float = 97
    invalid_codes: Tuple[float, ...] = (98,)
    no_response_codes: Tuple[float, ...] = (99,)
    valid_skip_label: str = "valid_skip"
    random_skip_label: str = "random_skip"

    # =====================
    # Stage 01: raw selection
    # =====================
    raw_drop_prefixes: Tuple[str, ...] = ("WB",)

    # =====================
    # Stage 03: record exclusion
    # =====================
    id_column: str = "student_id"
    record_relevant_blocks: Tuple[str, ...] = ("student_questionnaire", "ict_questionnaire")

    # =====================
    # Stage 06: constant variables
    # =====================
    constant_keep: Tuple[str, ...] = (
        "country_code", "country_id", "assessment_cycle", "national_center_code",
        "sampling_stratum", "subnational_region", "oecd_member", "administration_mode",
    )

    # =====================
    # Stage 07: targeted multiple imputation
    # =====================
    imputation_target: str = "expected_education_level"
    imputation_predictors: Tuple[str, ...] = (
        "home_books_total", "home_internet", "home_computer", "mother_highest_education",
        "father_highest_education", "skipped_whole_day", "skipped_classes", "late_for_school",
        "student_belongs", "teacher_shows_interest_learning", "teacher_concerned",
        "teacher_friendly", "student_feels_lonely", "handle_stress_well",
        "remain_calm_under_stress", "digital_learning_school_hours",
        "digital_learning_before_after_hours", "digital_learning_weekend_hours",
        "parent_discuss_progress", "parent_discuss_education_importance",
        "parent_encourage_grades", "total_homework_time_all_subjects",
        "math_attention_to_teacher", "math_effort_assignments",
        "family_social_status_now", "family_social_status_future",
    )
    imputation_sentinels: Tuple[float, ...] = (95, 97, 98, 99)
    n_imputations: int = 5
    random_state: int = 123
    consolidation: str = "first"

    # =====================
    # Stage 08: distress score recalculation
    # =====================
    distress_target: str = "ict_distress_online"
    distress_items: Tuple[str, ...] = (
        "upset_inappropriate_content",
        "upset_discriminatory_content",
        "upset_offensive_messages",
        "upset_info_public_without_consent",
    )
    distress_min_valid: int = 3
    distress_trigger_value: float = 1
    distress_recalculated_value: float = 0

    # =====================
    # Stage 10: flagging
    # =====================
    covid_closure_column: str = "school_closure_covid"
    covid_days_column: str = "school_days_closed_covid"
    covid_flag_column: str = "covid_inconsistency_flag"
    straight_line_batteries: Tuple[StraightLineSpec, ...] = DEFAULT_BATTERIES

    # =====================
    # Stage 11: screening
    # =====================
    correlation_threshold: float = 0.85

    # =====================
    # Stage 12: label cleanup
    # =====================
    label_cleanup_columns: Tuple[str, ...] = (
        "mother_education_level", "father_education_level",
        "parent_highest_edu_lvl", "expected_education_level",
    )

    # =====================
    # Stage 13: blanket imputation
    # =====================
    protected_patterns: Tuple[str, ...] = (r"^W_", r"^PV", r"^UNIT", r"^WVARSTRR")
    protected_columns: Tuple[str, ...] = (
        "country_id", "school_id", "student_id", "assessment_cycle",
        "sampling_stratum", "subnational_region", "administration_mode",
    )
    median_policy: str = "post_exclusion"

    # =====================
    # Stage 15 / 16
    # =====================
    prefix_map: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PREFIX_MAP))
    composites: Tuple[CompositeSpec, ...] = tuple(COMPOSITE_REGISTRY.values())

    # =====================
    # Derived views
    # =====================
    @property
    def missing_codes(self) -> Tuple[float, ...]:
        return tuple(self.invalid_codes) + tuple(self.no_response_codes)

    @property
    def flag_columns(self) -> Tuple[str, ...]:
        return (self.covid_flag_column,) + tuple(b.name for b in self.straight_line_batteries)

    # =====================
    # IO
    # =====================
    @classmethod
    def from_json(cls, path: str, base: Optional["PipelineConfig"] = None) -> "PipelineConfig":
        """
        Overlay a JSON file on top of ``base`` (defaults when omitted).

        Unknown keys are rejected so a typo never silently falls back to a
        default threshold.
        """
        base = base if base is not None else cls()
        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            payload: Dict[str, Any] = json.load(f)

        known = {fld.name for fld in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise KeyError(f"Unknown config keys: {unknown}")

        overrides = {}
        for key, value in payload.items():
            if key == "composites":
                value = tuple(_composite_from_dict(v) for v in value)
            elif key == "straight_line_batteries":
                value = tuple(_battery_from_dict(v) for v in value)
            elif isinstance(value, list):
                value = tuple(value)
            overrides[key] = value

        logger.info(f"Loaded {len(overrides)} config overrides from {path}")
        return replace(base, **overrides)


def _composite_from_dict(d: Dict[str, Any]) -> CompositeSpec:
    d = dict(d)
    for key in ("items", "reversed_items"):
        if key in d:
            d[key] = tuple(d[key])
    return CompositeSpec(**d)


def _battery_from_dict(d: Dict[str, Any]) -> StraightLineSpec:
    d = dict(d)
    for key in ("items", "required_any"):
        if key in d:
            d[key] = tuple(d[key])
    return StraightLineSpec(**d)
