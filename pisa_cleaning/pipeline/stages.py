# pisa_cleaning/pipeline/stages.py

"""
The ordered stage table of the PISA 2022 cleaning pipeline.

Every stage is a plain function

    fn(df, registry, config, context) -> StageOutput

that receives the previous snapshot and registry as values and returns the
new ones plus any audit artifacts. Nothing here reads or writes files; the
runner in ``engine.py`` owns persistence.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import pandas as pd

from pisa_cleaning.core.config import PipelineConfig
from pisa_cleaning.core.registry import MappingRegistry
from pisa_cleaning.core.spec import VariableSpec
from pisa_cleaning.pipeline import audit, flagging, missingness, recoding, renaming, screening
from pisa_cleaning.pipeline.composite import build_composite
from pisa_cleaning.pipeline.imputation import (
    apply_valid_skip_recodes,
    blanket_impute,
    impute_targeted,
    protected_columns,
    random_skip_to_missing,
)

logger = logging.getLogger(__name__)

# Registry status reasons
REASON_OUT_OF_SCOPE = "Out of scope: well-being questionnaire"
REASON_FULLY_MISSING = "100% missing data"
REASON_HIGH_MISSING = "High missingness (>{threshold:g}%)"
REASON_CONSTANT = "Constant variable with no analytical value"
REASON_METADATA = "Metadata variable retained for reference"
REASON_COMPOSITE = "Composite rebuilt from source items"


# =============================================================================
# Stage plumbing
# =============================================================================
@dataclass
class StageOutput:
    df: pd.DataFrame
    registry: MappingRegistry
    artifacts: Dict[str, pd.DataFrame] = field(default_factory=dict)


@dataclass
class StageContext:
    """Read-only access to earlier snapshots (e.g. the pre-exclusion frame)."""
    load_snapshot: Optional[Callable[[str], pd.DataFrame]] = None


@dataclass(frozen=True)
class Stage:
    index: int
    slug: str
    fn: Callable[..., StageOutput]
    filters_rows: bool = False

    @property
    def stage_id(self) -> str:
        return f"{self.index:02d}_{self.slug}"


def _protected(df: pd.DataFrame, config: PipelineConfig) -> List[str]:
    return protected_columns(df.columns, config.protected_patterns, config.protected_columns)


def _drop_excluded(df: pd.DataFrame, registry: MappingRegistry) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Remove every column the registry marks Excluded. Idempotent."""
    excluded = registry.excluded_columns()
    present = [c for c in excluded if c in df.columns]
    absent = [c for c in excluded if c not in df.columns]
    if absent:
        logger.info(f"[Exclusion] {len(absent)} excluded variables already absent from dataset")
    log = pd.DataFrame({
        "variable": present + absent,
        "action": ["removed"] * len(present) + ["already_absent"] * len(absent),
    })
    return df.drop(columns=present), log


# =============================================================================
# 01 - 06: selection and exclusion
# =============================================================================
def raw_selection(df, registry, config, context=None) -> StageOutput:
    out_of_scope = [c for c in df.columns if c.startswith(tuple(config.raw_drop_prefixes))]
    df = df.drop(columns=out_of_scope)
    registry = registry.update_status(
        [c for c in out_of_scope if c in registry], "Excluded", REASON_OUT_OF_SCOPE
    )

    _, dropped = missingness.classify_variables(
        df,
        flag_threshold=config.variable_flag_threshold,
        drop_threshold=config.variable_drop_threshold,
    )
    dropped.log()
    df = df.drop(columns=dropped.affected)
    registry = registry.update_status(
        [c for c in dropped.affected if c in registry], "Excluded", REASON_FULLY_MISSING
    )

    log = pd.DataFrame({
        "year": config.cycle,
        "removed_variable": out_of_scope + dropped.affected,
        "reason": [REASON_OUT_OF_SCOPE] * len(out_of_scope) + [REASON_FULLY_MISSING] * len(dropped.affected),
    })
    return StageOutput(df, registry, {"cleaning_log": log})


def transformation_and_standardization(df, registry, config, context=None) -> StageOutput:
    df, remap_log = recoding.apply_code_remaps(df, registry)
    df = renaming.rename_to_canonical(df, registry)
    return StageOutput(df, registry, {
        "code_remaps": remap_log,
        "framework_conflicts": registry.framework_conflicts(),
    })


def record_exclusion(df, registry, config, context=None) -> StageOutput:
    relevant = [
        name
        for block in config.record_relevant_blocks
        for name in registry.block_members(block)
        if name in df.columns
    ]
    summary = missingness.combined_missing_summary(
        df, relevant, config.invalid_codes, config.no_response_codes
    )
    outcome = missingness.classify_records(
        df, relevant,
        threshold=config.record_threshold,
        invalid_codes=config.invalid_codes,
        no_response_codes=config.no_response_codes,
    )
    outcome.log()

    if config.id_column in df.columns:
        summary.insert(0, config.id_column, df[config.id_column])
    summary["excluded"] = summary.index.isin(outcome.affected)

    df = df.drop(index=outcome.affected)
    logger.info(f"[Records] {len(df)} records retained")
    return StageOutput(df, registry, {"record_missingness": summary})


def high_missingness_exclusion(df, registry, config, context=None) -> StageOutput:
    flagged, dropped = missingness.classify_variables(
        df,
        flag_threshold=config.variable_flag_threshold,
        drop_threshold=config.variable_drop_threshold,
        sentinel_codes=config.missing_codes,
        exempt=_protected(df, config),
    )
    dropped.log()
    flagged.log()

    df = df.drop(columns=dropped.affected)
    registry = registry.update_status(
        [c for c in dropped.affected if c in registry], "Excluded", REASON_FULLY_MISSING
    )
    registry = registry.update_status(
        [c for c in flagged.affected if c in registry],
        "Excluded",
        REASON_HIGH_MISSING.format(threshold=config.variable_flag_threshold),
    )

    rates = {**dropped.rates, **flagged.rates}
    log = pd.DataFrame({
        "variable": list(rates),
        "missingness_percent": list(rates.values()),
        "action": ["dropped"] * len(dropped.rates) + ["flagged"] * len(flagged.rates),
    })
    return StageOutput(df, registry, {"high_missingness": log})


def logical_exclusion(df, registry, config, context=None) -> StageOutput:
    df, log = _drop_excluded(df, registry)
    registry.check_consistency(df, exempt=config.flag_columns)
    return StageOutput(df, registry, {"removed_variables": log})


def constant_variable_removal(df, registry, config, context=None) -> StageOutput:
    constants = screening.constant_variables(df)
    keep = set(config.constant_keep)

    to_keep = [c for c in config.constant_keep if c in registry]
    to_drop = [c for c in constants["variable"] if c not in keep and c in registry]
    registry = registry.update_status(to_keep, "Included", REASON_METADATA)
    registry = registry.update_status(to_drop, "Excluded", REASON_CONSTANT)
    df, _ = _drop_excluded(df, registry)

    constants["action"] = ["kept" if c in keep else "removed" for c in constants["variable"]]
    logger.info(f"[Constants] {len(constants)} constant variables, {len(to_drop)} removed")
    return StageOutput(df, registry, {"constant_variables": constants})


# =============================================================================
# 07 - 08: targeted repairs
# =============================================================================
def expected_education_imputation(df, registry, config, context=None) -> StageOutput:
    df, log = impute_targeted(
        df,
        config.imputation_target,
        [p for p in config.imputation_predictors if p in df.columns],
        sentinel_codes=config.imputation_sentinels,
        n_imputations=config.n_imputations,
        random_state=config.random_state,
        consolidation=config.consolidation,
        id_column=config.id_column if config.id_column in df.columns else None,
    )
    return StageOutput(df, registry, {"imputation_log": log})


def distress_score_recalculation(df, registry, config, context=None) -> StageOutput:
    df, log = recoding.recalculate_score(
        df,
        config.distress_target,
        config.distress_items,
        invalid_codes=config.missing_codes,
        min_valid=config.distress_min_valid,
        trigger_value=config.distress_trigger_value,
        new_value=config.distress_recalculated_value,
        id_column=config.id_column if config.id_column in df.columns else None,
    )
    return StageOutput(df, registry, {"verification_log": log})


# =============================================================================
# 09 - 12: recoding, flags, screening
# =============================================================================
def questionnaire_recoding(df, registry, config, context=None) -> StageOutput:
    blocks = {
        block: registry.block_members(block)
        for block in sorted({s.data_source for s in registry})
    }
    codes = (config.valid_skip_code, config.random_skip_code) + config.missing_codes
    by_block = missingness.special_code_summary(df, blocks, codes)
    top = pd.concat(
        [missingness.top_code_counts(df, code) for code in codes + (None,)],
        ignore_index=True,
    )

    df, log = recoding.recode_questionnaire(df, registry, config, exempt=_protected(df, config))
    return StageOutput(df, registry, {
        "recode_log": log,
        "special_codes_by_block": by_block,
        "special_codes_by_variable": top,
    })


def flagging_procedures(df, registry, config, context=None) -> StageOutput:
    df = flagging.add_covid_flag(
        df, config.covid_closure_column, config.covid_days_column, config.covid_flag_column
    )
    df = flagging.add_straight_line_flags(df, config.straight_line_batteries, config.random_skip_label)
    overlap = flagging.flag_overlap_summary(df, [b.name for b in config.straight_line_batteries])
    return StageOutput(df, registry, {"flag_overlap": overlap})


def statistical_screening(df, registry, config, context=None) -> StageOutput:
    derived = [s.renamed_variable for s in registry if s.data_source.endswith("_derived")]
    candidates = [c for c in df.columns if c not in set(_protected(df, config))]
    pairs = screening.redundant_pairs(
        df[candidates],
        threshold=config.correlation_threshold,
        var_types=screening.variable_types(candidates, derived),
    )
    return StageOutput(df, registry, {"screening_results": pairs})


def final_cleaned_data(df, registry, config, context=None) -> StageOutput:
    before = df
    df, removed = _drop_excluded(df, registry)
    df = recoding.clean_category_labels(df, config.label_cleanup_columns)
    registry.check_consistency(df, exempt=config.flag_columns)
    return StageOutput(df, registry, {
        "removed_variables": removed,
        "debugging_summary": audit.stage_summary(before, df),
    })


# =============================================================================
# 13 - 16: imputation, typing, renaming, composites
# =============================================================================
def final_imputation(df, registry, config, context=None) -> StageOutput:
    df = random_skip_to_missing(df, config.random_skip_label)
    df, skip_log = apply_valid_skip_recodes(
        df, registry, label=config.valid_skip_label, code=config.valid_skip_code
    )

    reference = None
    if config.median_policy == "pre_exclusion":
        if context is None or context.load_snapshot is None:
            raise ValueError("median_policy 'pre_exclusion' needs access to earlier snapshots")
        reference = context.load_snapshot(STAGES[1].stage_id)
        reference = reference.mask(reference.isin(list(config.imputation_sentinels)))
    elif config.median_policy != "post_exclusion":
        raise ValueError(f"Unknown median_policy: {config.median_policy}")

    df, impute_log = blanket_impute(
        df,
        protected_patterns=config.protected_patterns,
        protected_columns_list=config.protected_columns,
        reference=reference,
    )

    for col in config.flag_columns:
        if col in df.columns and not isinstance(df[col].dtype, pd.CategoricalDtype):
            df[col] = pd.Categorical(df[col], categories=[flagging.FLAGGED, flagging.NOT_FLAGGED])

    return StageOutput(df, registry, {
        "valid_skip_recodes": skip_log,
        "blanket_imputation": impute_log,
        "schema_audit": audit.schema_audit(df, config.valid_skip_label, config.random_skip_label),
    })


def cleaned_type_update(df, registry, config, context=None) -> StageOutput:
    for spec in registry:
        name = spec.renamed_variable
        if not spec.is_included or name not in df.columns:
            cleaned = ""
        elif pd.api.types.is_numeric_dtype(df[name]) and not isinstance(df[name].dtype, pd.CategoricalDtype):
            cleaned = "NUM"
        else:
            cleaned = "CHAR"
        if cleaned != spec.cleaned_data_type:
            registry = registry.update_cleaned_type(name, cleaned)
    counts = pd.Series([s.cleaned_data_type or "NA" for s in registry]).value_counts()
    logger.info(f"[Types] cleaned_data_type: {counts.to_dict()}")
    return StageOutput(df, registry, {"registry_status": audit.registry_status_report(registry)})


def prefix_renaming(df, registry, config, context=None) -> StageOutput:
    df, registry, log = renaming.apply_prefix_renaming(df, registry, config.prefix_map)
    registry.check_consistency(df, exempt=config.flag_columns)
    return StageOutput(df, registry, {"rename_log": log})


def composite_construction(df, registry, config, context=None) -> StageOutput:
    rows = []
    for spec in config.composites:
        df = build_composite(df, spec, (config.valid_skip_label, config.random_skip_label))
        registry = registry.add_entry(
            VariableSpec(
                original_variable_name=spec.name,
                renamed_variable=spec.name,
                variable_description=spec.description,
                status="Included",
                status_reason=REASON_COMPOSITE,
                data_type="numeric",
                cleaned_data_type="NUM",
                data_source=spec.data_source,
                input_variable=False,
                derived_variable=True,
            ),
            overwrite=True,
        )
        rows.append({
            "composite": spec.name,
            "anchor": spec.anchor,
            "n_items": len(spec.items),
            "n_reversed": len(spec.reversed_items),
            "n_missing": int(df[spec.name].isna().sum()),
        })
    return StageOutput(df, registry, {"composites": pd.DataFrame(rows)})


# =============================================================================
# Stage table
# =============================================================================
STAGES: List[Stage] = [
    Stage(1, "raw_selection", raw_selection),
    Stage(2, "transformation_and_standardization", transformation_and_standardization),
    Stage(3, "record_exclusion", record_exclusion, filters_rows=True),
    Stage(4, "high_missingness_exclusion", high_missingness_exclusion),
    Stage(5, "logical_exclusion", logical_exclusion),
    Stage(6, "constant_variable_removal", constant_variable_removal),
    Stage(7, "expected_education_imputation", expected_education_imputation),
    Stage(8, "distress_score_recalculation", distress_score_recalculation),
    Stage(9, "questionnaire_recoding", questionnaire_recoding),
    Stage(10, "flagging_procedures", flagging_procedures),
    Stage(11, "statistical_screening", statistical_screening),
    Stage(12, "final_cleaned_data", final_cleaned_data),
    Stage(13, "final_imputation", final_imputation),
    Stage(14, "cleaned_type_update", cleaned_type_update),
    Stage(15, "prefix_renaming", prefix_renaming),
    Stage(16, "composite_construction", composite_construction),
]
