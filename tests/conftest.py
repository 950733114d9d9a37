# tests/conftest.py

import numpy as np
import pandas as pd
import pytest

from pisa_cleaning.core.config import PipelineConfig
from pisa_cleaning.core.registry import MappingRegistry
from pisa_cleaning.core.spec import VariableSpec


def spec(name, **kwargs) -> VariableSpec:
    kwargs.setdefault("renamed_variable", name)
    return VariableSpec(original_variable_name=kwargs.pop("original", name), **kwargs)


@pytest.fixture
def make_spec():
    return spec


@pytest.fixture
def registry() -> MappingRegistry:
    """A small PISA-like mapping table (already renamed)."""
    return MappingRegistry([
        spec("student_id", original="CNTSTUID", data_source="other_sources"),
        spec("W_FSTUWT", data_source="other_sources"),
        spec("PV1MATH", data_source="other_sources"),
        spec(
            "teacher_friendly", original="ST270Q01JA",
            data_source="student_questionnaire",
            data_type="categorical",
            value_labels="1=Strongly disagree;2=Disagree;3=Agree;4=Strongly agree",
            ordered=True,
            pisa_domain="Learning Environment",
            pisa_construct="Teacher support",
        ),
        spec(
            "home_books_total", original="ST255Q01JA",
            data_source="student_questionnaire",
            pisa_domain="Home Background; Socioeconomic Status",
            pisa_construct="Cultural possessions",
        ),
        spec(
            "ict_use_subject_lessons", original="IC150Q01HA",
            data_source="ict_questionnaire",
            pisa_domain="ICT Use",
            pisa_construct="Frequency of use",
            pisa_ict_school_domain="ICT in School",
            pisa_ict_school_construct="Subject use",
            pisa_ict_home_domain="Not Applicable",
            pisa_ict_home_construct="Not Applicable",
        ),
        spec(
            "escs_index", original="ESCS",
            data_source="student_derived",
            derived_variable=True,
            input_variable=False,
            pisa_domain="Socioeconomic Status",
        ),
        spec(
            "school_size", original="SCHSIZE",
            data_source="school_derived",
            derived_variable=True,
            input_variable=False,
            status="Excluded",
            status_reason="High missingness (>50%)",
        ),
    ])


@pytest.fixture
def dataset() -> pd.DataFrame:
    return pd.DataFrame({
        "student_id": [1, 2, 3, 4, 5, 6],
        "W_FSTUWT": [1.5, np.nan, 2.0, 2.5, 1.0, 1.2],
        "PV1MATH": [410.2, 455.0, np.nan, 390.7, 501.3, 470.1],
        "teacher_friendly": [1, 2, 95, 97, 98, 4],
        "home_books_total": [3, 99, 2, 6, np.nan, 1],
        "ict_use_subject_lessons": [1, 2, 3, 4, 5, 2],
        "escs_index": [0.5, -0.2, 1.1, np.nan, 0.0, -1.4],
        "school_size": [np.nan] * 6,
    })


@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        snapshot_dir=str(tmp_path / "snapshots"),
        output_path=str(tmp_path / "out" / "final.csv"),
        final_registry_path=str(tmp_path / "out" / "registry_final.csv"),
        log_dir=str(tmp_path / "logs"),
    )
