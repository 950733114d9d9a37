from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from pisa_cleaning.core.errors import RegistryInconsistencyError
from pisa_cleaning.core.registry import MappingRegistry
from pisa_cleaning.core.spec import CompositeSpec
from pisa_cleaning.pipeline import stages
from pisa_cleaning.pipeline.stages import StageContext

LIKERT = ["Strongly disagree", "Disagree", "Agree", "Strongly agree"]


# =============================================================================
# Selection and exclusion
# =============================================================================
def test_record_exclusion_drops_records_over_threshold(dataset, registry, config):
    out = stages.record_exclusion(dataset, registry, config)

    # record 2: 1 of 3 relevant items is 99; record 5: 98 + NA
    assert out.df["student_id"].tolist() == [1, 3, 4, 6]
    summary = out.artifacts["record_missingness"]
    assert int(summary["excluded"].sum()) == len(dataset) - len(out.df)
    assert summary["total_variables"].iloc[0] == 3


def test_high_missingness_flags_and_drops(dataset, registry, config):
    df = dataset.assign(ict_use_subject_lessons=[np.nan, np.nan, np.nan, 98, 1, 2])
    out = stages.high_missingness_exclusion(df, registry, config)

    assert "school_size" not in out.df.columns
    assert "ict_use_subject_lessons" in out.df.columns
    spec = out.registry.get("ict_use_subject_lessons")
    assert spec.status == "Excluded"
    assert spec.status_reason == "High missingness (>50%)"
    # weights are never assessed
    assert out.registry.get("W_FSTUWT").is_included

    removed = stages.logical_exclusion(out.df, out.registry, config)
    assert "ict_use_subject_lessons" not in removed.df.columns


def test_logical_exclusion_is_idempotent(dataset, registry, config):
    once = stages.logical_exclusion(dataset, registry, config)
    twice = stages.logical_exclusion(once.df, once.registry, config)

    assert "school_size" not in once.df.columns
    pd.testing.assert_frame_equal(once.df, twice.df)
    assert twice.artifacts["removed_variables"]["action"].tolist() == ["already_absent"]


def test_exclusion_stages_reject_unregistered_columns(dataset, registry, config):
    df = dataset.assign(stray_column=1)
    with pytest.raises(RegistryInconsistencyError):
        stages.logical_exclusion(df, registry, config)
    with pytest.raises(RegistryInconsistencyError):
        stages.final_cleaned_data(df, registry, config)


def test_prefix_renaming_keeps_flags_and_checks_registry(dataset, registry, config):
    df = dataset.drop(columns=["school_size"]).assign(covid_inconsistency_flag="Not flagged")
    out = stages.prefix_renaming(df, registry, config)
    assert "st_teacher_friendly" in out.df.columns
    assert "covid_inconsistency_flag" in out.df.columns

    with pytest.raises(RegistryInconsistencyError):
        stages.prefix_renaming(df.assign(stray_column=1), registry, config)


# =============================================================================
# Final imputation
# =============================================================================
@pytest.fixture
def recoded(dataset):
    return dataset[["student_id", "W_FSTUWT", "PV1MATH", "escs_index"]].assign(
        teacher_friendly=pd.Categorical(
            ["Agree", "random_skip", "Agree", None, "Disagree", "valid_skip"],
            categories=LIKERT + ["valid_skip", "random_skip"],
            ordered=True,
        )
    )


def test_final_imputation_leaves_protected_columns(recoded, registry, config):
    out = stages.final_imputation(recoded, registry, config)

    for col in ("student_id", "W_FSTUWT", "PV1MATH"):
        pd.testing.assert_series_equal(out.df[col], recoded[col])
    assert out.df.loc[3, "escs_index"] == 0.0

    friendly = out.df["teacher_friendly"]
    assert friendly.tolist() == ["Agree", "Agree", "Agree", "Agree", "Disagree", "valid_skip"]
    assert list(friendly.cat.categories) == LIKERT + ["valid_skip"]
    assert friendly.cat.ordered


def test_final_imputation_pre_exclusion_medians(recoded, registry, config):
    requested = []

    def load(stage_id):
        requested.append(stage_id)
        return pd.DataFrame({"escs_index": [1.0, 2.0, 3.0, 98.0, np.nan]})

    config = replace(config, median_policy="pre_exclusion")
    out = stages.final_imputation(recoded, registry, config, StageContext(load_snapshot=load))

    assert requested == ["02_transformation_and_standardization"]
    assert out.df.loc[3, "escs_index"] == 2.0


def test_final_imputation_unknown_median_policy(recoded, registry, config):
    with pytest.raises(ValueError):
        stages.final_imputation(recoded, registry, replace(config, median_policy="bogus"))


# =============================================================================
# Typing and composites
# =============================================================================
def test_cleaned_type_update(recoded, registry, config):
    out = stages.cleaned_type_update(recoded, registry, config)

    assert out.registry.get("escs_index").cleaned_data_type == "NUM"
    assert out.registry.get("teacher_friendly").cleaned_data_type == "CHAR"
    assert out.registry.get("school_size").cleaned_data_type == ""
    pd.testing.assert_frame_equal(out.df, recoded)


def test_composite_construction_registers_new_variable(make_spec, config):
    registry = MappingRegistry([make_spec("student_id"), make_spec("t1"), make_spec("t2")])
    df = pd.DataFrame({
        "student_id": [1, 2, 3, 4],
        "t1": [1, 2, 3, 4],
        "t2": [4, 3, 2, 1],
        "tail": ["a", "b", "c", "d"],
    })
    config = replace(config, composites=(
        CompositeSpec(
            name="teacher_support_index",
            items=("t1", "t2"),
            anchor="t2",
            reversed_items=("t2",),
            scale_max=4,
            data_source="student_derived",
        ),
    ))

    out = stages.composite_construction(df, registry, config)

    assert list(out.df.columns) == ["student_id", "t1", "t2", "teacher_support_index", "tail"]
    composite = out.df["teacher_support_index"]
    assert composite.is_monotonic_increasing
    assert composite.mean() == pytest.approx(0.0)
    # source items are not rewritten
    assert out.df["t2"].tolist() == [4, 3, 2, 1]

    spec = out.registry.get("teacher_support_index")
    assert spec.derived_variable and not spec.input_variable
    assert spec.cleaned_data_type == "NUM"
    assert out.artifacts["composites"]["n_reversed"].tolist() == [1]
