import pandas as pd
import pytest

from pisa_cleaning.core.config import DEFAULT_PREFIX_MAP
from pisa_cleaning.core.errors import RegistryInconsistencyError
from pisa_cleaning.core.registry import MappingRegistry
from pisa_cleaning.pipeline.renaming import apply_prefix_renaming, assert_bijective, rename_to_canonical


@pytest.fixture
def block_registry(make_spec):
    return MappingRegistry([
        make_spec("student_id", original="CNTSTUID", data_source="other_sources"),
        make_spec("student_age", original="AGE", data_source="student_questionnaire"),
        make_spec("ict_use_subject_lessons", original="IC150Q01HA", data_source="ict_questionnaire"),
        make_spec("escs_index", original="ESCS", data_source="student_derived"),
        make_spec("community_type", original="SC001Q01TA", data_source="school_questionnaire"),
        make_spec("old_item", original="ST999", data_source="student_questionnaire", status="Excluded"),
    ])


def test_prefix_renaming_by_registry_block(block_registry):
    df = pd.DataFrame(columns=[
        "student_id", "student_age", "perception_straight_line_flag",
        "ict_use_subject_lessons", "escs_index", "community_type",
    ])
    out, registry, log = apply_prefix_renaming(df, block_registry, DEFAULT_PREFIX_MAP)

    assert list(out.columns) == [
        "student_id", "st_student_age", "perception_straight_line_flag",
        "ic_ict_use_subject_lessons", "stdv_escs_index", "sc_community_type",
    ]
    # bijection
    assert len(set(out.columns)) == len(out.columns) == len(df.columns)
    assert len(log) == 4

    # registry follows the dataset
    assert registry.get("AGE").renamed_variable == "st_student_age"
    assert registry.get("ST999").renamed_variable == "st_old_item"
    assert registry.get("CNTSTUID").renamed_variable == "student_id"
    registry.check_consistency(out, exempt=["perception_straight_line_flag"])


def test_prefixing_is_not_applied_twice(block_registry):
    df = pd.DataFrame(columns=["student_age"])
    out, registry, _ = apply_prefix_renaming(df, block_registry, DEFAULT_PREFIX_MAP)
    again, _, log = apply_prefix_renaming(out, registry, DEFAULT_PREFIX_MAP)
    assert list(again.columns) == ["st_student_age"]
    assert log.empty


def test_bijection_violations():
    with pytest.raises(RegistryInconsistencyError):
        assert_bijective({"a": "x", "b": "x"})
    with pytest.raises(RegistryInconsistencyError):
        assert_bijective({"a": "b"}, existing=["a", "b"])
    assert_bijective({"a": "b", "b": "c"}, existing=["a", "b"])


def test_rename_to_canonical(block_registry):
    df = pd.DataFrame({"CNTSTUID": [1], "AGE": [15.5], "ESCS": [0.2]})
    out = rename_to_canonical(df, block_registry)
    assert list(out.columns) == ["student_id", "student_age", "escs_index"]


def test_rename_to_canonical_requires_mapping(block_registry):
    df = pd.DataFrame({"CNTSTUID": [1], "UNKNOWN01": [2]})
    with pytest.raises(RegistryInconsistencyError):
        rename_to_canonical(df, block_registry)
