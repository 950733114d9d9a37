import math

import numpy as np
import pandas as pd
import pytest

from pisa_cleaning.core.composites import COMPOSITE_REGISTRY
from pisa_cleaning.core.errors import SchemaError
from pisa_cleaning.core.spec import CompositeSpec
from pisa_cleaning.pipeline.composite import (
    as_numeric,
    build_composite,
    build_composites,
    insert_after,
    reverse_code,
    standardize,
)


# =============================================================================
# Worked fixture: 10 records, 4 Likert items (1-4), items B and D reversed
# =============================================================================
A = [1, 2, 3, 4, 1, 2, 3, 4, 2, 3]
B_RAW = [5 - a for a in A]                      # reversed -> equals A
C = [4, 4, 3, 3, 2, 2, 1, 1, np.nan, np.nan]
D_RAW = [1, 2, 1, 2, 3, 4, 3, 4, np.nan, np.nan]


@pytest.fixture
def battery():
    return pd.DataFrame({
        "student_id": range(1, 11),
        "A": A,
        "B": B_RAW,
        "C": C,
        "D": D_RAW,
        "tail": list("abcdefghij"),
    })


@pytest.fixture
def battery_spec():
    return CompositeSpec(
        name="battery_score",
        items=("A", "B", "C", "D"),
        reversed_items=("B", "D"),
        reversal_rule="likert",
        scale_max=4,
        anchor="D",
    )


def expected_battery_score():
    # A: 10 observations, mean 2.5, SS 10.5 -> sd sqrt(7/6)
    # C, reversed D: 8 observations, mean 2.5, SS 10 -> sd sqrt(10/7)
    z_a = (np.array(A, dtype=float) - 2.5) * math.sqrt(6 / 7)
    z_c = (np.array(C[:8], dtype=float) - 2.5) * math.sqrt(7 / 10)
    d_rev = 5 - np.array(D_RAW[:8], dtype=float)
    z_d = (d_rev - 2.5) * math.sqrt(7 / 10)

    expected = z_a.copy()
    expected[:8] = (2 * z_a[:8] + z_c + z_d) / 4
    return expected


def test_worked_fixture_composite(battery, battery_spec):
    out = build_composite(battery, battery_spec)
    np.testing.assert_allclose(out["battery_score"].to_numpy(), expected_battery_score(), atol=1e-6)


def test_worked_fixture_known_values(battery, battery_spec):
    out = build_composite(battery, battery_spec)
    score = out["battery_score"]
    assert score.iloc[0] == pytest.approx(-0.066870055, abs=1e-6)
    assert score.iloc[3] == pytest.approx(0.90353008, abs=1e-6)
    assert score.iloc[8] == pytest.approx(-0.46291005, abs=1e-6)


def test_reversal_not_persisted_by_default(battery, battery_spec):
    out = build_composite(battery, battery_spec)
    assert list(out["B"]) == B_RAW
    pd.testing.assert_series_equal(out["D"], battery["D"])


def test_persisted_reversal_writes_items_back(battery, battery_spec):
    spec = CompositeSpec(**{**battery_spec.__dict__, "persist_reversal": True})
    out = build_composite(battery, spec)
    assert list(out["B"]) == [float(a) for a in A]
    assert list(out["D"].iloc[:4]) == [4.0, 3.0, 4.0, 3.0]
    # source frame untouched
    assert list(battery["B"]) == B_RAW


# =============================================================================
# Position
# =============================================================================
def test_composite_inserted_right_after_anchor(battery, battery_spec):
    before = list(battery.columns)
    out = build_composite(battery, battery_spec)
    after = list(out.columns)

    assert after.index("battery_score") == after.index("D") + 1
    for col in before:
        shift = 1 if before.index(col) > before.index("D") else 0
        assert after.index(col) == before.index(col) + shift


def test_missing_anchor_raises(battery, battery_spec):
    spec = CompositeSpec(**{**battery_spec.__dict__, "anchor": "nowhere"})
    with pytest.raises(SchemaError):
        build_composite(battery, spec)


def test_every_missing_item_is_listed(battery, battery_spec):
    spec = CompositeSpec(**{**battery_spec.__dict__, "items": ("A", "X", "Y"), "reversed_items": ()})
    with pytest.raises(SchemaError) as exc:
        build_composite(battery, spec)
    assert exc.value.missing == ["X", "Y"]


def test_duplicate_composite_warns_and_overwrites(battery, battery_spec):
    once = build_composite(battery, battery_spec)
    with pytest.warns(UserWarning):
        twice = build_composite(once, battery_spec)
    assert list(twice.columns) == list(once.columns)
    np.testing.assert_allclose(twice["battery_score"], once["battery_score"])


# =============================================================================
# Missingness
# =============================================================================
def test_composite_missing_only_when_all_items_missing():
    df = pd.DataFrame({
        "x": [1, np.nan, np.nan, 2, 3],
        "y": [2, 3, np.nan, np.nan, 1],
    })
    spec = CompositeSpec(name="xy", items=("x", "y"), anchor="y")
    out = build_composite(df, spec)
    assert out["xy"].isna().tolist() == [False, False, True, False, False]

    complete = df.drop(index=2)
    assert build_composite(complete, spec)["xy"].notna().all()


# =============================================================================
# Item transforms
# =============================================================================
def test_likert_reverse_coding():
    s = pd.Series([1, 2, 3, 4])
    assert reverse_code(s, "likert", 4).tolist() == [4, 3, 2, 1]


def test_binary_reverse_coding():
    s = pd.Series([0, 1])
    assert reverse_code(s, "binary").tolist() == [1, 0]


def test_likert_reversal_needs_scale_max():
    with pytest.raises(ValueError):
        reverse_code(pd.Series([1, 2]), "likert")


def test_standardize_uses_sample_sd():
    z = standardize(pd.Series([1.0, 2.0, 3.0, np.nan]))
    np.testing.assert_allclose(z.iloc[:3], [-1.0, 0.0, 1.0])
    assert np.isnan(z.iloc[3])


def test_as_numeric_item_coding_and_categoricals():
    yes_no = pd.Series(["Yes", "No", None, "Yes"])
    assert as_numeric(yes_no, {"Yes": 1, "No": 0}).tolist()[:2] == [1.0, 0.0]

    levels = pd.Series(pd.Categorical(["Agree", "Disagree", None], categories=["Disagree", "Agree"]))
    out = as_numeric(levels)
    assert out.tolist()[:2] == [2.0, 1.0]
    assert np.isnan(out.iloc[2])


def test_binary_composite_with_item_coding():
    df = pd.DataFrame({
        "anchor": [0, 0, 0, 0],
        "p1": ["Yes", "No", "Yes", "No"],
        "p2": ["No", "No", "Yes", "Yes"],
    })
    spec = CompositeSpec(
        name="policy",
        items=("p1", "p2"),
        reversed_items=("p1", "p2"),
        reversal_rule="binary",
        item_coding={"Yes": 1, "No": 0},
        anchor="anchor",
    )
    out = build_composite(df, spec)
    # fewer policies -> higher score
    assert out["policy"].iloc[1] > out["policy"].iloc[2]
    assert list(out.columns) == ["anchor", "policy", "p1", "p2"]


def test_insert_after_returns_copy():
    df = pd.DataFrame({"a": [1], "b": [2]})
    out = insert_after(df, "c", [3], "a")
    assert list(out.columns) == ["a", "c", "b"]
    assert list(df.columns) == ["a", "b"]


def test_build_composites_chains_anchors():
    df = pd.DataFrame({"base": [1, 2, 3], "i1": [1, 2, 3], "i2": [3, 2, 1]})
    specs = [
        CompositeSpec(name="first", items=("i1",), anchor="base"),
        CompositeSpec(name="second", items=("i2",), anchor="first"),
    ]
    out = build_composites(df, specs)
    assert list(out.columns) == ["base", "first", "second", "i1", "i2"]


def test_default_composite_table():
    assert len(COMPOSITE_REGISTRY) == 6
    perseverance = COMPOSITE_REGISTRY["stdv_perseverance_agreement_self"]
    assert perseverance.persist_reversal
    assert set(perseverance.reversed_items) <= set(perseverance.items)
    for spec in COMPOSITE_REGISTRY.values():
        assert set(spec.reversed_items) <= set(spec.items)


def test_skip_labels_are_missing_items():
    likert = ["Strongly disagree", "Disagree", "Agree", "Strongly agree"]
    df = pd.DataFrame({
        "q": pd.Categorical(
            ["Agree", "Disagree", "valid_skip", "Strongly agree"],
            categories=likert + ["valid_skip"],
            ordered=True,
        ),
        "anchor": [1, 2, 3, 4],
    })
    spec = CompositeSpec(
        name="q_index",
        items=("q",),
        reversed_items=("q",),
        scale_max=4,
        persist_reversal=True,
        anchor="anchor",
    )
    out = build_composite(df, spec)

    stored = out["q"].tolist()
    assert stored[:2] == [2.0, 3.0] and stored[3] == 1.0
    assert math.isnan(stored[2])
    assert math.isnan(out["q_index"].iloc[2])
    assert out["q_index"].drop(index=2).notna().all()


def test_as_numeric_masks_custom_skip_labels():
    s = pd.Series(pd.Categorical(["No", "skipped", "Yes"], categories=["No", "Yes", "skipped"]))
    assert as_numeric(s, skip_labels=("skipped",)).tolist()[::2] == [1.0, 2.0]
    assert math.isnan(as_numeric(s, skip_labels=("skipped",)).iloc[1])
