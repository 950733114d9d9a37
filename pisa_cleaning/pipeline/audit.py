# pisa_cleaning/pipeline/audit.py

from typing import List, Sequence

import pandas as pd

from pisa_cleaning.core.registry import MappingRegistry


def schema_audit(
    df: pd.DataFrame,
    valid_skip_label: str = "valid_skip",
    random_skip_label: str = "random_skip",
) -> pd.DataFrame:
    """
    One row per column of the final dataset.

    Returns
    -------
    pd.DataFrame
        variable, class, n_missing, n_valid_skip, n_random_skip, n_levels, ordered
    """
    rows: List[dict] = []

    for col in df.columns:
        series = df[col]
        is_cat = isinstance(series.dtype, pd.CategoricalDtype)
        as_text = series.astype("object")

        rows.append({
            "variable": col,
            "class": "factor" if is_cat else str(series.dtype),
            "n_missing": int(series.isna().sum()),
            "n_valid_skip": int((as_text == valid_skip_label).sum()),
            "n_random_skip": int((as_text == random_skip_label).sum()),
            "n_levels": len(series.cat.categories) if is_cat else None,
            "ordered": bool(series.cat.ordered) if is_cat else False,
        })

    return pd.DataFrame(rows)


def stage_summary(
    df_before: pd.DataFrame,
    df_after: pd.DataFrame,
    codes: Sequence = (95, "valid_skip", 97, "random_skip", 98, 99),
) -> pd.DataFrame:
    """Rows, variables and special-code counts before vs after a stage."""
    rows: List[dict] = [
        {"category": "Total rows", "before": len(df_before), "after": len(df_after)},
        {"category": "Total variables", "before": df_before.shape[1], "after": df_after.shape[1]},
    ]
    for code in codes:
        rows.append({
            "category": str(code),
            "before": _count_value(df_before, code),
            "after": _count_value(df_after, code),
        })
    rows.append({
        "category": "NA",
        "before": int(df_before.isna().to_numpy().sum()),
        "after": int(df_after.isna().to_numpy().sum()),
    })
    return pd.DataFrame(rows)


def registry_status_report(registry: MappingRegistry) -> pd.DataFrame:
    """Included / Excluded counts by reason."""
    frame = registry.to_frame()
    return (
        frame.groupby(["status", "status_reason"], dropna=False)
        .size()
        .reset_index(name="n_variables")
    )


def export_report(
    df_report: pd.DataFrame,
    out_prefix: str,
):
    df_report.to_csv(f"{out_prefix}_schema_audit.csv", index=False)
    df_report.to_json(
        f"{out_prefix}_schema_audit.json",
        orient="records",
        indent=2,
    )


def _count_value(df: pd.DataFrame, value) -> int:
    if isinstance(value, str):
        return int((df.astype("object") == value).to_numpy().sum())
    numeric = df.select_dtypes(include="number")
    return int((numeric == value).to_numpy().sum())
