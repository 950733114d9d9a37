# pisa_cleaning/pipeline/screening.py

import logging
from typing import Dict, Iterable, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# =============================================================================
# Constant variables
# =============================================================================
def constant_variables(df: pd.DataFrame) -> pd.DataFrame:
    """
    Columns holding a single distinct value (NA counts as a value).

    Returns
    -------
    DataFrame: variable, constant_value
    """
    rows = []
    for col in df.columns:
        if df[col].nunique(dropna=False) == 1:
            rows.append({"variable": col, "constant_value": df[col].iloc[0] if len(df) else np.nan})
    return pd.DataFrame(rows, columns=["variable", "constant_value"])


# =============================================================================
# Redundancy (correlation) audit
# =============================================================================
def completeness(series: pd.Series, skip_labels: Iterable[str] = ("valid_skip", "random_skip")) -> float:
    """Percent of substantive (non-missing, non-skip) values, one decimal."""
    if len(series) == 0:
        return 0.0
    valid = series.notna() & ~series.astype("object").isin(list(skip_labels))
    return round(float(valid.sum()) / len(series) * 100, 1)


def redundant_pairs(
    df: pd.DataFrame,
    threshold: float = 0.85,
    var_types: Dict[str, str] = None,
    min_periods: int = 3,
) -> pd.DataFrame:
    """
    Numeric variable pairs with |Pearson r| above ``threshold``.

    Correlations are pairwise-complete. Each pair appears once
    (column order), with the completeness of both members so the
    analyst can decide which to keep. The dataset is not modified.
    """
    var_types = var_types or {}
    numeric = df.select_dtypes(include=[np.number])
    numeric = numeric.loc[:, numeric.nunique(dropna=True) > 1]
    columns = ["variable1", "var1_type", "var1_completeness",
               "variable2", "var2_type", "var2_completeness", "correlation"]
    if numeric.shape[1] < 2:
        return pd.DataFrame(columns=columns)

    corr = numeric.corr(method="pearson", min_periods=min_periods)
    values = corr.to_numpy()
    names = list(corr.columns)

    rows = []
    for i, j in zip(*np.where(np.triu(np.abs(values) > threshold, k=1))):
        a, b = names[i], names[j]
        rows.append({
            "variable1": a,
            "var1_type": var_types.get(a, "Unknown"),
            "var1_completeness": completeness(df[a]),
            "variable2": b,
            "var2_type": var_types.get(b, "Unknown"),
            "var2_completeness": completeness(df[b]),
            "correlation": round(float(values[i, j]), 2),
        })

    result = pd.DataFrame(rows, columns=columns)
    logger.info(f"[Screening] {len(result)} pairs with |r| > {threshold} among {numeric.shape[1]} numeric variables")
    return result


def variable_types(columns: Sequence[str], derived: Iterable[str]) -> Dict[str, str]:
    derived = set(derived)
    return {c: "Derived Variable" if c in derived else "Questionnaire Response" for c in columns}
