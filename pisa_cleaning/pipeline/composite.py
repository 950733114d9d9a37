# pisa_cleaning/pipeline/composite.py

import logging
import warnings
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import zscore

from pisa_cleaning.core.errors import SchemaError
from pisa_cleaning.core.spec import CompositeSpec

logger = logging.getLogger(__name__)

SKIP_LABELS = ("valid_skip", "random_skip")


# =============================================================================
# Column placement
# =============================================================================
def insert_after(
    df: pd.DataFrame,
    name: str,
    values,
    anchor: str,
) -> pd.DataFrame:
    """
    Return a copy of ``df`` with ``name`` placed immediately after
    ``anchor``. An existing ``name`` column is replaced (with a warning).
    """
    if anchor not in df.columns:
        raise SchemaError(f"Anchor column for '{name}' not found", [anchor])

    df_out = df.copy()
    if name in df_out.columns:
        msg = f"Column '{name}' already exists and will be overwritten"
        warnings.warn(msg)
        logger.warning(msg)
        df_out = df_out.drop(columns=[name])
        if anchor == name:
            raise SchemaError(f"Column '{name}' cannot be its own anchor", [anchor])

    loc = df_out.columns.get_loc(anchor) + 1
    df_out.insert(loc, name, values)
    return df_out


# =============================================================================
# Item transforms
# =============================================================================
def as_numeric(
    series: pd.Series,
    item_coding: Optional[Dict[str, float]] = None,
    skip_labels: Sequence[str] = SKIP_LABELS,
) -> pd.Series:
    """
    Numeric view of an item. Skip labels are missing, never a scale point.

    - explicit ``item_coding`` maps labels to numbers
    - categoricals use their 1-based level position
    - anything else is coerced with ``pd.to_numeric``
    """
    if item_coding:
        mapped = series.astype("object").map(item_coding)
        return pd.to_numeric(mapped, errors="coerce").astype(float)
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = [s for s in skip_labels if s in series.cat.categories]
        if present:
            series = series.cat.remove_categories(present)
        codes = series.cat.codes.astype(float)
        return (codes + 1).where(codes >= 0, np.nan)
    return pd.to_numeric(series, errors="coerce").astype(float)


def reverse_code(
    series: pd.Series,
    rule: str = "likert",
    scale_max: Optional[int] = None,
) -> pd.Series:
    """
    Reverse-code a numeric item.

    likert: k + 1 - x for a 1..k item (k = ``scale_max``)
    binary: 1 - x
    """
    if rule == "likert":
        if scale_max is None:
            raise ValueError("Likert reversal needs scale_max")
        return (scale_max + 1) - series
    if rule == "binary":
        return 1 - series
    raise ValueError(f"Unknown reversal rule: {rule}")


def standardize(series: pd.Series) -> pd.Series:
    """
    z-score with sample mean / sample SD (ddof=1), NaN-omitting.
    A degenerate item (SD = 0 or < 2 observations) yields non-finite values.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        z = zscore(series.to_numpy(dtype=float), ddof=1, nan_policy="omit")
    return pd.Series(np.asarray(z, dtype=float), index=series.index)


# =============================================================================
# Main API
# =============================================================================
def build_composite(
    df: pd.DataFrame,
    spec: CompositeSpec,
    skip_labels: Sequence[str] = SKIP_LABELS,
) -> pd.DataFrame:
    """
    Build one composite variable and insert it after ``spec.anchor``.

    Steps
    -----
    1. all items must be present (every missing item is reported)
    2. reverse-code ``spec.reversed_items`` on a working copy; only
       ``persist_reversal`` writes the reversed values back
    3. z-score each item independently
    4. row-wise mean of available z-scores (NaN only if all items missing)
    5. insert after the anchor

    Returns
    -------
    New DataFrame; ``df`` is not modified.
    """
    # ---------------------
    # 1. Validation
    # ---------------------
    missing_items = [c for c in spec.items if c not in df.columns]
    if missing_items:
        raise SchemaError(f"Missing source items for composite '{spec.name}'", missing_items)
    stray = [c for c in spec.reversed_items if c not in spec.items]
    if stray:
        raise SchemaError(f"Reversed items not among the items of '{spec.name}'", stray)
    if spec.anchor not in df.columns:
        raise SchemaError(f"Anchor column for '{spec.name}' not found", [spec.anchor])

    # ---------------------
    # 2. Numeric working copy + reversal
    # ---------------------
    work = pd.DataFrame(
        {item: as_numeric(df[item], spec.item_coding, skip_labels) for item in spec.items},
        index=df.index,
    )
    for item in spec.reversed_items:
        work[item] = reverse_code(work[item], spec.reversal_rule, spec.scale_max)

    df_out = df
    if spec.persist_reversal and spec.reversed_items:
        df_out = df.copy()
        for item in spec.reversed_items:
            df_out[item] = work[item]
        logger.info(f"[{spec.name}] Stored reversed values for {len(spec.reversed_items)} items")

    # ---------------------
    # 3. Standardize
    # ---------------------
    z = pd.DataFrame({item: standardize(work[item]) for item in spec.items}, index=df.index)

    # ---------------------
    # 4. Aggregate
    # ---------------------
    if spec.aggregation != "mean_z":
        raise ValueError(f"Unsupported aggregation: {spec.aggregation}")
    composite = z.mean(axis=1, skipna=True)

    n_missing = int(composite.isna().sum())
    logger.info(
        f"[{spec.name}] {len(spec.items)} items, "
        f"{len(spec.reversed_items)} reversed, {n_missing} records undefined"
    )

    # ---------------------
    # 5. Insert
    # ---------------------
    return insert_after(df_out, spec.name, composite, spec.anchor)


def build_composites(df: pd.DataFrame, specs, skip_labels: Sequence[str] = SKIP_LABELS) -> pd.DataFrame:
    """Build composites in table order (later anchors may be earlier composites)."""
    for spec in specs:
        df = build_composite(df, spec, skip_labels)
    return df
