# pisa_cleaning/pipeline/flagging.py

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from pisa_cleaning.core.errors import SchemaError
from pisa_cleaning.core.spec import StraightLineSpec
from pisa_cleaning.pipeline.composite import insert_after

logger = logging.getLogger(__name__)

FLAGGED = "Flagged"
NOT_FLAGGED = "Not flagged"


# =============================================================================
# COVID-19 closure consistency
# =============================================================================
def covid_inconsistency(
    closure: pd.Series,
    days_closed: pd.Series,
    no_label: str = "No",
) -> pd.Series:
    """
    Flagged when a respondent reports no closure but a non-zero number of
    closed days, or a closure with zero days. NA where either input is NA.
    """
    days = pd.to_numeric(days_closed.astype("object"), errors="coerce")
    said_no = closure.astype("object") == no_label

    inconsistent = (said_no & (days != 0)) | (~said_no & (days == 0))
    flag = pd.Series(np.where(inconsistent, FLAGGED, NOT_FLAGGED), index=closure.index, dtype="object")
    return flag.where(closure.notna() & days.notna(), np.nan)


def add_covid_flag(
    df: pd.DataFrame,
    closure_col: str,
    days_col: str,
    flag_col: str = "covid_inconsistency_flag",
) -> pd.DataFrame:
    missing = [c for c in (closure_col, days_col) if c not in df.columns]
    if missing:
        raise SchemaError("COVID consistency check needs absent columns", missing)
    flag = covid_inconsistency(df[closure_col], df[days_col])
    logger.info(f"[Flags] {flag_col}: {int((flag == FLAGGED).sum())} flagged")
    return insert_after(df, flag_col, flag, closure_col)


# =============================================================================
# Straight-lining
# =============================================================================
def straight_line(
    df: pd.DataFrame,
    spec: StraightLineSpec,
    random_skip_label: str = "random_skip",
) -> pd.Series:
    """
    Flagged when every presented item (not NA, not randomly skipped) carries
    the same answer. With ``required_any``, at least one of those items must
    itself have been presented.
    """
    missing = [c for c in spec.items if c not in df.columns]
    if missing:
        raise SchemaError(f"Straight-lining battery '{spec.name}' has absent items", missing)

    block = df[list(spec.items)].astype("object")
    presented = block.notna() & (block != random_skip_label)
    answers = block.where(presented)

    n_distinct = answers.nunique(axis=1, dropna=True)
    flagged = n_distinct == 1
    if spec.required_any:
        flagged &= presented[list(spec.required_any)].any(axis=1)

    return pd.Series(np.where(flagged, FLAGGED, NOT_FLAGGED), index=df.index, dtype="object")


def add_straight_line_flags(
    df: pd.DataFrame,
    batteries: Sequence[StraightLineSpec],
    random_skip_label: str = "random_skip",
) -> pd.DataFrame:
    for spec in batteries:
        flag = straight_line(df, spec, random_skip_label)
        logger.info(f"[Flags] {spec.name}: {int((flag == FLAGGED).sum())} flagged")
        df = insert_after(df, spec.name, flag, spec.anchor)
    return df


def flag_overlap_summary(df: pd.DataFrame, flag_columns: Sequence[str]) -> pd.DataFrame:
    """Records flagged in exactly k of the given flag columns."""
    present = [c for c in flag_columns if c in df.columns]
    hits = (df[present] == FLAGGED).sum(axis=1)
    counts = hits.value_counts().reindex(range(len(present) + 1), fill_value=0)
    return pd.DataFrame({"n_flags": counts.index, "n_records": counts.to_numpy()})
