# pisa_cleaning/pipeline/missingness.py

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from pisa_cleaning.core.errors import SchemaError

logger = logging.getLogger(__name__)


# =============================================================================
# Classification outcome
# =============================================================================
@dataclass(frozen=True)
class MissingnessThresholdViolation:
    """
    Result of applying a missingness threshold. Not an error: it is logged
    with its counts before the caller removes anything.
    """
    kind: str                      # "variable" | "record"
    threshold: float
    affected: List = field(default_factory=list)
    rates: Dict = field(default_factory=dict)
    total: int = 0

    @property
    def count(self) -> int:
        return len(self.affected)

    def log(self) -> None:
        logger.info(
            f"[Missingness] {self.count}/{self.total} {self.kind}s above "
            f"{self.threshold:g}% threshold"
        )


# =============================================================================
# Internal helpers
# =============================================================================
def _require(df: pd.DataFrame, columns: Iterable[str]) -> List[str]:
    columns = list(columns)
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise SchemaError("Columns required for missingness computation are absent", missing)
    return columns


def _missing_mask(frame: pd.DataFrame, codes: Sequence[float]) -> pd.DataFrame:
    mask = frame.isna()
    if codes:
        mask |= frame.isin(list(codes))
    return mask


# =============================================================================
# Per-variable
# =============================================================================
def variable_missing_rate(
    df: pd.DataFrame,
    variable: str,
    sentinel_codes: Sequence[float] = (),
) -> float:
    """
    Percent of records missing on ``variable`` (NA plus any sentinel code).

    Returns
    -------
    float in [0, 100]; 0.0 for an empty frame.
    """
    _require(df, [variable])
    if len(df) == 0:
        return 0.0
    mask = _missing_mask(df[[variable]], sentinel_codes)[variable]
    return float(mask.sum()) * 100 / len(df)


def variable_missing_rates(
    df: pd.DataFrame,
    sentinel_codes: Sequence[float] = (),
) -> pd.Series:
    if len(df) == 0:
        return pd.Series(0.0, index=df.columns)
    return _missing_mask(df, sentinel_codes).sum() * 100 / len(df)


def classify_variables(
    df: pd.DataFrame,
    *,
    flag_threshold: float,
    drop_threshold: float,
    sentinel_codes: Sequence[float] = (),
    exempt: Iterable[str] = (),
):
    """
    Split variables by missing rate.

    Returns
    -------
    (flagged, dropped):
        flagged: rate > flag_threshold and below drop_threshold
        dropped: rate >= drop_threshold
    """
    exempt = set(exempt)
    rates = variable_missing_rates(df, sentinel_codes)
    rates = rates[[c for c in rates.index if c not in exempt]]

    drop_mask = rates >= drop_threshold
    flag_mask = (rates > flag_threshold) & ~drop_mask

    dropped = MissingnessThresholdViolation(
        kind="variable",
        threshold=drop_threshold,
        affected=list(rates.index[drop_mask]),
        rates=rates[drop_mask].round(2).to_dict(),
        total=len(rates),
    )
    flagged = MissingnessThresholdViolation(
        kind="variable",
        threshold=flag_threshold,
        affected=list(rates.index[flag_mask]),
        rates=rates[flag_mask].round(2).to_dict(),
        total=len(rates),
    )
    return flagged, dropped


# =============================================================================
# Per-record
# =============================================================================
def combined_missing_summary(
    df: pd.DataFrame,
    variable_set: Sequence[str],
    invalid_codes: Sequence[float] = (98,),
    no_response_codes: Sequence[float] = (99,),
) -> pd.DataFrame:
    """
    Per-record counts of NA, invalid and no-response codes over
    ``variable_set`` and their combined percentage.
    """
    variable_set = _require(df, variable_set)
    if not variable_set:
        raise SchemaError("Record missingness needs a non-empty variable set")

    block = df[variable_set]
    total_na = block.isna().sum(axis=1)
    total_invalid = block.isin(list(invalid_codes)).sum(axis=1)
    total_no_response = block.isin(list(no_response_codes)).sum(axis=1)
    combined = total_na + total_invalid + total_no_response

    return pd.DataFrame({
        "total_na": total_na,
        "total_invalid": total_invalid,
        "total_no_response": total_no_response,
        "combined_missing": combined,
        "total_variables": len(variable_set),
        "combined_missing_percent": combined * 100 / len(variable_set),
    }, index=df.index)


def combined_missing_rates(
    df: pd.DataFrame,
    variable_set: Sequence[str],
    invalid_codes: Sequence[float] = (98,),
    no_response_codes: Sequence[float] = (99,),
) -> pd.Series:
    summary = combined_missing_summary(df, variable_set, invalid_codes, no_response_codes)
    return summary["combined_missing_percent"]


def record_combined_missing_rate(
    df: pd.DataFrame,
    record,
    variable_set: Sequence[str],
    invalid_codes: Sequence[float] = (98,),
    no_response_codes: Sequence[float] = (99,),
) -> float:
    """Combined missing percentage of a single record (index label)."""
    variable_set = _require(df, variable_set)
    row = df.loc[[record], variable_set]
    missing = _missing_mask(row, tuple(invalid_codes) + tuple(no_response_codes))
    return float(missing.to_numpy().sum()) * 100 / len(variable_set)


def classify_records(
    df: pd.DataFrame,
    variable_set: Sequence[str],
    *,
    threshold: float,
    invalid_codes: Sequence[float] = (98,),
    no_response_codes: Sequence[float] = (99,),
) -> MissingnessThresholdViolation:
    """Records whose combined missing rate is strictly above ``threshold``."""
    rates = combined_missing_rates(df, variable_set, invalid_codes, no_response_codes)
    over = rates > threshold
    return MissingnessThresholdViolation(
        kind="record",
        threshold=threshold,
        affected=list(rates.index[over]),
        rates=rates[over].round(1).to_dict(),
        total=len(rates),
    )


# =============================================================================
# Special-code summaries (audit only)
# =============================================================================
def special_code_summary(
    df: pd.DataFrame,
    blocks: Dict[str, Sequence[str]],
    codes: Sequence[float] = (95, 97, 98, 99),
) -> pd.DataFrame:
    """Counts of each special code and NA per variable block."""
    rows = []
    for block_name, variables in blocks.items():
        present = [v for v in variables if v in df.columns]
        if not present:
            continue
        subset = df[present]
        row = {"variable_category": block_name}
        for code in codes:
            row[str(int(code))] = int(subset.isin([code]).to_numpy().sum())
        row["NA"] = int(subset.isna().to_numpy().sum())
        rows.append(row)
    return pd.DataFrame(rows)


def top_code_counts(
    df: pd.DataFrame,
    code,
    n: int = 30,
) -> pd.DataFrame:
    """The ``n`` variables with most occurrences of ``code`` (``None`` = NA)."""
    if code is None:
        counts = df.isna().sum()
    else:
        counts = df.isin([code]).sum()
    counts = counts[counts > 0].sort_values(ascending=False, kind="mergesort").head(n)
    return pd.DataFrame({
        "variable": counts.index,
        "code": "NA" if code is None else str(code),
        "count": counts.to_numpy(dtype=np.int64),
    })
