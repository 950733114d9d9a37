# pisa_cleaning/pipeline/imputation.py

import logging
import re
import warnings
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from sklearn.exceptions import ConvergenceWarning
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import SimpleImputer, IterativeImputer

from pisa_cleaning.core.errors import ImputationFailure, ProtectedColumnError, SchemaError
from pisa_cleaning.core.registry import MappingRegistry
from pisa_cleaning.pipeline.composite import as_numeric

logger = logging.getLogger(__name__)


# =============================================================================
# Imputer factory
# =============================================================================
def build_imputer(method: str, random_state: int = 42, **kwargs):
    if method == "median":
        return SimpleImputer(strategy="median")
    if method == "mean":
        return SimpleImputer(strategy="mean")
    if method == "most_frequent":
        return SimpleImputer(strategy="most_frequent")
    if method == "constant_zero":
        return SimpleImputer(strategy="constant", fill_value=0)
    if method == "mice":
        return IterativeImputer(
            random_state=random_state,
            sample_posterior=kwargs.get("sample_posterior", True),
            max_iter=kwargs.get("max_iter", 10),
            keep_empty_features=True,
        )
    if method is None:
        return None
    raise ValueError(f"Unknown impute_method: {method}")


# =============================================================================
# Protected columns
# =============================================================================
def protected_columns(
    columns: Iterable[str],
    patterns: Sequence[str],
    explicit: Sequence[str] = (),
) -> List[str]:
    """Identifiers, weights and plausible values (never imputed)."""
    compiled = [re.compile(p) for p in patterns]
    explicit = set(explicit)
    return [
        c for c in columns
        if c in explicit or any(rx.search(c) for rx in compiled)
    ]


# =============================================================================
# Targeted multiple imputation
# =============================================================================
def _match_to_donors(
    values: np.ndarray,
    donors: np.ndarray,
    rng: np.random.Generator,
    k: int = 5,
) -> np.ndarray:
    """
    Predictive mean matching: replace each drawn value with one of the
    ``k`` observed donor values closest to it, chosen at random.
    """
    donors = np.sort(donors)
    k = min(k, len(donors))
    matched = np.empty_like(values, dtype=float)
    for i, v in enumerate(values):
        nearest = np.argsort(np.abs(donors - v), kind="mergesort")[:k]
        matched[i] = donors[rng.choice(nearest)]
    return matched


def _consolidate(draws: List[np.ndarray], how: str) -> np.ndarray:
    if how == "first":
        return draws[0]
    if how == "mode":
        # smallest value wins ties
        stacked = pd.DataFrame(np.column_stack(draws))
        return stacked.mode(axis=1)[0].to_numpy(dtype=float)
    raise ValueError(f"Unknown consolidation rule: {how}")


def impute_targeted(
    df: pd.DataFrame,
    target: str,
    predictors: Sequence[str],
    *,
    sentinel_codes: Sequence[float] = (95, 97, 98, 99),
    n_imputations: int = 5,
    random_state: int = 123,
    consolidation: str = "first",
    id_column: Optional[str] = None,
    max_iter: int = 10,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Multiple imputation of one outcome variable.

    Sentinel codes are set to missing across target and predictors on a
    working copy, ``n_imputations`` completed datasets are drawn, and one
    consolidated vector replaces the target. Every other column keeps its
    pre-imputation values.

    Returns
    -------
    df_out, imputation_log
        imputation_log has one row per record that was missing or
        sentinel-coded on the target: id, before, after.
    """
    # ---------------------
    # Guards
    # ---------------------
    required = [target] + list(predictors)
    if id_column is not None:
        required.append(id_column)
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise SchemaError(f"Targeted imputation of '{target}' needs absent columns", missing)
    if n_imputations < 1:
        raise ValueError("n_imputations must be >= 1")

    # ---------------------
    # Working copy
    # ---------------------
    work = pd.DataFrame(
        {c: as_numeric(df[c]) for c in list(predictors) + [target]},
        index=df.index,
    )
    work = work.mask(work.isin(list(sentinel_codes)))

    needs = work[target].isna().to_numpy()
    observed = work.loc[~needs, target].to_numpy(dtype=float)
    logger.info(f"[MI] '{target}': {int(needs.sum())}/{len(work)} records to impute")

    if not needs.any():
        df_out = df.copy()
        log = pd.DataFrame(columns=[id_column or "index", f"{target}_before", f"{target}_after"])
        return df_out, log
    if observed.size == 0:
        raise ImputationFailure(f"'{target}' has no observed values to impute from")

    # ---------------------
    # Draws
    # ---------------------
    target_idx = work.columns.get_loc(target)
    draws: List[np.ndarray] = []
    for i in range(n_imputations):
        imputer = build_imputer("mice", random_state=random_state + i, max_iter=max_iter)
        rng = np.random.default_rng(random_state + i)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            try:
                completed = imputer.fit_transform(work.to_numpy(dtype=float, copy=True))
            except ValueError as e:
                raise ImputationFailure(f"Imputation draw {i + 1} for '{target}' failed: {e}") from e
        if any(issubclass(w.category, ConvergenceWarning) for w in caught):
            logger.warning(f"[MI] draw {i + 1}: iterative imputer stopped before convergence")
        for w in caught:
            if not issubclass(w.category, ConvergenceWarning):
                logger.warning(f"[MI] draw {i + 1}: {w.category.__name__}: {w.message}")

        draw = completed[:, target_idx].astype(float)
        draw[needs] = _match_to_donors(draw[needs], observed, rng)
        draw[~needs] = work[target].to_numpy(dtype=float)[~needs]
        draws.append(draw)

    if not draws:
        raise ImputationFailure(f"No completed dataset produced for '{target}'")

    values = _consolidate(draws, consolidation)
    if np.isnan(values[needs]).any():
        raise ImputationFailure(f"Imputed '{target}' still contains missing values")

    # ---------------------
    # Apply + transparency log
    # ---------------------
    df_out = df.copy()
    before = df[target]
    after = before.astype(float).where(~needs, values)
    df_out[target] = after

    ids = df.loc[needs, id_column] if id_column is not None else df.index[needs]
    log = pd.DataFrame({
        id_column or "index": np.asarray(ids),
        f"{target}_before": before[needs].to_numpy(),
        f"{target}_after": after[needs].to_numpy(),
    })
    logger.info(f"[MI] '{target}': imputed {len(log)} records ({consolidation} of {n_imputations} draws)")
    return df_out, log


# =============================================================================
# Valid-skip substantive recodes
# =============================================================================
def _replace_value(series: pd.Series, old, new) -> pd.Series:
    mask = series == old
    if not mask.any():
        return series
    if isinstance(series.dtype, pd.CategoricalDtype):
        s = series
        if new is not None and new not in s.cat.categories:
            s = s.cat.add_categories([new])
        s = s.where(~mask, new if new is not None else np.nan)
        return s.cat.remove_categories([old])
    return series.where(~mask, new if new is not None else np.nan)


def random_skip_to_missing(df: pd.DataFrame, label: str = "random_skip") -> pd.DataFrame:
    df_out = df.copy()
    for col in df_out.columns:
        df_out[col] = _replace_value(df_out[col], label, None)
    return df_out


def apply_valid_skip_recodes(
    df: pd.DataFrame,
    registry: MappingRegistry,
    *,
    label: str = "valid_skip",
    code: float = 95,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Replace valid skips with the substantive value the registry declares
    (``valid_skip_recode``), or with missing when it declares ``NA``.
    Numeric columns carry the raw valid-skip code instead of the label.
    """
    df_out = df.copy()
    rows = []
    for spec in registry.get_entries(lambda s: bool(s.valid_skip_recode) and s.is_included):
        col = spec.renamed_variable
        if col not in df_out.columns:
            continue
        series = df_out[col]
        new = None if spec.valid_skip_recode.upper() == "NA" else spec.valid_skip_recode

        if pd.api.types.is_numeric_dtype(series) and not isinstance(series.dtype, pd.CategoricalDtype):
            old = code
            new = None if new is None else float(new)
        else:
            old = label
        n = int((series == old).sum())
        df_out[col] = _replace_value(series, old, new)
        rows.append({"variable": col, "replaced": n, "value": "NA" if new is None else new})

    log = pd.DataFrame(rows, columns=["variable", "replaced", "value"])
    logger.info(f"[ValidSkip] {int(log['replaced'].sum()) if len(log) else 0} valid skips recoded across {len(log)} variables")
    return df_out, log


# =============================================================================
# Blanket terminal imputation
# =============================================================================
def _stable_mode(series: pd.Series):
    """
    Most frequent value. Ties go to the first category in level order, or
    to the first value in sorted order for plain text columns.
    """
    observed = series.dropna()
    if observed.empty:
        return None
    if isinstance(series.dtype, pd.CategoricalDtype):
        counts = observed.value_counts(sort=False).reindex(series.cat.categories)
        return counts.idxmax()
    counts = Counter(observed.tolist())
    top = max(counts.values())
    return sorted((v for v, n in counts.items() if n == top), key=str)[0]


def blanket_impute(
    df: pd.DataFrame,
    *,
    protected_patterns: Sequence[str],
    protected_columns_list: Sequence[str] = (),
    reference: Optional[pd.DataFrame] = None,
    columns: Optional[Sequence[str]] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Fill every remaining missing value outside the protected set.

    - numeric: column median
    - categorical / ordered / text: column mode
    ``reference`` supplies the frame medians are computed on (pre-exclusion
    policy); it defaults to ``df`` itself. Modes always come from ``df``.

    Raises
    ------
    ProtectedColumnError: ``columns`` names an identifier, weight or
        plausible-value column.
    ImputationFailure: a column has no observed value to impute from.
    """
    protected = set(protected_columns(df.columns, protected_patterns, protected_columns_list))
    if columns is None:
        targets = [c for c in df.columns if c not in protected]
    else:
        absent = [c for c in columns if c not in df.columns]
        if absent:
            raise SchemaError("Columns requested for imputation are absent", absent)
        bad = [c for c in columns if c in protected]
        if bad:
            raise ProtectedColumnError(f"Refusing to impute protected columns: {', '.join(bad)}")
        targets = list(columns)

    df_out = df.copy()
    rows: List[Dict] = []
    for col in targets:
        series = df_out[col]
        n_missing = int(series.isna().sum())
        if n_missing == 0:
            continue

        is_numeric = (
            pd.api.types.is_numeric_dtype(series)
            and not pd.api.types.is_bool_dtype(series)
            and not isinstance(series.dtype, pd.CategoricalDtype)
        )
        if is_numeric:
            source = series
            if reference is not None and col in reference.columns:
                source = reference[col]
            source = pd.to_numeric(source, errors="coerce")
            if source.notna().sum() == 0:
                raise ImputationFailure(f"Column '{col}' has no observed values for median imputation")
            imputer = build_imputer("median")
            imputer.fit(source.to_frame())
            fill = float(imputer.statistics_[0])
            df_out[col] = series.fillna(fill)
            method = "median"
        else:
            fill = _stable_mode(series)
            if fill is None:
                raise ImputationFailure(f"Column '{col}' has no observed values for mode imputation")
            if isinstance(series.dtype, pd.CategoricalDtype):
                if fill not in series.cat.categories:
                    series = series.cat.add_categories([fill])
                df_out[col] = series.fillna(fill)
            else:
                df_out[col] = series.fillna(fill)
            method = "mode"

        rows.append({"variable": col, "method": method, "fill_value": fill, "n_imputed": n_missing})

    log = pd.DataFrame(rows, columns=["variable", "method", "fill_value", "n_imputed"])
    logger.info(
        f"[Blanket] imputed {int(log['n_imputed'].sum()) if len(log) else 0} values in "
        f"{len(log)} columns; {len(protected)} protected columns untouched"
    )
    return df_out, log
