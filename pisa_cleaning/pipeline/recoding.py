# pisa_cleaning/pipeline/recoding.py

import logging
import re
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from pisa_cleaning.core.config import PipelineConfig
from pisa_cleaning.core.errors import SchemaError
from pisa_cleaning.core.registry import MappingRegistry
from pisa_cleaning.core.spec import VariableSpec

logger = logging.getLogger(__name__)


# =============================================================================
# Raw code remapping (by original variable name)
# =============================================================================
def apply_code_remaps(
    df: pd.DataFrame,
    registry: MappingRegistry,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Apply every registry ``code_remap`` to the raw-named dataset
    (e.g. the country code 7640001 -> 1, option 5 -> 95 valid skip).
    """
    df_out = df.copy()
    rows = []
    for spec in registry.get_entries(lambda s: bool(s.code_remap)):
        col = spec.original_variable_name
        if col not in df_out.columns:
            continue
        remap = spec.code_remap_dict()
        numeric = pd.to_numeric(df_out[col], errors="coerce")
        for old, new in remap.items():
            n = int((numeric == old).sum())
            if n:
                rows.append({"variable": col, "from": old, "to": new, "n": n})
        df_out[col] = df_out[col].where(~numeric.isin(list(remap)), numeric.map(remap))

    log = pd.DataFrame(rows, columns=["variable", "from", "to", "n"])
    logger.info(f"[Remap] {len(log)} code remaps touching {int(log['n'].sum()) if len(log) else 0} values")
    return df_out, log


# =============================================================================
# Questionnaire recoding
# =============================================================================
def _code_label(code: float) -> str:
    return str(int(code)) if float(code).is_integer() else str(code)


def recode_variable(
    series: pd.Series,
    spec: VariableSpec,
    config: PipelineConfig,
) -> Tuple[pd.Series, Dict]:
    """
    Recode one questionnaire / derived variable.

    - global (98, 99) and per-variable missing codes -> NA
    - labelled or categorical variables become (ordered) categoricals with
      95 -> ``valid_skip`` and 97 -> ``random_skip``
    - numeric variables: 97 -> NA; 95 -> NA unless the registry declares a
      valid-skip recode, in which case the code is left for the final pass
    """
    numeric = pd.to_numeric(series, errors="coerce")
    missing_codes = set(config.missing_codes) | set(spec.missing_code_set())

    is_missing_code = numeric.isin(list(missing_codes))
    is_valid_skip = numeric == config.valid_skip_code
    is_random_skip = numeric == config.random_skip_code

    stats = {
        "variable": spec.renamed_variable,
        "n_missing_coded": int(is_missing_code.sum()),
        "n_valid_skip": int(is_valid_skip.sum()),
        "n_random_skip": int(is_random_skip.sum()),
        "n_unlabelled": 0,
    }

    labels = spec.label_map()
    if labels or spec.data_type == "categorical":
        stats["kind"] = "ordered" if spec.ordered else "categorical"

        already_text = isinstance(series.dtype, pd.CategoricalDtype) or (not labels and numeric.isna().all())
        if already_text:
            text = series.astype("object")
        else:
            text = numeric.map(lambda v: labels.get(v, _code_label(v)) if pd.notna(v) else np.nan)
        text = text.where(~is_missing_code, np.nan)
        text = text.where(~is_valid_skip, config.valid_skip_label)
        text = text.where(~is_random_skip, config.random_skip_label)

        specials = {config.valid_skip_label, config.random_skip_label}
        categories: List[str] = []
        for code in sorted(labels):
            if labels[code] not in categories and labels[code] not in specials:
                categories.append(labels[code])
        observed = [v for v in pd.unique(text.dropna()) if v not in categories and v not in specials]
        if labels:
            stats["n_unlabelled"] = int(text.isin(observed).sum())
            if observed:
                logger.warning(
                    f"[Recode] '{spec.renamed_variable}': {stats['n_unlabelled']} values "
                    f"outside the value labels set to NA"
                )
                text = text.where(~text.isin(observed), np.nan)
        else:
            categories.extend(sorted(observed, key=str))
        categories.extend(s for s in (config.valid_skip_label, config.random_skip_label) if (text == s).any())

        out = pd.Series(
            pd.Categorical(text, categories=categories, ordered=spec.ordered),
            index=series.index,
            name=series.name,
        )
        return out, stats

    stats["kind"] = "numeric"
    out = numeric.where(~is_missing_code & ~is_random_skip, np.nan)
    if not spec.valid_skip_recode:
        out = out.where(~is_valid_skip, np.nan)
    return out, stats


def recode_questionnaire(
    df: pd.DataFrame,
    registry: MappingRegistry,
    config: PipelineConfig,
    exempt: Sequence[str] = (),
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Recode every included registry column present in ``df``."""
    df_out = df.copy()
    exempt = set(exempt)
    rows = []
    for spec in registry.get_entries(lambda s: s.is_included):
        col = spec.renamed_variable
        if col not in df_out.columns or col in exempt:
            continue
        df_out[col], stats = recode_variable(df_out[col], spec, config)
        rows.append(stats)

    log = pd.DataFrame(rows, columns=[
        "variable", "kind", "n_missing_coded", "n_valid_skip", "n_random_skip", "n_unlabelled",
    ])
    logger.info(
        f"[Recode] {len(log)} variables recoded; "
        f"{int((log['kind'] != 'numeric').sum()) if len(log) else 0} converted to categoricals"
    )
    return df_out, log


# =============================================================================
# Label cleanup
# =============================================================================
def clean_label(label: str) -> str:
    """'Upper secondary (ISCED 3)' -> 'Upper secondary ISCED 3'"""
    text = re.sub(r"[()]", "", str(label))
    return re.sub(r"\s+", " ", text).strip()


def clean_category_labels(df: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """Strip parentheses and squash whitespace in the levels of categorical ``columns``."""
    df_out = df.copy()
    for col in columns:
        if col not in df_out.columns:
            logger.info(f"[Labels] '{col}' not in dataset, skipped")
            continue
        series = df_out[col]
        if not isinstance(series.dtype, pd.CategoricalDtype):
            continue
        categories = []
        for c in series.cat.categories:
            cleaned = clean_label(c)
            if cleaned not in categories:
                categories.append(cleaned)
        df_out[col] = pd.Categorical(
            series.astype("object").map(lambda v: clean_label(v) if pd.notna(v) else v),
            categories=categories,
            ordered=series.cat.ordered,
        )
    return df_out


# =============================================================================
# Score repair
# =============================================================================
def recalculate_score(
    df: pd.DataFrame,
    target: str,
    items: Sequence[str],
    *,
    invalid_codes: Sequence[float] = (98, 99),
    min_valid: int = 3,
    trigger_value: float = 1,
    new_value: float = 0,
    id_column: str = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Fill a derived score the source left missing although its items
    determine it: at least ``min_valid`` valid answers, every item equal to
    ``trigger_value``, and the score missing. Only ``target`` changes.

    Returns
    -------
    df_out, verification_log (id, items, old score, new score)
    """
    required = [target] + list(items) + ([id_column] if id_column else [])
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise SchemaError(f"Recalculation of '{target}' needs absent columns", missing)

    block = df[list(items)].apply(pd.to_numeric, errors="coerce")
    valid = block.notna() & ~block.isin(list(invalid_codes))
    qualifies = (
        (valid.sum(axis=1) >= min_valid)
        & (block == trigger_value).all(axis=1)
        & df[target].isna()
    )

    df_out = df.copy()
    df_out.loc[qualifies, target] = new_value

    cols = ([id_column] if id_column else []) + list(items) + [target]
    log = df.loc[qualifies, cols].copy()
    log[f"{target}_new"] = new_value
    logger.info(f"[Recalc] '{target}' set to {new_value:g} for {int(qualifies.sum())} records")
    return df_out, log
