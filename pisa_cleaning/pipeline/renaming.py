# pisa_cleaning/pipeline/renaming.py

import logging
from typing import Dict, Iterable, Tuple

import pandas as pd

from pisa_cleaning.core.errors import RegistryInconsistencyError
from pisa_cleaning.core.registry import MappingRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# Helpers
# =============================================================================
def assert_bijective(mapping: Dict[str, str], existing: Iterable[str] = ()) -> None:
    """
    Raise when two sources map to one target, or a target collides with a
    column that is not itself being renamed.
    """
    targets = list(mapping.values())
    duplicates = sorted({t for t in targets if targets.count(t) > 1})
    if duplicates:
        raise RegistryInconsistencyError(
            f"Rename is not one-to-one; duplicated targets: {', '.join(duplicates)}"
        )
    untouched = set(existing) - set(mapping)
    clashes = sorted(t for t in targets if t in untouched)
    if clashes:
        raise RegistryInconsistencyError(
            f"Rename targets collide with existing columns: {', '.join(clashes)}"
        )


# =============================================================================
# Original -> descriptive names
# =============================================================================
def rename_to_canonical(df: pd.DataFrame, registry: MappingRegistry) -> pd.DataFrame:
    """Rename original PISA codes to descriptive names. Every column must be mapped."""
    mapping = registry.column_mapping()
    unmapped = [c for c in df.columns if c not in mapping]
    if unmapped:
        raise RegistryInconsistencyError(
            f"{len(unmapped)} raw columns lack a registry entry: {', '.join(unmapped[:20])}"
        )
    mapping = {c: mapping[c] for c in df.columns}
    assert_bijective(mapping)
    renamed = sum(1 for k, v in mapping.items() if k != v)
    logger.info(f"[Rename] {renamed}/{len(mapping)} columns renamed to descriptive names")
    return df.rename(columns=mapping)


# =============================================================================
# Block prefixes
# =============================================================================
def prefix_mapping(
    columns: Iterable[str],
    registry: MappingRegistry,
    prefix_map: Dict[str, str],
) -> Dict[str, str]:
    """
    current name -> prefixed name for every column whose registry block has
    a prefix. Columns without an entry (pipeline flags) and blocks without a
    prefix (identifiers, weights, plausible values) keep their names.
    Already-prefixed names are not prefixed twice.
    """
    mapping = {}
    for col in columns:
        if col not in registry:
            continue
        prefix = prefix_map.get(registry.get(col).data_source)
        if not prefix or col.startswith(prefix):
            continue
        mapping[col] = f"{prefix}{col}"
    return mapping


def apply_prefix_renaming(
    df: pd.DataFrame,
    registry: MappingRegistry,
    prefix_map: Dict[str, str],
) -> Tuple[pd.DataFrame, MappingRegistry, pd.DataFrame]:
    """
    Prefix dataset columns by block and keep the registry in sync.

    Returns
    -------
    df_out, registry_out, rename_log (old_name, new_name)
    """
    mapping = prefix_mapping(df.columns, registry, prefix_map)
    assert_bijective(mapping, existing=df.columns)

    df_out = df.rename(columns=mapping)
    if df_out.shape != df.shape:
        raise RegistryInconsistencyError("Dataset dimensions changed during renaming")

    # excluded entries are renamed too, so the registry stays one namespace
    registry_mapping = dict(mapping)
    for spec in registry:
        name = spec.renamed_variable
        if name in registry_mapping or name in df.columns:
            continue
        prefix = prefix_map.get(spec.data_source)
        if prefix and not name.startswith(prefix):
            registry_mapping[name] = f"{prefix}{name}"
    registry_out = registry.rename_variables(registry_mapping) if registry_mapping else registry

    log = pd.DataFrame({"old_name": list(mapping), "new_name": list(mapping.values())})
    logger.info(f"[Rename] prefixed {len(mapping)} of {df.shape[1]} columns")
    return df_out, registry_out, log
