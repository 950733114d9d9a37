"""
registry.py

The variable mapping registry: one VariableSpec per raw PISA variable.

Responsibilities:
1. IO: load / save the mapping table CSV (atomic writes).
2. Semantic selection: query entries by status, block, framework tags.
3. Mutation as values: every update returns a new MappingRegistry, so a
   stage can hand its registry delta back to the pipeline driver.
4. Consistency: cross-check dataset columns against registry status.
"""

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import asdict, fields, replace
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

import pandas as pd

from .errors import RegistryInconsistencyError, SchemaError
from .spec import NOT_APPLICABLE, VariableSpec

logger = logging.getLogger(__name__)

# =============================================================================
# Schema
# =============================================================================
SPEC_COLUMNS: List[str] = [f.name for f in fields(VariableSpec)]
BOOL_COLUMNS = ("input_variable", "derived_variable", "ordered")

# Multi-valued, semicolon-delimited fields
TAG_COLUMNS = (
    "pisa_domain", "pisa_construct",
    "pisa_ict_school_domain", "pisa_ict_school_construct",
    "pisa_ict_home_domain", "pisa_ict_home_construct",
    "mlftau_domain", "mlftau_construct",
)

# framework -> (domain column, construct column)
FRAMEWORK_COLUMNS: Dict[str, tuple] = {
    "pisa": ("pisa_domain", "pisa_construct"),
    "pisa_ict_school": ("pisa_ict_school_domain", "pisa_ict_school_construct"),
    "pisa_ict_home": ("pisa_ict_home_domain", "pisa_ict_home_construct"),
    "mlftau": ("mlftau_domain", "mlftau_construct"),
}
ICT_FRAMEWORKS = {"pisa_ict_school", "pisa_ict_home"}

STATUSES = ("Included", "Excluded")

Predicate = Callable[[VariableSpec], bool]


class MappingRegistry:
    """
    Immutable view over the variable mapping table.

    Entries are addressed by their current canonical identifier
    (``renamed_variable``); the original PISA code is accepted as a fallback.
    """

    def __init__(
        self,
        entries: Iterable[VariableSpec],
        extra: Optional[pd.DataFrame] = None,
    ):
        self._entries = tuple(entries)
        # Columns of the mapping table the pipeline does not interpret
        # (skip_logic, action, ...), carried through save() untouched.
        self._extra = extra
        self._by_renamed: Dict[str, VariableSpec] = {}
        self._by_original: Dict[str, VariableSpec] = {}
        self._validate()

    def _validate(self):
        for spec in self._entries:
            if spec.original_variable_name in self._by_original:
                raise RegistryInconsistencyError(
                    f"Duplicate original_variable_name '{spec.original_variable_name}'"
                )
            if spec.renamed_variable in self._by_renamed:
                raise RegistryInconsistencyError(
                    f"Duplicate renamed_variable '{spec.renamed_variable}'"
                )
            if spec.status not in STATUSES:
                raise RegistryInconsistencyError(
                    f"Invalid status '{spec.status}' for '{spec.renamed_variable}'"
                )
            self._by_original[spec.original_variable_name] = spec
            self._by_renamed[spec.renamed_variable] = spec

    # =========================================================================
    # 1. IO
    # =========================================================================
    @classmethod
    def load(cls, path: str) -> "MappingRegistry":
        if not os.path.exists(path):
            raise FileNotFoundError(f"Mapping registry not found: {path}")
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        registry = cls.from_frame(df)
        logger.info(f"Loaded mapping registry: {len(registry)} entries from {path}")
        return registry

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "MappingRegistry":
        if "original_variable_name" not in df.columns:
            raise SchemaError("Mapping table lacks required column", ["original_variable_name"])

        df = df.fillna("")
        known = [c for c in df.columns if c in SPEC_COLUMNS]
        extra_cols = [c for c in df.columns if c not in SPEC_COLUMNS]

        entries = []
        for record in df[known].to_dict(orient="records"):
            kwargs = {}
            for key, value in record.items():
                value = str(value).strip()
                if key in BOOL_COLUMNS:
                    kwargs[key] = value.lower() in {"yes", "true", "1"}
                elif value == "" and key not in ("renamed_variable",):
                    continue  # keep dataclass default
                else:
                    kwargs[key] = value
            if not kwargs.get("renamed_variable"):
                kwargs["renamed_variable"] = kwargs["original_variable_name"]
            entries.append(VariableSpec(**kwargs))

        extra = None
        if extra_cols:
            extra = df[["original_variable_name"] + extra_cols].set_index("original_variable_name")
        return cls(entries, extra=extra)

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for spec in self._entries:
            row = asdict(spec)
            for key in BOOL_COLUMNS:
                row[key] = "Yes" if row[key] else "No"
            rows.append(row)
        df = pd.DataFrame(rows, columns=SPEC_COLUMNS)
        if self._extra is not None:
            df = df.join(self._extra, on="original_variable_name")
        return df

    def save(self, path: str) -> None:
        """Write the mapping table atomically (temp file, then replace)."""
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                self.to_frame().to_csv(f, index=False)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.info(f"Saved mapping registry ({len(self)} entries) to {path}")

    # =========================================================================
    # 2. Lookup
    # =========================================================================
    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[VariableSpec]:
        return iter(self._entries)

    def __contains__(self, variable_id: str) -> bool:
        return variable_id in self._by_renamed or variable_id in self._by_original

    def __eq__(self, other) -> bool:
        if not isinstance(other, MappingRegistry):
            return NotImplemented
        return self._entries == other._entries

    def get(self, variable_id: str) -> VariableSpec:
        if variable_id in self._by_renamed:
            return self._by_renamed[variable_id]
        if variable_id in self._by_original:
            return self._by_original[variable_id]
        raise KeyError(f"Variable '{variable_id}' not found in registry.")

    def get_entries(
        self,
        filter_predicate: Optional[Predicate] = None,
        **tag_filters: Union[str, Sequence[str], bool],
    ) -> List[VariableSpec]:
        """
        Master filter over registry entries.

        Args:
            filter_predicate: Arbitrary callable on VariableSpec.
            **tag_filters: Field filters. Multi-valued tag fields match when
                any requested token is in the entry's token set; other fields
                match on equality (any of a list of accepted values).

        Raises:
            SchemaError: A filter names a field the registry does not have.
        """
        unknown = [k for k in tag_filters if k not in SPEC_COLUMNS]
        if unknown:
            raise SchemaError("Unknown registry tag column", unknown)

        selected = []
        for spec in self._entries:
            if filter_predicate is not None and not filter_predicate(spec):
                continue
            if all(_field_matches(spec, k, v) for k, v in tag_filters.items()):
                selected.append(spec)
        return selected

    def column_mapping(self) -> Dict[str, str]:
        """original_variable_name -> renamed_variable"""
        return {s.original_variable_name: s.renamed_variable for s in self._entries}

    def block_members(self, block: str, included_only: bool = True) -> List[str]:
        specs = self.get_entries(data_source=block)
        if included_only:
            specs = [s for s in specs if s.is_included]
        return [s.renamed_variable for s in specs]

    def excluded_columns(self) -> List[str]:
        return [s.renamed_variable for s in self._entries if not s.is_included]

    # =========================================================================
    # 3. Framework semantics
    # =========================================================================
    def resolve_domains(self, spec: VariableSpec, framework: str = "pisa") -> frozenset:
        """
        Domain token set of ``spec`` under ``framework``. ICT-specific
        frameworks fall back to the general PISA domain when their own
        domain is Not Applicable.
        """
        domain_col, _ = _framework_columns(framework)
        domains = spec.tags(domain_col)
        if framework in ICT_FRAMEWORKS and domains <= {NOT_APPLICABLE}:
            domains = spec.tags("pisa_domain")
        return domains

    def resolve_constructs(self, spec: VariableSpec, framework: str = "pisa") -> frozenset:
        _, construct_col = _framework_columns(framework)
        constructs = spec.tags(construct_col)
        if framework in ICT_FRAMEWORKS and constructs <= {NOT_APPLICABLE}:
            constructs = spec.tags("pisa_construct")
        return constructs

    def in_domain(self, spec: VariableSpec, domain: str, framework: str = "pisa") -> bool:
        return domain in self.resolve_domains(spec, framework)

    def select_construct(
        self,
        construct: str,
        domain: Optional[str] = None,
        framework: str = "pisa",
        included_only: bool = True,
    ) -> List[VariableSpec]:
        """Entries tagged with ``construct`` (and ``domain``) in ``framework``."""
        def predicate(spec: VariableSpec) -> bool:
            if included_only and not spec.is_included:
                return False
            if construct not in self.resolve_constructs(spec, framework):
                return False
            return domain is None or self.in_domain(spec, domain, framework)

        return self.get_entries(predicate)

    def framework_conflicts(self) -> pd.DataFrame:
        """
        Variables whose domain labels disagree across the PISA, ICT in-school
        and ICT out-of-school frameworks (Not Applicable ignored).
        """
        cols = ["pisa_domain", "pisa_ict_school_domain", "pisa_ict_home_domain"]
        rows = []
        for spec in self._entries:
            if spec.input_variable and not spec.derived_variable:
                continue
            labels = [getattr(spec, c) for c in cols if getattr(spec, c) not in ("", NOT_APPLICABLE)]
            if len(labels) >= 2 and len(set(labels)) >= 2:
                rows.append({"renamed_variable": spec.renamed_variable, **{c: getattr(spec, c) for c in cols}})
        return pd.DataFrame(rows, columns=["renamed_variable"] + cols)

    # =========================================================================
    # 4. Mutation (returns new registry)
    # =========================================================================
    def _replace_entries(self, updated: Dict[str, VariableSpec]) -> "MappingRegistry":
        entries = [updated.get(s.original_variable_name, s) for s in self._entries]
        return MappingRegistry(entries, extra=self._extra)

    def _resolve_ids(self, variable_ids: Iterable[str]) -> List[VariableSpec]:
        specs, unknown = [], []
        for vid in variable_ids:
            try:
                specs.append(self.get(vid))
            except KeyError:
                unknown.append(vid)
        if unknown:
            raise RegistryInconsistencyError(
                f"Variables not present in registry: {', '.join(sorted(unknown))}"
            )
        return specs

    def update_status(
        self,
        variable_ids: Iterable[str],
        new_status: str,
        reason: str,
    ) -> "MappingRegistry":
        """Set status/reason on the targeted entries only. Idempotent."""
        if new_status not in STATUSES:
            raise ValueError(f"Unknown status: {new_status}")
        targets = self._resolve_ids(variable_ids)
        updated = {
            s.original_variable_name: replace(s, status=new_status, status_reason=reason)
            for s in targets
        }
        changed = sum(
            1 for s in targets if (s.status, s.status_reason) != (new_status, reason)
        )
        logger.info(f"Registry status -> {new_status} for {len(targets)} variables ({changed} changed): {reason}")
        return self._replace_entries(updated)

    def update_cleaned_type(self, variable_id: str, cleaned_type: str) -> "MappingRegistry":
        spec = self._resolve_ids([variable_id])[0]
        return self._replace_entries({
            spec.original_variable_name: replace(spec, cleaned_data_type=cleaned_type)
        })

    def rename_variables(self, mapping: Dict[str, str]) -> "MappingRegistry":
        """Apply current-name -> new-name renames to ``renamed_variable``."""
        targets = self._resolve_ids(mapping.keys())
        updated = {
            s.original_variable_name: replace(s, renamed_variable=mapping[s.renamed_variable]
                                              if s.renamed_variable in mapping
                                              else mapping[s.original_variable_name])
            for s in targets
        }
        return self._replace_entries(updated)

    def add_entry(self, spec: VariableSpec, overwrite: bool = False) -> "MappingRegistry":
        if spec.original_variable_name in self._by_original:
            if not overwrite:
                raise RegistryInconsistencyError(
                    f"Registry already has an entry for '{spec.original_variable_name}'"
                )
            return self._replace_entries({spec.original_variable_name: spec})
        return MappingRegistry(self._entries + (spec,), extra=self._extra)

    # =========================================================================
    # 5. Consistency checks
    # =========================================================================
    def check_consistency(
        self,
        df: pd.DataFrame,
        exempt: Iterable[str] = (),
    ) -> None:
        """
        Raise RegistryInconsistencyError when an included dataset column has
        no registry entry, or a dataset column is marked Excluded.
        ``exempt`` lists pipeline-created columns (flags) with no entry.
        """
        exempt = set(exempt)
        unmapped = [c for c in df.columns if c not in self._by_renamed and c not in exempt]
        if unmapped:
            raise RegistryInconsistencyError(
                f"{len(unmapped)} dataset columns lack a registry entry: {', '.join(unmapped[:20])}"
            )
        excluded_present = [c for c in df.columns if c in self._by_renamed and not self._by_renamed[c].is_included]
        if excluded_present:
            raise RegistryInconsistencyError(
                f"Excluded variables still present in dataset: {', '.join(excluded_present[:20])}"
            )

    def registry_hash(self) -> str:
        """
        Deterministic, order-invariant SHA-256 over all entries.
        Used by the driver to detect whether a stage changed the registry.
        """
        serializable = {
            s.original_variable_name: asdict(s)
            for s in sorted(self._entries, key=lambda s: s.original_variable_name)
        }
        payload = json.dumps(serializable, sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# =============================================================================
# Internal helpers
# =============================================================================
def _framework_columns(framework: str) -> tuple:
    if framework not in FRAMEWORK_COLUMNS:
        raise SchemaError("Unknown framework", [framework])
    return FRAMEWORK_COLUMNS[framework]


def _field_matches(spec: VariableSpec, key: str, wanted) -> bool:
    accepted = [wanted] if isinstance(wanted, (str, bool)) else list(wanted)
    if key in TAG_COLUMNS:
        tokens = spec.tags(key)
        return any(str(a).strip() in tokens for a in accepted)
    return getattr(spec, key) in accepted
