from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Literal

NOT_APPLICABLE = "Not Applicable"


@dataclass(frozen=True)
class VariableSpec:
    # =====================
    # Identity
    # =====================
    original_variable_name: str
    renamed_variable: str
    variable_description: str = ""

    # =====================
    # Inclusion
    # =====================
    status: Literal["Included", "Excluded"] = "Included"
    status_reason: str = ""

    # =====================
    # Typing
    # =====================
    data_type: Literal["numeric", "categorical"] = "numeric"
    cleaned_data_type: str = ""  # NUM / CHAR, set post-imputation

    # =====================
    # Block membership
    # =====================
    conceptual_group: str = ""
    data_source: Literal[
        "student_questionnaire",
        "ict_questionnaire",
        "school_questionnaire",
        "student_derived",
        "ict_derived",
        "school_derived",
        "other_sources",
    ] = "other_sources"

    # =====================
    # Framework tags (semicolon-delimited)
    # =====================
    pisa_domain: str = NOT_APPLICABLE
    pisa_construct: str = NOT_APPLICABLE
    pisa_ict_school_domain: str = NOT_APPLICABLE
    pisa_ict_school_construct: str = NOT_APPLICABLE
    pisa_ict_home_domain: str = NOT_APPLICABLE
    pisa_ict_home_construct: str = NOT_APPLICABLE
    mlftau_domain: str = NOT_APPLICABLE
    mlftau_construct: str = NOT_APPLICABLE
    broad_learning_context: Literal[
        "In School", "Out of School", "In and Out", ""
    ] = ""

    input_variable: bool = True
    derived_variable: bool = False

    # =====================
    # Recoding metadata
    # =====================
    code_remap: str = ""         # "7640001=1;5=95"
    missing_codes: str = ""      # per-variable invalid codes, "9;999"
    value_labels: str = ""       # "1=Yes;2=No"
    ordered: bool = False
    valid_skip_recode: str = ""  # substantive value for valid_skip, or "NA"

    # =====================
    # Parsed views
    # =====================
    def tags(self, column: str) -> frozenset:
        raw = getattr(self, column)
        if raw is None:
            return frozenset()
        return frozenset(t.strip() for t in str(raw).split(";") if t.strip())

    def code_remap_dict(self) -> Dict[float, float]:
        return {float(k): float(v) for k, v in _pairs(self.code_remap)}

    def missing_code_set(self) -> frozenset:
        return frozenset(float(c) for c in _tokens(self.missing_codes))

    def label_map(self) -> Dict[float, str]:
        return {float(k): v for k, v in _pairs(self.value_labels)}

    @property
    def is_included(self) -> bool:
        return self.status == "Included"


@dataclass(frozen=True)
class CompositeSpec:
    # =====================
    # Identity
    # =====================
    name: str
    items: Tuple[str, ...]
    anchor: str

    # =====================
    # Reverse coding
    # =====================
    reversed_items: Tuple[str, ...] = ()
    reversal_rule: Literal["likert", "binary"] = "likert"
    scale_max: Optional[int] = None  # k for k + 1 - x
    # True only for the standing recode where the stored item values are
    # replaced by their reversed form.
    persist_reversal: bool = False

    # =====================
    # Aggregation
    # =====================
    aggregation: Literal["mean_z"] = "mean_z"
    item_coding: Dict[str, float] = field(default_factory=dict)

    # =====================
    # Registry metadata for the new variable
    # =====================
    description: str = ""
    data_source: str = "other_sources"


@dataclass(frozen=True)
class StraightLineSpec:
    """
    A randomised Likert battery checked for identical answers across all
    presented items. ``required_any`` lists items of which at least one must
    carry a real answer (e.g. the negatively worded ones) for a flag.
    """
    name: str
    items: Tuple[str, ...]
    anchor: str
    required_any: Tuple[str, ...] = ()


# =============================================================================
# Helpers
# =============================================================================
def _tokens(raw: str):
    if not raw:
        return []
    return [t.strip() for t in str(raw).split(";") if t.strip()]


def _pairs(raw: str):
    pairs = []
    for token in _tokens(raw):
        key, sep, value = token.partition("=")
        if not sep:
            raise ValueError(f"Malformed 'code=value' token: '{token}'")
        pairs.append((key.strip(), value.strip()))
    return pairs
