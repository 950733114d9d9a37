# pisa_cleaning/core/errors.py

from typing import Iterable, List, Optional


# =============================================================================
# Base
# =============================================================================
class PipelineError(Exception):
    """Root of every fatal condition raised by the cleaning pipeline."""


# =============================================================================
# Schema / registry
# =============================================================================
class SchemaError(PipelineError):
    """
    A referenced column (anchor, source item, flag, predictor, tag field)
    is absent where it is required.
    """

    def __init__(self, message: str, missing: Optional[Iterable[str]] = None):
        self.missing: List[str] = list(missing) if missing is not None else []
        if self.missing:
            message = f"{message}: {', '.join(self.missing)}"
        super().__init__(message)


class RegistryInconsistencyError(PipelineError):
    """Dataset columns and mapping registry disagree."""


class ProtectedColumnError(PipelineError):
    """An identifier, weight or plausible-value column was targeted for imputation."""


# =============================================================================
# Imputation
# =============================================================================
class ImputationFailure(PipelineError):
    """Multiple imputation produced no usable completed dataset."""


# =============================================================================
# Snapshots / stages
# =============================================================================
class SnapshotExistsError(PipelineError):
    """A stage snapshot already exists and the write was not an explicit re-run."""


class StageError(PipelineError):
    def __init__(self, stage_id: str, cause: BaseException):
        self.stage_id = stage_id
        self.cause = cause
        super().__init__(f"Stage '{stage_id}' failed: {cause}")
