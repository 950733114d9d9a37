# pisa_cleaning/pipeline/snapshot.py

import logging
import os
import tempfile
from typing import Callable, List

import joblib
import pandas as pd

from pisa_cleaning.core.errors import SnapshotExistsError
from pisa_cleaning.core.registry import MappingRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# Atomic file writes
# =============================================================================
def atomic_write(path: str, writer: Callable[[str], None]) -> None:
    """
    Call ``writer(tmp_path)`` and move the result onto ``path`` only once
    it has been written completely.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    os.close(fd)
    try:
        writer(tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


# =============================================================================
# Store
# =============================================================================
class SnapshotStore:
    """
    Stage snapshots under one root directory.

    Layout
    ------
    <root>/NN_slug.csv              human-readable dataset
    <root>/NN_slug.joblib           type-preserving dataset (categoricals, order)
    <root>/registry/NN_slug.csv     registry as of the end of the stage
    <root>/artifacts/NN_slug__name.csv
    """

    def __init__(self, root: str):
        self.root = root
        os.makedirs(self.root, exist_ok=True)

    # ---------------------
    # Paths
    # ---------------------
    def _csv(self, stage_id: str) -> str:
        return os.path.join(self.root, f"{stage_id}.csv")

    def _binary(self, stage_id: str) -> str:
        return os.path.join(self.root, f"{stage_id}.joblib")

    def _registry(self, stage_id: str) -> str:
        return os.path.join(self.root, "registry", f"{stage_id}.csv")

    def artifact_path(self, stage_id: str, name: str) -> str:
        return os.path.join(self.root, "artifacts", f"{stage_id}__{name}.csv")

    # ---------------------
    # Dataset snapshots
    # ---------------------
    def exists(self, stage_id: str) -> bool:
        return os.path.exists(self._binary(stage_id))

    def list_stages(self) -> List[str]:
        return sorted(
            f[: -len(".joblib")] for f in os.listdir(self.root) if f.endswith(".joblib")
        )

    def write(self, stage_id: str, df: pd.DataFrame, overwrite: bool = False) -> None:
        if self.exists(stage_id) and not overwrite:
            raise SnapshotExistsError(
                f"Snapshot '{stage_id}' already exists; pass overwrite=True to re-run"
            )
        atomic_write(self._csv(stage_id), lambda p: df.to_csv(p, index=False))
        atomic_write(self._binary(stage_id), lambda p: joblib.dump(df, p))
        logger.info(f"[Snapshot] {stage_id}: {df.shape[0]} rows x {df.shape[1]} columns")

    def discard(self, stage_id: str) -> None:
        """Remove every file written for ``stage_id`` (dataset, registry, artifacts)."""
        paths = [self._binary(stage_id), self._csv(stage_id), self._registry(stage_id)]
        artifact_dir = os.path.join(self.root, "artifacts")
        if os.path.isdir(artifact_dir):
            paths += [
                os.path.join(artifact_dir, f)
                for f in os.listdir(artifact_dir)
                if f.startswith(f"{stage_id}__")
            ]
        for path in paths:
            if os.path.exists(path):
                os.remove(path)
        logger.info(f"[Snapshot] {stage_id}: discarded")

    def read(self, stage_id: str) -> pd.DataFrame:
        path = self._binary(stage_id)
        if not os.path.exists(path):
            raise FileNotFoundError(f"Snapshot not found: {path}")
        return joblib.load(path)

    # ---------------------
    # Registry snapshots
    # ---------------------
    def write_registry(self, stage_id: str, registry: MappingRegistry, overwrite: bool = False) -> None:
        path = self._registry(stage_id)
        if os.path.exists(path) and not overwrite:
            raise SnapshotExistsError(f"Registry snapshot '{stage_id}' already exists")
        registry.save(path)

    def read_registry(self, stage_id: str) -> MappingRegistry:
        return MappingRegistry.load(self._registry(stage_id))

    # ---------------------
    # Artifacts
    # ---------------------
    def write_artifact(self, stage_id: str, name: str, table: pd.DataFrame) -> str:
        path = self.artifact_path(stage_id, name)
        atomic_write(path, lambda p: table.to_csv(p, index=False))
        return path
