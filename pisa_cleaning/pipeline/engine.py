# pisa_cleaning/pipeline/engine.py

import logging
from typing import List, Optional, Sequence

import pandas as pd

from pisa_cleaning.core.config import PipelineConfig
from pisa_cleaning.core.errors import SnapshotExistsError, StageError
from pisa_cleaning.core.registry import MappingRegistry
from pisa_cleaning.pipeline.snapshot import SnapshotStore, atomic_write
from pisa_cleaning.pipeline.stages import STAGES, Stage, StageContext, StageOutput

logger = logging.getLogger(__name__)


class PipelineRunner:
    """
    Sequential driver over the stage table.

    Stage n reads snapshot n-1 (dataset + registry), runs, and only on
    success writes snapshot n. Row counts are asserted for every stage not
    declared row-filtering; any failure is re-raised as StageError and
    leaves no snapshot behind for that stage.
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[SnapshotStore] = None,
        stages: Sequence[Stage] = STAGES,
    ):
        self.config = config
        self.store = store if store is not None else SnapshotStore(config.snapshot_dir)
        self.stages: List[Stage] = sorted(stages, key=lambda s: s.index)
        self.context = StageContext(load_snapshot=self.store.read)

    # ---------------------
    # Single stage
    # ---------------------
    def run_stage(
        self,
        stage: Stage,
        df: pd.DataFrame,
        registry: MappingRegistry,
        rerun: bool = False,
    ) -> StageOutput:
        stage_id = stage.stage_id
        if self.store.exists(stage_id) and not rerun:
            raise SnapshotExistsError(
                f"Snapshot '{stage_id}' already exists; run with rerun=True to overwrite"
            )

        logger.info(f"===== Stage {stage_id}: {df.shape[0]} rows x {df.shape[1]} columns =====")
        hash_before = registry.registry_hash()
        try:
            out = stage.fn(df, registry, self.config, self.context)
            if not stage.filters_rows and len(out.df) != len(df):
                raise AssertionError(
                    f"row count changed from {len(df)} to {len(out.df)} in a non-filtering stage"
                )
        except Exception as e:
            logger.error(f"Stage {stage_id} failed: {e}")
            raise StageError(stage_id, e) from e

        changed = out.registry.registry_hash() != hash_before
        logger.info(
            f"Stage {stage_id} done: {out.df.shape[0]} rows x {out.df.shape[1]} columns"
            f"{' (registry updated)' if changed else ''}"
        )

        # dataset last: its joblib file is what marks the stage as done
        try:
            self.store.write_registry(stage_id, out.registry, overwrite=rerun)
            for name, table in out.artifacts.items():
                path = self.store.write_artifact(stage_id, name, table)
                logger.info(f"Artifact {name}: {len(table)} rows -> {path}")
            self.store.write(stage_id, out.df, overwrite=rerun)
        except Exception:
            logger.error(f"Writing snapshot {stage_id} failed; removing partial files")
            self.store.discard(stage_id)
            raise
        return out

    # ---------------------
    # Full run / re-entry
    # ---------------------
    def run(
        self,
        df: Optional[pd.DataFrame] = None,
        registry: Optional[MappingRegistry] = None,
        start: int = 1,
        stop: Optional[int] = None,
        rerun: bool = False,
        publish: bool = True,
    ) -> StageOutput:
        """
        Run stages ``start``..``stop`` (inclusive, by index).

        With ``start`` > first stage the input is read from the snapshot and
        registry of the preceding stage; otherwise ``df`` / ``registry``
        default to the configured raw data and mapping table.
        """
        selected = [s for s in self.stages if s.index >= start and (stop is None or s.index <= stop)]
        if not selected:
            raise ValueError(f"No stages between {start} and {stop}")

        previous = [s for s in self.stages if s.index < start]
        if previous:
            prior_id = previous[-1].stage_id
            df = self.store.read(prior_id)
            registry = self.store.read_registry(prior_id)
            logger.info(f"Resuming from snapshot {prior_id}")
        else:
            if df is None:
                df = pd.read_csv(self.config.raw_data_path, low_memory=False)
            if registry is None:
                registry = MappingRegistry.load(self.config.registry_path)

        out = StageOutput(df, registry)
        for stage in selected:
            out = self.run_stage(stage, out.df, out.registry, rerun=rerun)

        if publish and selected[-1] is self.stages[-1]:
            self.publish(out)
        return out

    def publish(self, out: StageOutput) -> None:
        """Write the final dataset and final registry (atomically)."""
        atomic_write(self.config.output_path, lambda p: out.df.to_csv(p, index=False))
        out.registry.save(self.config.final_registry_path)
        logger.info(
            f"Published final dataset ({out.df.shape[0]} x {out.df.shape[1]}) "
            f"to {self.config.output_path}"
        )
