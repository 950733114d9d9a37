# pisa_cleaning/pipeline/run_pipeline.py

import argparse
import logging
import os

from pisa_cleaning.core.config import PipelineConfig
from pisa_cleaning.pipeline.audit import export_report, schema_audit
from pisa_cleaning.pipeline.engine import PipelineRunner

logger = logging.getLogger(__name__)


def configure_logging(config: PipelineConfig) -> str:
    os.makedirs(config.log_dir, exist_ok=True)
    log_file = os.path.join(config.log_dir, f"pisa{config.cycle}_cleaning.log")
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler(),
        ],
        force=True,
    )
    return log_file


def main(argv=None):
    parser = argparse.ArgumentParser(description="PISA 2022 staged cleaning pipeline")
    parser.add_argument("--config", default="config/pipeline_2022.json", help="JSON config overlay")
    parser.add_argument("--start", type=int, default=1, help="first stage index (re-entry)")
    parser.add_argument("--stop", type=int, default=None, help="last stage index")
    parser.add_argument("--rerun", action="store_true", help="overwrite existing snapshots")
    args = parser.parse_args(argv)

    # ---------------------
    # Config + logging
    # ---------------------
    has_config = os.path.exists(args.config)
    config = PipelineConfig.from_json(args.config) if has_config else PipelineConfig()
    log_file = configure_logging(config)
    logger.info(f"Logging to {log_file}")
    if not has_config:
        logger.warning(f"Config file {args.config} not found, running with defaults")

    # ---------------------
    # Run
    # ---------------------
    runner = PipelineRunner(config)
    out = runner.run(start=args.start, stop=args.stop, rerun=args.rerun)

    # ---------------------
    # Export
    # ---------------------
    if args.stop is None:
        prefix = os.path.join(os.path.dirname(config.output_path), f"pisa{config.cycle}_final")
        export_report(schema_audit(out.df), prefix)

    logger.info("Pipeline completed successfully.")


if __name__ == "__main__":
    main()
