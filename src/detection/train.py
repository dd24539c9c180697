"""
CLI for training the custody clustering model.

Usage:
    python -m src.detection.train [options]
"""

import argparse
import json
import logging
import sys
import time

import structlog

from src.core.logger import setup_logging

from .cli import add_connection_arguments, build_config
from .models import DetectionConfig
from .trainer import ModelTrainer

logger = structlog.get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Train the custody anomaly clustering model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Train if the retraining policy says so
        python -m src.detection.train

        # Retrain now with 8 clusters
        python -m src.detection.train --force --clusters 8

        # Only report whether retraining is needed
        python -m src.detection.train --check-only

        # Weekly scheduled retraining
        python -m src.detection.train --schedule 7
        """,
    )

    # Model configuration
    parser.add_argument(
        "--clusters",
        type=int,
        default=6,
        help="Number of K-Means clusters (default: 6)",
    )
    parser.add_argument(
        "--min-samples",
        type=int,
        default=100,
        help="Minimum feature rows required to train (default: 100)",
    )
    parser.add_argument(
        "--window-days",
        type=int,
        default=180,
        help="Days of feature history to train on (default: 180)",
    )

    # Actions
    parser.add_argument(
        "--force",
        action="store_true",
        help="Train even if the retraining policy says it is not needed",
    )
    parser.add_argument(
        "--check-only",
        action="store_true",
        help="Report whether retraining is needed and exit",
    )
    parser.add_argument(
        "--metrics",
        type=int,
        metavar="MODEL_ID",
        help="Print performance metrics for a model and exit",
    )
    parser.add_argument(
        "--backfill",
        type=int,
        metavar="LIMIT",
        help="Extract features for up to LIMIT unprocessed custody records first",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the detection tables if they don't exist",
    )

    # Scheduling
    parser.add_argument(
        "--schedule",
        type=int,
        metavar="DAYS",
        help="Run the training check every N days (default: run once)",
    )

    add_connection_arguments(parser)

    return parser.parse_args(argv)


def train_once(config: DetectionConfig, force: bool = False, backfill: int | None = None) -> dict:
    """Run one check-and-train cycle"""
    trainer = ModelTrainer(config)
    try:
        if backfill:
            trainer.backfill_features(backfill)
        return trainer.run_scheduled_training(force=force).to_dict()
    finally:
        trainer.close()


def train_scheduled(config: DetectionConfig, interval_days: int, backfill: int | None = None):
    """Run training on a schedule"""
    logger.info("Starting scheduled training", interval_days=interval_days)

    iteration = 0
    while True:
        iteration += 1
        logger.info("Starting training iteration", iteration=iteration)

        try:
            result = train_once(config, backfill=backfill)
            logger.info("Training iteration completed", iteration=iteration, result=result)
        except Exception as e:
            logger.error("Training iteration failed", iteration=iteration, error=str(e))

        sleep_seconds = interval_days * 86400
        logger.info("Sleeping until next iteration", sleep_seconds=sleep_seconds)
        time.sleep(sleep_seconds)


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    # Setup logging
    setup_logging(level=getattr(logging, args.log_level), json_logs=args.json_logs)

    logger.info("Starting custody model training")

    try:
        config = build_config(
            args,
            num_clusters=args.clusters,
            min_training_samples=args.min_samples,
            training_window_days=args.window_days,
        )

        if args.init_db or args.check_only or args.metrics is not None:
            trainer = ModelTrainer(config)
            try:
                if args.init_db:
                    trainer.db.ensure_tables_exist()
                if args.check_only:
                    print(json.dumps(trainer.check_retraining_needed().to_dict(), indent=2))
                    return 0
                if args.metrics is not None:
                    print(json.dumps(trainer.get_model_metrics(args.metrics), indent=2))
                    return 0
            finally:
                trainer.close()

        if args.schedule:
            train_scheduled(config, args.schedule, backfill=args.backfill)
            return 0

        result = train_once(config, force=args.force, backfill=args.backfill)
        print(json.dumps(result, indent=2, default=str))
        if not result["success"]:
            logger.error("Training did not complete", reason=result["reason"], error=result["error"])
            return 1

        logger.info("Training completed successfully", skipped=result["skipped"])
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Training failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
