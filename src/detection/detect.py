"""
CLI for custody anomaly detection.

Usage:
    python -m src.detection.detect [options]
"""

import argparse
import json
import logging
import sys

import structlog

from src.core.logger import setup_logging

from .cli import add_connection_arguments, build_config
from .consumer import CustodyEventConsumer
from .detector import AnomalyDetector
from .models import CustodyEvent

logger = structlog.get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Score custody events for anomalies",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Consume custody events from Kafka
        python -m src.detection.detect

        # Score a single recorded custody event
        python -m src.detection.detect --custody-id 7f0c2a4e-1b2d-4c55-9a8e-3b1f00d2c6a1

        # Test run for 5 minutes
        python -m src.detection.detect --duration 300
        """,
    )

    parser.add_argument(
        "--custody-id",
        help="Score one custody record and print the verdict (default: consume Kafka)",
    )
    parser.add_argument(
        "--group-id",
        default="custody-anomaly-detector",
        help="Kafka consumer group ID",
    )
    parser.add_argument(
        "--offset-reset",
        choices=["earliest", "latest"],
        default="earliest",
        help="Auto offset reset (default: earliest)",
    )
    parser.add_argument(
        "--duration",
        type=int,
        help="Run for N seconds then stop (default: infinite)",
    )
    add_connection_arguments(parser)

    return parser.parse_args(argv)


def score_one(detector: AnomalyDetector, custody_id: str) -> int:
    """Score one stored custody event and print the verdict as JSON"""
    row = detector.db.get_custody_event(custody_id)
    if row is None:
        logger.error("Custody record not found", custody_id=custody_id)
        return 1

    verdict = detector.detect(CustodyEvent.from_dict(row))
    print(json.dumps(verdict.to_dict(), indent=2, default=str))
    return 0 if verdict.error is None else 1


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    # Setup logging
    setup_logging(level=getattr(logging, args.log_level), json_logs=args.json_logs)

    logger.info("Starting custody anomaly detection")

    try:
        config = build_config(
            args,
            kafka_group_id=args.group_id,
            kafka_auto_offset_reset=args.offset_reset,
        )

        if args.custody_id:
            detector = AnomalyDetector(config)
            try:
                return score_one(detector, args.custody_id)
            finally:
                detector.shutdown()

        consumer = CustodyEventConsumer(config)
        consumer.run(duration_seconds=args.duration)

        logger.info("Consumer completed successfully")
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Detection failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
