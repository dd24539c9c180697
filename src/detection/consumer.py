"""
Kafka consumer for custody events.

The custody workflow publishes each recorded custody event to a topic; this
consumer scores them with AnomalyDetector. Offsets are committed after a
message is handled, so a crash replays events (detection is idempotent over
the same history).
"""

import json
import time
from typing import Any

import structlog
from kafka import KafkaConsumer

from .detector import AnomalyDetector
from .models import CustodyEvent, DetectionConfig

logger = structlog.get_logger(__name__)

STATS_LOG_INTERVAL = 30


class CustodyEventConsumer:
    """Scores custody events consumed from Kafka"""

    def __init__(self, config: DetectionConfig, detector: AnomalyDetector | None = None):
        self.config = config
        self.detector = detector or AnomalyDetector(config)

        try:
            self.consumer = KafkaConsumer(
                config.kafka_topic,
                bootstrap_servers=config.kafka_bootstrap_servers,
                group_id=config.kafka_group_id,
                auto_offset_reset=config.kafka_auto_offset_reset,
                enable_auto_commit=config.enable_auto_commit,
                max_poll_records=config.max_poll_records,
                value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            )
            logger.info(
                "Kafka consumer initialized",
                bootstrap_servers=config.kafka_bootstrap_servers,
                topic=config.kafka_topic,
                group_id=config.kafka_group_id,
            )
        except Exception as e:
            logger.error("Failed to initialize Kafka consumer", error=str(e))
            raise

        self.stats = {
            "total_consumed": 0,
            "total_scored": 0,
            "anomalies_detected": 0,
            "failed_verdicts": 0,
            "parse_errors": 0,
        }

    def run(self, duration_seconds: int | None = None):
        """Run the consumer

        Args:
            duration_seconds: Optional duration in seconds. If None, runs indefinitely.
        """
        logger.info(
            "Starting custody event consumer",
            topic=self.config.kafka_topic,
            duration=duration_seconds if duration_seconds else "indefinite",
        )

        start_time = time.time()
        last_log_time = start_time

        try:
            for message in self.consumer:
                self.stats["total_consumed"] += 1
                self._process_message(message.value)

                if not self.config.enable_auto_commit:
                    self.consumer.commit()

                elapsed = time.time() - start_time
                if time.time() - last_log_time >= STATS_LOG_INTERVAL:
                    logger.info("Consumer stats", elapsed_sec=round(elapsed, 1), **self.stats)
                    last_log_time = time.time()

                if duration_seconds and elapsed >= duration_seconds:
                    logger.info("Duration limit reached", duration_seconds=duration_seconds)
                    break

        except KeyboardInterrupt:
            logger.info("Received interrupt signal, stopping consumer")

        except Exception as e:
            logger.error("Consumer error", error=str(e), exc_info=True)
            raise

        finally:
            self.consumer.close()
            self.detector.shutdown()
            logger.info(
                "Consumer stopped",
                elapsed_sec=round(time.time() - start_time, 1),
                **self.stats,
            )

    def _process_message(self, message: dict[str, Any]):
        """Score a single custody event message"""
        try:
            event = CustodyEvent.from_dict(message)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Failed to parse custody event", error=str(e), message=message)
            self.stats["parse_errors"] += 1
            return

        verdict = self.detector.detect(event)
        if verdict.error is not None:
            self.stats["failed_verdicts"] += 1
            return

        self.stats["total_scored"] += 1
        if verdict.is_anomaly:
            self.stats["anomalies_detected"] += 1
