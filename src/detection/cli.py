"""
Shared argparse options for the detection CLIs.

Every connection setting defaults to its environment variable, so the same
commands run unchanged in docker-compose and on a workstation.
"""

import argparse
import os

from .models import DetectionConfig


def add_connection_arguments(parser: argparse.ArgumentParser):
    """PostgreSQL, Redis, Kafka and logging options"""
    # PostgreSQL settings
    parser.add_argument(
        "--postgres-host",
        default=os.getenv("POSTGRES_HOST", "localhost"),
        help="PostgreSQL host (default: localhost or POSTGRES_HOST env var)",
    )
    parser.add_argument(
        "--postgres-port",
        type=int,
        default=int(os.getenv("POSTGRES_PORT", "5432")),
        help="PostgreSQL port (default: 5432)",
    )
    parser.add_argument(
        "--postgres-db",
        default=os.getenv("POSTGRES_DB", "safearms"),
        help="PostgreSQL database (default: safearms)",
    )
    parser.add_argument(
        "--postgres-user",
        default=os.getenv("POSTGRES_USER", "safearms"),
        help="PostgreSQL user (default: safearms)",
    )
    parser.add_argument(
        "--postgres-password",
        default=os.getenv("POSTGRES_PASSWORD", "safearms_password"),
        help="PostgreSQL password",
    )

    # Redis settings
    parser.add_argument(
        "--redis-host",
        default=os.getenv("REDIS_HOST", "localhost"),
        help="Redis host (default: localhost or REDIS_HOST env var)",
    )
    parser.add_argument(
        "--redis-port",
        type=int,
        default=int(os.getenv("REDIS_PORT", "6379")),
        help="Redis port (default: 6379)",
    )

    # Kafka settings
    parser.add_argument(
        "--kafka-servers",
        default=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
        help="Kafka bootstrap servers (default: localhost:9092)",
    )
    parser.add_argument(
        "--topic",
        default=os.getenv("KAFKA_TOPIC", "custody-events"),
        help="Kafka topic carrying custody events (default: custody-events)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=os.getenv("LOG_FORMAT", "").lower() == "json",
        help="Emit one JSON object per log line (default: console, or LOG_FORMAT=json)",
    )


def build_config(args, **overrides) -> DetectionConfig:
    """Build configuration from parsed arguments"""
    return DetectionConfig(
        postgres_host=args.postgres_host,
        postgres_port=args.postgres_port,
        postgres_database=args.postgres_db,
        postgres_user=args.postgres_user,
        postgres_password=args.postgres_password,
        redis_host=args.redis_host,
        redis_port=args.redis_port,
        kafka_bootstrap_servers=args.kafka_servers,
        kafka_topic=args.topic,
        **overrides,
    )
