import logging
import os

import structlog
from dotenv import load_dotenv

load_dotenv()

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def setup_logging(level: int | None = logging.INFO, json_logs: bool = False) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: The logging level to use. Defaults to INFO.
        json_logs: Render one JSON object per line instead of the colored
            console output (for the long-running consumer).
    """
    logging.basicConfig(level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
            pad_event=50,
        )
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def level_from_env(default: str = "DEBUG") -> int:
    """Resolve the LOG_LEVEL environment variable to a logging level"""
    return LOG_LEVELS.get(os.getenv("LOG_LEVEL", default).upper(), logging.DEBUG)


setup_logging(level=level_from_env())
