"""
Core utilities shared across the application.
"""

from .database import CONNECTION_ERRORS, PostgresConnection
from .logger import level_from_env, setup_logging

__all__ = ["CONNECTION_ERRORS", "PostgresConnection", "level_from_env", "setup_logging"]
