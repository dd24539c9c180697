"""
Exception hierarchy for the custody anomaly detection pipeline.

Only failures that a caller must act on are raised. Missing history,
an absent model, and failed writes are recovered where they happen.
"""

from typing import Any


class DetectionError(Exception):
    """Base exception for all detection pipeline errors"""

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.cause = cause
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]
        if self.context:
            parts.append("[" + ", ".join(f"{k}={v}" for k, v in self.context.items()) + "]")
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " ".join(parts)


class ConfigurationError(DetectionError):
    """Raised when detection policy (weights, thresholds) is inconsistent"""


class DataAccessError(DetectionError):
    """Raised when the historical store cannot be reached at all"""


class ModelTrainingError(DetectionError):
    """Raised when a clustering model cannot be trained or persisted"""


class InsufficientTrainingDataError(ModelTrainingError):
    """Raised when there are too few feature samples to train on"""

    def __init__(self, sample_count: int, required: int) -> None:
        super().__init__(
            f"Insufficient training data. Need at least {required} samples, got {sample_count}",
            context={"sample_count": sample_count, "required": required},
        )
        self.sample_count = sample_count
        self.required = required
