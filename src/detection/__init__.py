"""
Custody Anomaly Detection

Scores firearm custody events against learned behavior and flags suspicious
ones for review, with human-readable explanations.

Architecture:
- Feature extraction: temporal, behavioral, cross-unit, statistical and
  ballistic-access timing features per custody event
- Batch training: K-Means clusters of normal custody behavior
- Scoring: clustering, statistical and rule-based signals fused into a verdict
- Delivery: anomalies persisted, high-severity alerts published to Redis

Usage:
    # Train (or check whether to retrain) the clustering model
    python -m src.detection.train

    # Score custody events from Kafka
    python -m src.detection.detect
"""

from .consumer import CustodyEventConsumer
from .detector import AnomalyDetector
from .exceptions import (
    ConfigurationError,
    DataAccessError,
    DetectionError,
    InsufficientTrainingDataError,
    ModelTrainingError,
)
from .features import FeatureExtractor, FeatureRecord
from .models import AnomalyType, CustodyEvent, DetectionConfig, Severity, Verdict
from .trainer import ModelTrainer, evaluate_retraining

__all__ = [
    "AnomalyDetector",
    "AnomalyType",
    "ConfigurationError",
    "CustodyEvent",
    "CustodyEventConsumer",
    "DataAccessError",
    "DetectionConfig",
    "DetectionError",
    "FeatureExtractor",
    "FeatureRecord",
    "InsufficientTrainingDataError",
    "ModelTrainer",
    "Severity",
    "Verdict",
    "evaluate_retraining",
]
