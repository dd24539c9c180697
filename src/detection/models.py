"""
Data models and configuration for custody anomaly detection.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .exceptions import ConfigurationError


class Severity(Enum):
    """Review urgency of a verdict (ordinal, never an accusation)"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


class AnomalyType(Enum):
    """Primary explanation attached to a verdict"""

    CROSS_UNIT_TRANSFER = "cross_unit_transfer"
    RAPID_EXCHANGE_PATTERN = "rapid_exchange_pattern"
    BALLISTIC_ACCESS_BEFORE_CUSTODY = "ballistic_access_before_custody"
    BALLISTIC_ACCESS_AFTER_CUSTODY = "ballistic_access_after_custody"
    BALLISTIC_TIMING_PATTERN = "ballistic_timing_pattern"
    UNUSUAL_CUSTODY_DURATION = "unusual_custody_duration"
    UNUSUAL_ISSUE_FREQUENCY = "unusual_issue_frequency"
    CROSS_UNIT_ANOMALY = "cross_unit_anomaly"
    OFF_HOURS_ACTIVITY = "off_hours_activity"
    CLUSTER_OUTLIER = "cluster_outlier"
    HIGH_EXCHANGE_RATE = "high_exchange_rate"
    BEHAVIORAL_DEVIATION = "behavioral_deviation"
    UNKNOWN = "unknown"


@dataclass
class DetectionConfig:
    """Configuration for the custody anomaly detection system"""

    method_name: str = "kmeans"

    # Clustering
    num_clusters: int = 6
    max_iterations: int = 100
    n_init: int = 10
    random_state: int = 42
    training_window_days: int = 180  # ~6 months of feature history
    min_training_samples: int = 100

    # Retraining policy
    retrain_max_age_days: int = 30
    retrain_new_samples: int = 1000
    retrain_false_positive_rate: float = 0.30
    retrain_min_decisions: int = 20
    retrain_review_window_days: int = 7
    training_frequency_days: int = 7

    # Decision policy
    anomaly_threshold: float = 0.35
    cross_unit_score_floor: float = 0.4
    ensemble_weights: dict = field(
        default_factory=lambda: {
            "clustering": 0.35,
            "statistical": 0.25,
            "rule_based": 0.25,
            "ballistic_timing": 0.15,
        }
    )
    rule_weights: dict = field(
        default_factory=lambda: {
            "cross_unit_transfer": 0.9,
            "rapid_exchange": 0.8,
            "ballistic_access_before_custody": 0.85,
            "ballistic_access_after_custody": 0.85,
            "night_issue": 0.3,
            "weekend_issue": 0.2,
            "cross_unit_movement": 0.4,
            "high_exchange_rate": 0.5,
            "high_ballistic_access_frequency": 0.6,
            "repeated_cross_unit_transfers": 0.7,
        }
    )

    # Alerting
    alert_min_severity: str = "high"
    alert_channel: str = "custody:anomaly-alerts"

    # Background scoring
    max_workers: int = 4
    max_pending_events: int = 100

    # Redis cache settings (model artifacts are immutable, so a long TTL is safe)
    cache_ttl_seconds: int = 86400

    # PostgreSQL settings
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "safearms"
    postgres_user: str = "safearms"
    postgres_password: str = "safearms_password"

    # Kafka settings (custody event handoff)
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "custody-events"
    kafka_group_id: str = "custody-anomaly-detector"
    kafka_auto_offset_reset: str = "earliest"
    max_poll_records: int = 100
    enable_auto_commit: bool = False

    # Redis settings
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    def __post_init__(self):
        total = sum(self.ensemble_weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ConfigurationError(
                "Ensemble weights must sum to 1.0",
                context={"total": round(total, 6)},
            )
        missing = {"clustering", "statistical", "rule_based", "ballistic_timing"} - set(
            self.ensemble_weights
        )
        if missing:
            raise ConfigurationError(
                "Ensemble weights missing signals", context={"missing": sorted(missing)}
            )
        if self.num_clusters < 2:
            raise ConfigurationError(
                "At least two clusters are required", context={"k": self.num_clusters}
            )
        if self.alert_min_severity not in {s.value for s in Severity}:
            raise ConfigurationError(
                "Unknown alert severity", context={"severity": self.alert_min_severity}
            )


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class CustodyEvent:
    """One assignment of a firearm to an officer (immutable once recorded)"""

    custody_id: str
    firearm_id: str
    officer_id: str
    unit_id: str
    issued_at: datetime
    returned_at: datetime | None = None
    # Hint computed by the custody workflow at assignment time
    is_cross_unit_transfer: bool = False

    @property
    def custody_duration_seconds(self) -> float | None:
        if self.returned_at is None:
            return None
        return (self.returned_at - self.issued_at).total_seconds()

    @classmethod
    def from_dict(cls, data: dict) -> "CustodyEvent":
        """Build from a custody_records row or a Kafka message"""
        return cls(
            custody_id=str(data.get("custody_id") or data["custody_record_id"]),
            firearm_id=str(data["firearm_id"]),
            officer_id=str(data["officer_id"]),
            unit_id=str(data["unit_id"]),
            issued_at=_parse_timestamp(data["issued_at"]),
            returned_at=_parse_timestamp(data.get("returned_at")),
            is_cross_unit_transfer=bool(data.get("is_cross_unit_transfer", False)),
        )


@dataclass
class Verdict:
    """Final, explainable outcome of scoring one custody event"""

    is_anomaly: bool
    anomaly_score: float
    confidence: float
    severity: Severity
    anomaly_type: AnomalyType
    is_mandatory_review: bool
    feature_importance: dict[str, float] = field(default_factory=dict)
    contributing_factors: dict[str, str] = field(default_factory=dict)
    detection_methods: dict[str, Any] = field(default_factory=dict)
    model_id: int | None = None
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> "Verdict":
        """Safe verdict used when scoring could not complete"""
        return cls(
            is_anomaly=False,
            anomaly_score=0.0,
            confidence=0.0,
            severity=Severity.LOW,
            anomaly_type=AnomalyType.UNKNOWN,
            is_mandatory_review=False,
            error=error,
        )

    def top_factors(self, n: int = 3) -> list[str]:
        """Contributing factor texts, most important first"""
        ranked = sorted(
            self.contributing_factors,
            key=lambda key: self.feature_importance.get(key, 0.0),
            reverse=True,
        )
        return [self.contributing_factors[key] for key in ranked[:n]]

    def to_dict(self) -> dict:
        """Convert to a JSON-compatible dictionary"""
        data = asdict(self)
        data["severity"] = self.severity.value
        data["anomaly_type"] = self.anomaly_type.value
        return data

    def to_db_dict(self, event: CustodyEvent, features: Any = None) -> dict:
        """Convert to dict for insertion into the anomalies table"""
        event_context = {"is_cross_unit_transfer": False}
        ballistic_context = {}
        if features is not None:
            event_context = {
                "is_cross_unit_transfer": features.is_cross_unit_transfer,
                "previous_unit_id": features.previous_unit_id,
                "cross_unit_transfer_count_30d": features.cross_unit_transfer_count_30d,
            }
            if features.has_ballistic_profile:
                ballistic_context = {
                    "timing_score": features.ballistic_timing_score,
                    "access_before_hours": features.ballistic_access_before_custody_hours,
                    "access_after_hours": features.ballistic_access_after_custody_hours,
                    "access_during_custody": features.ballistic_access_during_custody,
                    "access_count_24h": features.ballistic_access_count_24h,
                }

        return {
            "custody_record_id": event.custody_id,
            "firearm_id": event.firearm_id,
            "officer_id": event.officer_id,
            "unit_id": event.unit_id,
            "anomaly_score": self.anomaly_score,
            "anomaly_type": self.anomaly_type.value,
            "detection_method": "ensemble",
            "model_id": self.model_id,
            "severity": self.severity.value,
            "confidence_level": self.confidence,
            "is_mandatory_review": self.is_mandatory_review,
            "contributing_factors": json.dumps(self.contributing_factors),
            "feature_importance": json.dumps(self.feature_importance),
            "event_context": json.dumps(event_context),
            "ballistic_access_context": json.dumps(ballistic_context),
        }


@dataclass
class RetrainDecision:
    """Whether the active clustering model should be replaced, and why"""

    needed: bool
    reason: str
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TrainingResult:
    """Outcome of a training run, returned instead of raising"""

    success: bool
    skipped: bool = False
    reason: str = ""
    model: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)
