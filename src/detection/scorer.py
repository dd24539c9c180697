"""
Ensemble scoring: fuses the clustering, statistical, rule-based and
ballistic-timing signals into one explainable Verdict.

Severity, anomaly type and explanations are ordered tables of
(predicate, outcome) rules evaluated against a ScoringContext; for severity
and type the first matching rule wins.
"""

from dataclasses import dataclass
from typing import Callable

import structlog

from .features import FeatureRecord
from .methods.base import ClusteringResult
from .models import AnomalyType, DetectionConfig, Severity, Verdict
from .statistical import StatisticalResult

logger = structlog.get_logger(__name__)

PROXIMITY_HOURS = 6.0
HIGH_EXCHANGE_RATE = 1.0
HIGH_EXCHANGE_RATE_TYPE = 1.5
FREQUENT_ACCESSES_24H = 3
REPEATED_TRANSFERS_30D = 2
STRONG_SIGNAL = 0.5
BALLISTIC_PATTERN = 0.6
CLUSTER_FACTOR_DISTANCE = 2.0
HIGH_OFFICER_FREQUENCY = 2.0

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def _near(hours: float | None) -> bool:
    return hours is not None and hours < PROXIMITY_HOURS


# Rule flags: key -> predicate over features; weights come from config
RULE_FLAGS: list[tuple[str, Callable[[FeatureRecord], bool]]] = [
    ("cross_unit_transfer", lambda f: f.is_cross_unit_transfer),
    ("rapid_exchange", lambda f: f.rapid_exchange_flag),
    ("ballistic_access_before_custody", lambda f: _near(f.ballistic_access_before_custody_hours)),
    ("ballistic_access_after_custody", lambda f: _near(f.ballistic_access_after_custody_hours)),
    ("night_issue", lambda f: f.is_night_issue),
    ("weekend_issue", lambda f: f.is_weekend_issue),
    ("cross_unit_movement", lambda f: f.cross_unit_movement_flag),
    ("high_exchange_rate", lambda f: f.firearm_exchange_rate_7d > HIGH_EXCHANGE_RATE),
    (
        "high_ballistic_access_frequency",
        lambda f: f.ballistic_access_count_24h > FREQUENT_ACCESSES_24H,
    ),
    (
        "repeated_cross_unit_transfers",
        lambda f: f.cross_unit_transfer_count_30d > REPEATED_TRANSFERS_30D,
    ),
]


@dataclass
class ScoringContext:
    """Everything the decision tables may look at"""

    features: FeatureRecord
    clustering: ClusteringResult | None
    statistical: StatisticalResult
    rule_score: float
    ballistic_score: float
    score: float = 0.0
    confidence: float = 0.0

    @property
    def cross_unit(self) -> bool:
        return self.features.is_cross_unit_transfer

    @property
    def cluster_anomaly(self) -> bool:
        return self.clustering is not None and self.clustering.is_anomaly


SEVERITY_RULES: list[tuple[Callable[[ScoringContext], bool], Severity]] = [
    (lambda c: c.score >= 0.85 and c.confidence >= 0.6, Severity.CRITICAL),
    (
        lambda c: c.score >= 0.70 or (c.cross_unit and c.ballistic_score > BALLISTIC_PATTERN),
        Severity.HIGH,
    ),
    (lambda c: c.score >= 0.50 or c.cross_unit, Severity.MEDIUM),
    (lambda c: True, Severity.LOW),
]


def _zscore_type(c: ScoringContext) -> AnomalyType | None:
    finding = c.statistical.first_zscore_finding()
    if finding is None:
        return None
    if finding.feature == "custody_duration":
        return AnomalyType.UNUSUAL_CUSTODY_DURATION
    return AnomalyType.UNUSUAL_ISSUE_FREQUENCY


TYPE_RULES: list[tuple[Callable[[ScoringContext], AnomalyType | bool | None], AnomalyType | None]] = [
    (lambda c: c.cross_unit, AnomalyType.CROSS_UNIT_TRANSFER),
    (lambda c: c.features.rapid_exchange_flag, AnomalyType.RAPID_EXCHANGE_PATTERN),
    (
        lambda c: _near(c.features.ballistic_access_before_custody_hours),
        AnomalyType.BALLISTIC_ACCESS_BEFORE_CUSTODY,
    ),
    (
        lambda c: _near(c.features.ballistic_access_after_custody_hours),
        AnomalyType.BALLISTIC_ACCESS_AFTER_CUSTODY,
    ),
    (lambda c: c.ballistic_score > BALLISTIC_PATTERN, AnomalyType.BALLISTIC_TIMING_PATTERN),
    # Outcome decided by the predicate itself (duration vs frequency)
    (_zscore_type, None),
    (lambda c: c.features.cross_unit_movement_flag, AnomalyType.CROSS_UNIT_ANOMALY),
    (
        lambda c: c.features.is_night_issue and c.features.is_weekend_issue,
        AnomalyType.OFF_HOURS_ACTIVITY,
    ),
    (lambda c: c.cluster_anomaly, AnomalyType.CLUSTER_OUTLIER),
    (
        lambda c: c.features.firearm_exchange_rate_7d > HIGH_EXCHANGE_RATE_TYPE,
        AnomalyType.HIGH_EXCHANGE_RATE,
    ),
    (lambda c: True, AnomalyType.BEHAVIORAL_DEVIATION),
]


def _hours(value: float) -> str:
    return f"{value:.1f}"


# Explanation rules: (key, predicate, text, importance). Text and importance
# share the key so factors can be ranked by importance.
EXPLANATION_RULES: list[
    tuple[
        str,
        Callable[[ScoringContext], bool],
        Callable[[ScoringContext], str],
        Callable[[ScoringContext], float],
    ]
] = [
    (
        "cross_unit_transfer",
        lambda c: c.cross_unit,
        lambda c: f"Cross-unit transfer from unit {c.features.previous_unit_id}"
        if c.features.previous_unit_id
        else "Cross-unit transfer flagged at assignment",
        lambda c: 1.0,
    ),
    (
        "rapid_exchange",
        lambda c: c.features.rapid_exchange_flag,
        lambda c: "Firearm returned and reissued within 1 hour",
        lambda c: 0.95,
    ),
    (
        "ballistic_access_before_custody",
        lambda c: _near(c.features.ballistic_access_before_custody_hours),
        lambda c: "Ballistic profile accessed "
        f"{_hours(c.features.ballistic_access_before_custody_hours)} hours before custody",
        lambda c: 0.9,
    ),
    (
        "ballistic_access_after_custody",
        lambda c: _near(c.features.ballistic_access_after_custody_hours),
        lambda c: "Ballistic profile accessed "
        f"{_hours(c.features.ballistic_access_after_custody_hours)} hours after custody",
        lambda c: 0.9,
    ),
    (
        "ballistic_access_during_custody",
        lambda c: c.features.ballistic_access_during_custody,
        lambda c: "Ballistic profile accessed while the firearm was in custody",
        lambda c: 0.7,
    ),
    (
        "high_ballistic_access_frequency",
        lambda c: c.features.ballistic_access_count_24h > FREQUENT_ACCESSES_24H,
        lambda c: f"Ballistic profile accessed {c.features.ballistic_access_count_24h} "
        "times in 24 hours",
        lambda c: min(c.features.ballistic_access_count_24h / 6.0, 1.0),
    ),
    (
        "repeated_cross_unit_transfers",
        lambda c: c.features.cross_unit_transfer_count_30d > REPEATED_TRANSFERS_30D,
        lambda c: f"{c.features.cross_unit_transfer_count_30d} cross-unit transfers "
        "in the last 30 days",
        lambda c: min(c.features.cross_unit_transfer_count_30d / 5.0, 1.0),
    ),
    (
        "night_issue",
        lambda c: c.features.is_night_issue,
        lambda c: f"Custody issued during night hours ({c.features.issue_hour:02d}:00)",
        lambda c: 0.6,
    ),
    (
        "weekend_issue",
        lambda c: c.features.is_weekend_issue,
        lambda c: f"Issued on {DAY_NAMES[c.features.issue_day_of_week]}",
        lambda c: 0.4,
    ),
    (
        "cross_unit_movement",
        lambda c: c.features.cross_unit_movement_flag,
        lambda c: "Officer has held firearms assigned to another unit",
        lambda c: 0.7,
    ),
    (
        "high_exchange_rate",
        lambda c: c.features.firearm_exchange_rate_7d > HIGH_EXCHANGE_RATE,
        lambda c: f"Firearm exchanged {c.features.firearm_exchange_rate_7d:.1f}x per day "
        "(7-day average)",
        lambda c: min(c.features.firearm_exchange_rate_7d / 2.0, 1.0),
    ),
    (
        "cluster_outlier",
        lambda c: c.clustering is not None and c.clustering.distance > CLUSTER_FACTOR_DISTANCE,
        lambda c: "Pattern significantly deviates from normal clusters "
        f"(distance: {c.clustering.distance:.2f})",
        lambda c: min(c.clustering.distance / 3.0, 1.0),
    ),
    (
        "high_frequency",
        lambda c: c.features.officer_issue_frequency_30d > HIGH_OFFICER_FREQUENCY,
        lambda c: f"Officer receives firearms {c.features.officer_issue_frequency_30d:.1f} "
        "times per day",
        lambda c: min(c.features.officer_issue_frequency_30d / 4.0, 1.0),
    ),
]


class EnsembleScorer:
    """Weighted fusion of detector outputs plus policy overrides"""

    def __init__(self, config: DetectionConfig):
        self.weights = config.ensemble_weights
        self.rule_weights = config.rule_weights
        self.threshold = config.anomaly_threshold
        self.cross_unit_floor = config.cross_unit_score_floor

    def rule_score(self, features: FeatureRecord) -> float:
        """Mean weight of the triggered rule flags (0 when none trigger)"""
        triggered = [
            self.rule_weights[key] for key, predicate in RULE_FLAGS if predicate(features)
        ]
        if not triggered:
            return 0.0
        return min(sum(triggered) / len(triggered), 1.0)

    def score(
        self,
        features: FeatureRecord,
        clustering: ClusteringResult | None,
        statistical: StatisticalResult,
    ) -> Verdict:
        """Fuse all signals into a Verdict; never raises"""
        try:
            return self._score(features, clustering, statistical)
        except Exception as e:
            logger.error(
                "Ensemble scoring failed", custody_id=features.custody_id, error=str(e)
            )
            return Verdict.failed(str(e))

    def _score(
        self,
        features: FeatureRecord,
        clustering: ClusteringResult | None,
        statistical: StatisticalResult,
    ) -> Verdict:
        ctx = ScoringContext(
            features=features,
            clustering=clustering,
            statistical=statistical,
            rule_score=self.rule_score(features),
            ballistic_score=features.ballistic_timing_score,
        )

        cluster_score = clustering.anomaly_score if clustering is not None else 0.0
        fused = (
            self.weights["clustering"] * cluster_score
            + self.weights["statistical"] * statistical.anomaly_score
            + self.weights["rule_based"] * ctx.rule_score
            + self.weights["ballistic_timing"] * ctx.ballistic_score
        )
        ctx.score = max(fused, self.cross_unit_floor) if ctx.cross_unit else fused

        signals = [
            ctx.cluster_anomaly,
            statistical.is_anomaly,
            ctx.rule_score > STRONG_SIGNAL,
            ctx.ballistic_score > STRONG_SIGNAL,
            ctx.cross_unit,
        ]
        ctx.confidence = sum(signals) / len(signals)

        importance: dict[str, float] = {}
        factors: dict[str, str] = {}
        for key, predicate, text, weight in EXPLANATION_RULES:
            if predicate(ctx):
                factors[key] = text(ctx)
                importance[key] = weight(ctx)
        for outlier in statistical.outliers:
            key = f"{outlier.feature}_outlier"
            factors.setdefault(key, outlier.description)
            importance.setdefault(key, min(abs(outlier.deviation) / 4.0, 1.0))

        return Verdict(
            is_anomaly=ctx.score > self.threshold or ctx.cross_unit,
            anomaly_score=ctx.score,
            confidence=ctx.confidence,
            severity=self._first_match(SEVERITY_RULES, ctx),
            anomaly_type=self._first_match(TYPE_RULES, ctx),
            is_mandatory_review=ctx.cross_unit,
            feature_importance=importance,
            contributing_factors=factors,
            detection_methods={
                "clustering": clustering.to_dict() if clustering is not None else None,
                "statistical": statistical.to_dict(),
                "rule_based": {"score": ctx.rule_score},
                "ballistic_timing": {"score": ctx.ballistic_score},
            },
        )

    @staticmethod
    def _first_match(rules, ctx: ScoringContext):
        for predicate, outcome in rules:
            matched = predicate(ctx)
            if matched:
                # Rules with no fixed outcome return it from the predicate
                return outcome if outcome is not None else matched
        raise ValueError("No decision rule matched")
