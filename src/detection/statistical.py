"""
Statistical outlier detection over a single FeatureRecord.

Needs no trained model: z-score thresholds on duration and issue frequency,
plus fixed domain thresholds on exchange rate, ballistic access volume,
ballistic access proximity and cross-unit transfer counts.
"""

from dataclasses import asdict, dataclass, field

import structlog

from .features import FeatureRecord

logger = structlog.get_logger(__name__)

ZSCORE_THRESHOLD = 2.5
ZSCORE_HIGH = 3.0
EXCHANGE_RATE_THRESHOLD = 1.0
EXCHANGE_RATE_HIGH = 2.0
ACCESS_COUNT_THRESHOLD = 3
ACCESS_COUNT_HIGH = 6
PROXIMITY_HOURS = 6.0
PROXIMITY_HIGH_HOURS = 2.0
TRANSFER_COUNT_THRESHOLD = 2
TRANSFER_COUNT_HIGH = 4
DEVIATION_SCALE = 4.0


@dataclass
class OutlierFinding:
    """One feature that crossed its threshold"""

    feature: str
    deviation: float  # signed z-score, or the scaled raw value for domain flags
    severity: str
    description: str
    is_zscore: bool = False


@dataclass
class StatisticalResult:
    """Aggregate statistical verdict for one event"""

    is_anomaly: bool
    anomaly_score: float
    outliers: list[OutlierFinding] = field(default_factory=list)
    max_deviation: float = 0.0

    def first_zscore_finding(self) -> OutlierFinding | None:
        return next((o for o in self.outliers if o.is_zscore), None)

    def to_dict(self) -> dict:
        return {
            "is_anomaly": self.is_anomaly,
            "anomaly_score": self.anomaly_score,
            "outliers": [asdict(o) for o in self.outliers],
            "max_deviation": self.max_deviation,
            "detection_method": "statistical",
        }


class StatisticalDetector:
    """Threshold-based outlier checks on extracted features"""

    def detect(self, features: FeatureRecord) -> StatisticalResult:
        outliers = [
            finding
            for finding in (
                self._duration(features),
                self._frequency(features),
                self._exchange_rate(features),
                self._access_volume(features),
                self._access_proximity(features),
                self._transfers(features),
            )
            if finding is not None
        ]

        max_deviation = max((abs(o.deviation) for o in outliers), default=0.0)
        score = min(max_deviation / DEVIATION_SCALE, 1.0) if outliers else 0.0

        if outliers:
            logger.debug(
                "Statistical outliers found",
                custody_id=features.custody_id,
                features=[o.feature for o in outliers],
                score=round(score, 4),
            )

        return StatisticalResult(
            is_anomaly=bool(outliers),
            anomaly_score=score,
            outliers=outliers,
            max_deviation=max_deviation,
        )

    def _duration(self, features: FeatureRecord) -> OutlierFinding | None:
        z = features.custody_duration_zscore
        if abs(z) <= ZSCORE_THRESHOLD:
            return None
        return OutlierFinding(
            feature="custody_duration",
            deviation=z,
            severity="high" if abs(z) > ZSCORE_HIGH else "medium",
            description="Unusually long custody duration"
            if z > 0
            else "Unusually short custody duration",
            is_zscore=True,
        )

    def _frequency(self, features: FeatureRecord) -> OutlierFinding | None:
        z = features.issue_frequency_zscore
        if abs(z) <= ZSCORE_THRESHOLD:
            return None
        return OutlierFinding(
            feature="issue_frequency",
            deviation=z,
            severity="high" if abs(z) > ZSCORE_HIGH else "medium",
            description="Officer receives firearms unusually frequently"
            if z > 0
            else "Officer receives firearms unusually infrequently",
            is_zscore=True,
        )

    def _exchange_rate(self, features: FeatureRecord) -> OutlierFinding | None:
        rate = features.firearm_exchange_rate_7d
        if rate <= EXCHANGE_RATE_THRESHOLD:
            return None
        return OutlierFinding(
            feature="firearm_exchange_rate",
            deviation=rate,
            severity="high" if rate > EXCHANGE_RATE_HIGH else "medium",
            description=f"Firearm exchanged {rate:.1f} times per day",
        )

    def _access_volume(self, features: FeatureRecord) -> OutlierFinding | None:
        count = features.ballistic_access_count_24h
        if count <= ACCESS_COUNT_THRESHOLD:
            return None
        return OutlierFinding(
            feature="ballistic_access_frequency",
            deviation=count / ACCESS_COUNT_THRESHOLD * ZSCORE_THRESHOLD,
            severity="high" if count > ACCESS_COUNT_HIGH else "medium",
            description=f"Ballistic profile accessed {count} times in 24 hours",
        )

    def _access_proximity(self, features: FeatureRecord) -> OutlierFinding | None:
        gaps = [
            (hours, when)
            for hours, when in (
                (features.ballistic_access_before_custody_hours, "before"),
                (features.ballistic_access_after_custody_hours, "after"),
            )
            if hours is not None and hours < PROXIMITY_HOURS
        ]
        if not gaps:
            return None
        hours, when = min(gaps)
        return OutlierFinding(
            feature="ballistic_access_timing",
            deviation=(PROXIMITY_HOURS - hours) / PROXIMITY_HOURS * DEVIATION_SCALE,
            severity="high" if hours < PROXIMITY_HIGH_HOURS else "medium",
            description=f"Ballistic access {hours:.1f} hours {when} custody",
        )

    def _transfers(self, features: FeatureRecord) -> OutlierFinding | None:
        count = features.cross_unit_transfer_count_30d
        if count <= TRANSFER_COUNT_THRESHOLD:
            return None
        return OutlierFinding(
            feature="cross_unit_transfers",
            deviation=float(count),
            severity="high" if count > TRANSFER_COUNT_HIGH else "medium",
            description=f"{count} cross-unit transfers in 30 days",
        )
