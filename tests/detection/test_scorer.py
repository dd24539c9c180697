"""
Tests for ensemble scoring and the severity / type decision tables.
"""

from datetime import UTC, datetime

import pytest

from src.detection.methods.base import ClusteringResult
from src.detection.models import AnomalyType, DetectionConfig, Severity
from src.detection.scorer import EnsembleScorer
from src.detection.statistical import OutlierFinding, StatisticalDetector, StatisticalResult

SATURDAY_NIGHT = datetime(2025, 3, 15, 22, 0, tzinfo=UTC)


def _clustering(score: float, is_anomaly: bool = False, distance: float = 0.5) -> ClusteringResult:
    return ClusteringResult(
        cluster=0, distance=distance, anomaly_score=score, is_anomaly=is_anomaly, threshold=1.0
    )


def _quiet() -> StatisticalResult:
    return StatisticalResult(is_anomaly=False, anomaly_score=0.0)


@pytest.fixture
def scorer(detection_config):
    return EnsembleScorer(detection_config)


class TestRuleScore:
    def test_no_flags(self, scorer, make_features):
        assert scorer.rule_score(make_features()) == 0.0

    def test_mean_of_triggered_weights(self, scorer, make_features):
        features = make_features(rapid_exchange_flag=True, cross_unit_movement_flag=True)
        assert scorer.rule_score(features) == pytest.approx((0.8 + 0.4) / 2)

    def test_weights_are_configurable(self, make_features):
        config = DetectionConfig(
            rule_weights={**DetectionConfig().rule_weights, "night_issue": 1.0}
        )
        features = make_features(issued_at=datetime(2025, 3, 12, 23, tzinfo=UTC))

        assert EnsembleScorer(config).rule_score(features) == 1.0


class TestFusion:
    """Tests for weighted fusion and the cross-unit policy."""

    def test_no_history_scores_low(self, scorer, make_features):
        verdict = scorer.score(make_features(), None, _quiet())

        assert verdict.is_anomaly is False
        assert verdict.anomaly_score == 0.0
        assert verdict.severity == Severity.LOW
        assert verdict.anomaly_type == AnomalyType.BEHAVIORAL_DEVIATION
        assert verdict.is_mandatory_review is False
        assert verdict.error is None

    def test_convex_combination(self, scorer, make_features):
        features = make_features(
            issued_at=datetime(2025, 3, 12, 23, tzinfo=UTC), ballistic_timing_score=0.2
        )
        statistical = StatisticalResult(is_anomaly=True, anomaly_score=0.4)

        verdict = scorer.score(features, _clustering(0.5), statistical)

        expected = 0.35 * 0.5 + 0.25 * 0.4 + 0.25 * 0.3 + 0.15 * 0.2
        assert verdict.anomaly_score == pytest.approx(expected)
        assert verdict.is_anomaly is True  # 0.38 > 0.35

    def test_score_never_exceeds_one(self, scorer, make_features):
        features = make_features(
            is_cross_unit_transfer=True,
            rapid_exchange_flag=True,
            ballistic_access_before_custody_hours=1.0,
            ballistic_timing_score=1.0,
        )
        statistical = StatisticalResult(is_anomaly=True, anomaly_score=1.0)

        verdict = scorer.score(features, _clustering(1.0, is_anomaly=True), statistical)

        assert verdict.anomaly_score <= 1.0

    def test_cross_unit_floor_and_mandatory_review(self, scorer, make_features):
        """The previous custody was under unit U-2."""
        features = make_features(is_cross_unit_transfer=True, previous_unit_id="U-2")

        verdict = scorer.score(features, None, _quiet())

        assert verdict.anomaly_score == pytest.approx(0.4)
        assert verdict.is_anomaly is True
        assert verdict.is_mandatory_review is True
        assert verdict.severity == Severity.MEDIUM
        assert verdict.anomaly_type == AnomalyType.CROSS_UNIT_TRANSFER
        assert verdict.contributing_factors["cross_unit_transfer"] == (
            "Cross-unit transfer from unit U-2"
        )
        assert verdict.top_factors(1) == ["Cross-unit transfer from unit U-2"]

    def test_cross_unit_floor_keeps_higher_scores(self, scorer, make_features):
        features = make_features(is_cross_unit_transfer=True)
        statistical = StatisticalResult(is_anomaly=True, anomaly_score=1.0)

        verdict = scorer.score(features, _clustering(1.0, is_anomaly=True), statistical)

        assert verdict.anomaly_score > 0.4

    def test_confidence_counts_agreeing_signals(self, scorer, make_features):
        features = make_features(is_cross_unit_transfer=True)

        verdict = scorer.score(features, None, _quiet())

        # rule score 0.9 and cross-unit: 2 of 5
        assert verdict.confidence == pytest.approx(0.4)

    def test_detection_methods_embedded(self, scorer, make_features):
        verdict = scorer.score(make_features(), _clustering(0.1), _quiet())

        assert verdict.detection_methods["clustering"]["anomaly_score"] == 0.1
        assert verdict.detection_methods["statistical"]["detection_method"] == "statistical"
        assert verdict.detection_methods["rule_based"] == {"score": 0.0}

    def test_scoring_error_degrades(self, scorer, make_features):
        verdict = scorer.score(make_features(), None, None)

        assert verdict.is_anomaly is False
        assert verdict.anomaly_type == AnomalyType.UNKNOWN
        assert verdict.error is not None


class TestSeverityTable:
    def test_critical(self, scorer, make_features):
        features = make_features(
            is_cross_unit_transfer=True,
            rapid_exchange_flag=True,
            ballistic_access_before_custody_hours=1.0,
            ballistic_timing_score=1.0,
        )
        statistical = StatisticalResult(is_anomaly=True, anomaly_score=1.0)

        verdict = scorer.score(features, _clustering(1.0, is_anomaly=True), statistical)

        assert verdict.confidence == 1.0
        assert verdict.severity == Severity.CRITICAL

    def test_high_score_without_confidence_is_high(self, scorer, make_features):
        # score 0.75 but only the clustering and statistical signals agree
        statistical = StatisticalResult(is_anomaly=True, anomaly_score=1.0)
        features = make_features(ballistic_timing_score=0.5, firearm_exchange_rate_7d=1.1)

        verdict = scorer.score(features, _clustering(1.0, is_anomaly=True), statistical)

        assert verdict.anomaly_score == pytest.approx(0.35 + 0.25 + 0.25 * 0.5 + 0.15 * 0.5)
        assert verdict.severity == Severity.HIGH

    def test_cross_unit_with_ballistic_pattern_is_high(self, scorer, make_features):
        features = make_features(is_cross_unit_transfer=True, ballistic_timing_score=0.8)

        verdict = scorer.score(features, None, _quiet())

        assert verdict.anomaly_score < 0.7
        assert verdict.severity == Severity.HIGH

    def test_medium_by_score(self, scorer, make_features):
        statistical = StatisticalResult(is_anomaly=True, anomaly_score=1.0)

        verdict = scorer.score(make_features(), _clustering(1.0, is_anomaly=True), statistical)

        assert verdict.anomaly_score == pytest.approx(0.6)
        assert verdict.severity == Severity.MEDIUM


class TestTypeTable:
    """First matching rule wins."""

    def test_cross_unit_beats_rapid_exchange(self, scorer, make_features):
        features = make_features(is_cross_unit_transfer=True, rapid_exchange_flag=True)
        assert scorer.score(features, None, _quiet()).anomaly_type == AnomalyType.CROSS_UNIT_TRANSFER

    def test_rapid_exchange(self, scorer, make_features):
        """Firearm reissued 10 minutes after its return."""
        features = make_features(
            rapid_exchange_flag=True,
            time_since_last_return_seconds=600,
            ballistic_access_before_custody_hours=2.0,
        )

        verdict = scorer.score(features, None, _quiet())

        assert verdict.anomaly_type == AnomalyType.RAPID_EXCHANGE_PATTERN
        assert "reissued within 1 hour" in verdict.contributing_factors["rapid_exchange"]

    def test_ballistic_access_before(self, scorer, make_features):
        """Profile accessed 2 hours before custody."""
        features = make_features(
            has_ballistic_profile=True,
            ballistic_access_before_custody_hours=2.0,
            ballistic_timing_score=0.5,
        )

        verdict = scorer.score(features, None, _quiet())

        assert verdict.anomaly_type == AnomalyType.BALLISTIC_ACCESS_BEFORE_CUSTODY
        assert "2.0 hours before" in verdict.contributing_factors["ballistic_access_before_custody"]

    def test_ballistic_access_after(self, scorer, make_features):
        features = make_features(ballistic_access_after_custody_hours=4.0)
        assert (
            scorer.score(features, None, _quiet()).anomaly_type
            == AnomalyType.BALLISTIC_ACCESS_AFTER_CUSTODY
        )

    def test_ballistic_timing_pattern(self, scorer, make_features):
        features = make_features(ballistic_access_during_custody=True, ballistic_timing_score=0.7)
        assert (
            scorer.score(features, None, _quiet()).anomaly_type
            == AnomalyType.BALLISTIC_TIMING_PATTERN
        )

    def test_statistical_duration(self, scorer, make_features):
        features = make_features(custody_duration_zscore=3.1)
        statistical = StatisticalDetector().detect(features)

        verdict = scorer.score(features, None, statistical)

        assert verdict.anomaly_type == AnomalyType.UNUSUAL_CUSTODY_DURATION
        assert "custody_duration_outlier" in verdict.contributing_factors

    def test_statistical_frequency(self, scorer, make_features):
        statistical = StatisticalResult(
            is_anomaly=True,
            anomaly_score=0.7,
            outliers=[
                OutlierFinding("issue_frequency", 2.8, "medium", "frequent", is_zscore=True)
            ],
        )
        assert (
            scorer.score(make_features(), None, statistical).anomaly_type
            == AnomalyType.UNUSUAL_ISSUE_FREQUENCY
        )

    def test_cross_unit_history(self, scorer, make_features):
        features = make_features(cross_unit_movement_flag=True)
        assert scorer.score(features, None, _quiet()).anomaly_type == AnomalyType.CROSS_UNIT_ANOMALY

    def test_off_hours(self, scorer, make_features):
        verdict = scorer.score(make_features(issued_at=SATURDAY_NIGHT), None, _quiet())

        assert verdict.anomaly_type == AnomalyType.OFF_HOURS_ACTIVITY
        assert verdict.contributing_factors["weekend_issue"] == "Issued on Saturday"
        assert verdict.contributing_factors["night_issue"] == (
            "Custody issued during night hours (22:00)"
        )

    def test_cluster_outlier(self, scorer, make_features):
        verdict = scorer.score(
            make_features(), _clustering(1.0, is_anomaly=True, distance=2.4), _quiet()
        )

        assert verdict.anomaly_type == AnomalyType.CLUSTER_OUTLIER
        assert "distance: 2.40" in verdict.contributing_factors["cluster_outlier"]

    def test_high_exchange_rate(self, scorer, make_features):
        features = make_features(firearm_exchange_rate_7d=1.6)
        assert scorer.score(features, None, _quiet()).anomaly_type == AnomalyType.HIGH_EXCHANGE_RATE


class TestExplanations:
    def test_importance_and_factors_share_keys(self, scorer, make_features):
        features = make_features(
            issued_at=SATURDAY_NIGHT,
            rapid_exchange_flag=True,
            firearm_exchange_rate_7d=1.8,
        )

        verdict = scorer.score(features, None, _quiet())

        assert set(verdict.feature_importance) == set(verdict.contributing_factors)
        assert all(0.0 <= v <= 1.0 for v in verdict.feature_importance.values())
        assert verdict.top_factors(1) == ["Firearm returned and reissued within 1 hour"]
