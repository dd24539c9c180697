"""
Tests for statistical outlier detection.
"""

import pytest

from src.detection.statistical import StatisticalDetector


@pytest.fixture
def detector():
    return StatisticalDetector()


class TestStatisticalDetector:
    """Tests for StatisticalDetector.detect."""

    def test_quiet_features(self, detector, make_features):
        result = detector.detect(make_features())

        assert result.is_anomaly is False
        assert result.anomaly_score == 0.0
        assert result.outliers == []

    def test_long_duration_zscore(self, detector, make_features):
        result = detector.detect(make_features(custody_duration_zscore=3.2))

        finding = result.outliers[0]
        assert finding.feature == "custody_duration"
        assert finding.severity == "high"
        assert finding.description == "Unusually long custody duration"
        assert result.anomaly_score == pytest.approx(3.2 / 4.0)

    def test_negative_frequency_zscore(self, detector, make_features):
        result = detector.detect(make_features(issue_frequency_zscore=-2.7))

        finding = result.outliers[0]
        assert finding.deviation == -2.7
        assert finding.severity == "medium"
        assert "infrequently" in finding.description
        assert result.max_deviation == pytest.approx(2.7)

    def test_zscore_at_threshold_is_not_outlier(self, detector, make_features):
        assert detector.detect(make_features(custody_duration_zscore=2.5)).is_anomaly is False

    def test_exchange_rate(self, detector, make_features):
        result = detector.detect(make_features(firearm_exchange_rate_7d=2.5))

        finding = result.outliers[0]
        assert finding.feature == "firearm_exchange_rate"
        assert finding.severity == "high"
        assert finding.description == "Firearm exchanged 2.5 times per day"

    def test_ballistic_access_volume(self, detector, make_features):
        result = detector.detect(make_features(ballistic_access_count_24h=4))

        finding = result.outliers[0]
        assert finding.feature == "ballistic_access_frequency"
        assert finding.deviation == pytest.approx(4 / 3 * 2.5)
        assert finding.severity == "medium"

    def test_ballistic_access_proximity(self, detector, make_features):
        result = detector.detect(make_features(ballistic_access_before_custody_hours=1.5))

        finding = result.outliers[0]
        assert finding.feature == "ballistic_access_timing"
        assert finding.deviation == pytest.approx((6 - 1.5) / 6 * 4)
        assert finding.severity == "high"
        assert finding.description == "Ballistic access 1.5 hours before custody"

    def test_proximity_uses_nearest_access(self, detector, make_features):
        result = detector.detect(
            make_features(
                ballistic_access_before_custody_hours=5.0,
                ballistic_access_after_custody_hours=3.0,
            )
        )

        assert "after custody" in result.outliers[0].description

    def test_cross_unit_transfers(self, detector, make_features):
        result = detector.detect(make_features(cross_unit_transfer_count_30d=5))

        finding = result.outliers[0]
        assert finding.deviation == 5.0
        assert finding.severity == "high"
        assert result.anomaly_score == 1.0

    def test_score_uses_largest_deviation(self, detector, make_features):
        result = detector.detect(
            make_features(custody_duration_zscore=2.8, firearm_exchange_rate_7d=1.2)
        )

        assert len(result.outliers) == 2
        assert result.anomaly_score == pytest.approx(2.8 / 4.0)

    def test_first_zscore_finding(self, detector, make_features):
        result = detector.detect(
            make_features(firearm_exchange_rate_7d=3.0, issue_frequency_zscore=2.9)
        )

        assert result.first_zscore_finding().feature == "issue_frequency"

    def test_to_dict(self, detector, make_features):
        data = detector.detect(make_features(custody_duration_zscore=3.0)).to_dict()

        assert data["detection_method"] == "statistical"
        assert data["outliers"][0]["feature"] == "custody_duration"
