"""
Tests for the K-Means clustering method.
"""

import numpy as np
import pandas as pd
import pytest

from src.detection.exceptions import InsufficientTrainingDataError
from src.detection.methods import get_method, list_methods
from src.detection.methods.base import CLUSTERING_FEATURES, ModelComponents
from src.detection.methods.kmeans import (
    DEFAULT_OUTLIER_THRESHOLD,
    KMeansMethod,
    balance_score,
    denormalize,
    normalize,
    outlier_threshold,
)


def _samples(n: int = 120, seed: int = 7) -> pd.DataFrame:
    """Two well-separated behavior groups"""
    rng = np.random.default_rng(seed)
    half = n // 2
    day_shift = rng.normal(loc=0.2, scale=0.02, size=(half, len(CLUSTERING_FEATURES)))
    night_shift = rng.normal(loc=0.8, scale=0.02, size=(n - half, len(CLUSTERING_FEATURES)))
    return pd.DataFrame(np.vstack([day_shift, night_shift]), columns=CLUSTERING_FEATURES)


@pytest.fixture
def method():
    return KMeansMethod({"num_clusters": 2, "max_iterations": 100, "n_init": 5})


@pytest.fixture
def model(method):
    return method.fit(_samples())


class TestNormalization:
    """Tests for min-max normalization."""

    def test_round_trip_within_bounds(self):
        mins = np.array([0.0, 10.0, -5.0])
        maxs = np.array([1.0, 20.0, 5.0])
        values = np.array([0.25, 12.5, 0.0])

        restored = denormalize(normalize(values, mins, maxs), mins, maxs)

        np.testing.assert_allclose(restored, values)

    def test_zero_range_maps_to_zero(self):
        result = normalize([3.0, 7.0], [3.0, 0.0], [3.0, 10.0])

        assert result[0] == 0.0
        assert result[1] == pytest.approx(0.7)

    def test_zero_range_never_divides_by_zero(self):
        with np.errstate(all="raise"):
            result = normalize(np.array([[5.0, 5.0]]), np.array([5.0, 5.0]), np.array([5.0, 5.0]))
        assert (result == 0.0).all()


class TestTrainingStatistics:
    """Tests for balance and threshold helpers."""

    def test_balance_score_balanced(self):
        assert balance_score(np.array([0, 0, 1, 1, 2, 2])) == pytest.approx(1.0)

    def test_balance_score_skewed(self):
        # sizes 1 and 3, average 2
        assert balance_score(np.array([0, 1, 1, 1])) == pytest.approx(0.5)

    def test_outlier_threshold_nearest_rank(self):
        distances = np.arange(1, 21, dtype=float)  # 1..20
        # floor(20 * 0.95) = 19 -> the 20th value
        assert outlier_threshold(distances) == 20.0

    def test_outlier_threshold_falls_back_when_zero(self):
        assert outlier_threshold(np.zeros(10)) == DEFAULT_OUTLIER_THRESHOLD


class TestKMeansFit:
    """Tests for KMeansMethod.fit."""

    def test_rejects_fewer_than_two_k_samples(self):
        method = KMeansMethod({"num_clusters": 6})

        with pytest.raises(InsufficientTrainingDataError) as exc_info:
            method.fit(_samples(n=11))

        assert exc_info.value.required == 12
        assert exc_info.value.sample_count == 11

    def test_missing_columns_rejected(self, method):
        with pytest.raises(ValueError, match="missing required columns"):
            method.fit(pd.DataFrame({"night_flag": [0.0] * 10}))

    def test_fit_produces_model_components(self, model):
        assert model.method_name == "kmeans"
        assert model.num_clusters == 2
        assert len(model.centroids) == 2
        assert len(model.centroids[0]) == len(CLUSTERING_FEATURES)
        assert 0.0 <= model.quality_score <= 1.0
        assert model.outlier_threshold > 0
        assert model.training_samples == 120
        assert model.model_version.startswith("1.0.")

    def test_metadata_reports_silhouette(self, model):
        assert model.metadata["silhouette_coefficient"] > 0.5
        assert sum(model.metadata["cluster_sizes"]) == 120

    def test_model_serialization(self, model):
        restored = ModelComponents.from_dict(model.to_dict())
        assert restored == model


class TestKMeansPredict:
    """Tests for KMeansMethod.predict."""

    def test_typical_vector_is_not_anomalous(self, method, model):
        result = method.predict([0.2] * len(CLUSTERING_FEATURES), model)

        assert result.is_anomaly is False
        assert 0.0 <= result.anomaly_score < 1.0

    def test_distant_vector_is_anomalous(self, method, model):
        result = method.predict([5.0] * len(CLUSTERING_FEATURES), model)

        assert result.is_anomaly is True
        assert result.anomaly_score == 1.0

    def test_score_monotonic_in_distance(self, method, model):
        scores = [
            method.predict([0.2 + step] * len(CLUSTERING_FEATURES), model).anomaly_score
            for step in (0.0, 0.05, 0.1, 0.2, 0.3)
        ]
        distances = [
            method.predict([0.2 + step] * len(CLUSTERING_FEATURES), model).distance
            for step in (0.0, 0.05, 0.1, 0.2, 0.3)
        ]

        order = np.argsort(distances)
        ordered_scores = [scores[i] for i in order]
        assert ordered_scores == sorted(ordered_scores)
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_non_positive_threshold_falls_back(self, method, model):
        model.outlier_threshold = 0.0

        result = method.predict([0.2] * len(CLUSTERING_FEATURES), model)

        assert result.threshold == DEFAULT_OUTLIER_THRESHOLD


class TestRegistry:
    def test_get_method(self):
        assert isinstance(get_method("kmeans", {"num_clusters": 3}), KMeansMethod)
        assert list_methods() == ["kmeans"]

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown method"):
            get_method("dbscan", {})
