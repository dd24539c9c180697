"""
K-Means clustering outlier method.

Groups historical custody patterns into K clusters; an event is an outlier
when its distance to the nearest centroid exceeds the 95th percentile of the
training distances.

Workflow:
1. Training: min-max normalize every feature, fit K-Means (k-means++ seeding),
   record the cluster balance, and derive the distance threshold
2. Inference: normalize with the stored bounds, find the nearest centroid,
   and scale the distance by the threshold into a [0, 1] score
"""

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import numpy as np
import pandas as pd
import structlog
from sklearn.cluster import KMeans
from sklearn.metrics import silhouette_score

from ..exceptions import InsufficientTrainingDataError
from .base import CLUSTERING_FEATURES, ClusteringMethod, ClusteringResult, ModelComponents

logger = structlog.get_logger(__name__)

DEFAULT_OUTLIER_THRESHOLD = 2.0
OUTLIER_PERCENTILE = 0.95
SILHOUETTE_SAMPLE_SIZE = 2000


@dataclass
class KMeansConfig:
    """Configuration for the K-Means method"""

    num_clusters: int = 6
    max_iterations: int = 100
    n_init: int = 10
    random_state: int = 42


def normalize(values: np.ndarray, mins: np.ndarray, maxs: np.ndarray) -> np.ndarray:
    """Min-max normalize; zero-range features map to 0"""
    values = np.asarray(values, dtype=float)
    mins = np.asarray(mins, dtype=float)
    ranges = np.asarray(maxs, dtype=float) - mins
    safe_ranges = np.where(ranges == 0, 1.0, ranges)
    return np.where(ranges == 0, 0.0, (values - mins) / safe_ranges)


def denormalize(normalized: np.ndarray, mins: np.ndarray, maxs: np.ndarray) -> np.ndarray:
    """Inverse of normalize() for values inside the bounds"""
    mins = np.asarray(mins, dtype=float)
    ranges = np.asarray(maxs, dtype=float) - mins
    return np.asarray(normalized, dtype=float) * ranges + mins


def balance_score(labels: np.ndarray) -> float:
    """Smallest cluster size over average cluster size, clamped to [0, 1]"""
    if len(labels) == 0:
        return 0.0
    counts = np.bincount(labels)
    counts = counts[counts > 0]
    average = len(labels) / len(counts)
    return float(min(counts.min() / average, 1.0))


def outlier_threshold(distances: np.ndarray) -> float:
    """95th percentile of point-to-centroid distances (nearest-rank)"""
    ordered = np.sort(np.asarray(distances, dtype=float))
    index = int(np.floor(len(ordered) * OUTLIER_PERCENTILE))
    if index >= len(ordered) or ordered[index] <= 0:
        return DEFAULT_OUTLIER_THRESHOLD
    return float(ordered[index])


class KMeansMethod(ClusteringMethod):
    """Distance-to-nearest-centroid outlier scoring"""

    def __init__(self, config: dict):
        self.config = KMeansConfig(**config)
        self._name = "kmeans"

        logger.info(
            "K-Means method initialized",
            num_clusters=self.config.num_clusters,
            max_iterations=self.config.max_iterations,
        )

    @property
    def name(self) -> str:
        return self._name

    def get_config(self) -> dict[str, Any]:
        return {
            "num_clusters": self.config.num_clusters,
            "max_iterations": self.config.max_iterations,
            "n_init": self.config.n_init,
            "random_state": self.config.random_state,
        }

    def fit(self, samples: pd.DataFrame) -> ModelComponents:
        """Fit K-Means on historical feature vectors

        Args:
            samples: DataFrame with CLUSTERING_FEATURES columns

        Returns:
            ModelComponents with centroids, bounds, quality and threshold
        """
        k = self.config.num_clusters
        required = 2 * k
        if len(samples) < required:
            raise InsufficientTrainingDataError(len(samples), required)

        self.validate_samples(samples)

        data = samples[CLUSTERING_FEATURES].astype(float).fillna(0.0).to_numpy()
        mins = data.min(axis=0)
        maxs = data.max(axis=0)
        normalized = normalize(data, mins, maxs)

        logger.debug("Fitting K-Means model", k=k, n_samples=len(data))

        kmeans = KMeans(
            n_clusters=k,
            init="k-means++",
            n_init=self.config.n_init,
            max_iter=self.config.max_iterations,
            random_state=self.config.random_state,
        ).fit(normalized)

        labels = kmeans.labels_
        centroids = kmeans.cluster_centers_
        distances = np.linalg.norm(normalized - centroids[labels], axis=1)

        quality = balance_score(labels)
        threshold = outlier_threshold(distances)

        metadata = {
            "silhouette_coefficient": self._silhouette(normalized, labels),
            "inertia": float(kmeans.inertia_),
            "iterations": int(kmeans.n_iter_),
            "cluster_sizes": np.bincount(labels, minlength=k).tolist(),
            **self.get_config(),
        }

        logger.info(
            "K-Means model fitted",
            k=k,
            n_samples=len(data),
            quality_score=round(quality, 4),
            outlier_threshold=round(threshold, 4),
        )

        return ModelComponents(
            method_name=self.name,
            model_version=f"1.0.{int(time.time() * 1000)}",
            num_clusters=k,
            centroids=centroids.tolist(),
            normalization={"mins": mins.tolist(), "maxs": maxs.tolist()},
            quality_score=quality,
            outlier_threshold=threshold,
            training_samples=len(data),
            trained_at=datetime.now(UTC).isoformat(),
            metadata=metadata,
        )

    def predict(self, vector: list[float], model: ModelComponents) -> ClusteringResult:
        """Score a raw feature vector against the model's centroids"""
        centroids = np.asarray(model.centroids, dtype=float)
        normalized = normalize(
            vector, model.normalization["mins"], model.normalization["maxs"]
        )

        distances = np.linalg.norm(centroids - normalized, axis=1)
        cluster = int(np.argmin(distances))
        distance = float(distances[cluster])

        threshold = model.outlier_threshold
        if not threshold or threshold <= 0:
            threshold = DEFAULT_OUTLIER_THRESHOLD

        return ClusteringResult(
            cluster=cluster,
            distance=distance,
            anomaly_score=min(distance / threshold, 1.0),
            is_anomaly=distance > threshold,
            threshold=threshold,
        )

    def _silhouette(self, normalized: np.ndarray, labels: np.ndarray) -> float | None:
        """True silhouette coefficient, reported alongside the balance score"""
        n_labels = len(np.unique(labels))
        if n_labels < 2 or n_labels >= len(normalized):
            return None
        return float(
            silhouette_score(
                normalized,
                labels,
                sample_size=min(len(normalized), SILHOUETTE_SAMPLE_SIZE),
                random_state=self.config.random_state,
            )
        )
