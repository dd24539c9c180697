"""
Base abstract interface for clustering-based outlier methods.

All methods must inherit from ClusteringMethod and implement:
- fit(): Train on historical feature vectors
- predict(): Score a single event's feature vector against a trained model
"""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any

import pandas as pd

# Order of the clustering vector; must match FeatureRecord.to_vector()
CLUSTERING_FEATURES = [
    "officer_issue_frequency_30d",
    "officer_avg_custody_duration_30d",
    "firearm_exchange_rate_7d",
    "issue_hour_fraction",
    "night_flag",
    "weekend_flag",
    "rapid_flag",
    "cross_unit_flag",
    "custody_duration_zscore",
    "issue_frequency_zscore",
]


@dataclass
class ClusteringResult:
    """Outcome of scoring one feature vector against the active model"""

    cluster: int
    distance: float
    anomaly_score: float
    is_anomaly: bool
    threshold: float

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization"""
        return asdict(self)


@dataclass
class ModelComponents:
    """Trained clustering model (immutable once stored, serializable to JSON)"""

    method_name: str
    model_version: str
    num_clusters: int
    centroids: list[list[float]]
    normalization: dict[str, list[float]]  # {"mins": [...], "maxs": [...]}
    quality_score: float
    outlier_threshold: float
    training_samples: int
    trained_at: str
    metadata: dict[str, Any] = field(default_factory=dict)
    model_id: int | None = None
    is_active: bool = True

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ModelComponents":
        """Create from dictionary"""
        return cls(**data)

    @classmethod
    def from_db_row(cls, row: dict) -> "ModelComponents":
        """Create from an ml_model_metadata row (JSON columns may arrive as text)"""

        def _json(value):
            return json.loads(value) if isinstance(value, str) else value

        trained_at = row["training_date"]
        return cls(
            method_name=row["model_type"],
            model_version=row["model_version"],
            num_clusters=int(row["num_clusters"]),
            centroids=_json(row["cluster_centers"]),
            normalization=_json(row["normalization_params"]),
            quality_score=float(row["silhouette_score"] or 0.0),
            outlier_threshold=float(row["outlier_threshold"] or 0.0),
            training_samples=int(row["training_samples_count"] or 0),
            trained_at=trained_at.isoformat() if hasattr(trained_at, "isoformat") else trained_at,
            metadata=_json(row.get("metadata")) or {},
            model_id=row.get("model_id"),
            is_active=bool(row.get("is_active", True)),
        )


class ClusteringMethod(ABC):
    """Abstract base class for clustering outlier methods

    Each method must implement:
    1. fit() - Train on historical feature vectors
    2. predict() - Score one feature vector against a trained model
    """

    @abstractmethod
    def fit(self, samples: pd.DataFrame) -> ModelComponents:
        """Train the model on historical feature vectors

        Args:
            samples: DataFrame with one column per entry of CLUSTERING_FEATURES

        Returns:
            ModelComponents containing the trained model parameters

        Raises:
            InsufficientTrainingDataError: If there are too few samples
        """
        pass

    @abstractmethod
    def predict(self, vector: list[float], model: ModelComponents) -> ClusteringResult:
        """Score one raw (un-normalized) feature vector"""
        pass

    @abstractmethod
    def get_config(self) -> dict[str, Any]:
        """Get the current configuration of this method"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of the method, stored as model_type"""
        pass

    def validate_samples(self, samples: pd.DataFrame) -> None:
        """Validate that the training frame has the required columns

        Raises:
            ValueError: If the frame is empty or columns are missing
        """
        if samples.empty:
            raise ValueError("Training samples are empty")

        missing = set(CLUSTERING_FEATURES) - set(samples.columns)
        if missing:
            raise ValueError(f"Training samples missing required columns: {sorted(missing)}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(config={self.get_config()})"
