"""
Training and retraining of the custody clustering model.

The retraining decision is a pure function over a ModelSnapshot, so the
policy can be tested without a database. ModelTrainer gathers the snapshot,
trains, and activates new model versions through the ModelStore.
"""

import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable

import structlog

from .cache import ModelStore, connect_cache
from .database import CustodyDatabase
from .exceptions import DetectionError, InsufficientTrainingDataError, ModelTrainingError
from .features import FeatureExtractor, as_utc
from .methods import get_method
from .methods.base import ModelComponents
from .models import CustodyEvent, DetectionConfig, RetrainDecision, TrainingResult

logger = structlog.get_logger(__name__)


@dataclass
class ModelSnapshot:
    """What the retraining policy needs to know about the active model"""

    model_id: int
    trained_at: datetime
    new_samples: int
    false_positives: int
    total_decisions: int


def evaluate_retraining(
    snapshot: ModelSnapshot | None, config: DetectionConfig, now: datetime
) -> RetrainDecision:
    """Decide whether to retrain; checks run in order and the first hit wins"""
    if snapshot is None:
        return RetrainDecision(needed=True, reason="No active model found")

    age_days = int((now - as_utc(snapshot.trained_at)).total_seconds() // 86400)
    fp_rate = (
        snapshot.false_positives / snapshot.total_decisions if snapshot.total_decisions > 0 else 0.0
    )
    details = {
        "model_id": snapshot.model_id,
        "age_days": age_days,
        "new_samples": snapshot.new_samples,
        "false_positive_rate": round(fp_rate, 4),
        "total_decisions": snapshot.total_decisions,
    }

    if age_days > config.retrain_max_age_days:
        return RetrainDecision(
            needed=True,
            reason=f"Model is {age_days} days old (threshold: {config.retrain_max_age_days} days)",
            details=details,
        )

    if snapshot.new_samples > config.retrain_new_samples:
        return RetrainDecision(
            needed=True,
            reason=f"{snapshot.new_samples} new samples available "
            f"(threshold: {config.retrain_new_samples})",
            details=details,
        )

    if (
        fp_rate > config.retrain_false_positive_rate
        and snapshot.total_decisions >= config.retrain_min_decisions
    ):
        return RetrainDecision(
            needed=True,
            reason=f"High false positive rate: {fp_rate * 100:.1f}% "
            f"(threshold: {config.retrain_false_positive_rate * 100:.0f}%)",
            details=details,
        )

    return RetrainDecision(
        needed=False,
        reason=f"Model is performing well (age: {age_days} days, "
        f"new samples: {snapshot.new_samples}, FP rate: {fp_rate * 100:.1f}%)",
        details=details,
    )


class ModelTrainer:
    """Trains clustering models on the feature store and activates them"""

    def __init__(
        self,
        config: DetectionConfig,
        db: CustodyDatabase | None = None,
        cache=None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.clock = clock or (lambda: datetime.now(UTC))

        if db is None:
            db = CustodyDatabase(config)
            if not db.check_health():
                raise RuntimeError("Database health check failed")
        self.db = db

        self.cache = cache if cache is not None else connect_cache(config)
        self.store = ModelStore(self.db, self.cache, config.method_name)

        logger.info(
            "Trainer initialized",
            method=config.method_name,
            k=config.num_clusters,
            window_days=config.training_window_days,
            cache=type(self.cache).__name__ if self.cache is not None else None,
        )

    def train(self, k: int | None = None, min_samples: int | None = None) -> ModelComponents:
        """Train a new model version and make it active

        Args:
            k: Number of clusters (default: config.num_clusters)
            min_samples: Minimum feature rows required (default: config.min_training_samples)

        Returns:
            The activated ModelComponents (model_id set)

        Raises:
            InsufficientTrainingDataError: Too few samples in the training window
            ModelTrainingError: The model could not be persisted
        """
        k = k or self.config.num_clusters
        min_samples = self.config.min_training_samples if min_samples is None else min_samples
        window = self.config.training_window_days

        logger.info("Starting model training", k=k, min_samples=min_samples, window_days=window)
        start_time = time.time()

        sample_count = self.db.count_training_features(window)
        if sample_count < min_samples:
            raise InsufficientTrainingDataError(sample_count, min_samples)

        samples = self.db.query_training_features(window)
        if len(samples) < min_samples:
            raise InsufficientTrainingDataError(len(samples), min_samples)

        method = get_method(
            self.config.method_name,
            {
                "num_clusters": k,
                "max_iterations": self.config.max_iterations,
                "n_init": self.config.n_init,
                "random_state": self.config.random_state,
            },
        )
        model = method.fit(samples)

        model_id = self.store.activate(model)
        if model_id is None:
            raise ModelTrainingError(
                "Model trained but could not be saved",
                context={"version": model.model_version},
            )

        logger.info(
            "Model trained and activated",
            model_id=model_id,
            version=model.model_version,
            samples=model.training_samples,
            quality_score=round(model.quality_score, 4),
            elapsed_sec=round(time.time() - start_time, 1),
        )
        return model

    def snapshot(self) -> ModelSnapshot | None:
        """Current state of the active model, or None if there is none"""
        model = self.store.get_active()
        if model is None:
            return None

        trained_at = datetime.fromisoformat(str(model.trained_at))
        review = self.db.get_review_stats(
            model.model_id, self.clock() - timedelta(days=self.config.retrain_review_window_days)
        )
        return ModelSnapshot(
            model_id=model.model_id,
            trained_at=trained_at,
            new_samples=self.db.count_features_since(trained_at),
            false_positives=int(review.get("false_positives") or 0),
            total_decisions=int(review.get("total_detections") or 0),
        )

    def check_retraining_needed(self) -> RetrainDecision:
        """Evaluate the retraining policy; a storage error yields not-needed"""
        try:
            decision = evaluate_retraining(self.snapshot(), self.config, self.clock())
        except Exception as e:
            logger.error("Retraining check failed", error=str(e))
            return RetrainDecision(
                needed=False, reason="Error checking retraining status", error=str(e)
            )

        logger.info("Retraining check", needed=decision.needed, reason=decision.reason)
        return decision

    def get_model_metrics(self, model_id: int) -> dict:
        """Detection volume, severity mix and review outcomes for a model"""
        stats = self.db.get_model_metrics(model_id)
        total = int(stats.get("total_detections") or 0)

        def rate(count) -> float:
            return int(count or 0) / total if total > 0 else 0.0

        return {
            "model_id": model_id,
            "total_detections": total,
            "severity_distribution": {
                "critical": int(stats.get("critical_count") or 0),
                "high": int(stats.get("high_count") or 0),
                "medium": int(stats.get("medium_count") or 0),
                "low": int(stats.get("low_count") or 0),
            },
            "false_positive_rate": rate(stats.get("false_positives")),
            "resolution_rate": rate(stats.get("resolved_count")),
            "avg_anomaly_score": float(stats.get("avg_anomaly_score") or 0.0),
            "avg_confidence": float(stats.get("avg_confidence") or 0.0),
        }

    def run_scheduled_training(self, force: bool = False) -> TrainingResult:
        """Check the policy and train when needed; never raises"""
        if force:
            reason = "Forced retraining"
        else:
            decision = self.check_retraining_needed()
            if decision.error is not None:
                return TrainingResult(
                    success=False, skipped=True, reason=decision.reason, error=decision.error
                )
            if not decision.needed:
                return TrainingResult(success=True, skipped=True, reason=decision.reason)
            reason = decision.reason

        try:
            model = self.train()
        except DetectionError as e:
            logger.warning("Scheduled training did not complete", reason=reason, error=str(e))
            return TrainingResult(success=False, reason=reason, error=str(e))
        except Exception as e:
            logger.error("Scheduled training failed", reason=reason, error=str(e), exc_info=True)
            return TrainingResult(success=False, reason=reason, error=str(e))

        return TrainingResult(
            success=True,
            reason=reason,
            model={
                "model_id": model.model_id,
                "model_version": model.model_version,
                "training_samples": model.training_samples,
                "quality_score": model.quality_score,
                "outlier_threshold": model.outlier_threshold,
                "silhouette_coefficient": model.metadata.get("silhouette_coefficient"),
            },
        )

    def backfill_features(self, limit: int = 1000) -> dict:
        """Extract and store features for custody records that have none yet

        Returns:
            Dictionary with backfill statistics
        """
        extractor = FeatureExtractor(self.db, clock=self.clock)
        rows = self.db.get_unprocessed_custody_events(limit)
        stats = {"total": len(rows), "processed": 0, "failed": 0}

        logger.info("Starting feature backfill", events=len(rows))

        for row in rows:
            try:
                extractor.extract(CustodyEvent.from_dict(row))
                stats["processed"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(
                    "Failed to backfill features",
                    custody_id=row.get("custody_id"),
                    error=str(e),
                )

        logger.info("Feature backfill completed", **stats)
        return stats

    def close(self):
        """Clean up resources"""
        self.db.close()
        logger.info("Trainer closed")
