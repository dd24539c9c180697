"""
Anomaly detection for custody events.

Orchestrates one detection run: feature extraction, clustering prediction
against the active model, statistical checks, ensemble scoring, then
persistence of anomalies and alerting. detect() always returns a Verdict;
submit() runs it on a bounded background pool so the custody write that
triggered it never waits on (or fails because of) detection.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable

import structlog

from .cache import ModelStore, connect_cache
from .database import CustodyDatabase
from .features import FeatureExtractor, FeatureRecord
from .methods import get_method
from .models import CustodyEvent, DetectionConfig, Verdict
from .notifier import AlertNotifier
from .scorer import EnsembleScorer
from .statistical import StatisticalDetector

logger = structlog.get_logger(__name__)


class AnomalyDetector:
    """Scores custody events and records the anomalous ones"""

    def __init__(
        self,
        config: DetectionConfig,
        db: CustodyDatabase | None = None,
        cache=None,
        notifier: AlertNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Args:
            config: Detection configuration
            db: Historical store; when omitted, PostgreSQL, Redis and the
                notifier are all built from config
            cache: Model cache (optional)
            notifier: Alert notifier (optional)
            clock: "Now" for open custody windows
        """
        self.config = config

        if db is None:
            db = CustodyDatabase(config)
            if not db.check_health():
                raise RuntimeError("Database health check failed")
            cache = cache if cache is not None else connect_cache(config)
            if notifier is None and cache is not None:
                notifier = AlertNotifier(db, cache.redis, config)

        self.db = db
        self.cache = cache
        self.notifier = notifier
        self.store = ModelStore(db, cache, config.method_name)
        self.extractor = FeatureExtractor(db, clock=clock)
        self.method = get_method(
            config.method_name,
            {
                "num_clusters": config.num_clusters,
                "max_iterations": config.max_iterations,
                "n_init": config.n_init,
                "random_state": config.random_state,
            },
        )
        self.statistical = StatisticalDetector()
        self.scorer = EnsembleScorer(config)

        self._executor: ThreadPoolExecutor | None = None
        self._slots = threading.BoundedSemaphore(config.max_pending_events)
        self._stats_lock = threading.Lock()
        self.stats = {
            "total_scored": 0,
            "anomalies_detected": 0,
            "failures": 0,
            "models_not_found": 0,
            "dropped": 0,
        }

        logger.info(
            "Detector initialized",
            method=config.method_name,
            cache=type(cache).__name__ if cache is not None else None,
            alerts=notifier is not None,
        )

    def detect(self, event: CustodyEvent) -> Verdict:
        """Score one custody event; never raises

        Returns:
            Verdict (Verdict.failed() when any step could not complete)
        """
        start_time = time.time()
        try:
            features = self.extractor.extract(event)

            model = self.store.get_active()
            clustering = None
            if model is None:
                self._count("models_not_found")
                logger.warning(
                    "No active model, skipping clustering", custody_id=event.custody_id
                )
            else:
                clustering = self.method.predict(features.to_vector(), model)

            statistical = self.statistical.detect(features)
            verdict = self.scorer.score(features, clustering, statistical)
            verdict.model_id = model.model_id if model is not None else None

            if verdict.error is None and verdict.is_anomaly:
                self._record(event, verdict, features)

        except Exception as e:
            self._count("failures")
            logger.error(
                "Anomaly detection failed",
                custody_id=event.custody_id,
                error=str(e),
                exc_info=True,
            )
            return Verdict.failed(str(e))

        self._count("total_scored")
        logger.info(
            "Anomaly detection complete",
            custody_id=event.custody_id,
            is_anomaly=verdict.is_anomaly,
            score=round(verdict.anomaly_score, 3),
            severity=verdict.severity.value,
            type=verdict.anomaly_type.value,
            elapsed_ms=round((time.time() - start_time) * 1000, 1),
        )
        return verdict

    def _record(self, event: CustodyEvent, verdict: Verdict, features: FeatureRecord):
        """Persist an anomalous verdict and alert on it"""
        self._count("anomalies_detected")
        anomaly_id = self.db.insert_anomaly(verdict.to_db_dict(event, features))

        logger.info(
            "Anomaly detected",
            custody_id=event.custody_id,
            anomaly_id=anomaly_id,
            severity=verdict.severity.value,
            type=verdict.anomaly_type.value,
            mandatory_review=verdict.is_mandatory_review,
        )

        if self.notifier is None or not self.notifier.should_notify(verdict):
            return
        try:
            self.notifier.notify(event, verdict, features, anomaly_id)
        except Exception as e:
            logger.error("Alerting failed", custody_id=event.custody_id, error=str(e))

    def submit(self, event: CustodyEvent) -> Future | None:
        """Score an event in the background

        Returns:
            Future resolving to the Verdict, or None when the pending queue
            is full and the event was dropped
        """
        if not self._slots.acquire(blocking=False):
            self._count("dropped")
            logger.warning(
                "Detection queue full, event dropped",
                custody_id=event.custody_id,
                max_pending=self.config.max_pending_events,
            )
            return None

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers, thread_name_prefix="custody-detect"
            )

        future = self._executor.submit(self.detect, event)
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def _count(self, key: str):
        with self._stats_lock:
            self.stats[key] += 1

    def shutdown(self, wait: bool = True):
        """Stop background workers and release connections"""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self.db.close()
        logger.info("Detector stopped", **self.stats)
