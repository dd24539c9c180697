"""
Tests for AnomalyDetector orchestration and background scoring.
"""

import threading
from concurrent.futures import Future
from dataclasses import replace
from unittest.mock import ANY, MagicMock, patch

import psycopg2
import pytest

from src.detection.database import CustodyDatabase
from src.detection.detector import AnomalyDetector
from src.detection.methods.base import ClusteringResult, ModelComponents
from src.detection.models import AnomalyType, Severity, Verdict


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.should_notify.return_value = False
    return notifier


@pytest.fixture
def detector(detection_config, empty_history_db, notifier, clock):
    return AnomalyDetector(
        detection_config, db=empty_history_db, cache=None, notifier=notifier, clock=clock
    )


class TestInitialization:
    @patch("src.detection.detector.connect_cache")
    @patch("src.detection.detector.CustodyDatabase")
    def test_builds_store_from_config(self, mock_db_class, mock_connect_cache, detection_config):
        mock_db = MagicMock()
        mock_db.check_health.return_value = True
        mock_db_class.return_value = mock_db
        mock_connect_cache.return_value = None

        detector = AnomalyDetector(detection_config)

        mock_db_class.assert_called_once_with(detection_config)
        assert detector.db is mock_db
        assert detector.cache is None
        assert detector.notifier is None

    @patch("src.detection.detector.connect_cache")
    @patch("src.detection.detector.CustodyDatabase")
    def test_unhealthy_database(self, mock_db_class, mock_connect_cache, detection_config):
        mock_db = MagicMock()
        mock_db.check_health.return_value = False
        mock_db_class.return_value = mock_db

        with pytest.raises(RuntimeError, match="Database health check failed"):
            AnomalyDetector(detection_config)

    @patch("src.detection.detector.connect_cache")
    @patch("src.detection.detector.CustodyDatabase")
    def test_alerts_need_redis(self, mock_db_class, mock_connect_cache, detection_config):
        mock_db_class.return_value.check_health.return_value = True
        cache = MagicMock()
        mock_connect_cache.return_value = cache

        detector = AnomalyDetector(detection_config)

        assert detector.notifier is not None
        assert detector.notifier.redis is cache.redis


class TestDetect:
    """Tests for AnomalyDetector.detect."""

    def test_routine_event_without_model(self, detector, empty_history_db, custody_event):
        verdict = detector.detect(custody_event)

        assert verdict.error is None
        assert verdict.is_anomaly is False
        assert verdict.model_id is None
        assert verdict.detection_methods["clustering"] is None
        empty_history_db.insert_features.assert_called_once()
        empty_history_db.insert_anomaly.assert_not_called()
        assert detector.stats["models_not_found"] == 1
        assert detector.stats["total_scored"] == 1

    def test_cross_unit_event_is_recorded(
        self, detector, empty_history_db, notifier, custody_event
    ):
        event = replace(custody_event, is_cross_unit_transfer=True)

        verdict = detector.detect(event)

        assert verdict.is_anomaly is True
        assert verdict.is_mandatory_review is True
        assert verdict.severity == Severity.MEDIUM
        assert verdict.anomaly_type == AnomalyType.CROSS_UNIT_TRANSFER

        row = empty_history_db.insert_anomaly.call_args.args[0]
        assert row["custody_record_id"] == "c-0001-aaaa"
        assert row["is_mandatory_review"] is True
        notifier.notify.assert_not_called()
        assert detector.stats["anomalies_detected"] == 1

    def test_alerts_when_severity_qualifies(self, detector, notifier, custody_event):
        notifier.should_notify.return_value = True
        event = replace(custody_event, is_cross_unit_transfer=True)

        verdict = detector.detect(event)

        notifier.notify.assert_called_once_with(event, verdict, ANY, 501)

    def test_alert_failure_keeps_verdict(self, detector, notifier, custody_event):
        notifier.should_notify.return_value = True
        notifier.notify.side_effect = Exception("redis gone")

        verdict = detector.detect(replace(custody_event, is_cross_unit_transfer=True))

        assert verdict.error is None
        assert verdict.is_anomaly is True

    def test_scores_against_active_model(self, detector, custody_event):
        model = ModelComponents(
            method_name="kmeans",
            model_version="1.0.5",
            num_clusters=2,
            centroids=[[0.0] * 10, [1.0] * 10],
            normalization={"mins": [0.0] * 10, "maxs": [1.0] * 10},
            quality_score=0.8,
            outlier_threshold=0.5,
            training_samples=300,
            trained_at="2025-03-01T00:00:00+00:00",
            model_id=5,
        )
        detector.store = MagicMock()
        detector.store.get_active.return_value = model
        detector.method = MagicMock()
        detector.method.predict.return_value = ClusteringResult(
            cluster=1, distance=0.2, anomaly_score=0.1, is_anomaly=False, threshold=0.5
        )

        verdict = detector.detect(custody_event)

        assert verdict.model_id == 5
        assert verdict.detection_methods["clustering"]["distance"] == 0.2
        vector, used_model = detector.method.predict.call_args.args
        assert len(vector) == 10
        assert used_model is model
        assert detector.stats["models_not_found"] == 0

    def test_unreachable_store_degrades(self, detector, empty_history_db, custody_event):
        empty_history_db.get_officer_activity.side_effect = psycopg2.OperationalError(
            "server closed the connection"
        )

        verdict = detector.detect(custody_event)

        assert verdict.is_anomaly is False
        assert verdict.anomaly_type == AnomalyType.UNKNOWN
        assert "Historical store unavailable" in verdict.error
        empty_history_db.insert_anomaly.assert_not_called()
        assert detector.stats["failures"] == 1

    def test_failed_lookup_still_scores(self, detector, empty_history_db, custody_event):
        empty_history_db.count_foreign_unit_custodies.side_effect = Exception("bad query")

        verdict = detector.detect(custody_event)

        assert verdict.error is None
        assert detector.stats["total_scored"] == 1


class TestBackgroundScoring:
    """Tests for the bounded background pool."""

    def test_submit_returns_verdict_future(self, detector, custody_event):
        future = detector.submit(custody_event)

        assert isinstance(future, Future)
        assert isinstance(future.result(timeout=10), Verdict)
        detector.shutdown()

    def test_full_queue_drops_event(self, detector, custody_event):
        for _ in range(detector.config.max_pending_events):
            detector._slots.acquire()

        assert detector.submit(custody_event) is None
        assert detector.stats["dropped"] == 1

    def test_slot_released_after_scoring(self, detector, custody_event):
        for _ in range(detector.config.max_pending_events - 1):
            detector._slots.acquire()

        detector.submit(custody_event).result(timeout=10)
        detector.shutdown()

        assert detector._slots.acquire(blocking=False) is True

    def test_shutdown_closes_store(self, detector, empty_history_db):
        detector.shutdown()
        empty_history_db.close.assert_called_once()


class _FakeCursor:
    def __init__(self):
        self.query = ""

    def execute(self, query, params=None):
        self.query = query
        if (
            "INSERT INTO ml_training_features" in query
            and params["custody_record_id"] == "c-bad"
        ):
            raise psycopg2.IntegrityError("duplicate key value violates unique constraint")

    def fetchone(self):
        if "RETURNING anomaly_id" in self.query:
            return (900,)
        return None

    def fetchall(self):
        return []

    def close(self):
        pass


class _FakeConnection:
    """psycopg2 connection stand-in that remembers which threads used it"""

    def __init__(self):
        self.threads = set()
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        self.threads.add(threading.get_ident())
        return _FakeCursor()

    def commit(self):
        self.threads.add(threading.get_ident())

    def rollback(self):
        self.threads.add(threading.get_ident())
        self.rollbacks += 1

    def close(self):
        pass


class TestWorkersOnRealStore:
    """Background workers sharing one CustodyDatabase."""

    @patch("src.core.database.psycopg2.connect")
    def test_failed_write_does_not_leak_into_other_events(
        self, mock_connect, detection_config, clock, custody_event
    ):
        connections = []

        def connect(**kwargs):
            connections.append(_FakeConnection())
            return connections[-1]

        mock_connect.side_effect = connect
        db = CustodyDatabase(detection_config)
        detector = AnomalyDetector(detection_config, db=db, cache=None, notifier=None, clock=clock)

        events = [
            replace(custody_event, custody_id=custody_id, is_cross_unit_transfer=True)
            for custody_id in ("c-0", "c-1", "c-bad", "c-3")
        ]
        futures = [detector.submit(event) for event in events]
        verdicts = [future.result(timeout=10) for future in futures]
        detector.shutdown()

        for verdict in verdicts:
            assert verdict.error is None
            assert verdict.is_mandatory_review is True
            assert verdict.anomaly_type == AnomalyType.CROSS_UNIT_TRANSFER
        assert all(len(connection.threads) <= 1 for connection in connections)
        assert sum(connection.rollbacks for connection in connections) == 1
        assert detector.stats["anomalies_detected"] == 4
