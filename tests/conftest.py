"""
Pytest configuration and shared fixtures.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.detection.features import FeatureRecord, temporal_features
from src.detection.models import CustodyEvent, DetectionConfig

# Wednesday, mid-morning
ISSUED_AT = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)
NOW = datetime(2025, 3, 12, 14, 0, tzinfo=UTC)


@pytest.fixture
def detection_config():
    """Detection configuration for testing."""
    return DetectionConfig(
        postgres_host="localhost",
        postgres_port=5432,
        postgres_database="test_db",
        postgres_user="test_user",
        postgres_password="test_password",
        redis_host="localhost",
        kafka_bootstrap_servers="localhost:9092",
        kafka_topic="test-custody-events",
        kafka_group_id="test-group",
        max_workers=2,
        max_pending_events=4,
    )


@pytest.fixture
def clock():
    """Fixed 'now' for open custody windows."""
    return lambda: NOW


@pytest.fixture
def custody_event():
    """Open custody event issued on a weekday morning."""
    return CustodyEvent(
        custody_id="c-0001-aaaa",
        firearm_id="F-100",
        officer_id="O-200",
        unit_id="U-1",
        issued_at=ISSUED_AT,
    )


@pytest.fixture
def returned_event():
    """Completed custody event (8 hours)."""
    return CustodyEvent(
        custody_id="c-0002-bbbb",
        firearm_id="F-100",
        officer_id="O-200",
        unit_id="U-1",
        issued_at=ISSUED_AT,
        returned_at=ISSUED_AT + timedelta(hours=8),
    )


@pytest.fixture
def empty_history_db():
    """Historical store with no history at all (first custody, no profile)."""
    db = MagicMock()
    db.get_officer_activity.return_value = {"issue_count": 0, "avg_duration": None}
    db.get_firearm_activity.return_value = {"exchange_count": 0, "unique_officers": 0}
    db.count_officer_firearm_custodies.return_value = 0
    db.get_previous_custody.return_value = None
    db.count_cross_unit_transfers.return_value = 0
    db.get_last_return_before.return_value = None
    db.count_foreign_unit_custodies.return_value = 0
    db.get_duration_population_stats.return_value = {"mean": None, "stddev": None}
    db.get_frequency_population_stats.return_value = {"mean": None, "stddev": None}
    db.get_ballistic_profile_id.return_value = None
    db.count_ballistic_accesses.return_value = 0
    db.get_ballistic_accesses.return_value = []
    db.insert_features.return_value = True
    db.load_active_model_id.return_value = None
    db.insert_anomaly.return_value = 501
    return db


@pytest.fixture
def make_features():
    """Factory for FeatureRecords with quiet defaults."""

    def _make(issued_at: datetime = ISSUED_AT, **overrides) -> FeatureRecord:
        values = {
            "custody_id": "c-0001-aaaa",
            "officer_id": "O-200",
            "firearm_id": "F-100",
            "unit_id": "U-1",
            "custody_duration_seconds": None,
            **temporal_features(issued_at),
        }
        values.update(overrides)
        return FeatureRecord(**values)

    return _make
