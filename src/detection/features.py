"""
Feature extraction for custody events.

Turns one custody event plus its history into a fixed-shape FeatureRecord:
temporal, behavioral, cross-unit, pattern, statistical and ballistic-access
timing features. Every trailing window is anchored on the event's issue time,
so re-extracting the same event over the same history gives the same record.

Every read from the historical store goes through FeatureExtractor._fetch(),
which returns a Lookup. Defaults for missing history are applied only when a
Lookup is read (Lookup.or_default / Lookup.get), so a failed read is logged
and recorded in FeatureRecord.degraded instead of silently becoming zero.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

import structlog

from src.core.database import CONNECTION_ERRORS

from .exceptions import DataAccessError
from .models import CustodyEvent

logger = structlog.get_logger(__name__)

NIGHT_START_HOUR = 20
NIGHT_END_HOUR = 6
OFFICER_WINDOW = timedelta(days=30)
FIREARM_WINDOW = timedelta(days=7)
RAPID_EXCHANGE_WINDOW = timedelta(hours=1)
BALLISTIC_LOOKAROUND = timedelta(hours=48)
BALLISTIC_PROXIMITY_HOURS = 6.0
BALLISTIC_FREQUENT_ACCESSES_24H = 3

TIMING_DURING_CUSTODY = 0.3
TIMING_BEFORE_CUSTODY = 0.5
TIMING_AFTER_CUSTODY = 0.5
TIMING_FREQUENT_ACCESS = 0.4


@dataclass(frozen=True)
class Lookup:
    """Result of one historical read: a value, or why it is missing"""

    value: Any = None
    error: str | None = None

    @property
    def present(self) -> bool:
        return self.value is not None

    def or_default(self, default: Any) -> Any:
        return default if self.value is None else self.value

    def get(self, key: str, default: Any = 0.0) -> Any:
        """Read one column of a row-shaped value, defaulting when absent or NULL"""
        if not isinstance(self.value, dict):
            return default
        item = self.value.get(key)
        return default if item is None else item


@dataclass(frozen=True)
class FeatureRecord:
    """Read-only snapshot of everything the detectors know about one event"""

    custody_id: str
    officer_id: str
    firearm_id: str
    unit_id: str
    custody_duration_seconds: float | None

    # Temporal
    issue_hour: int
    issue_day_of_week: int  # 0 = Sunday
    is_night_issue: bool
    is_weekend_issue: bool

    # Behavioral
    officer_issue_frequency_30d: float = 0.0
    officer_avg_custody_duration_30d: float = 0.0
    firearm_exchange_rate_7d: float = 0.0
    firearm_unique_officers_7d: int = 0
    consecutive_same_firearm_count: int = 0

    # Cross-unit transfer context
    is_cross_unit_transfer: bool = False
    previous_unit_id: str | None = None
    cross_unit_transfer_count_30d: int = 0
    is_first_custody: bool = False

    # Pattern flags
    rapid_exchange_flag: bool = False
    cross_unit_movement_flag: bool = False
    time_since_last_return_seconds: float | None = None

    # Statistical
    custody_duration_zscore: float = 0.0
    issue_frequency_zscore: float = 0.0

    # Ballistic access timing (hours are None when no access was seen nearby)
    has_ballistic_profile: bool = False
    ballistic_access_count_24h: int = 0
    ballistic_access_count_7d: int = 0
    ballistic_access_before_custody_hours: float | None = None
    ballistic_access_after_custody_hours: float | None = None
    ballistic_access_during_custody: bool = False
    ballistic_timing_score: float = 0.0

    # Lookups that failed and fell back to defaults
    degraded: tuple[str, ...] = field(default_factory=tuple)

    def to_vector(self) -> list[float]:
        """Clustering vector, ordered as methods.base.CLUSTERING_FEATURES"""
        return [
            float(self.officer_issue_frequency_30d),
            float(self.officer_avg_custody_duration_30d),
            float(self.firearm_exchange_rate_7d),
            self.issue_hour / 24.0,
            1.0 if self.is_night_issue else 0.0,
            1.0 if self.is_weekend_issue else 0.0,
            1.0 if self.rapid_exchange_flag else 0.0,
            1.0 if self.cross_unit_movement_flag else 0.0,
            float(self.custody_duration_zscore),
            float(self.issue_frequency_zscore),
        ]

    def to_dict(self) -> dict:
        """Convert to a JSON-compatible dictionary"""
        data = asdict(self)
        data["degraded"] = list(self.degraded)
        return data

    def to_db_dict(self) -> dict:
        """Convert to dict for the ml_training_features table"""
        return {
            "custody_record_id": self.custody_id,
            "officer_id": self.officer_id,
            "firearm_id": self.firearm_id,
            "unit_id": self.unit_id,
            "custody_duration_seconds": self.custody_duration_seconds or 0,
            "issue_hour": self.issue_hour,
            "issue_day_of_week": self.issue_day_of_week,
            "is_night_issue": self.is_night_issue,
            "is_weekend_issue": self.is_weekend_issue,
            "officer_issue_frequency_30d": self.officer_issue_frequency_30d,
            "officer_avg_custody_duration_30d": self.officer_avg_custody_duration_30d,
            "firearm_exchange_rate_7d": self.firearm_exchange_rate_7d,
            "firearm_unique_officers_7d": self.firearm_unique_officers_7d,
            "consecutive_same_firearm_count": self.consecutive_same_firearm_count,
            "time_since_last_return_seconds": self.time_since_last_return_seconds,
            "is_cross_unit_transfer": self.is_cross_unit_transfer,
            "previous_unit_id": self.previous_unit_id,
            "cross_unit_transfer_count_30d": self.cross_unit_transfer_count_30d,
            "is_first_custody": self.is_first_custody,
            "cross_unit_movement_flag": self.cross_unit_movement_flag,
            "rapid_exchange_flag": self.rapid_exchange_flag,
            "custody_duration_zscore": self.custody_duration_zscore,
            "issue_frequency_zscore": self.issue_frequency_zscore,
            "ballistic_access_count_24h": self.ballistic_access_count_24h,
            "ballistic_access_count_7d": self.ballistic_access_count_7d,
            "ballistic_access_before_custody_hours": self.ballistic_access_before_custody_hours,
            "ballistic_access_after_custody_hours": self.ballistic_access_after_custody_hours,
            "ballistic_timing_score": self.ballistic_timing_score,
        }


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps from the store as UTC"""
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def zscore(value: float, mean: float, stddev: float) -> float:
    """Standard score; 0 when the population has no spread"""
    if not stddev or stddev <= 0:
        return 0.0
    return (value - mean) / stddev


def temporal_features(issued_at: datetime) -> dict:
    """Hour, weekday and off-hours flags straight from the issue timestamp"""
    hour = issued_at.hour
    day_of_week = issued_at.isoweekday() % 7  # Sunday = 0
    return {
        "issue_hour": hour,
        "issue_day_of_week": day_of_week,
        "is_night_issue": hour >= NIGHT_START_HOUR or hour < NIGHT_END_HOUR,
        "is_weekend_issue": day_of_week in (0, 6),
    }


def ballistic_timing(
    accesses: list[datetime],
    custody_start: datetime,
    custody_end: datetime,
    access_count_24h: int,
) -> dict:
    """Classify profile accesses around a custody window and score the timing

    Accesses before the start or after the end keep only the smallest gap, in
    hours. The score adds up the concerns and is capped at 1.0.
    """
    before_hours = None
    after_hours = None
    during = False

    for accessed_at in accesses:
        if accessed_at < custody_start:
            gap = (custody_start - accessed_at).total_seconds() / 3600
            if gap <= BALLISTIC_LOOKAROUND.total_seconds() / 3600:
                before_hours = gap if before_hours is None else min(before_hours, gap)
        elif accessed_at <= custody_end:
            during = True
        else:
            gap = (accessed_at - custody_end).total_seconds() / 3600
            if gap <= BALLISTIC_LOOKAROUND.total_seconds() / 3600:
                after_hours = gap if after_hours is None else min(after_hours, gap)

    score = 0.0
    if during:
        score += TIMING_DURING_CUSTODY
    if before_hours is not None and before_hours < BALLISTIC_PROXIMITY_HOURS:
        score += TIMING_BEFORE_CUSTODY
    if after_hours is not None and after_hours < BALLISTIC_PROXIMITY_HOURS:
        score += TIMING_AFTER_CUSTODY
    if access_count_24h > BALLISTIC_FREQUENT_ACCESSES_24H:
        score += TIMING_FREQUENT_ACCESS

    return {
        "ballistic_access_before_custody_hours": before_hours,
        "ballistic_access_after_custody_hours": after_hours,
        "ballistic_access_during_custody": during,
        "ballistic_timing_score": min(score, 1.0),
    }


class FeatureExtractor:
    """Builds FeatureRecords from the custody historical store"""

    def __init__(self, db, clock: Callable[[], datetime] | None = None):
        """
        Args:
            db: CustodyDatabase (or anything with the same read methods)
            clock: Returns "now"; only used to close the window of an open custody
        """
        self.db = db
        self.clock = clock or (lambda: datetime.now(UTC))

    def extract(self, event: CustodyEvent, persist: bool = True) -> FeatureRecord:
        """Extract the complete feature record for one custody event

        Args:
            event: The custody event to describe
            persist: Append the record to the feature store

        Returns:
            FeatureRecord

        Raises:
            DataAccessError: If the historical store is unreachable
        """
        issued_at = as_utc(event.issued_at)
        degraded: list[str] = []

        features: dict[str, Any] = temporal_features(issued_at)
        behavioral = self._behavioral(event, issued_at, degraded)
        features.update(behavioral)
        features.update(self._cross_unit(event, issued_at, degraded))
        features.update(self._patterns(event, issued_at, degraded))
        features.update(self._statistical(event, issued_at, behavioral, degraded))
        features.update(self._ballistic(event, issued_at, degraded))

        record = FeatureRecord(
            custody_id=event.custody_id,
            officer_id=event.officer_id,
            firearm_id=event.firearm_id,
            unit_id=event.unit_id,
            custody_duration_seconds=event.custody_duration_seconds,
            degraded=tuple(degraded),
            **features,
        )

        logger.info(
            "Features extracted",
            custody_id=event.custody_id,
            cross_unit=record.is_cross_unit_transfer,
            rapid_exchange=record.rapid_exchange_flag,
            ballistic_timing_score=record.ballistic_timing_score,
            degraded=list(record.degraded) or None,
        )

        if persist:
            self._store(record)

        return record

    def _fetch(self, name: str, read: Callable[[], Any], degraded: list[str]) -> Lookup:
        """Run one historical read, turning non-fatal failures into a missing Lookup"""
        try:
            return Lookup(value=read())
        except CONNECTION_ERRORS as e:
            raise DataAccessError(
                "Historical store unavailable", context={"lookup": name}, cause=e
            ) from e
        except Exception as e:
            logger.warning("Feature lookup failed, using default", lookup=name, error=str(e))
            degraded.append(name)
            return Lookup(error=str(e))

    def _behavioral(self, event: CustodyEvent, issued_at: datetime, degraded: list) -> dict:
        officer = self._fetch(
            "officer_activity",
            lambda: self.db.get_officer_activity(
                event.officer_id, issued_at - OFFICER_WINDOW, issued_at
            ),
            degraded,
        )
        firearm = self._fetch(
            "firearm_activity",
            lambda: self.db.get_firearm_activity(
                event.firearm_id, issued_at - FIREARM_WINDOW, issued_at
            ),
            degraded,
        )
        same_firearm = self._fetch(
            "same_firearm_count",
            lambda: self.db.count_officer_firearm_custodies(
                event.officer_id, event.firearm_id, issued_at
            ),
            degraded,
        )

        return {
            "officer_issue_frequency_30d": float(officer.get("issue_count", 0)) / OFFICER_WINDOW.days,
            "officer_avg_custody_duration_30d": float(officer.get("avg_duration", 0.0)),
            "firearm_exchange_rate_7d": float(firearm.get("exchange_count", 0)) / FIREARM_WINDOW.days,
            "firearm_unique_officers_7d": int(firearm.get("unique_officers", 0)),
            "consecutive_same_firearm_count": int(same_firearm.or_default(0)),
        }

    def _cross_unit(self, event: CustodyEvent, issued_at: datetime, degraded: list) -> dict:
        previous = self._fetch(
            "previous_custody",
            lambda: self.db.get_previous_custody(event.firearm_id, issued_at, event.custody_id),
            degraded,
        )
        transfers = self._fetch(
            "cross_unit_transfers_30d",
            lambda: self.db.count_cross_unit_transfers(
                event.firearm_id, issued_at - OFFICER_WINDOW, issued_at
            ),
            degraded,
        )

        previous_unit = previous.get("unit_id", None)
        moved = previous_unit is not None and str(previous_unit) != str(event.unit_id)

        return {
            "is_cross_unit_transfer": moved or event.is_cross_unit_transfer,
            "previous_unit_id": str(previous_unit) if moved else None,
            "cross_unit_transfer_count_30d": int(transfers.or_default(0)),
            # Unknown is not the same as "first": a failed read stays False
            "is_first_custody": previous.error is None and not previous.present,
        }

    def _patterns(self, event: CustodyEvent, issued_at: datetime, degraded: list) -> dict:
        last_return = self._fetch(
            "last_return",
            lambda: self.db.get_last_return_before(event.firearm_id, issued_at, event.custody_id),
            degraded,
        )
        foreign = self._fetch(
            "foreign_unit_custodies",
            lambda: self.db.count_foreign_unit_custodies(event.officer_id, issued_at),
            degraded,
        )

        since_return = None
        if last_return.present:
            since_return = (issued_at - as_utc(last_return.value)).total_seconds()

        return {
            "rapid_exchange_flag": since_return is not None
            and 0 <= since_return <= RAPID_EXCHANGE_WINDOW.total_seconds(),
            "cross_unit_movement_flag": int(foreign.or_default(0)) > 0,
            "time_since_last_return_seconds": since_return,
        }

    def _statistical(
        self, event: CustodyEvent, issued_at: datetime, behavioral: dict, degraded: list
    ) -> dict:
        durations = self._fetch(
            "duration_population",
            lambda: self.db.get_duration_population_stats(issued_at),
            degraded,
        )
        frequencies = self._fetch(
            "frequency_population",
            lambda: self.db.get_frequency_population_stats(issued_at - OFFICER_WINDOW, issued_at),
            degraded,
        )

        duration_mean = float(durations.get("mean", 0.0))
        duration = event.custody_duration_seconds
        if duration is None:
            # Open custody: expect the officer's usual duration
            duration = behavioral["officer_avg_custody_duration_30d"] or duration_mean

        return {
            "custody_duration_zscore": zscore(
                duration, duration_mean, float(durations.get("stddev", 0.0))
            ),
            "issue_frequency_zscore": zscore(
                behavioral["officer_issue_frequency_30d"],
                float(frequencies.get("mean", 0.0)),
                float(frequencies.get("stddev", 0.0)),
            ),
        }

    def _ballistic(self, event: CustodyEvent, issued_at: datetime, degraded: list) -> dict:
        profile = self._fetch(
            "ballistic_profile",
            lambda: self.db.get_ballistic_profile_id(event.firearm_id),
            degraded,
        )
        if not profile.present:
            return {"has_ballistic_profile": False}

        count_24h = self._fetch(
            "ballistic_accesses_24h",
            lambda: self.db.count_ballistic_accesses(
                event.firearm_id, issued_at - timedelta(hours=24), issued_at
            ),
            degraded,
        )
        count_7d = self._fetch(
            "ballistic_accesses_7d",
            lambda: self.db.count_ballistic_accesses(
                event.firearm_id, issued_at - timedelta(days=7), issued_at
            ),
            degraded,
        )

        custody_end = as_utc(event.returned_at) or max(as_utc(self.clock()), issued_at)
        accesses = self._fetch(
            "ballistic_access_log",
            lambda: self.db.get_ballistic_accesses(
                event.firearm_id,
                issued_at - BALLISTIC_LOOKAROUND,
                custody_end + BALLISTIC_LOOKAROUND,
            ),
            degraded,
        )

        accesses_24h = int(count_24h.or_default(0))
        return {
            "has_ballistic_profile": True,
            "ballistic_access_count_24h": accesses_24h,
            "ballistic_access_count_7d": int(count_7d.or_default(0)),
            **ballistic_timing(
                [as_utc(t) for t in accesses.or_default([])],
                issued_at,
                custody_end,
                accesses_24h,
            ),
        }

    def _store(self, record: FeatureRecord) -> None:
        """Append to the feature store; failure never fails extraction"""
        try:
            stored = self.db.insert_features(record.to_db_dict())
        except Exception as e:
            logger.error("Feature store write failed", custody_id=record.custody_id, error=str(e))
            return
        if not stored:
            logger.warning("Features not persisted", custody_id=record.custody_id)
