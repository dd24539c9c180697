"""
PostgreSQL operations for custody anomaly detection.

Handles:
- Windowed history reads over custody records and ballistic access logs
- Appending extracted feature records (the training feature store)
- Storing versioned clustering models and switching the active one
- Inserting anomaly verdicts and reading review outcomes
"""

import json
from datetime import datetime
from typing import Any

import pandas as pd
import structlog

from src.core.database import PostgresConnection

from .methods.base import CLUSTERING_FEATURES, ModelComponents
from .models import DetectionConfig

logger = structlog.get_logger(__name__)


class CustodyDatabase(PostgresConnection):
    """Historical store for custody events, features, models and verdicts

    Read methods let errors propagate so the caller decides whether a
    failure degrades to a default; write methods log and return a falsy
    value, since detection is best-effort relative to the system of record.
    """

    def __init__(self, config: DetectionConfig):
        super().__init__(
            host=config.postgres_host,
            port=config.postgres_port,
            database=config.postgres_database,
            user=config.postgres_user,
            password=config.postgres_password,
        )
        self.config = config

    # ========================================
    # Custody history
    # ========================================

    def get_custody_event(self, custody_id: str) -> dict | None:
        """Load one custody record by id"""
        return self.fetch_one(
            """
            SELECT custody_id, firearm_id, officer_id, unit_id, issued_at, returned_at
            FROM custody_records
            WHERE custody_id = %s
            """,
            (custody_id,),
        )

    def get_officer_activity(self, officer_id: str, since: datetime, until: datetime) -> dict:
        """Issue count and average custody duration for an officer in a window"""
        return self.fetch_one(
            """
            SELECT COUNT(*) AS issue_count,
                   AVG(custody_duration_seconds) AS avg_duration
            FROM custody_records
            WHERE officer_id = %s
              AND issued_at >= %s
              AND issued_at <= %s
            """,
            (officer_id, since, until),
        ) or {}

    def get_firearm_activity(self, firearm_id: str, since: datetime, until: datetime) -> dict:
        """Exchange count and distinct officers for a firearm in a window"""
        return self.fetch_one(
            """
            SELECT COUNT(*) AS exchange_count,
                   COUNT(DISTINCT officer_id) AS unique_officers
            FROM custody_records
            WHERE firearm_id = %s
              AND issued_at >= %s
              AND issued_at <= %s
            """,
            (firearm_id, since, until),
        ) or {}

    def count_officer_firearm_custodies(
        self, officer_id: str, firearm_id: str, until: datetime
    ) -> int:
        """How many times this officer has held this firearm"""
        row = self.fetch_one(
            """
            SELECT COUNT(*) AS count
            FROM custody_records
            WHERE officer_id = %s AND firearm_id = %s AND issued_at <= %s
            """,
            (officer_id, firearm_id, until),
        )
        return int(row["count"]) if row else 0

    def get_previous_custody(
        self, firearm_id: str, before: datetime, exclude_custody_id: str
    ) -> dict | None:
        """Immediately preceding custody of a firearm by issue time"""
        return self.fetch_one(
            """
            SELECT custody_id, unit_id, issued_at, returned_at
            FROM custody_records
            WHERE firearm_id = %s
              AND custody_id <> %s
              AND issued_at <= %s
            ORDER BY issued_at DESC
            LIMIT 1
            """,
            (firearm_id, exclude_custody_id, before),
        )

    def count_cross_unit_transfers(
        self, firearm_id: str, since: datetime, until: datetime
    ) -> int:
        """Custodies in the window whose unit differs from the previous custody's unit"""
        row = self.fetch_one(
            """
            SELECT COUNT(*) AS count
            FROM (
                SELECT issued_at,
                       unit_id,
                       LAG(unit_id) OVER (ORDER BY issued_at) AS previous_unit_id
                FROM custody_records
                WHERE firearm_id = %s AND issued_at <= %s
            ) chain
            WHERE chain.issued_at >= %s
              AND chain.previous_unit_id IS NOT NULL
              AND chain.previous_unit_id <> chain.unit_id
            """,
            (firearm_id, until, since),
        )
        return int(row["count"]) if row else 0

    def get_last_return_before(
        self, firearm_id: str, before: datetime, exclude_custody_id: str
    ) -> datetime | None:
        """Most recent return of the firearm at or before a point in time"""
        row = self.fetch_one(
            """
            SELECT MAX(returned_at) AS returned_at
            FROM custody_records
            WHERE firearm_id = %s
              AND custody_id <> %s
              AND returned_at IS NOT NULL
              AND returned_at <= %s
            """,
            (firearm_id, exclude_custody_id, before),
        )
        return row["returned_at"] if row else None

    def count_foreign_unit_custodies(self, officer_id: str, until: datetime) -> int:
        """Custodies where the officer held a firearm assigned to another unit"""
        row = self.fetch_one(
            """
            SELECT COUNT(*) AS count
            FROM custody_records cr
            JOIN officers o ON cr.officer_id = o.officer_id
            JOIN firearms f ON cr.firearm_id = f.firearm_id
            WHERE cr.officer_id = %s
              AND cr.issued_at <= %s
              AND f.assigned_unit_id <> o.unit_id
            """,
            (officer_id, until),
        )
        return int(row["count"]) if row else 0

    def get_duration_population_stats(self, until: datetime) -> dict:
        """Population mean and stddev of completed custody durations"""
        return self.fetch_one(
            """
            SELECT AVG(custody_duration_seconds) AS mean,
                   STDDEV(custody_duration_seconds) AS stddev
            FROM custody_records
            WHERE custody_duration_seconds IS NOT NULL
              AND issued_at <= %s
            """,
            (until,),
        ) or {}

    def get_frequency_population_stats(self, since: datetime, until: datetime) -> dict:
        """Population mean and stddev of per-officer daily issue frequency"""
        days = max((until - since).days, 1)
        return self.fetch_one(
            """
            SELECT AVG(issue_frequency) AS mean,
                   STDDEV(issue_frequency) AS stddev
            FROM (
                SELECT officer_id, COUNT(*)::DECIMAL / %s AS issue_frequency
                FROM custody_records
                WHERE issued_at >= %s AND issued_at <= %s
                GROUP BY officer_id
            ) freq_table
            """,
            (days, since, until),
        ) or {}

    # ========================================
    # Ballistic access logs
    # ========================================

    def get_ballistic_profile_id(self, firearm_id: str) -> Any | None:
        """Ballistic profile id of a firearm, None when it has no profile"""
        row = self.fetch_one(
            "SELECT ballistic_id FROM ballistic_profiles WHERE firearm_id = %s",
            (firearm_id,),
        )
        return row["ballistic_id"] if row else None

    def count_ballistic_accesses(self, firearm_id: str, since: datetime, until: datetime) -> int:
        """Number of profile accesses in a window"""
        row = self.fetch_one(
            """
            SELECT COUNT(*) AS count
            FROM ballistic_access_logs
            WHERE firearm_id = %s AND accessed_at >= %s AND accessed_at <= %s
            """,
            (firearm_id, since, until),
        )
        return int(row["count"]) if row else 0

    def get_ballistic_accesses(
        self, firearm_id: str, since: datetime, until: datetime
    ) -> list[datetime]:
        """Access timestamps in a window, oldest first"""
        rows = self.fetch_all(
            """
            SELECT accessed_at
            FROM ballistic_access_logs
            WHERE firearm_id = %s AND accessed_at >= %s AND accessed_at <= %s
            ORDER BY accessed_at
            """,
            (firearm_id, since, until),
        )
        return [row["accessed_at"] for row in rows]

    # ========================================
    # Feature store
    # ========================================

    def insert_features(self, features: dict[str, Any]) -> bool:
        """Append one feature record to the training feature store

        Args:
            features: Output of FeatureRecord.to_db_dict()

        Returns:
            True if successful, False otherwise
        """
        columns = list(features.keys())
        query = "INSERT INTO ml_training_features ({}) VALUES ({})".format(
            ", ".join(columns), ", ".join(f"%({c})s" for c in columns)
        )
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, features)
            logger.debug("Features stored", custody_id=features.get("custody_record_id"))
            return True
        except Exception as e:
            logger.error(
                "Failed to store features",
                custody_id=features.get("custody_record_id"),
                error=str(e),
            )
            return False

    def get_unprocessed_custody_events(self, limit: int = 1000) -> list[dict]:
        """Custody records still needing a feature record, newest first

        That is records with none at all, plus returned ones whose only
        records were extracted while still open (duration 0). The store is
        append-only, so the completed record is added next to the live one.
        """
        return self.fetch_all(
            """
            SELECT cr.custody_id, cr.firearm_id, cr.officer_id, cr.unit_id,
                   cr.issued_at, cr.returned_at
            FROM custody_records cr
            WHERE NOT EXISTS (
                SELECT 1 FROM ml_training_features mf
                WHERE mf.custody_record_id = cr.custody_id
                  AND (mf.custody_duration_seconds > 0 OR cr.returned_at IS NULL)
            )
            ORDER BY cr.issued_at DESC
            LIMIT %s
            """,
            (limit,),
        )

    def count_training_features(self, days: int) -> int:
        """Completed-custody feature records in the trailing window"""
        row = self.fetch_one(
            """
            SELECT COUNT(*) AS count
            FROM ml_training_features
            WHERE feature_extraction_date >= NOW() - make_interval(days => %s)
              AND custody_duration_seconds > 0
            """,
            (days,),
        )
        return int(row["count"]) if row else 0

    def query_training_features(self, days: int) -> pd.DataFrame:
        """Clustering vectors for completed custodies in the trailing window

        Returns:
            DataFrame with one column per CLUSTERING_FEATURES entry
        """
        query = """
            SELECT
                officer_issue_frequency_30d,
                officer_avg_custody_duration_30d,
                firearm_exchange_rate_7d,
                issue_hour / 24.0 AS issue_hour_fraction,
                CASE WHEN is_night_issue THEN 1.0 ELSE 0.0 END AS night_flag,
                CASE WHEN is_weekend_issue THEN 1.0 ELSE 0.0 END AS weekend_flag,
                CASE WHEN rapid_exchange_flag THEN 1.0 ELSE 0.0 END AS rapid_flag,
                CASE WHEN cross_unit_movement_flag THEN 1.0 ELSE 0.0 END AS cross_unit_flag,
                custody_duration_zscore,
                issue_frequency_zscore
            FROM ml_training_features
            WHERE feature_extraction_date >= NOW() - make_interval(days => %s)
              AND custody_duration_seconds > 0
        """
        with self.get_cursor() as cursor:
            cursor.execute(query, (days,))
            columns = [desc[0] for desc in cursor.description]
            rows = cursor.fetchall()

        df = pd.DataFrame(rows, columns=columns)
        df = df.reindex(columns=CLUSTERING_FEATURES).astype(float).fillna(0.0)
        logger.debug("Queried training features", days=days, rows=len(df))
        return df

    def count_features_since(self, since: datetime | str) -> int:
        """Feature records extracted after a point in time"""
        row = self.fetch_one(
            "SELECT COUNT(*) AS count FROM ml_training_features WHERE feature_extraction_date > %s",
            (since,),
        )
        return int(row["count"]) if row else 0

    # ========================================
    # Model storage
    # ========================================

    def save_model(self, model: ModelComponents) -> int | None:
        """Insert a new model version and make it the only active one

        Deactivation and insertion share one transaction, so readers see
        either the old active model or the new one, never both or neither.

        Returns:
            The new model_id, or None if the transaction failed
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute(
                    """
                    UPDATE ml_model_metadata
                    SET is_active = false
                    WHERE model_type = %s AND is_active = true
                    """,
                    (model.method_name,),
                )
                cursor.execute(
                    """
                    INSERT INTO ml_model_metadata (
                        model_type, model_version, training_date, training_samples_count,
                        num_clusters, cluster_centers, silhouette_score,
                        outlier_threshold, normalization_params, metadata, is_active
                    ) VALUES (
                        %(model_type)s, %(model_version)s, %(training_date)s,
                        %(training_samples_count)s, %(num_clusters)s, %(cluster_centers)s,
                        %(silhouette_score)s, %(outlier_threshold)s,
                        %(normalization_params)s, %(metadata)s, true
                    )
                    RETURNING model_id
                    """,
                    {
                        "model_type": model.method_name,
                        "model_version": model.model_version,
                        "training_date": model.trained_at,
                        "training_samples_count": model.training_samples,
                        "num_clusters": model.num_clusters,
                        "cluster_centers": json.dumps(model.centroids),
                        "silhouette_score": model.quality_score,
                        "outlier_threshold": model.outlier_threshold,
                        "normalization_params": json.dumps(model.normalization),
                        "metadata": json.dumps(model.metadata),
                    },
                )
                model_id = cursor.fetchone()[0]

            logger.info(
                "Model saved and activated",
                model_id=model_id,
                version=model.model_version,
                method=model.method_name,
            )
            return model_id
        except Exception as e:
            logger.error("Failed to save model", version=model.model_version, error=str(e))
            return None

    def load_active_model_id(self, method_name: str) -> int | None:
        """Id of the active model, the single pointer every reader resolves"""
        row = self.fetch_one(
            """
            SELECT model_id FROM ml_model_metadata
            WHERE model_type = %s AND is_active = true
            ORDER BY training_date DESC
            LIMIT 1
            """,
            (method_name,),
        )
        return row["model_id"] if row else None

    def load_model(self, model_id: int) -> ModelComponents | None:
        """Load one model version by id"""
        row = self.fetch_one(
            "SELECT * FROM ml_model_metadata WHERE model_id = %s",
            (model_id,),
        )
        return ModelComponents.from_db_row(row) if row else None

    # ========================================
    # Anomalies
    # ========================================

    def insert_anomaly(self, anomaly: dict[str, Any]) -> Any | None:
        """Insert one verdict into the anomalies table

        Args:
            anomaly: Output of Verdict.to_db_dict()

        Returns:
            The new anomaly_id, or None on failure
        """
        query = """
            INSERT INTO anomalies (
                custody_record_id, firearm_id, officer_id, unit_id,
                anomaly_score, anomaly_type, detection_method, model_id,
                severity, confidence_level, is_mandatory_review,
                contributing_factors, feature_importance,
                event_context, ballistic_access_context
            ) VALUES (
                %(custody_record_id)s, %(firearm_id)s, %(officer_id)s, %(unit_id)s,
                %(anomaly_score)s, %(anomaly_type)s, %(detection_method)s, %(model_id)s,
                %(severity)s, %(confidence_level)s, %(is_mandatory_review)s,
                %(contributing_factors)s, %(feature_importance)s,
                %(event_context)s, %(ballistic_access_context)s
            )
            RETURNING anomaly_id
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, anomaly)
                anomaly_id = cursor.fetchone()[0]
            logger.debug(
                "Anomaly inserted",
                anomaly_id=anomaly_id,
                custody_id=anomaly["custody_record_id"],
                severity=anomaly["severity"],
            )
            return anomaly_id
        except Exception as e:
            logger.error(
                "Failed to insert anomaly",
                custody_id=anomaly.get("custody_record_id"),
                error=str(e),
            )
            return None

    def mark_notified(self, anomaly_id: Any, user_ids: list[str]) -> bool:
        """Record which users were alerted about an anomaly"""
        return self.execute_query(
            """
            UPDATE anomalies
            SET auto_notification_sent = true,
                notification_sent_at = CURRENT_TIMESTAMP,
                notified_users = %(notified_users)s
            WHERE anomaly_id = %(anomaly_id)s
            """,
            {"anomaly_id": anomaly_id, "notified_users": json.dumps(user_ids)},
        )

    def get_review_stats(self, model_id: int, since: datetime) -> dict:
        """False positives and total decisions attributed to a model in a window"""
        return self.fetch_one(
            """
            SELECT COUNT(*) FILTER (WHERE status = 'false_positive') AS false_positives,
                   COUNT(*) AS total_detections
            FROM anomalies
            WHERE model_id = %s AND detected_at >= %s
            """,
            (model_id, since),
        ) or {}

    def get_model_metrics(self, model_id: int) -> dict:
        """Raw performance aggregates for one model"""
        return self.fetch_one(
            """
            SELECT
                COUNT(*) AS total_detections,
                COUNT(*) FILTER (WHERE severity = 'critical') AS critical_count,
                COUNT(*) FILTER (WHERE severity = 'high') AS high_count,
                COUNT(*) FILTER (WHERE severity = 'medium') AS medium_count,
                COUNT(*) FILTER (WHERE severity = 'low') AS low_count,
                COUNT(*) FILTER (WHERE status = 'false_positive') AS false_positives,
                COUNT(*) FILTER (WHERE status = 'resolved') AS resolved_count,
                AVG(anomaly_score) AS avg_anomaly_score,
                AVG(confidence_level) AS avg_confidence
            FROM anomalies
            WHERE model_id = %s
            """,
            (model_id,),
        ) or {}

    # ========================================
    # Alerting context
    # ========================================

    def get_event_description(self, custody_id: str) -> dict | None:
        """Readable firearm, officer and unit names for an alert"""
        return self.fetch_one(
            """
            SELECT f.serial_number || ' ' || f.manufacturer || ' ' || f.model AS firearm_desc,
                   o.full_name AS officer_name,
                   u.unit_name
            FROM custody_records cr
            JOIN firearms f ON cr.firearm_id = f.firearm_id
            JOIN officers o ON cr.officer_id = o.officer_id
            JOIN units u ON cr.unit_id = u.unit_id
            WHERE cr.custody_id = %s
            """,
            (custody_id,),
        )

    def get_alert_recipients(self, unit_id: str) -> list[dict]:
        """Active HQ firearm commanders plus the unit's station commander"""
        return self.fetch_all(
            """
            SELECT user_id, email, full_name, role
            FROM users
            WHERE is_active = true
              AND (
                  role = 'hq_firearm_commander'
                  OR (role = 'station_commander' AND unit_id = %s)
              )
            ORDER BY role, full_name
            """,
            (unit_id,),
        )

    def ensure_tables_exist(self):
        """Create the detection tables if they don't exist"""
        query = """
            CREATE TABLE IF NOT EXISTS ml_training_features (
                feature_id SERIAL PRIMARY KEY,
                custody_record_id VARCHAR(50) NOT NULL,
                officer_id VARCHAR(50) NOT NULL,
                firearm_id VARCHAR(50) NOT NULL,
                unit_id VARCHAR(50) NOT NULL,
                custody_duration_seconds DOUBLE PRECISION DEFAULT 0,
                issue_hour SMALLINT,
                issue_day_of_week SMALLINT,
                is_night_issue BOOLEAN,
                is_weekend_issue BOOLEAN,
                officer_issue_frequency_30d DOUBLE PRECISION,
                officer_avg_custody_duration_30d DOUBLE PRECISION,
                firearm_exchange_rate_7d DOUBLE PRECISION,
                firearm_unique_officers_7d INTEGER,
                consecutive_same_firearm_count INTEGER,
                time_since_last_return_seconds DOUBLE PRECISION,
                is_cross_unit_transfer BOOLEAN,
                previous_unit_id VARCHAR(50),
                cross_unit_transfer_count_30d INTEGER,
                is_first_custody BOOLEAN,
                cross_unit_movement_flag BOOLEAN,
                rapid_exchange_flag BOOLEAN,
                custody_duration_zscore DOUBLE PRECISION,
                issue_frequency_zscore DOUBLE PRECISION,
                ballistic_access_count_24h INTEGER,
                ballistic_access_count_7d INTEGER,
                ballistic_access_before_custody_hours DOUBLE PRECISION,
                ballistic_access_after_custody_hours DOUBLE PRECISION,
                ballistic_timing_score DOUBLE PRECISION,
                feature_extraction_date TIMESTAMPTZ DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_ml_training_features_date
            ON ml_training_features(feature_extraction_date);

            CREATE TABLE IF NOT EXISTS ml_model_metadata (
                model_id SERIAL PRIMARY KEY,
                model_type VARCHAR(50) NOT NULL,
                model_version VARCHAR(50) NOT NULL,
                training_date TIMESTAMPTZ NOT NULL,
                training_samples_count INTEGER NOT NULL,
                num_clusters INTEGER NOT NULL,
                cluster_centers JSONB NOT NULL,
                silhouette_score DOUBLE PRECISION,
                outlier_threshold DOUBLE PRECISION NOT NULL,
                normalization_params JSONB NOT NULL,
                metadata JSONB,
                is_active BOOLEAN NOT NULL DEFAULT false,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_ml_model_metadata_one_active
            ON ml_model_metadata(model_type) WHERE is_active;
        """

        try:
            with self.get_cursor() as cursor:
                cursor.execute(query)
                logger.info("Ensured detection tables exist")
        except Exception as e:
            logger.error("Failed to create detection tables", error=str(e))
