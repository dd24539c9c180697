"""
Alert delivery for high-severity custody anomalies.

Alerts are published as JSON on a Redis pub/sub channel, one message per
recipient; the delivery service subscribed to the channel handles e-mail.
"""

import json
from datetime import UTC, datetime

import structlog

from .features import FeatureRecord
from .models import CustodyEvent, DetectionConfig, Severity, Verdict

logger = structlog.get_logger(__name__)


class AlertNotifier:
    """Publishes anomaly alerts to commanders responsible for the unit"""

    def __init__(self, db, redis_client, config: DetectionConfig):
        self.db = db
        self.redis = redis_client
        self.channel = config.alert_channel
        self.min_severity = Severity(config.alert_min_severity)

    def should_notify(self, verdict: Verdict) -> bool:
        """Anomalies at or above the configured severity are alerted"""
        return verdict.is_anomaly and verdict.severity.rank >= self.min_severity.rank

    def build_context(
        self, event: CustodyEvent, verdict: Verdict, features: FeatureRecord | None, anomaly_id
    ) -> dict:
        """Alert payload shared by all recipients"""
        details = self.db.get_event_description(event.custody_id) or {}
        return {
            "anomaly_id": anomaly_id,
            "reference": f"A-{datetime.now(UTC).year}-{event.custody_id[:8]}",
            "custody_id": event.custody_id,
            "severity": verdict.severity.value,
            "anomaly_score": round(verdict.anomaly_score, 4),
            "anomaly_type": verdict.anomaly_type.value,
            "is_mandatory_review": verdict.is_mandatory_review,
            "firearm": details.get("firearm_desc"),
            "officer": details.get("officer_name"),
            "unit": details.get("unit_name"),
            "is_cross_unit_transfer": bool(features and features.is_cross_unit_transfer),
            "has_ballistic_concern": bool(features and features.ballistic_timing_score > 0.5),
            "top_factors": verdict.top_factors(3),
        }

    def notify(
        self,
        event: CustodyEvent,
        verdict: Verdict,
        features: FeatureRecord | None = None,
        anomaly_id=None,
    ) -> list[str]:
        """Send the alert to every recipient; returns the notified user ids

        A failure for one recipient is logged and does not stop the others.
        """
        context = self.build_context(event, verdict, features, anomaly_id)
        recipients = self.db.get_alert_recipients(event.unit_id)

        notified = []
        for recipient in recipients:
            message = {
                **context,
                "recipient": {
                    "user_id": str(recipient["user_id"]),
                    "email": recipient.get("email"),
                    "full_name": recipient.get("full_name"),
                    "role": recipient.get("role"),
                },
            }
            try:
                self.redis.publish(self.channel, json.dumps(message, default=str))
                notified.append(str(recipient["user_id"]))
            except Exception as e:
                logger.error(
                    "Failed to send alert",
                    custody_id=event.custody_id,
                    user_id=recipient.get("user_id"),
                    error=str(e),
                )

        if anomaly_id is not None and notified:
            self.db.mark_notified(anomaly_id, notified)

        logger.info(
            "Anomaly alerts sent",
            custody_id=event.custody_id,
            severity=verdict.severity.value,
            recipients=len(recipients),
            notified=len(notified),
        )
        return notified
