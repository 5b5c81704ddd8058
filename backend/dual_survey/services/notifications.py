"""
Dual Survey Engine - Notification Dispatch

Outbound notification boundary. Formatting and delivery belong to whatever
Notifier is plugged in; the pipeline only needs a delivered/failed answer.
A failed notification never rolls back or blocks the work that caused it.
"""
import logging
from enum import Enum
from typing import Any, Dict

from ..models.db_models import utcnow

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationKind(str, Enum):
    CONFLICT_ALERT = "conflict_alert"
    REPORT_READY = "report_ready"
    PAYMENT_DECISION = "payment_decision"
    REVIEW_REQUIRED = "review_required"


class Notifier:
    """Delivery adapter interface."""

    def notify(self, recipient: str, template_kind: NotificationKind, payload: Dict[str, Any]) -> DeliveryStatus:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default adapter: writes the notification to the log."""

    def notify(self, recipient: str, template_kind: NotificationKind, payload: Dict[str, Any]) -> DeliveryStatus:
        logger.info(f"Notification [{template_kind.value}] -> {recipient}: {payload}")
        return DeliveryStatus.DELIVERED


def dispatch_notification(
    notifier: Notifier,
    recipient: str,
    template_kind: NotificationKind,
    payload: Dict[str, Any],
) -> DeliveryStatus:
    """Send through the notifier, converting any exception into FAILED."""
    try:
        status = notifier.notify(recipient, template_kind, payload)
    except Exception as e:
        logger.error(f"Notification [{template_kind.value}] to {recipient} failed: {e}")
        return DeliveryStatus.FAILED

    if status != DeliveryStatus.DELIVERED:
        logger.error(f"Notification [{template_kind.value}] to {recipient} not delivered")
        return DeliveryStatus.FAILED
    return DeliveryStatus.DELIVERED


def notification_entry(recipient: str, template_kind: NotificationKind, status: DeliveryStatus) -> Dict[str, Any]:
    """Log entry shape stored on reports and flags."""
    return {
        "recipient": recipient,
        "kind": template_kind.value,
        "status": status.value,
        "at": utcnow().isoformat(),
    }


def get_notifier() -> Notifier:
    """Dependency for FastAPI - the notifier used by request-driven pipeline work."""
    return LoggingNotifier()
