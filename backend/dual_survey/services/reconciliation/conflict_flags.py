"""
Dual Survey Engine - Conflict Flag Registry

Persists significant conflicts as standalone flags that administrators can
review, resolve or escalate independently of the merged report. Flags are
the only input the payment engine reads about conflicts.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import ADMIN_ALERT_EMAILS
from ...models.db_models import ConflictFlagDB, MergedReportDB, FlagStatus, utcnow
from ...models.ssot import Conflict, Severity
from ..errors import ReconciliationError
from ..notifications import (
    DeliveryStatus, LoggingNotifier, Notifier, NotificationKind,
    dispatch_notification, notification_entry,
)
from ..store import record_audit

logger = logging.getLogger(__name__)


class ConflictFlagError(ReconciliationError):
    """Unknown flag or invalid flag lifecycle transition."""
    pass


# Conflicts at or above this severity become flags
FLAG_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)

MAX_ESCALATION_LEVEL = 3
DETECTION_ALGORITHM_VERSION = "1.0.0"

# Flags that still need attention
OPEN_FLAG_STATES = (FlagStatus.ACTIVE, FlagStatus.REVIEWED)


# =============================================================================
# FLAG LIFECYCLE
# =============================================================================

STATE_CONFIG = {
    FlagStatus.ACTIVE: {
        "description": "Detected, awaiting admin review",
        "allowed_transitions": [FlagStatus.REVIEWED, FlagStatus.RESOLVED, FlagStatus.DISMISSED],
    },
    FlagStatus.REVIEWED: {
        "description": "Reviewed by an admin, still open",
        "allowed_transitions": [FlagStatus.RESOLVED, FlagStatus.DISMISSED],
    },
    FlagStatus.RESOLVED: {
        "description": "Conflict settled",
        "allowed_transitions": [],
    },
    FlagStatus.DISMISSED: {
        "description": "False positive",
        "allowed_transitions": [],
    },
}

# Review decision -> resulting flag status
REVIEW_DECISIONS = {
    "valid_conflict": FlagStatus.REVIEWED,
    "requires_manual_review": FlagStatus.REVIEWED,
    "escalate": FlagStatus.REVIEWED,
    "false_positive": FlagStatus.DISMISSED,
}

RESOLUTION_METHODS = ("admin_override", "surveyor_clarification", "user_acceptance", "policy_update")


def can_transition(current: FlagStatus, target: FlagStatus) -> Tuple[bool, str]:
    """Check whether a flag may move from current to target."""
    allowed = STATE_CONFIG[current]["allowed_transitions"]
    if target == current and current == FlagStatus.REVIEWED:
        return True, "Re-review"
    if target not in allowed:
        return False, f"Cannot transition flag from {current.value} to {target.value}"
    return True, "Transition allowed"


class ConflictFlagRegistry:
    """
    Creates conflict flags at merge time and drives their lifecycle.

    create_flags() only adds rows to the session: the merger commits them in
    the same transaction as the merged report. Lifecycle operations commit.
    """

    def __init__(self, db_session: Session, notifier: Optional[Notifier] = None, admin_emails: Optional[Sequence[str]] = None):
        self.db = db_session
        self.notifier = notifier or LoggingNotifier()
        self.admin_emails = list(ADMIN_ALERT_EMAILS if admin_emails is None else admin_emails)

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_flags(self, report: MergedReportDB, conflicts: List[Conflict]) -> List[ConflictFlagDB]:
        """Add one flag per high or critical conflict."""
        flags = []
        for conflict in conflicts:
            if conflict.severity not in FLAG_SEVERITIES:
                continue
            flag = ConflictFlagDB(
                id=str(uuid4()),
                merged_report_id=report.id,
                policy_id=report.policy_id,
                dual_assignment_id=report.dual_assignment_id,
                conflict_type=conflict.conflict_type,
                severity=conflict.severity,
                field_name=conflict.field,
                section=conflict.section.value,
                ammc_value=conflict.value_a,
                nia_value=conflict.value_b,
                discrepancy_percentage=conflict.discrepancy_percentage,
                description=conflict.description,
                flag_status=FlagStatus.ACTIVE,
                priority="urgent" if conflict.severity == Severity.CRITICAL else "high",
                escalation_level=0,
                notification_log=[],
                detection_metadata={
                    "detected_at": utcnow().isoformat(),
                    "detection_method": "automatic",
                    "algorithm_version": DETECTION_ALGORITHM_VERSION,
                },
            )
            self.db.add(flag)
            flags.append(flag)
        return flags

    def notify_admins(self, flags: List[ConflictFlagDB]) -> int:
        """
        Send a conflict alert per flag to every configured admin.

        Returns the number of delivered alerts. Failures are logged on the
        flag and never raised.
        """
        if not flags:
            return 0
        if not self.admin_emails:
            logger.warning(f"No admin alert recipients configured; {len(flags)} conflict flag(s) not announced")
            return 0

        delivered = 0
        for flag in flags:
            payload = {
                "flag_id": flag.id,
                "merged_report_id": flag.merged_report_id,
                "policy_id": flag.policy_id,
                "conflict_type": flag.conflict_type.value,
                "severity": flag.severity.value,
                "description": flag.description,
            }
            log = list(flag.notification_log or [])
            for email in self.admin_emails:
                status = dispatch_notification(self.notifier, email, NotificationKind.CONFLICT_ALERT, payload)
                log.append(notification_entry(email, NotificationKind.CONFLICT_ALERT, status))
                if status == DeliveryStatus.DELIVERED:
                    delivered += 1
                    flag.admin_notified = True
            flag.notification_log = log

        self.db.commit()
        return delivered

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_flag(self, flag_id: str) -> ConflictFlagDB:
        flag = self.db.query(ConflictFlagDB).filter(ConflictFlagDB.id == flag_id).first()
        if not flag:
            raise ConflictFlagError(f"Conflict flag {flag_id} not found")
        return flag

    def list_for_report(self, report_id: str, statuses: Optional[Sequence[FlagStatus]] = None) -> List[ConflictFlagDB]:
        query = self.db.query(ConflictFlagDB).filter(ConflictFlagDB.merged_report_id == report_id)
        if statuses:
            query = query.filter(ConflictFlagDB.flag_status.in_(list(statuses)))
        return query.order_by(ConflictFlagDB.created_at).all()

    def active_flags(self, report_id: str) -> List[ConflictFlagDB]:
        return self.list_for_report(report_id, [FlagStatus.ACTIVE])

    # =========================================================================
    # LIFECYCLE OPERATIONS
    # =========================================================================

    def review(self, flag_id: str, reviewed_by: str, decision: str, notes: Optional[str] = None) -> ConflictFlagDB:
        """Record an admin review. false_positive dismisses; escalate raises the level."""
        if decision not in REVIEW_DECISIONS:
            raise ConflictFlagError(f"Unknown review decision: {decision}")

        flag = self.get_flag(flag_id)
        target = REVIEW_DECISIONS[decision]
        allowed, reason = can_transition(flag.flag_status, target)
        if not allowed:
            raise ConflictFlagError(reason)

        flag.flag_status = target
        flag.review_details = {
            "reviewed_by": reviewed_by,
            "reviewed_at": utcnow().isoformat(),
            "review_notes": notes,
            "review_decision": decision,
        }
        if decision == "escalate":
            flag.escalation_level = min((flag.escalation_level or 0) + 1, MAX_ESCALATION_LEVEL)
            flag.priority = "urgent"
        elif decision == "false_positive":
            flag.priority = "low"

        self._sync_report(flag.merged_report_id, reviewed_by, f"flag_{decision}", flag.id)
        self.db.commit()
        logger.info(f"Conflict flag {flag_id} reviewed by {reviewed_by}: {decision}")
        return flag

    def resolve(self, flag_id: str, resolved_by: str, method: str, notes: Optional[str] = None) -> ConflictFlagDB:
        flag = self.get_flag(flag_id)
        self._resolve(flag, resolved_by, method, notes)
        self._sync_report(flag.merged_report_id, resolved_by, "flag_resolved", flag.id)
        self.db.commit()
        logger.info(f"Conflict flag {flag_id} resolved by {resolved_by} via {method}")
        return flag

    def escalate(self, flag_id: str, escalated_by: str, escalated_to: str, reason: Optional[str] = None) -> ConflictFlagDB:
        """Raise the escalation level by one, up to MAX_ESCALATION_LEVEL."""
        flag = self.get_flag(flag_id)
        if flag.flag_status not in OPEN_FLAG_STATES:
            raise ConflictFlagError(f"Cannot escalate a {flag.flag_status.value} flag")
        if (flag.escalation_level or 0) >= MAX_ESCALATION_LEVEL:
            raise ConflictFlagError(f"Flag already at maximum escalation level {MAX_ESCALATION_LEVEL}")

        flag.escalation_level = (flag.escalation_level or 0) + 1
        flag.escalated_to = escalated_to
        flag.escalated_at = utcnow()
        flag.priority = "urgent" if flag.escalation_level >= 2 else "high"

        status = dispatch_notification(self.notifier, escalated_to, NotificationKind.REVIEW_REQUIRED, {
            "flag_id": flag.id,
            "policy_id": flag.policy_id,
            "escalation_level": flag.escalation_level,
            "escalated_by": escalated_by,
            "reason": reason,
        })
        flag.notification_log = list(flag.notification_log or []) + [
            notification_entry(escalated_to, NotificationKind.REVIEW_REQUIRED, status)
        ]

        self.db.commit()
        logger.info(f"Conflict flag {flag_id} escalated to level {flag.escalation_level} ({escalated_to})")
        return flag

    def resolve_open_flags(self, report_id: str, resolved_by: str, method: str, notes: Optional[str] = None) -> int:
        """Resolve every open flag of a report. Caller commits."""
        flags = self.list_for_report(report_id, OPEN_FLAG_STATES)
        for flag in flags:
            self._resolve(flag, resolved_by, method, notes)
        return len(flags)

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _resolve(self, flag: ConflictFlagDB, resolved_by: str, method: str, notes: Optional[str]) -> None:
        if method not in RESOLUTION_METHODS:
            raise ConflictFlagError(f"Unknown resolution method: {method}")
        allowed, reason = can_transition(flag.flag_status, FlagStatus.RESOLVED)
        if not allowed:
            raise ConflictFlagError(reason)

        flag.flag_status = FlagStatus.RESOLVED
        flag.priority = "low"
        flag.resolution_details = {
            "resolved_by": resolved_by,
            "resolved_at": utcnow().isoformat(),
            "resolution_method": method,
            "resolution_notes": notes,
        }

    def _sync_report(self, report_id: str, actor: str, action: str, flag_id: str) -> None:
        """Mark the report's conflicts resolved once none of its flags is open."""
        report = self.db.query(MergedReportDB).filter(MergedReportDB.id == report_id).first()
        if not report:
            return
        record_audit(report, action, actor, {"flag_id": flag_id})

        self.db.flush()
        open_count = (
            self.db.query(ConflictFlagDB)
            .filter(
                ConflictFlagDB.merged_report_id == report_id,
                ConflictFlagDB.flag_status.in_(list(OPEN_FLAG_STATES)),
            )
            .count()
        )
        if open_count == 0 and report.conflict_detected and not report.conflict_resolved:
            report.conflict_resolved = True
            record_audit(report, "conflicts_resolved", actor, {"via_flag": flag_id})
            logger.info(f"All conflict flags closed for report {report_id}; conflicts marked resolved")


def flag_to_dict(flag: ConflictFlagDB) -> Dict[str, Any]:
    return {
        "id": flag.id,
        "merged_report_id": flag.merged_report_id,
        "policy_id": flag.policy_id,
        "conflict_type": flag.conflict_type.value,
        "severity": flag.severity.value,
        "field_name": flag.field_name,
        "ammc_value": flag.ammc_value,
        "nia_value": flag.nia_value,
        "discrepancy_percentage": flag.discrepancy_percentage,
        "description": flag.description,
        "flag_status": flag.flag_status.value,
        "priority": flag.priority,
        "escalation_level": flag.escalation_level,
        "escalated_to": flag.escalated_to,
        "review_details": flag.review_details,
        "resolution_details": flag.resolution_details,
        "notification_log": flag.notification_log or [],
        "created_at": flag.created_at.isoformat() if flag.created_at else None,
    }
