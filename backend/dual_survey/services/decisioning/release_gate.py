"""
Release Gate

Three-state machine deciding whether a merged report may be shown to the
policyholder. Automatic release only moves PENDING -> RELEASED; a WITHHELD
report leaves that state through an explicit manual release.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ...models.db_models import (
    ConflictFlagDB, DualAssignmentDB, MergedReportDB,
    ReleaseStatus, utcnow,
)
from ...models.ssot import ReleaseCheck, ReleaseResult, Severity, normalize_recommendation
from ..errors import ReconciliationError
from ..notifications import (
    LoggingNotifier, Notifier, NotificationKind,
    dispatch_notification, notification_entry,
)
from ..reconciliation.conflict_flags import ConflictFlagRegistry, OPEN_FLAG_STATES
from ..store import append_history, record_audit

logger = logging.getLogger(__name__)


class ReleaseGateError(ReconciliationError):
    """Missing report or invalid release transition."""
    pass


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    ReleaseStatus.PENDING: {
        "description": "Merged, awaiting release evaluation",
        "allowed_transitions": [ReleaseStatus.RELEASED, ReleaseStatus.WITHHELD],
        "manual_only": [],
    },
    ReleaseStatus.WITHHELD: {
        "description": "Held back for manual conflict review",
        "allowed_transitions": [ReleaseStatus.RELEASED],
        "manual_only": [ReleaseStatus.RELEASED],
    },
    ReleaseStatus.RELEASED: {
        "description": "Visible to the policyholder",
        "allowed_transitions": [],
        "manual_only": [],
    },
}


def can_transition(current: ReleaseStatus, target: ReleaseStatus, manual: bool = False) -> Tuple[bool, str]:
    """Check whether a report may move from current to target."""
    config = STATE_CONFIG[current]
    if target not in config["allowed_transitions"]:
        return False, f"Cannot transition report from {current.value} to {target.value}"
    if target in config["manual_only"] and not manual:
        return False, f"Transition from {current.value} to {target.value} requires manual release"
    return True, "Transition allowed"


class ReleaseGate:
    """
    Evaluates and applies release transitions for merged reports.

    Every failed precondition leaves the status unchanged and returns a
    human-readable reason. Reasons are diagnostics; nothing retries them.
    """

    def __init__(self, db_session: Session, notifier: Optional[Notifier] = None):
        self.db = db_session
        self.notifier = notifier or LoggingNotifier()
        self.flags = ConflictFlagRegistry(db_session, notifier=self.notifier)

    # =========================================================================
    # ELIGIBILITY
    # =========================================================================

    def has_unresolved_critical(self, report: MergedReportDB) -> bool:
        """Open critical flag, or a critical conflict the report has not marked resolved."""
        open_critical = (
            self.db.query(ConflictFlagDB)
            .filter(
                ConflictFlagDB.merged_report_id == report.id,
                ConflictFlagDB.severity == Severity.CRITICAL,
                ConflictFlagDB.flag_status.in_(list(OPEN_FLAG_STATES)),
            )
            .count()
        )
        if open_critical:
            return True
        if report.conflict_resolved:
            return False
        return any(c.get("severity") == Severity.CRITICAL.value for c in (report.conflicts or []))

    def check_eligibility(self, report: MergedReportDB) -> ReleaseCheck:
        if report.release_status == ReleaseStatus.RELEASED:
            return ReleaseCheck(False, "Report already released")
        if report.release_status == ReleaseStatus.WITHHELD:
            return ReleaseCheck(False, "Report withheld due to conflicts - requires manual review")
        if self.has_unresolved_critical(report):
            return ReleaseCheck(False, "Critical conflicts detected - requires manual review")
        if report.conflict_detected and not report.conflict_resolved:
            return ReleaseCheck(False, "Unresolved conflicts detected - requires manual review")
        if report.final_recommendation is None:
            return ReleaseCheck(False, "Final recommendation not determined")
        if not (report.merging_metadata or {}).get("merged_at"):
            return ReleaseCheck(False, "Report merging not completed")
        if (report.quality_metrics or {}).get("release_assessment") == "pending":
            return ReleaseCheck(False, "Merge quality assessment requires manual review")
        return self.validate_sections(report)

    @staticmethod
    def validate_sections(report: MergedReportDB) -> ReleaseCheck:
        """Both organizations' snapshots must carry a recommendation and surveyor identity."""
        sections = report.report_sections or {}
        if not sections.get("ammc") or not sections.get("nia"):
            return ReleaseCheck(False, "Missing report sections from AMMC or NIA")
        for key, label in (("ammc", "AMMC"), ("nia", "NIA")):
            section = sections[key]
            if normalize_recommendation(section.get("recommendation")) is None or not section.get("surveyor_name"):
                return ReleaseCheck(False, f"Missing essential {label} report data")
        return ReleaseCheck(True, "Report eligible for automatic release")

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def evaluate(self, report_id: str) -> ReleaseResult:
        """
        Automatic release evaluation.

        A pending report with an unresolved critical conflict moves to
        WITHHELD. An eligible pending report moves to RELEASED and the
        policyholder is notified. Anything else is left as it is.
        """
        report = self._get_report(report_id)
        status = report.release_status

        if status == ReleaseStatus.PENDING and self.has_unresolved_critical(report):
            self._transition(report, ReleaseStatus.WITHHELD, manual=False)
            record_audit(report, "withheld", "SYSTEM", {"reason": "Unresolved critical conflict"})
            self.db.commit()
            logger.info(f"Report {report_id} withheld: unresolved critical conflict")
            return ReleaseResult(False, ReleaseStatus.WITHHELD.value, "Critical conflicts detected - requires manual review")

        check = self.check_eligibility(report)
        if not check.eligible:
            logger.info(f"Report {report_id} not eligible for auto-release: {check.reason}")
            return ReleaseResult(False, report.release_status.value, check.reason)

        self._release(report, released_by="SYSTEM", reason=check.reason)
        self.db.commit()
        logger.info(f"Report {report_id} automatically released")

        self.notify_release(report)
        return ReleaseResult(True, ReleaseStatus.RELEASED.value, check.reason, report.released_at)

    def manual_release(self, report_id: str, released_by: str, reason: str) -> ReleaseResult:
        """
        Administrative release from PENDING or WITHHELD.

        Marks conflicts resolved and resolves open flags as admin overrides.
        Payment is not decided here; that takes an explicit engine call.
        """
        report = self._get_report(report_id)
        if not reason:
            raise ReleaseGateError("Manual release requires a reason")

        self._transition(report, ReleaseStatus.RELEASED, manual=True)
        resolved = self.flags.resolve_open_flags(report.id, released_by, "admin_override", reason)

        report.conflict_resolved = True
        self._release(report, released_by=released_by, reason=reason)
        record_audit(report, "manual_release", released_by, {"reason": reason, "flags_resolved": resolved})
        self.db.commit()
        logger.info(f"Report {report_id} manually released by {released_by} ({resolved} flag(s) resolved)")

        self.notify_release(report)
        return ReleaseResult(True, ReleaseStatus.RELEASED.value, reason, report.released_at)

    def notify_release(self, report: MergedReportDB) -> None:
        """Tell the policyholder the report is available. Failures are only logged."""
        assignment = self.db.query(DualAssignmentDB).filter(DualAssignmentDB.id == report.dual_assignment_id).first()
        recipient = assignment.policyholder_email if assignment else None
        if not recipient:
            logger.warning(f"No policyholder email for report {report.id}; release notification skipped")
            return

        status = dispatch_notification(self.notifier, recipient, NotificationKind.REPORT_READY, {
            "policy_id": report.policy_id,
            "report_id": report.id,
            "final_recommendation": report.final_recommendation.value if report.final_recommendation else None,
            "conflict_detected": report.conflict_detected,
            "conflict_resolved": report.conflict_resolved,
            "released_at": report.released_at.isoformat() if report.released_at else None,
        })
        append_history(report, "notifications", notification_entry(recipient, NotificationKind.REPORT_READY, status))
        self.db.commit()

    # =========================================================================
    # STATUS
    # =========================================================================

    def report_status(self, policy_id: str) -> Dict[str, Any]:
        """Policyholder-facing processing status for a policy."""
        report = self.db.query(MergedReportDB).filter(MergedReportDB.policy_id == policy_id).first()
        if not report:
            return {"status": "not_started", "message": "Report processing not yet started"}
        if report.release_status == ReleaseStatus.WITHHELD:
            return {
                "status": "under_review",
                "message": "Report is under manual review due to detected conflicts",
                "report_id": report.id,
            }
        if report.release_status == ReleaseStatus.RELEASED:
            return {
                "status": "completed",
                "message": "Report is available",
                "report_id": report.id,
                "released_at": report.released_at.isoformat() if report.released_at else None,
            }
        return {"status": "processing", "message": "Report is being reviewed for release", "report_id": report.id}

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _get_report(self, report_id: str) -> MergedReportDB:
        report = self.db.query(MergedReportDB).filter(MergedReportDB.id == report_id).first()
        if not report:
            raise ReleaseGateError(f"Merged report {report_id} not found")
        return report

    def _transition(self, report: MergedReportDB, target: ReleaseStatus, manual: bool) -> None:
        allowed, reason = can_transition(report.release_status, target, manual=manual)
        if not allowed:
            raise ReleaseGateError(reason)
        report.release_status = target

    def _release(self, report: MergedReportDB, released_by: str, reason: str) -> None:
        if report.release_status != ReleaseStatus.RELEASED:
            self._transition(report, ReleaseStatus.RELEASED, manual=released_by != "SYSTEM")
        report.released_at = utcnow()
        report.released_by = released_by
        report.release_reason = reason
        record_audit(report, "released", released_by, {"reason": reason})
