"""
Payment Decision Engine

Secondary rule pass over a released merged report. Starts from the merge
confidence score, subtracts weights for every ACTIVE conflict flag, and maps
the adjusted score onto a payment decision. Dismissed and resolved flags do
not count.

The decision is recorded once per report. Re-running is a no-op until an
administrator clears the recorded decision.
"""
import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from ...config import ADMIN_ALERT_EMAILS
from ...models.db_models import DualAssignmentDB, MergedReportDB, ReleaseStatus, utcnow
from ...models.ssot import (
    ConflictType, PaymentAnalysis, PaymentDecision, PaymentDecisionType,
    Recommendation, ReviewEscalation, Severity,
)
from ..errors import ReconciliationError
from ..notifications import (
    LoggingNotifier, Notifier, NotificationKind,
    dispatch_notification, notification_entry,
)
from ..reconciliation.conflict_flags import ConflictFlagRegistry
from ..store import append_history, record_audit

logger = logging.getLogger(__name__)


class PaymentDecisionError(ReconciliationError):
    """Report missing or not in a state that allows a payment decision."""
    pass


# =============================================================================
# DECISION RULES
# =============================================================================

SEVERITY_WEIGHTS = {
    Severity.CRITICAL: -50,
    Severity.HIGH: -30,
    Severity.MEDIUM: -15,
    Severity.LOW: -5,
}

TYPE_WEIGHTS = {
    ConflictType.RECOMMENDATION_MISMATCH: -40,
    ConflictType.VALUE_DISCREPANCY: -25,
    ConflictType.RISK_ASSESSMENT_DIFFERENCE: -20,
    ConflictType.STRUCTURAL_DISAGREEMENT: -30,
    ConflictType.TIMELINE_DISCREPANCY: -10,
    ConflictType.PHOTO_EVIDENCE_CONFLICT: -15,
    ConflictType.CONDITION_ASSESSMENT_MISMATCH: -20,
    ConflictType.OTHER: -10,
}

APPROVE_THRESHOLD = 85
CONDITIONAL_THRESHOLD = 70
MORE_INFO_THRESHOLD = 50

# Severity penalties beyond this are listed as risk factors
RISK_FACTOR_PENALTY = -20

BATCH_LIMIT = 50
ENGINE_NAME = "PaymentDecisionEngine"

# Best first; used to cap a decision by the survey recommendation
_DECISION_ORDER = [
    PaymentDecisionType.APPROVE,
    PaymentDecisionType.CONDITIONAL,
    PaymentDecisionType.REQUEST_MORE_INFO,
    PaymentDecisionType.REJECT,
]

_RECOMMENDATION_CAPS = {
    Recommendation.APPROVE: PaymentDecisionType.APPROVE,
    Recommendation.REQUEST_MORE_INFO: PaymentDecisionType.REQUEST_MORE_INFO,
    Recommendation.REJECT: PaymentDecisionType.REJECT,
}


# =============================================================================
# PURE ANALYSIS
# =============================================================================

def perform_analysis(
    base_recommendation: Optional[Recommendation],
    confidence_score: int,
    flags: Sequence[Any],
) -> PaymentAnalysis:
    """
    Score a report against its active flags.

    flags only need .severity and .conflict_type.
    """
    severity_counts = Counter(Severity(f.severity) for f in flags)
    type_counts = Counter(ConflictType(f.conflict_type) for f in flags)

    severity_penalty = 0
    risk_factors = []
    for flag in flags:
        penalty = SEVERITY_WEIGHTS[Severity(flag.severity)]
        severity_penalty += penalty
        if penalty < RISK_FACTOR_PENALTY:
            risk_factors.append(
                f"{Severity(flag.severity).value} severity conflict in {ConflictType(flag.conflict_type).value}"
            )

    type_penalty = sum(TYPE_WEIGHTS[ConflictType(f.conflict_type)] for f in flags)

    mitigating = []
    if confidence_score >= 90:
        mitigating.append("High initial confidence score")
    if not flags:
        mitigating.append("No active conflicts")

    return PaymentAnalysis(
        base_recommendation=base_recommendation,
        confidence_score=confidence_score,
        adjusted_score=max(0, confidence_score + severity_penalty + type_penalty),
        conflict_count=len(flags),
        severity_counts={s: severity_counts.get(s, 0) for s in Severity},
        type_counts=dict(type_counts),
        severity_penalty=severity_penalty,
        type_penalty=type_penalty,
        risk_factors=risk_factors,
        mitigating_factors=mitigating,
    )


def make_decision(analysis: PaymentAnalysis) -> PaymentDecision:
    """
    Map an analysis onto a decision.

    Score bands first, then the hard overrides: an active critical flag
    forces reject, a recommendation mismatch downgrades approve to
    conditional. Finally the decision is capped by the survey recommendation.
    """
    score = analysis.adjusted_score
    critical = analysis.severity_counts.get(Severity.CRITICAL, 0)
    decision = PaymentDecision(decision=PaymentDecisionType.APPROVE, payment_enabled=False, confidence=score)

    if score >= APPROVE_THRESHOLD and critical == 0:
        decision.decision = PaymentDecisionType.APPROVE
        decision.reasoning.append("High confidence score with no critical conflicts")
    elif score >= CONDITIONAL_THRESHOLD:
        decision.decision = PaymentDecisionType.CONDITIONAL
        decision.reasoning.append("Moderate confidence score - conditional approval pending review")
        if analysis.severity_counts.get(Severity.HIGH, 0) > 0:
            decision.conditions.append("Resolve high-severity conflicts")
            decision.review_required = True
            decision.escalation_level = ReviewEscalation.SUPERVISOR
        if analysis.severity_counts.get(Severity.MEDIUM, 0) > 2:
            decision.conditions.append("Review multiple medium-severity conflicts")
    elif score >= MORE_INFO_THRESHOLD:
        decision.decision = PaymentDecisionType.REQUEST_MORE_INFO
        decision.reasoning.append("Insufficient confidence - additional information required")
        decision.required_actions.append("Conduct additional property assessment")
        decision.review_required = True
        decision.escalation_level = ReviewEscalation.MANAGER
    else:
        decision.decision = PaymentDecisionType.REJECT
        decision.reasoning.append("Low confidence score or critical conflicts detected")
        decision.review_required = True
        decision.escalation_level = ReviewEscalation.DIRECTOR

    if critical > 0:
        decision.decision = PaymentDecisionType.REJECT
        decision.reasoning.append("Critical conflicts require manual resolution")
        decision.review_required = True
        decision.escalation_level = ReviewEscalation.DIRECTOR

    if analysis.type_counts.get(ConflictType.RECOMMENDATION_MISMATCH, 0) > 0 and decision.decision == PaymentDecisionType.APPROVE:
        decision.decision = PaymentDecisionType.CONDITIONAL
        decision.conditions.append("Resolve surveyor recommendation mismatch")
        decision.review_required = True

    cap = _RECOMMENDATION_CAPS.get(analysis.base_recommendation, PaymentDecisionType.REQUEST_MORE_INFO)
    if _DECISION_ORDER.index(decision.decision) < _DECISION_ORDER.index(cap):
        decision.decision = cap
        label = analysis.base_recommendation.value if analysis.base_recommendation else "undetermined"
        decision.reasoning.append(f"Payment capped by survey recommendation: {label}")
        if cap == PaymentDecisionType.REQUEST_MORE_INFO and not decision.required_actions:
            decision.required_actions.append("Obtain the information requested by the surveyors")

    for conflict_type, count in analysis.type_counts.items():
        if count > 0:
            decision.reasoning.append(f"{count} {conflict_type.value.replace('_', ' ')} conflict(s) detected")

    decision.payment_enabled = decision.decision == PaymentDecisionType.APPROVE
    return decision


# =============================================================================
# ENGINE
# =============================================================================

class PaymentDecisionEngine:
    """Records payment decisions on released merged reports."""

    def __init__(self, db_session: Session, notifier: Optional[Notifier] = None, admin_emails: Optional[Sequence[str]] = None):
        self.db = db_session
        self.notifier = notifier or LoggingNotifier()
        self.admin_emails = list(ADMIN_ALERT_EMAILS if admin_emails is None else admin_emails)
        self.flags = ConflictFlagRegistry(db_session, notifier=self.notifier, admin_emails=self.admin_emails)

    def analyze_payment_decision(self, report_id: str) -> PaymentDecision:
        """
        Decide payment for a released report.

        Returns the already recorded decision unchanged when one exists.
        """
        report = self._get_report(report_id)
        if report.payment_decision:
            logger.info(f"Payment decision already recorded for report {report_id}; returning it unchanged")
            return PaymentDecision.from_dict(report.payment_decision)
        if report.release_status != ReleaseStatus.RELEASED:
            raise PaymentDecisionError(
                f"Report {report_id} is {report.release_status.value}; payment decisions require a released report"
            )

        flags = self.flags.active_flags(report.id)
        analysis = perform_analysis(report.final_recommendation, report.confidence_score or 0, flags)
        decision = make_decision(analysis)
        decision.decided_at = utcnow()
        decision.decided_by = ENGINE_NAME

        report.payment_enabled = (
            decision.payment_enabled
            and report.release_status == ReleaseStatus.RELEASED
            and report.final_recommendation == Recommendation.APPROVE
        )
        report.payment_decision = decision.to_dict()
        record_audit(report, "payment_decided", ENGINE_NAME, {
            "decision": decision.decision.value,
            "adjusted_score": analysis.adjusted_score,
            "active_flags": analysis.conflict_count,
        })
        self.db.commit()

        logger.info(
            f"Payment decision for report {report_id}: {decision.decision.value} "
            f"(adjusted score {analysis.adjusted_score}, {analysis.conflict_count} active flag(s))"
        )

        self._notify(report, decision)
        return decision

    def clear_decision(self, report_id: str, cleared_by: str, reason: str) -> MergedReportDB:
        """Administrative override: drop the recorded decision and disable payment."""
        report = self._get_report(report_id)
        if not report.payment_decision:
            raise PaymentDecisionError(f"Report {report_id} has no payment decision to clear")

        previous = report.payment_decision.get("decision")
        report.payment_decision = None
        report.payment_enabled = False
        record_audit(report, "payment_decision_cleared", cleared_by, {"previous": previous, "reason": reason})
        self.db.commit()

        logger.info(f"Payment decision for report {report_id} cleared by {cleared_by}: {reason}")
        return report

    def process_all_pending(self, limit: int = BATCH_LIMIT) -> Dict[str, Any]:
        """Decide every released report that has no decision yet, in one bounded batch."""
        pending = (
            self.db.query(MergedReportDB)
            .filter(
                MergedReportDB.release_status == ReleaseStatus.RELEASED,
                MergedReportDB.payment_decision.is_(None),
            )
            .order_by(MergedReportDB.released_at)
            .limit(limit)
            .all()
        )
        report_ids = [r.id for r in pending]
        logger.info(f"Found {len(report_ids)} report(s) pending payment decisions")

        results: List[Dict[str, Any]] = []
        for report_id in report_ids:
            try:
                decision = self.analyze_payment_decision(report_id)
                results.append({"report_id": report_id, "success": True, "decision": decision.decision.value})
            except Exception as e:
                self.db.rollback()
                logger.error(f"Payment decision failed for report {report_id}: {e}")
                results.append({"report_id": report_id, "success": False, "error": str(e)})

        return {
            "processed": len(results),
            "successful": sum(1 for r in results if r["success"]),
            "failed": sum(1 for r in results if not r["success"]),
            "results": results,
        }

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _get_report(self, report_id: str) -> MergedReportDB:
        report = self.db.query(MergedReportDB).filter(MergedReportDB.id == report_id).first()
        if not report:
            raise PaymentDecisionError(f"Merged report {report_id} not found")
        return report

    def _notify(self, report: MergedReportDB, decision: PaymentDecision) -> None:
        entries = []
        assignment = self.db.query(DualAssignmentDB).filter(DualAssignmentDB.id == report.dual_assignment_id).first()
        recipient = assignment.policyholder_email if assignment else None
        if recipient:
            status = dispatch_notification(self.notifier, recipient, NotificationKind.PAYMENT_DECISION, {
                "policy_id": report.policy_id,
                "report_id": report.id,
                "decision": decision.decision.value,
                "payment_enabled": report.payment_enabled,
                "reasoning": decision.reasoning,
                "conditions": decision.conditions,
                "required_actions": decision.required_actions,
            })
            entries.append(notification_entry(recipient, NotificationKind.PAYMENT_DECISION, status))
        else:
            logger.warning(f"No policyholder email for report {report.id}; payment notification skipped")

        if decision.review_required:
            for email in self.admin_emails:
                status = dispatch_notification(self.notifier, email, NotificationKind.REVIEW_REQUIRED, {
                    "report_id": report.id,
                    "policy_id": report.policy_id,
                    "decision": decision.decision.value,
                    "escalation_level": decision.escalation_level.value,
                })
                entries.append(notification_entry(email, NotificationKind.REVIEW_REQUIRED, status))

        for entry in entries:
            append_history(report, "notifications", entry)
        if entries:
            self.db.commit()
