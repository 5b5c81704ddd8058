"""
Dual Survey Engine - Record Store

Keyed lookups and partial updates over the relational store. The pipeline
only needs query-by-field and update-by-id; everything else stays here.

The compare-and-set claim on DualAssignment.processing_status is the
single-writer guard for merge work.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

from ..models.db_models import (
    DualAssignmentDB, SurveySubmissionDB, MergedReportDB,
    ProcessingStatus, SubmissionStatus, utcnow,
)
from ..models.ssot import Organization

logger = logging.getLogger(__name__)

# Processing retries before an assignment stops being recoverable
MAX_PROCESSING_RETRIES = 3

# Access log entries kept on a merged report
ACCESS_HISTORY_LIMIT = 50

TERMINAL_SUBMISSION_STATES = (SubmissionStatus.SUBMITTED, SubmissionStatus.APPROVED)


class SubmissionStore:
    """Read access to per-organization survey submissions."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find_submission(
        self,
        policy_id: str,
        organization: Organization,
    ) -> Optional[SurveySubmissionDB]:
        """Latest submission for (policy, organization) in a terminal submitted state."""
        return (
            self.db.query(SurveySubmissionDB)
            .filter(
                SurveySubmissionDB.policy_id == policy_id,
                SurveySubmissionDB.organization == organization,
                SurveySubmissionDB.status.in_(TERMINAL_SUBMISSION_STATES),
            )
            .order_by(SurveySubmissionDB.submitted_at.desc(), SurveySubmissionDB.created_at.desc())
            .first()
        )


class AssignmentStore:
    """Read/update access to DualAssignment rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find(self, assignment_id: str) -> Optional[DualAssignmentDB]:
        return self.db.query(DualAssignmentDB).filter(DualAssignmentDB.id == assignment_id).first()

    def find_by_policy(self, policy_id: str) -> Optional[DualAssignmentDB]:
        return self.db.query(DualAssignmentDB).filter(DualAssignmentDB.policy_id == policy_id).first()

    # =========================================================================
    # ADVISORY LOCK
    # =========================================================================

    def claim_for_processing(
        self,
        assignment_id: str,
        stale_before: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set processing_status to PROCESSING.

        Succeeds only from PENDING or FAILED with no merged report set. When
        stale_before is given, a PROCESSING row last touched before it is also
        claimable (its previous owner died mid-flight). Exactly one of any
        number of concurrent callers wins.
        """
        now = utcnow()
        claimable = [DualAssignmentDB.processing_status.in_([ProcessingStatus.PENDING, ProcessingStatus.FAILED])]
        if stale_before is not None:
            claimable.append(and_(
                DualAssignmentDB.processing_status == ProcessingStatus.PROCESSING,
                DualAssignmentDB.updated_at < stale_before,
            ))

        claimed = (
            self.db.query(DualAssignmentDB)
            .filter(
                DualAssignmentDB.id == assignment_id,
                DualAssignmentDB.merged_report_id.is_(None),
                or_(*claimable),
            )
            .update(
                {
                    DualAssignmentDB.processing_status: ProcessingStatus.PROCESSING,
                    DualAssignmentDB.processing_started_at: now,
                    DualAssignmentDB.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

        if claimed:
            logger.info(f"Claimed assignment {assignment_id} for processing")
        return bool(claimed)

    def release_claim(self, assignment_id: str) -> None:
        """Hand a PROCESSING assignment back to PENDING without touching retries."""
        (
            self.db.query(DualAssignmentDB)
            .filter(
                DualAssignmentDB.id == assignment_id,
                DualAssignmentDB.processing_status == ProcessingStatus.PROCESSING,
            )
            .update(
                {
                    DualAssignmentDB.processing_status: ProcessingStatus.PENDING,
                    DualAssignmentDB.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

    # =========================================================================
    # OUTCOME RECORDING
    # =========================================================================

    def record_attempt(self, assignment_id: str, message: str) -> None:
        """Record a rejected attempt. Processing status is left alone."""
        assignment = self.find(assignment_id)
        if not assignment:
            return
        assignment.last_attempt_at = utcnow()
        assignment.last_attempt_error = message
        self.db.commit()

    def record_failure(self, assignment_id: str, message: str, trace: Optional[str] = None) -> Optional[DualAssignmentDB]:
        """Mark FAILED, bump the retry count, and recompute recoverable."""
        assignment = self.find(assignment_id)
        if not assignment:
            return None
        if assignment.processing_status == ProcessingStatus.COMPLETED:
            logger.warning(f"Ignoring failure for completed assignment {assignment_id}: {message}")
            return assignment

        now = utcnow()
        assignment.retry_count = (assignment.retry_count or 0) + 1
        assignment.recoverable = assignment.retry_count < MAX_PROCESSING_RETRIES
        assignment.processing_status = ProcessingStatus.FAILED
        assignment.processing_failed_at = now
        assignment.processing_error = message
        assignment.processing_error_trace = trace
        assignment.last_attempt_at = now
        assignment.last_attempt_error = message
        assignment.updated_at = now
        self.db.commit()

        logger.error(
            f"Assignment {assignment_id} failed (attempt {assignment.retry_count}, "
            f"recoverable={assignment.recoverable}): {message}"
        )
        return assignment

    def mark_completed(self, assignment: DualAssignmentDB, merged_report_id: str) -> None:
        """Set the merged report reference and COMPLETED. Caller commits."""
        now = utcnow()
        if assignment.merged_report_id is None:
            assignment.merged_report_id = merged_report_id
        assignment.processing_status = ProcessingStatus.COMPLETED
        assignment.processing_completed_at = now
        assignment.processing_error = None
        assignment.processing_error_trace = None
        assignment.updated_at = now


class MergedReportStore:
    """Lookups and history bookkeeping for merged reports."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, report_id: str) -> Optional[MergedReportDB]:
        return self.db.query(MergedReportDB).filter(MergedReportDB.id == report_id).first()

    def find_by_policy(self, policy_id: str) -> Optional[MergedReportDB]:
        return self.db.query(MergedReportDB).filter(MergedReportDB.policy_id == policy_id).first()


# =============================================================================
# JSON HISTORY HELPERS
# =============================================================================
#
# JSON columns are not mutation-tracked: lists are copied and reassigned.
#

def append_history(report: MergedReportDB, attribute: str, entry: Dict[str, Any], limit: Optional[int] = None) -> None:
    entries: List[Dict[str, Any]] = list(getattr(report, attribute) or [])
    entries.append(entry)
    if limit is not None and len(entries) > limit:
        entries = entries[-limit:]
    setattr(report, attribute, entries)


def record_audit(report: MergedReportDB, action: str, actor: str = "SYSTEM", details: Optional[Dict[str, Any]] = None) -> None:
    append_history(report, "audit_history", {
        "action": action,
        "actor": actor,
        "at": utcnow().isoformat(),
        "details": details or {},
    })


def record_access(report: MergedReportDB, accessed_by: str, access_type: str = "view") -> None:
    append_history(report, "access_history", {
        "accessed_by": accessed_by,
        "access_type": access_type,
        "at": utcnow().isoformat(),
    }, limit=ACCESS_HISTORY_LIMIT)
