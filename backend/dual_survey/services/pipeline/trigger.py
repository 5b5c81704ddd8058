"""
Dual-Completion Trigger

Event-driven entry into the merge pipeline. Called each time a survey
submission reaches submitted state; merges once the sibling organization's
submission is also present. Works whichever organization finishes first,
and when both finish at the same moment only the compare-and-set winner
merges.
"""
import logging
from typing import Any, Dict, Optional, Sequence

from sqlalchemy.orm import Session

from ...models.db_models import ProcessingStatus, utcnow
from ...models.ssot import Organization, TriggerResult
from ..notifications import Notifier
from ..reconciliation.merger import (
    MergedReportExistsError, MergePreconditionError, MergeProcessingError, ReportMerger,
)
from ..store import AssignmentStore, SubmissionStore

logger = logging.getLogger(__name__)


class DualCompletionTrigger:
    """Watches for the second submission of a dual assignment."""

    def __init__(
        self,
        db_session: Session,
        notifier: Optional[Notifier] = None,
        admin_emails: Optional[Sequence[str]] = None,
        merger: Optional[ReportMerger] = None,
    ):
        self.db = db_session
        self.assignments = AssignmentStore(db_session)
        self.submissions = SubmissionStore(db_session)
        self.merger = merger or ReportMerger(db_session, notifier=notifier, admin_emails=admin_emails)

    def check_and_trigger_merging(self, policy_id: str, submitting_org: Organization) -> TriggerResult:
        """
        Update completion for a policy and merge when both surveys are in.

        Merge failures are recorded on the assignment by the merger and
        reported here as triggered=True with an error; the scheduled runner
        picks the assignment up again.
        """
        submitting_org = Organization(submitting_org)
        logger.info(f"Checking dual survey completion for policy {policy_id} (submitted by {submitting_org.value})")

        assignment = self.assignments.find_by_policy(policy_id)
        if not assignment:
            logger.warning(f"No dual assignment found for policy {policy_id}")
            return TriggerResult(triggered=False, reason="No dual assignment found")

        ammc = self.submissions.find_submission(policy_id, Organization.AMMC)
        nia = self.submissions.find_submission(policy_id, Organization.NIA)
        completion = self._record_completion(assignment, ammc, nia)

        if ammc is None or nia is None:
            waiting_for = Organization.NIA if ammc is not None else Organization.AMMC
            logger.info(f"Policy {policy_id}: waiting for {waiting_for.value} survey ({completion}%)")
            return TriggerResult(
                triggered=False,
                reason=f"Waiting for {waiting_for.value} survey",
                completion_status=completion,
                dual_assignment_id=assignment.id,
            )

        if assignment.merged_report_id or assignment.processing_status == ProcessingStatus.COMPLETED:
            return TriggerResult(
                triggered=False,
                reason="Already processed",
                completion_status=completion,
                dual_assignment_id=assignment.id,
            )

        if not self.assignments.claim_for_processing(assignment.id):
            logger.info(f"Policy {policy_id}: merge already claimed by another processor")
            return TriggerResult(
                triggered=False,
                reason="Merge already in progress",
                completion_status=completion,
                dual_assignment_id=assignment.id,
            )

        logger.info(f"Both surveys completed for policy {policy_id}; triggering merge")
        assignment_id = assignment.id
        try:
            outcome = self.merger.process_assignment(
                assignment_id, claimed=True, initiated_by=f"trigger:{submitting_org.value}",
            )
        except MergedReportExistsError as e:
            logger.warning(f"Policy {policy_id}: {e}")
            return TriggerResult(False, "Merged report already exists", completion, assignment_id)
        except MergePreconditionError as e:
            return TriggerResult(False, str(e), completion, assignment_id)
        except MergeProcessingError as e:
            logger.error(f"Policy {policy_id}: {e}")
            return TriggerResult(True, "Merge failed", completion, assignment_id, error=str(e))

        self.merger.post_merge.drain()
        return TriggerResult(True, "Merged", completion, assignment_id, merge=outcome)

    def get_completion_status(self, policy_id: str) -> Dict[str, Any]:
        """Which organizations have submitted, and where processing stands."""
        assignment = self.assignments.find_by_policy(policy_id)
        if not assignment:
            return {
                "has_dual_assignment": False,
                "completion_status": 0,
                "ammc_completed": False,
                "nia_completed": False,
            }

        ammc = self.submissions.find_submission(policy_id, Organization.AMMC)
        nia = self.submissions.find_submission(policy_id, Organization.NIA)
        return {
            "has_dual_assignment": True,
            "dual_assignment_id": assignment.id,
            "completion_status": assignment.completion_status,
            "ammc_completed": ammc is not None,
            "nia_completed": nia is not None,
            "ammc_submission_id": ammc.id if ammc else None,
            "nia_submission_id": nia.id if nia else None,
            "processing_status": assignment.processing_status.value,
            "merged_report_id": assignment.merged_report_id,
            "retry_count": assignment.retry_count,
            "recoverable": assignment.recoverable,
            "processing_error": assignment.processing_error,
        }

    def _record_completion(self, assignment, ammc, nia) -> int:
        """Raise completion to match the submissions present. Never lowers it."""
        present = {Organization.AMMC: ammc, Organization.NIA: nia}
        completion = max(assignment.completion_status or 0, sum(50 for s in present.values() if s is not None))

        changed = completion != assignment.completion_status
        for org, submission in present.items():
            if submission is None or assignment.completed_flag(org):
                continue
            prefix = org.value.lower()
            setattr(assignment, f"{prefix}_completed", True)
            setattr(assignment, f"{prefix}_completed_at", submission.submitted_at or utcnow())
            changed = True

        if changed:
            assignment.completion_status = completion
            assignment.updated_at = utcnow()
            self.db.commit()
        return completion
