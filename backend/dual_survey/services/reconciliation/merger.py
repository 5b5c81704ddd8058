"""
Dual Survey Engine - Report Merger

Turns a completed dual assignment and its two submissions into exactly one
MergedReport per policy.

Pipeline:
  SurveySubmissionDB x2 -> SurveySections -> section classifiers
  -> MergeResult (merged values, conflicts, quality) -> MergedReportDB
  -> ConflictFlags (high/critical) -> admin alerts -> post-merge queue
"""
import copy
import logging
import time
import traceback
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import (
    DualAssignmentDB, MergedReportDB, SurveySubmissionDB,
    ProcessingStatus, ReleaseStatus, utcnow,
)
from ...models.ssot import (
    Conflict, MergeOutcome, MergeResult, Organization, QualityAssessment,
    Severity, SurveySections, normalize_recommendation,
)
from ..errors import ReconciliationError
from ..notifications import Notifier
from ..store import AssignmentStore, MergedReportStore, SubmissionStore, record_audit
from .conflict_flags import ConflictFlagRegistry, FLAG_SEVERITIES
from .conflict_rules import (
    classify_measurements, classify_property_details, classify_recommendation,
    classify_valuation,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class MergePreconditionError(ReconciliationError):
    """Assignment or submissions not in a mergeable state. Nothing was merged."""
    pass


class MergedReportExistsError(ReconciliationError):
    """The policy already has a merged report."""

    def __init__(self, policy_id: str, merged_report_id: str):
        self.policy_id = policy_id
        self.merged_report_id = merged_report_id
        super().__init__(f"Merged report already exists for policy {policy_id}: {merged_report_id}")


class MergeProcessingError(ReconciliationError):
    """Unexpected failure during a merge. The assignment is marked failed."""

    def __init__(self, assignment_id: str, message: str, recoverable: bool):
        self.assignment_id = assignment_id
        self.recoverable = recoverable
        super().__init__(f"Merge failed for assignment {assignment_id}: {message}")


# =============================================================================
# POLICY CONSTANTS
# =============================================================================

MERGING_ALGORITHM_VERSION = "1.0.0"

# Points removed from 100 per conflict. Must keep critical > high > medium.
CONFIDENCE_PENALTIES = {
    Severity.CRITICAL: 30,
    Severity.HIGH: 15,
    Severity.MEDIUM: 5,
    Severity.LOW: 0,
}

RELEASE_CONFIDENCE_FLOOR = 70
MAX_HIGH_CONFLICTS_FOR_RELEASE = 2

COMPLETENESS_FIELDS = (
    ("property_details", "property_type"),
    ("property_details", "address"),
    ("measurements", "total_area"),
    ("valuation", "estimated_value"),
)


# =============================================================================
# PURE MERGE
# =============================================================================

def calculate_confidence(conflicts: Sequence[Conflict]) -> int:
    score = 100 - sum(CONFIDENCE_PENALTIES[c.severity] for c in conflicts)
    return max(0, score)


def calculate_data_completeness(merged_data: Dict[str, Any]) -> float:
    """Percentage of required merged fields that carry a value."""
    filled = 0
    for section, field_name in COMPLETENESS_FIELDS:
        value = (merged_data.get(section) or {}).get(field_name)
        if value is not None and value != "":
            filled += 1
    return round(filled / len(COMPLETENESS_FIELDS) * 100, 1)


def assess_quality(conflicts: Sequence[Conflict], merged_data: Dict[str, Any]) -> QualityAssessment:
    """
    Aggregate conflicts into a confidence score and release assessment.

    withheld: any critical conflict
    pending:  more than two high conflicts, or confidence below the floor
    ready:    everything else
    """
    counts = {severity: 0 for severity in Severity}
    for conflict in conflicts:
        counts[conflict.severity] += 1

    confidence = calculate_confidence(conflicts)

    if counts[Severity.CRITICAL] > 0:
        assessment = "withheld"
    elif counts[Severity.HIGH] > MAX_HIGH_CONFLICTS_FOR_RELEASE or confidence < RELEASE_CONFIDENCE_FLOOR:
        assessment = "pending"
    else:
        assessment = "ready"

    return QualityAssessment(
        confidence_score=confidence,
        release_assessment=assessment,
        total_conflicts=len(conflicts),
        critical_conflicts=counts[Severity.CRITICAL],
        high_conflicts=counts[Severity.HIGH],
        medium_conflicts=counts[Severity.MEDIUM],
        low_conflicts=counts[Severity.LOW],
        data_completeness=calculate_data_completeness(merged_data),
    )


def merge_sections(ammc: SurveySections, nia: SurveySections) -> MergeResult:
    """Run every section classifier and aggregate the result."""
    property_merge = classify_property_details(ammc.property_details, nia.property_details)
    measurement_merge = classify_measurements(ammc.measurements, nia.measurements)
    valuation_merge = classify_valuation(ammc.valuation, nia.valuation)
    recommendation, recommendation_conflict = classify_recommendation(ammc.recommendation, nia.recommendation)

    conflicts: List[Conflict] = []
    conflicts.extend(property_merge.conflicts)
    conflicts.extend(measurement_merge.conflicts)
    conflicts.extend(valuation_merge.conflicts)
    if recommendation_conflict:
        conflicts.append(recommendation_conflict)

    merged_data = {
        "property_details": property_merge.merged,
        "measurements": measurement_merge.merged,
        "valuation": valuation_merge.merged,
        "final_recommendation": recommendation.value if recommendation else None,
    }

    return MergeResult(
        merged_data=merged_data,
        conflicts=conflicts,
        final_recommendation=recommendation,
        quality=assess_quality(conflicts, merged_data),
    )


def snapshot_submission(submission: SurveySubmissionDB) -> Dict[str, Any]:
    """Frozen copy of a submission so later edits never alter the report."""
    return {
        "submission_id": submission.id,
        "organization": Organization(submission.organization).value,
        "recommendation": submission.recommended_action,
        "surveyor_id": submission.surveyor_id,
        "surveyor_name": submission.surveyor_name,
        "surveyor_license": submission.surveyor_license,
        "submission_date": submission.submitted_at.isoformat() if submission.submitted_at else None,
        "property_details": copy.deepcopy(submission.property_details or {}),
        "measurements": copy.deepcopy(submission.measurements or {}),
        "valuation": copy.deepcopy(submission.valuation or {}),
        "survey_notes": submission.survey_notes,
        "photos": list(submission.photos or []),
    }


# =============================================================================
# REPORT MERGER
# =============================================================================

class ReportMerger:
    """
    Produces and persists the merged report for a dual assignment.

    Idempotent per policy: a second call for a policy that already has a
    report raises MergedReportExistsError and never writes a duplicate.
    """

    def __init__(
        self,
        db_session: Session,
        notifier: Optional[Notifier] = None,
        admin_emails: Optional[Sequence[str]] = None,
        post_merge=None,
    ):
        from ..pipeline.post_processing import PostMergeQueue

        self.db = db_session
        self.assignments = AssignmentStore(db_session)
        self.submissions = SubmissionStore(db_session)
        self.reports = MergedReportStore(db_session)
        self.flags = ConflictFlagRegistry(db_session, notifier=notifier, admin_emails=admin_emails)
        self.post_merge = post_merge if post_merge is not None else PostMergeQueue(
            db_session, notifier=notifier, admin_emails=admin_emails,
        )

    def process_assignment(self, assignment_id: str, claimed: bool = False, initiated_by: str = "SYSTEM") -> MergeOutcome:
        """
        Merge the two submissions of a completed dual assignment.

        claimed=True means the caller already won the processing_status
        compare-and-set; otherwise the merger claims it itself after the
        preconditions pass.
        """
        started = time.monotonic()

        assignment = self.assignments.find(assignment_id)
        if not assignment:
            raise MergePreconditionError(f"Dual assignment {assignment_id} not found")
        policy_id = assignment.policy_id

        existing = self._existing_report(assignment)
        if existing:
            self._heal_assignment(assignment, existing.id)
            raise MergedReportExistsError(policy_id, existing.id)

        if (assignment.completion_status or 0) < 100:
            self._reject(assignment_id, f"Assignment {assignment_id} is not fully completed ({assignment.completion_status}%)", claimed)

        ammc = self.submissions.find_submission(policy_id, Organization.AMMC)
        nia = self.submissions.find_submission(policy_id, Organization.NIA)
        missing = [org.value for org, sub in ((Organization.AMMC, ammc), (Organization.NIA, nia)) if sub is None]
        if missing:
            self._reject(assignment_id, f"Missing submitted survey from {', '.join(missing)} for policy {policy_id}", claimed)

        unreadable = [
            f"{org.value}={sub.recommended_action!r}"
            for org, sub in ((Organization.AMMC, ammc), (Organization.NIA, nia))
            if sub.recommended_action is not None and normalize_recommendation(sub.recommended_action) is None
        ]
        if unreadable:
            self._reject(assignment_id, f"Unrecognised survey recommendation for policy {policy_id}: {', '.join(unreadable)}", claimed)

        if not claimed and not self.assignments.claim_for_processing(assignment_id):
            logger.warning(f"Assignment {assignment_id} is already being processed; merge skipped")
            raise MergePreconditionError(f"Assignment {assignment_id} is already being processed")

        logger.info(f"Merging reports for policy {policy_id} (assignment {assignment_id})")

        try:
            result = merge_sections(SurveySections.from_submission(ammc), SurveySections.from_submission(nia))
            processing_time_ms = int((time.monotonic() - started) * 1000)

            report = self._build_report(assignment, ammc, nia, result, processing_time_ms, initiated_by)
            self.db.add(report)
            flags = self.flags.create_flags(report, result.conflicts)
            self.db.flush()

            self.assignments.mark_completed(assignment, report.id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.reports.find_by_policy(policy_id)
            if existing:
                logger.warning(f"Concurrent merge for policy {policy_id} lost the race to report {existing.id}")
                assignment = self.assignments.find(assignment_id)
                self._heal_assignment(assignment, existing.id)
                raise MergedReportExistsError(policy_id, existing.id)
            raise self._fail(assignment_id, "Integrity error while saving merged report")
        except Exception as e:
            self.db.rollback()
            raise self._fail(assignment_id, str(e) or e.__class__.__name__) from e

        logger.info(
            f"Merged report {report.id} created for policy {policy_id}: "
            f"{len(result.conflicts)} conflict(s), recommendation={report.merging_metadata['final_recommendation']}, "
            f"confidence={result.quality.confidence_score}, release={report.release_status.value}"
        )

        self.flags.notify_admins(flags)
        self.post_merge.enqueue(report.id)

        return MergeOutcome(
            merged_report_id=report.id,
            conflict_count=len(result.conflicts),
            recommendation=result.final_recommendation.value if result.final_recommendation else None,
            processing_time_ms=processing_time_ms,
            release_status=report.release_status.value,
            confidence_score=result.quality.confidence_score,
        )

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _existing_report(self, assignment: DualAssignmentDB) -> Optional[MergedReportDB]:
        if assignment.merged_report_id:
            report = self.reports.get(assignment.merged_report_id)
            if report:
                return report
        return self.reports.find_by_policy(assignment.policy_id)

    def _heal_assignment(self, assignment: Optional[DualAssignmentDB], report_id: str) -> None:
        """Point an assignment at the report that already exists for its policy."""
        if assignment is None:
            return
        if assignment.processing_status == ProcessingStatus.COMPLETED and assignment.merged_report_id:
            return
        self.assignments.mark_completed(assignment, report_id)
        self.db.commit()
        logger.info(f"Assignment {assignment.id} linked to existing merged report {report_id}")

    def _reject(self, assignment_id: str, message: str, claimed: bool) -> None:
        logger.warning(f"Merge precondition failed: {message}")
        if claimed:
            self.assignments.release_claim(assignment_id)
        self.assignments.record_attempt(assignment_id, message)
        raise MergePreconditionError(message)

    def _fail(self, assignment_id: str, message: str) -> MergeProcessingError:
        assignment = self.assignments.record_failure(assignment_id, message, traceback.format_exc())
        recoverable = bool(assignment.recoverable) if assignment else False
        return MergeProcessingError(assignment_id, message, recoverable)

    def _build_report(
        self,
        assignment: DualAssignmentDB,
        ammc: SurveySubmissionDB,
        nia: SurveySubmissionDB,
        result: MergeResult,
        processing_time_ms: int,
        initiated_by: str,
    ) -> MergedReportDB:
        quality = result.quality
        conflict_detected = bool(result.conflicts)
        # Conflicts below flag severity are settled by the merge rules themselves
        flagged = [c for c in result.conflicts if c.severity in FLAG_SEVERITIES]
        now = utcnow()

        report = MergedReportDB(
            id=str(uuid4()),
            policy_id=assignment.policy_id,
            dual_assignment_id=assignment.id,
            ammc_submission_id=ammc.id,
            nia_submission_id=nia.id,
            merged_data=result.merged_data,
            conflicts=[c.to_dict() for c in result.conflicts],
            conflict_detected=conflict_detected,
            conflict_resolved=conflict_detected and not flagged,
            final_recommendation=result.final_recommendation,
            confidence_score=quality.confidence_score,
            quality_metrics=quality.to_dict(),
            report_sections={
                "ammc": snapshot_submission(ammc),
                "nia": snapshot_submission(nia),
            },
            merging_metadata={
                "merged_by": initiated_by,
                "merged_at": now.isoformat(),
                "algorithm_version": MERGING_ALGORITHM_VERSION,
                "processing_time_ms": processing_time_ms,
                "quality_score": quality.confidence_score,
                "final_recommendation": result.final_recommendation.value if result.final_recommendation else None,
            },
            release_status=ReleaseStatus.WITHHELD if quality.release_assessment == "withheld" else ReleaseStatus.PENDING,
            payment_enabled=False,
            notifications=[],
            audit_history=[],
            access_history=[],
        )
        record_audit(report, "merged", initiated_by, {
            "conflicts": quality.total_conflicts,
            "confidence_score": quality.confidence_score,
            "release_assessment": quality.release_assessment,
        })
        if report.release_status == ReleaseStatus.WITHHELD:
            record_audit(report, "withheld", "SYSTEM", {"reason": "Critical conflict detected at merge"})
        return report
