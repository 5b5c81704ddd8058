"""
Reconciliation API Routes

Admin/API layer over dual assignments, submissions, merged reports and
conflict flags. Submission recording runs the dual-completion trigger.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..database import get_db
from ..models.db_models import (
    ConflictFlagDB, DualAssignmentDB, MergedReportDB, SurveySubmissionDB,
    SubmissionStatus, utcnow,
)
from ..models.ssot import Organization, Recommendation, normalize_recommendation
from ..services.notifications import Notifier, get_notifier
from ..services.reconciliation import (
    ConflictFlagRegistry, ConflictFlagError, ReportMerger,
    MergePreconditionError, MergedReportExistsError, MergeProcessingError,
)
from ..services.reconciliation.conflict_flags import flag_to_dict
from ..services.decisioning import ReleaseGate, ReleaseGateError
from ..services.pipeline import DualCompletionTrigger
from ..services.store import record_access


router = APIRouter(
    prefix="/reconciliation",
    tags=["reconciliation"],
    dependencies=[Depends(verify_internal_key)],
)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateAssignmentRequest(BaseModel):
    policy_id: str
    ammc_assignment_id: Optional[str] = None
    nia_assignment_id: Optional[str] = None
    policyholder_email: Optional[str] = None


class SubmissionRequest(BaseModel):
    """A survey submission from one organization."""
    policy_id: str
    organization: Organization
    assignment_id: Optional[str] = None
    surveyor_id: Optional[str] = None
    surveyor_name: Optional[str] = None
    surveyor_license: Optional[str] = None
    property_details: Dict[str, Any] = Field(default_factory=dict)
    measurements: Dict[str, Any] = Field(default_factory=dict)
    valuation: Dict[str, Any] = Field(default_factory=dict)
    recommended_action: Optional[str] = Field(None, description="approve | reject | request_more_info")
    survey_notes: Optional[str] = None
    photos: List[str] = Field(default_factory=list, description="Opaque document URLs")
    status: SubmissionStatus = SubmissionStatus.SUBMITTED
    submitted_at: Optional[datetime] = None

    @field_validator('recommended_action')
    @classmethod
    def validate_recommended_action(cls, v):
        if v is not None and normalize_recommendation(v) is None:
            valid = [r.value for r in Recommendation]
            raise ValueError(f'Invalid recommended action. Must be one of: {", ".join(valid)}')
        return v


class TriggerRequest(BaseModel):
    policy_id: str
    organization: Organization


class ManualReleaseRequest(BaseModel):
    released_by: str
    reason: str = Field(..., min_length=1)


class ReviewFlagRequest(BaseModel):
    reviewed_by: str
    decision: str = Field(..., description="valid_conflict | false_positive | requires_manual_review | escalate")
    notes: Optional[str] = None


class ResolveFlagRequest(BaseModel):
    resolved_by: str
    method: str = Field(..., description="admin_override | surveyor_clarification | user_acceptance | policy_update")
    notes: Optional[str] = None


class EscalateFlagRequest(BaseModel):
    escalated_by: str
    escalated_to: str
    reason: Optional[str] = None


# =============================================================================
# SERIALIZATION
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def report_to_dict(report: MergedReportDB) -> Dict[str, Any]:
    return {
        "id": report.id,
        "policy_id": report.policy_id,
        "dual_assignment_id": report.dual_assignment_id,
        "ammc_submission_id": report.ammc_submission_id,
        "nia_submission_id": report.nia_submission_id,
        "merged_data": report.merged_data,
        "conflicts": report.conflicts or [],
        "conflict_detected": report.conflict_detected,
        "conflict_resolved": report.conflict_resolved,
        "final_recommendation": report.final_recommendation.value if report.final_recommendation else None,
        "confidence_score": report.confidence_score,
        "quality_metrics": report.quality_metrics,
        "release_status": report.release_status.value,
        "released_at": _iso(report.released_at),
        "released_by": report.released_by,
        "payment_enabled": report.payment_enabled,
        "payment_decision": report.payment_decision,
        "report_sections": report.report_sections,
        "merging_metadata": report.merging_metadata,
        "audit_history": report.audit_history or [],
        "created_at": _iso(report.created_at),
    }


def _get_report_or_404(db: Session, report_id: str) -> MergedReportDB:
    report = db.query(MergedReportDB).filter(MergedReportDB.id == report_id).first()
    if not report:
        raise HTTPException(status_code=404, detail=f"Merged report {report_id} not found")
    return report


def _get_flag_or_404(db: Session, flag_id: str) -> ConflictFlagDB:
    flag = db.query(ConflictFlagDB).filter(ConflictFlagDB.id == flag_id).first()
    if not flag:
        raise HTTPException(status_code=404, detail=f"Conflict flag {flag_id} not found")
    return flag


# =============================================================================
# ASSIGNMENTS & SUBMISSIONS
# =============================================================================

@router.post("/assignments", response_model=dict, status_code=201)
async def create_assignment(
    request: CreateAssignmentRequest,
    db: Session = Depends(get_db),
):
    """Create the dual assignment for a policy. One per policy."""
    existing = db.query(DualAssignmentDB).filter(DualAssignmentDB.policy_id == request.policy_id).first()
    if existing:
        raise HTTPException(status_code=409, detail=f"Dual assignment already exists for policy {request.policy_id}")

    assignment = DualAssignmentDB(
        id=str(uuid4()),
        policy_id=request.policy_id,
        ammc_assignment_id=request.ammc_assignment_id,
        nia_assignment_id=request.nia_assignment_id,
        policyholder_email=request.policyholder_email,
    )
    db.add(assignment)
    db.commit()

    return {
        "id": assignment.id,
        "policy_id": assignment.policy_id,
        "completion_status": assignment.completion_status,
        "processing_status": assignment.processing_status.value,
    }


@router.post("/assignments/{assignment_id}/process", response_model=dict)
async def process_assignment(
    assignment_id: str,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Synchronously merge a completed assignment.

    Fails loudly: precondition violations are 400, an existing merged
    report is 409.
    """
    if not db.query(DualAssignmentDB).filter(DualAssignmentDB.id == assignment_id).first():
        raise HTTPException(status_code=404, detail=f"Dual assignment {assignment_id} not found")

    merger = ReportMerger(db, notifier=notifier)
    try:
        outcome = merger.process_assignment(assignment_id, initiated_by="admin")
    except MergedReportExistsError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "merged_report_id": e.merged_report_id})
    except MergePreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MergeProcessingError as e:
        raise HTTPException(status_code=500, detail={"message": str(e), "recoverable": e.recoverable})

    post = merger.post_merge.drain()
    return {
        **outcome.to_dict(),
        "post_merge": [o.to_dict() for o in post],
    }


@router.get("/policies/{policy_id}/status", response_model=dict)
async def get_policy_status(
    policy_id: str,
    db: Session = Depends(get_db),
):
    """Completion, processing and report status for a policy."""
    completion = DualCompletionTrigger(db).get_completion_status(policy_id)
    if not completion["has_dual_assignment"]:
        raise HTTPException(status_code=404, detail=f"No dual assignment for policy {policy_id}")

    return {
        **completion,
        "report": ReleaseGate(db).report_status(policy_id),
    }


@router.post("/submissions", response_model=dict, status_code=201)
async def record_submission(
    request: SubmissionRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Record a survey submission; submitted ones run the dual-completion trigger."""
    submission = SurveySubmissionDB(
        id=str(uuid4()),
        policy_id=request.policy_id,
        organization=request.organization,
        assignment_id=request.assignment_id,
        surveyor_id=request.surveyor_id,
        surveyor_name=request.surveyor_name,
        surveyor_license=request.surveyor_license,
        property_details=request.property_details,
        measurements=request.measurements,
        valuation=request.valuation,
        recommended_action=request.recommended_action,
        survey_notes=request.survey_notes,
        photos=request.photos,
        status=request.status,
        submitted_at=request.submitted_at or (utcnow() if request.status != SubmissionStatus.DRAFT else None),
    )
    db.add(submission)
    db.commit()

    trigger_result = None
    if submission.status != SubmissionStatus.DRAFT:
        trigger = DualCompletionTrigger(db, notifier=notifier)
        trigger_result = trigger.check_and_trigger_merging(request.policy_id, request.organization).to_dict()

    return {
        "submission_id": submission.id,
        "status": submission.status.value,
        "trigger": trigger_result,
    }


@router.post("/trigger", response_model=dict)
async def trigger_merging(
    request: TriggerRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Re-run the dual-completion check for a policy."""
    trigger = DualCompletionTrigger(db, notifier=notifier)
    return trigger.check_and_trigger_merging(request.policy_id, request.organization).to_dict()


# =============================================================================
# MERGED REPORTS
# =============================================================================

@router.get("/merged-reports/{report_id}", response_model=dict)
async def get_merged_report(
    report_id: str,
    accessed_by: str = "admin",
    db: Session = Depends(get_db),
):
    report = _get_report_or_404(db, report_id)
    record_access(report, accessed_by)
    db.commit()
    return report_to_dict(report)


@router.post("/merged-reports/{report_id}/release", response_model=dict)
async def release_merged_report(
    report_id: str,
    request: ManualReleaseRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Manual release from pending or withheld.

    Does not decide payment; call the payment decision endpoint afterwards.
    """
    _get_report_or_404(db, report_id)
    try:
        result = ReleaseGate(db, notifier=notifier).manual_release(report_id, request.released_by, request.reason)
    except (ReleaseGateError, ConflictFlagError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "released": result.released,
        "release_status": result.release_status,
        "reason": result.reason,
        "released_at": _iso(result.released_at),
    }


@router.get("/merged-reports/{report_id}/conflict-flags", response_model=dict)
async def list_conflict_flags(
    report_id: str,
    db: Session = Depends(get_db),
):
    _get_report_or_404(db, report_id)
    flags = ConflictFlagRegistry(db).list_for_report(report_id)
    return {
        "report_id": report_id,
        "count": len(flags),
        "flags": [flag_to_dict(f) for f in flags],
    }


# =============================================================================
# CONFLICT FLAG LIFECYCLE
# =============================================================================

@router.post("/conflict-flags/{flag_id}/review", response_model=dict)
async def review_conflict_flag(
    flag_id: str,
    request: ReviewFlagRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    _get_flag_or_404(db, flag_id)
    try:
        flag = ConflictFlagRegistry(db, notifier=notifier).review(flag_id, request.reviewed_by, request.decision, request.notes)
    except ConflictFlagError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return flag_to_dict(flag)


@router.post("/conflict-flags/{flag_id}/resolve", response_model=dict)
async def resolve_conflict_flag(
    flag_id: str,
    request: ResolveFlagRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    _get_flag_or_404(db, flag_id)
    try:
        flag = ConflictFlagRegistry(db, notifier=notifier).resolve(flag_id, request.resolved_by, request.method, request.notes)
    except ConflictFlagError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return flag_to_dict(flag)


@router.post("/conflict-flags/{flag_id}/escalate", response_model=dict)
async def escalate_conflict_flag(
    flag_id: str,
    request: EscalateFlagRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    _get_flag_or_404(db, flag_id)
    try:
        flag = ConflictFlagRegistry(db, notifier=notifier).escalate(
            flag_id, request.escalated_by, request.escalated_to, request.reason,
        )
    except ConflictFlagError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return flag_to_dict(flag)
