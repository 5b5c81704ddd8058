"""
Payment Decision API Routes

Decide, clear and batch-process payment decisions on released merged reports.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..database import get_db
from ..models.db_models import MergedReportDB
from ..services.decisioning import PaymentDecisionEngine, PaymentDecisionError
from ..services.decisioning.payment_engine import BATCH_LIMIT
from ..services.notifications import Notifier, get_notifier


router = APIRouter(prefix="/payment-decisions", tags=["payment"])


# Registered before the parameterized routes so "process-all" is not read as a report id
@router.post("/process-all", response_model=dict)
async def process_all_pending(
    limit: int = Query(BATCH_LIMIT, ge=1, le=BATCH_LIMIT),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    _: bool = Depends(verify_internal_key),
):
    """Decide every released report without a decision, one bounded batch."""
    engine = PaymentDecisionEngine(db, notifier=notifier)
    return engine.process_all_pending(limit=limit)


@router.post("/{report_id}", response_model=dict)
async def decide_payment(
    report_id: str,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    _: bool = Depends(verify_internal_key),
):
    """
    Record the payment decision for a released report.

    Idempotent: an existing decision is returned unchanged.
    """
    if not db.query(MergedReportDB).filter(MergedReportDB.id == report_id).first():
        raise HTTPException(status_code=404, detail=f"Merged report {report_id} not found")

    engine = PaymentDecisionEngine(db, notifier=notifier)
    try:
        decision = engine.analyze_payment_decision(report_id)
    except PaymentDecisionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    report = db.query(MergedReportDB).filter(MergedReportDB.id == report_id).first()
    return {
        "report_id": report_id,
        "payment_enabled": report.payment_enabled,
        "decision": decision.to_dict(),
    }


@router.delete("/{report_id}", response_model=dict)
async def clear_payment_decision(
    report_id: str,
    cleared_by: str = Query(...),
    reason: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Administrative override: drop the decision and disable payment."""
    if not db.query(MergedReportDB).filter(MergedReportDB.id == report_id).first():
        raise HTTPException(status_code=404, detail=f"Merged report {report_id} not found")

    engine = PaymentDecisionEngine(db)
    try:
        report = engine.clear_decision(report_id, cleared_by, reason)
    except PaymentDecisionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "report_id": report.id,
        "payment_enabled": report.payment_enabled,
        "payment_decision": report.payment_decision,
        "cleared_by": cleared_by,
    }
