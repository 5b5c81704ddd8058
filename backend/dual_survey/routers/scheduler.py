"""
Scheduler API Routes

Internal endpoints for the merge recovery runner: status, manual sweeps,
single-assignment reprocessing, failure reset and job cleanup.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import verify_internal_key
from ..services.pipeline import ScheduledRunner, get_scheduled_runner
from ..services.reconciliation import MergePreconditionError


router = APIRouter(prefix="/internal/scheduler", tags=["scheduler"])


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.get("/status", response_model=dict)
async def get_scheduler_status(
    runner: ScheduledRunner = Depends(get_scheduled_runner),
    _: bool = Depends(verify_internal_key),
):
    """Runner state, counters, backlog size and failed assignments."""
    return {
        **runner.get_status(),
        "pending_count": runner.get_pending_count(),
        "failed_assignments": runner.get_failed_assignments(),
    }


@router.post("/trigger", response_model=dict)
async def trigger_sweep(
    runner: ScheduledRunner = Depends(get_scheduled_runner),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the scheduled sweep now.

    Same candidate rules as the timer, including the grace window.
    Returns a skipped summary if a sweep is already running.
    """
    return runner.process_completed_assignments()


@router.post("/process-pending", response_model=dict)
async def process_pending(
    limit: Optional[int] = Query(None, ge=1),
    runner: ScheduledRunner = Depends(get_scheduled_runner),
    _: bool = Depends(verify_internal_key),
):
    """Sweep without the grace window. Bounded by the batch limit."""
    return runner.process_all_pending(limit=limit)


@router.post("/process/{assignment_id}", response_model=dict)
async def process_single_assignment(
    assignment_id: str,
    runner: ScheduledRunner = Depends(get_scheduled_runner),
    _: bool = Depends(verify_internal_key),
):
    """Reprocess one assignment with full job bookkeeping."""
    try:
        return runner.process_single(assignment_id)
    except MergePreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/retry-failed", response_model=dict)
async def retry_failed_assignments(
    runner: ScheduledRunner = Depends(get_scheduled_runner),
    _: bool = Depends(verify_internal_key),
):
    """Reset failed assignments to pending with a fresh retry budget."""
    return runner.retry_failed()


@router.post("/cleanup", response_model=dict)
async def cleanup_jobs(
    runner: ScheduledRunner = Depends(get_scheduled_runner),
    _: bool = Depends(verify_internal_key),
):
    """Delete finished processing jobs older than the retention window."""
    deleted = runner.cleanup_old_jobs()
    return {"deleted": deleted, "retention_days": runner.retention_days}


@router.post("/reset-stats", response_model=dict)
async def reset_stats(
    runner: ScheduledRunner = Depends(get_scheduled_runner),
    _: bool = Depends(verify_internal_key),
):
    runner.reset_stats()
    return {"status": "reset"}
