"""
Scheduled Runner

Time-delayed recovery path into the merge pipeline. A periodic sweep picks
dual assignments that are fully submitted but never merged (the event
trigger missed them, or a previous attempt failed) and drives each through
the same merger, recording a ProcessingJob per attempt.

AUTHORITY: SYSTEM - runs automatically inside the application process.

At most one sweep is in flight: a tick that finds the previous sweep still
running is skipped, not queued. One assignment's failure never aborts the
rest of the batch.
"""
import asyncio
import logging
import threading
import traceback
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import and_, not_
from sqlalchemy.orm import Session

from ...config import (
    SWEEP_INTERVAL_SECONDS, CLEANUP_INTERVAL_SECONDS, SWEEP_GRACE_SECONDS,
    SWEEP_BATCH_LIMIT, JOB_RETENTION_DAYS,
)
from ...database import SessionLocal
from ...models.db_models import (
    DualAssignmentDB, ProcessingJobDB,
    JobStatus, JobType, ProcessingStatus, utcnow,
)
from ..notifications import Notifier
from ..reconciliation.merger import (
    MergedReportExistsError, MergePreconditionError, MergeProcessingError, ReportMerger,
)
from ..store import AssignmentStore

logger = logging.getLogger(__name__)


def _empty_stats() -> Dict[str, Any]:
    return {
        "total_processed": 0,
        "success_count": 0,
        "error_count": 0,
        "skipped_count": 0,
        "last_error": None,
    }


class ScheduledRunner:
    """
    Periodic sweep plus job bookkeeping.

    Sweeps run synchronously on a worker thread with their own session;
    start()/stop() manage the asyncio tasks that tick them.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Optional[Notifier] = None,
        admin_emails: Optional[Sequence[str]] = None,
        sweep_interval: int = SWEEP_INTERVAL_SECONDS,
        cleanup_interval: int = CLEANUP_INTERVAL_SECONDS,
        grace_seconds: int = SWEEP_GRACE_SECONDS,
        batch_limit: int = SWEEP_BATCH_LIMIT,
        retention_days: int = JOB_RETENTION_DAYS,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.admin_emails = admin_emails
        self.sweep_interval = sweep_interval
        self.cleanup_interval = cleanup_interval
        self.grace_seconds = grace_seconds
        self.batch_limit = batch_limit
        self.retention_days = retention_days

        self.is_running = False
        self.last_run_time = None
        self.stats = _empty_stats()
        self._sweep_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._tasks: List[asyncio.Task] = []

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._tick(self.sweep_interval, self.process_completed_assignments)),
            asyncio.create_task(self._tick(self.cleanup_interval, self.cleanup_old_jobs)),
        ]
        logger.info(
            f"Scheduled runner started (sweep every {self.sweep_interval}s, "
            f"cleanup every {self.cleanup_interval}s)"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduled runner stopped")

    async def _tick(self, interval: int, work: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(work)
            except Exception:
                logger.exception(f"Scheduled task {work.__name__} failed")

    # =========================================================================
    # SWEEPS
    # =========================================================================

    def process_completed_assignments(self) -> Dict[str, Any]:
        """Scheduled sweep: fully submitted, unmerged, and older than the grace window."""
        return self._sweep(
            limit=self.batch_limit,
            respect_grace=True,
            job_type=JobType.SCHEDULED_REPORT_MERGING,
            initiated_by="system",
        )

    def process_all_pending(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Manual sweep that ignores the grace window. Still bounded."""
        return self._sweep(
            limit=min(limit or self.batch_limit, self.batch_limit),
            respect_grace=False,
            job_type=JobType.REPORT_MERGING,
            initiated_by="admin",
        )

    def _sweep(self, limit: int, respect_grace: bool, job_type: JobType, initiated_by: str) -> Dict[str, Any]:
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("Sweep already running, skipping this cycle")
            return {"skipped": True, "reason": "Sweep already in progress"}

        self.is_running = True
        self.last_run_time = utcnow()
        db = self.session_factory()
        results = []
        try:
            cutoff = self._grace_cutoff()
            candidate_ids = self._find_candidates(db, cutoff if respect_grace else None, limit)
            if not candidate_ids:
                logger.info("No completed assignments found to process")
            else:
                logger.info(f"Found {len(candidate_ids)} assignment(s) to process")

            for assignment_id in candidate_ids:
                results.append(self._process_one(db, assignment_id, job_type, initiated_by, cutoff))
        finally:
            db.close()
            self.is_running = False
            self._sweep_lock.release()

        summary = {
            "run_date": self.last_run_time.isoformat(),
            "candidates": len(results),
            "succeeded": sum(1 for r in results if r["status"] == "completed"),
            "failed": sum(1 for r in results if r["status"] == "failed"),
            "skipped": sum(1 for r in results if r["status"] == "skipped"),
            "details": results,
        }
        logger.info(
            f"Sweep finished: {summary['succeeded']} merged, {summary['failed']} failed, "
            f"{summary['skipped']} skipped"
        )
        return summary

    def process_single(self, assignment_id: str) -> Dict[str, Any]:
        """Manual reprocess of one assignment, outside the sweep guard."""
        db = self.session_factory()
        try:
            assignment = AssignmentStore(db).find(assignment_id)
            if not assignment:
                raise MergePreconditionError(f"Dual assignment {assignment_id} not found")
            if (assignment.completion_status or 0) < 100:
                raise MergePreconditionError(
                    f"Assignment {assignment_id} is not fully completed ({assignment.completion_status}%)"
                )
            return self._process_one(db, assignment_id, JobType.REPORT_MERGING, "admin", self._grace_cutoff())
        finally:
            db.close()

    def _grace_cutoff(self):
        return utcnow() - timedelta(seconds=self.grace_seconds)

    def _candidate_filter(self):
        return [
            DualAssignmentDB.completion_status >= 100,
            DualAssignmentDB.processing_status != ProcessingStatus.COMPLETED,
            DualAssignmentDB.merged_report_id.is_(None),
            not_(and_(
                DualAssignmentDB.processing_status == ProcessingStatus.FAILED,
                DualAssignmentDB.recoverable.is_(False),
            )),
        ]

    def _find_candidates(self, db: Session, cutoff, limit: int) -> List[str]:
        query = db.query(DualAssignmentDB.id).filter(*self._candidate_filter())
        if cutoff is not None:
            query = query.filter(DualAssignmentDB.updated_at < cutoff)
        rows = query.order_by(DualAssignmentDB.updated_at).limit(limit).all()
        return [row.id for row in rows]

    def _process_one(self, db: Session, assignment_id: str, job_type: JobType, initiated_by: str, stale_before) -> Dict[str, Any]:
        """Claim, merge, and record the job. Never raises."""
        store = AssignmentStore(db)
        if not store.claim_for_processing(assignment_id, stale_before=stale_before):
            self._count("skipped")
            return {"assignment_id": assignment_id, "status": "skipped", "reason": "Not claimable"}

        assignment = store.find(assignment_id)
        job = ProcessingJobDB(
            id=str(uuid4()),
            job_type=job_type,
            entity_id=assignment_id,
            entity_type="DualAssignment",
            status=JobStatus.PROCESSING,
            started_at=utcnow(),
            initiated_by=initiated_by,
            retry_count=assignment.retry_count or 0,
        )
        db.add(job)
        db.commit()
        job_id = job.id

        merger = ReportMerger(db, notifier=self.notifier, admin_emails=self.admin_emails)
        try:
            outcome = merger.process_assignment(assignment_id, claimed=True, initiated_by=f"runner:{initiated_by}")
        except MergedReportExistsError as e:
            logger.warning(f"Assignment {assignment_id}: {e}")
            self._finish_job(db, job_id, JobStatus.COMPLETED, result={"merged_report_id": e.merged_report_id, "already_existed": True})
            self._count("skipped")
            return {"assignment_id": assignment_id, "status": "skipped", "reason": "Merged report already exists"}
        except MergeProcessingError as e:
            return self._record_error(db, job_id, assignment_id, str(e), already_recorded=True)
        except MergePreconditionError as e:
            return self._record_error(db, job_id, assignment_id, str(e))
        except Exception as e:
            db.rollback()
            logger.exception(f"Unexpected failure processing assignment {assignment_id}")
            return self._record_error(db, job_id, assignment_id, str(e) or e.__class__.__name__, trace=traceback.format_exc())

        post = merger.post_merge.drain()
        self._finish_job(db, job_id, JobStatus.COMPLETED, result={
            **outcome.to_dict(),
            "post_merge": [o.to_dict() for o in post],
        })
        self._count("success")
        logger.info(f"Successfully processed assignment {assignment_id} -> report {outcome.merged_report_id}")
        return {"assignment_id": assignment_id, "status": "completed", "merged_report_id": outcome.merged_report_id}

    def _record_error(self, db: Session, job_id: str, assignment_id: str, message: str, already_recorded: bool = False, trace: Optional[str] = None) -> Dict[str, Any]:
        if not already_recorded:
            AssignmentStore(db).record_failure(assignment_id, message, trace)
        self._finish_job(db, job_id, JobStatus.FAILED, error=message)
        self._count("error", {"assignment_id": assignment_id, "error": message, "timestamp": utcnow().isoformat()})
        logger.error(f"Failed to process assignment {assignment_id}: {message}")
        return {"assignment_id": assignment_id, "status": "failed", "error": message}

    def _finish_job(self, db: Session, job_id: str, status: JobStatus, result: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
        job = db.query(ProcessingJobDB).filter(ProcessingJobDB.id == job_id).first()
        if not job:
            return
        job.status = status
        job.completed_at = utcnow()
        job.result = result
        job.error = error
        db.commit()

    def _count(self, outcome: str, last_error: Optional[Dict[str, Any]] = None) -> None:
        with self._stats_lock:
            self.stats["total_processed"] += 1
            if outcome == "success":
                self.stats["success_count"] += 1
            elif outcome == "error":
                self.stats["error_count"] += 1
                self.stats["last_error"] = last_error
            else:
                self.stats["skipped_count"] += 1

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def cleanup_old_jobs(self) -> int:
        """Delete completed and failed jobs older than the retention window."""
        cutoff = utcnow() - timedelta(days=self.retention_days)
        db = self.session_factory()
        try:
            deleted = (
                db.query(ProcessingJobDB)
                .filter(
                    ProcessingJobDB.created_at < cutoff,
                    ProcessingJobDB.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]),
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        if deleted:
            logger.info(f"Cleaned up {deleted} old processing job(s)")
        return deleted

    def retry_failed(self) -> Dict[str, Any]:
        """Reset every failed assignment to pending with a fresh retry budget."""
        db = self.session_factory()
        try:
            failed = db.query(DualAssignmentDB).filter(
                DualAssignmentDB.processing_status == ProcessingStatus.FAILED,
            ).all()
            now = utcnow()
            for assignment in failed:
                assignment.processing_status = ProcessingStatus.PENDING
                assignment.processing_error = None
                assignment.processing_error_trace = None
                assignment.processing_failed_at = None
                assignment.retry_count = 0
                assignment.recoverable = True
                assignment.updated_at = now
            db.commit()
            ids = [a.id for a in failed]
        finally:
            db.close()

        logger.info(f"Reset {len(ids)} failed assignment(s) for retry")
        return {"reset": len(ids), "assignment_ids": ids}

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self.stats)
        return {
            "is_running": self.is_running,
            "is_scheduled": bool(self._tasks),
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "sweep_interval_seconds": self.sweep_interval,
            "grace_seconds": self.grace_seconds,
            "batch_limit": self.batch_limit,
            **stats,
        }

    def reset_stats(self) -> None:
        with self._stats_lock:
            self.stats = _empty_stats()
        logger.info("Processing statistics reset")

    def get_pending_count(self) -> int:
        db = self.session_factory()
        try:
            return db.query(DualAssignmentDB).filter(*self._candidate_filter()).count()
        finally:
            db.close()

    def get_failed_assignments(self) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            failed = db.query(DualAssignmentDB).filter(
                DualAssignmentDB.processing_status == ProcessingStatus.FAILED,
            ).order_by(DualAssignmentDB.processing_failed_at.desc()).all()
            return [
                {
                    "id": a.id,
                    "policy_id": a.policy_id,
                    "processing_error": a.processing_error,
                    "processing_failed_at": a.processing_failed_at.isoformat() if a.processing_failed_at else None,
                    "retry_count": a.retry_count,
                    "recoverable": a.recoverable,
                }
                for a in failed
            ]
        finally:
            db.close()


# Process-wide instance started by the application lifespan
scheduled_runner = ScheduledRunner()


def get_scheduled_runner() -> ScheduledRunner:
    """Dependency for FastAPI - the process-wide runner."""
    return scheduled_runner
