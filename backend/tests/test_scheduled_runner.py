"""
Tests for the scheduled runner.

1. Sweeps merge completed assignments exactly once
2. Grace window leaves fresh assignments to the event trigger
3. Failures are recorded, retried, and stop after the retry budget
4. Stale in-flight claims are recovered
5. Overlapping sweeps skip
6. Job bookkeeping, cleanup and manual controls
"""
import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from dual_survey.models.db_models import (
    DualAssignmentDB, MergedReportDB, ProcessingJobDB,
    JobStatus, JobType, ProcessingStatus, ReleaseStatus, utcnow,
)
from dual_survey.services.pipeline import ScheduledRunner
from dual_survey.services.reconciliation import MergePreconditionError


@pytest.fixture
def runner(session_factory, notifier):
    return ScheduledRunner(
        session_factory=session_factory,
        notifier=notifier,
        admin_emails=[],
        sweep_interval=3600,
        cleanup_interval=3600,
        grace_seconds=120,
        batch_limit=10,
        retention_days=30,
    )


def _age(db, assignment, hours=1):
    assignment.updated_at = utcnow() - timedelta(hours=hours)
    db.commit()


def _reload(db, assignment_id):
    db.expire_all()
    return db.query(DualAssignmentDB).filter(DualAssignmentDB.id == assignment_id).one()


# =============================================================================
# TEST: SWEEPS
# =============================================================================

class TestSweep:

    def test_sweep_merges_completed_assignment(self, db, runner, completed_policy):
        assignment = completed_policy()
        _age(db, assignment)

        summary = runner.process_completed_assignments()

        assert summary["candidates"] == 1
        assert summary["succeeded"] == 1
        assignment = _reload(db, assignment.id)
        assert assignment.processing_status == ProcessingStatus.COMPLETED

        report = db.query(MergedReportDB).one()
        assert report.id == assignment.merged_report_id
        assert report.release_status == ReleaseStatus.RELEASED
        assert report.merging_metadata["merged_by"] == "runner:system"

    def test_double_sweep_is_idempotent(self, db, runner, completed_policy):
        assignment = completed_policy()
        _age(db, assignment)

        runner.process_completed_assignments()
        second = runner.process_completed_assignments()

        assert second["candidates"] == 0
        db.expire_all()
        assert db.query(MergedReportDB).count() == 1

    def test_grace_window_skips_fresh_assignments(self, db, runner, completed_policy):
        completed_policy()

        summary = runner.process_completed_assignments()

        assert summary["candidates"] == 0
        assert db.query(MergedReportDB).count() == 0

    def test_process_all_pending_ignores_grace(self, db, runner, completed_policy):
        completed_policy()

        summary = runner.process_all_pending()

        assert summary["succeeded"] == 1
        job = db.query(ProcessingJobDB).one()
        assert job.job_type == JobType.REPORT_MERGING
        assert job.initiated_by == "admin"

    def test_incomplete_assignments_are_not_candidates(self, db, runner, make_assignment):
        make_assignment(completion_status=50)
        assert runner.process_all_pending()["candidates"] == 0
        assert runner.get_pending_count() == 0

    def test_batch_limit(self, db, runner, completed_policy):
        for n in range(3):
            completed_policy(policy_id=f"POL-{n}")
        runner.batch_limit = 2

        assert runner.process_all_pending()["candidates"] == 2
        assert runner.process_all_pending()["candidates"] == 1

    def test_job_records_success(self, db, runner, completed_policy):
        assignment = completed_policy()
        _age(db, assignment)
        runner.process_completed_assignments()

        job = db.query(ProcessingJobDB).one()
        assert job.job_type == JobType.SCHEDULED_REPORT_MERGING
        assert job.entity_id == assignment.id
        assert job.status == JobStatus.COMPLETED
        assert job.result["merged_report_id"]
        assert job.result["post_merge"][0]["released"] is True
        assert job.completed_at is not None


# =============================================================================
# TEST: FAILURES & RETRIES
# =============================================================================

class TestFailures:

    def test_processing_failure_is_recorded(self, db, runner, completed_policy):
        assignment = completed_policy()

        with patch("dual_survey.services.reconciliation.merger.merge_sections", side_effect=ValueError("bad data")):
            summary = runner.process_all_pending()

        assert summary["failed"] == 1
        assignment = _reload(db, assignment.id)
        assert assignment.processing_status == ProcessingStatus.FAILED
        assert assignment.retry_count == 1
        assert assignment.recoverable is True

        job = db.query(ProcessingJobDB).one()
        assert job.status == JobStatus.FAILED
        assert "bad data" in job.error
        assert runner.stats["error_count"] == 1
        assert runner.stats["last_error"]["assignment_id"] == assignment.id

    def test_retry_budget(self, db, runner, completed_policy):
        assignment = completed_policy()

        with patch("dual_survey.services.reconciliation.merger.merge_sections", side_effect=ValueError("bad data")):
            for _ in range(3):
                assert runner.process_all_pending()["failed"] == 1
            exhausted = runner.process_all_pending()

        assert exhausted["candidates"] == 0
        assignment = _reload(db, assignment.id)
        assert assignment.retry_count == 3
        assert assignment.recoverable is False
        assert db.query(ProcessingJobDB).count() == 3

    def test_failed_assignment_recovers_on_next_sweep(self, db, runner, completed_policy):
        assignment = completed_policy()
        with patch("dual_survey.services.reconciliation.merger.merge_sections", side_effect=ValueError("transient")):
            runner.process_all_pending()

        summary = runner.process_all_pending()

        assert summary["succeeded"] == 1
        assignment = _reload(db, assignment.id)
        assert assignment.processing_status == ProcessingStatus.COMPLETED
        assert assignment.processing_error is None

    def test_missing_submission_counts_as_failure(self, db, runner, make_assignment):
        assignment = make_assignment(completion_status=100)

        summary = runner.process_all_pending()

        assert summary["failed"] == 1
        assignment = _reload(db, assignment.id)
        assert assignment.processing_status == ProcessingStatus.FAILED
        assert assignment.retry_count == 1
        assert "Missing submitted survey" in assignment.processing_error

    def test_retry_failed_resets_budget(self, db, runner, completed_policy):
        assignment = completed_policy()
        with patch("dual_survey.services.reconciliation.merger.merge_sections", side_effect=ValueError("bad data")):
            for _ in range(3):
                runner.process_all_pending()

        result = runner.retry_failed()

        assert result == {"reset": 1, "assignment_ids": [assignment.id]}
        assignment = _reload(db, assignment.id)
        assert assignment.processing_status == ProcessingStatus.PENDING
        assert assignment.retry_count == 0
        assert assignment.recoverable is True
        assert runner.process_all_pending()["succeeded"] == 1

    def test_failed_assignments_listing(self, db, runner, make_assignment):
        assignment = make_assignment(completion_status=100)
        runner.process_all_pending()

        failed = runner.get_failed_assignments()

        assert [f["id"] for f in failed] == [assignment.id]
        assert failed[0]["retry_count"] == 1


# =============================================================================
# TEST: CLAIMS & CONCURRENCY
# =============================================================================

class TestClaims:

    def test_stale_processing_claim_is_recovered(self, db, runner, completed_policy):
        assignment = completed_policy(processing_status=ProcessingStatus.PROCESSING)
        _age(db, assignment)

        summary = runner.process_completed_assignments()

        assert summary["succeeded"] == 1
        assert _reload(db, assignment.id).processing_status == ProcessingStatus.COMPLETED

    def test_fresh_processing_claim_is_left_alone(self, db, runner, completed_policy):
        completed_policy(processing_status=ProcessingStatus.PROCESSING)

        summary = runner.process_all_pending()

        assert summary["skipped"] == 1
        assert summary["details"][0]["reason"] == "Not claimable"
        assert db.query(MergedReportDB).count() == 0

    def test_overlapping_sweep_skips(self, runner, completed_policy):
        completed_policy()
        runner._sweep_lock.acquire()
        try:
            summary = runner.process_all_pending()
        finally:
            runner._sweep_lock.release()

        assert summary == {"skipped": True, "reason": "Sweep already in progress"}

    def test_existing_report_is_skipped(self, db, runner, completed_policy):
        assignment = completed_policy()
        runner.process_all_pending()

        assignment = _reload(db, assignment.id)
        assignment.processing_status = ProcessingStatus.PENDING
        db.commit()

        summary = runner.process_single(assignment.id)

        assert summary["status"] == "skipped"
        db.expire_all()
        assert db.query(MergedReportDB).count() == 1


# =============================================================================
# TEST: MANUAL CONTROLS
# =============================================================================

class TestManualControls:

    def test_process_single(self, db, runner, completed_policy):
        assignment = completed_policy()
        result = runner.process_single(assignment.id)

        assert result["status"] == "completed"
        assert result["merged_report_id"]

    def test_process_single_unknown(self, runner):
        with pytest.raises(MergePreconditionError, match="not found"):
            runner.process_single("missing")

    def test_process_single_incomplete(self, runner, make_assignment):
        assignment = make_assignment(completion_status=50)
        with pytest.raises(MergePreconditionError, match="not fully completed"):
            runner.process_single(assignment.id)

    def test_cleanup_old_jobs(self, db, runner):
        old = utcnow() - timedelta(days=45)
        db.add_all([
            ProcessingJobDB(id="old-done", job_type=JobType.REPORT_MERGING, entity_id="a1", status=JobStatus.COMPLETED, created_at=old),
            ProcessingJobDB(id="old-failed", job_type=JobType.REPORT_MERGING, entity_id="a2", status=JobStatus.FAILED, created_at=old),
            ProcessingJobDB(id="old-running", job_type=JobType.REPORT_MERGING, entity_id="a3", status=JobStatus.PROCESSING, created_at=old),
            ProcessingJobDB(id="recent", job_type=JobType.REPORT_MERGING, entity_id="a4", status=JobStatus.COMPLETED),
        ])
        db.commit()

        assert runner.cleanup_old_jobs() == 2
        db.expire_all()
        assert {job.id for job in db.query(ProcessingJobDB).all()} == {"old-running", "recent"}

    def test_status_and_stats(self, runner, completed_policy):
        completed_policy()
        assert runner.get_pending_count() == 1

        runner.process_all_pending()
        status = runner.get_status()

        assert status["total_processed"] == 1
        assert status["success_count"] == 1
        assert status["is_running"] is False
        assert status["is_scheduled"] is False
        assert status["last_run_time"] is not None
        assert runner.get_pending_count() == 0

        runner.reset_stats()
        assert runner.get_status()["total_processed"] == 0

    def test_start_and_stop(self, runner):
        async def cycle():
            await runner.start()
            scheduled = runner.get_status()["is_scheduled"]
            await runner.stop()
            return scheduled

        assert asyncio.run(cycle()) is True
        assert runner.get_status()["is_scheduled"] is False
