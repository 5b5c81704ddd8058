"""
API tests over the FastAPI app with an in-memory database.

Covers the reconciliation, payment decision and scheduler routers end to
end: submissions drive the trigger, reports are released or withheld,
flags and payment decisions are administered over HTTP.
"""
import pytest
from fastapi.testclient import TestClient

from dual_survey.config import INTERNAL_API_KEY
from dual_survey.database import get_db
from dual_survey.main import app
from dual_survey.models.db_models import (
    DualAssignmentDB, MergedReportDB, SurveySubmissionDB, SubmissionStatus, utcnow,
)
from dual_survey.services.notifications import get_notifier
from dual_survey.services.pipeline import ScheduledRunner, get_scheduled_runner

from conftest import property_details, valuation


HEADERS = {"X-Internal-Key": INTERNAL_API_KEY}


@pytest.fixture
def client(session_factory, notifier):
    runner = ScheduledRunner(session_factory=session_factory, notifier=notifier, admin_emails=[])

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_scheduled_runner] = lambda: runner
    yield TestClient(app)
    app.dependency_overrides.clear()


def _submission(organization, policy_id="POL-100", recommendation="approve", estimated_value=50_000_000, **extra):
    body = {
        "policy_id": policy_id,
        "organization": organization,
        "surveyor_id": f"SRV-{organization}",
        "surveyor_name": f"{organization} Surveyor",
        "surveyor_license": f"LIC-{organization}",
        "property_details": property_details(),
        "measurements": {"total_area": 450, "land_area": 600},
        "valuation": valuation(estimated_value),
        "recommended_action": recommendation,
        "photos": [f"https://files.example.com/{organization.lower()}/front.jpg"],
    }
    body.update(extra)
    return body


def _create_assignment(client, policy_id="POL-100"):
    response = client.post("/reconciliation/assignments", json={
        "policy_id": policy_id,
        "policyholder_email": "holder@example.com",
    }, headers=HEADERS)
    assert response.status_code == 201
    return response.json()


def _merge_via_submissions(client, policy_id="POL-100", ammc=None, nia=None):
    _create_assignment(client, policy_id)
    client.post("/reconciliation/submissions", json=_submission("AMMC", policy_id, **(ammc or {})), headers=HEADERS)
    response = client.post("/reconciliation/submissions", json=_submission("NIA", policy_id, **(nia or {})), headers=HEADERS)
    assert response.status_code == 201
    return response.json()["trigger"]


# =============================================================================
# TEST: APP & AUTH
# =============================================================================

class TestApp:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()["name"] == "Dual Survey Engine"

    def test_wrong_key_is_forbidden(self, client):
        response = client.get("/internal/scheduler/status", headers={"X-Internal-Key": "nope"})
        assert response.status_code == 403

    def test_missing_key_is_rejected(self, client):
        response = client.post("/reconciliation/assignments", json={"policy_id": "POL-1"})
        assert response.status_code == 422


# =============================================================================
# TEST: RECONCILIATION FLOW
# =============================================================================

class TestReconciliationRoutes:

    def test_duplicate_assignment(self, client):
        _create_assignment(client)
        response = client.post("/reconciliation/assignments", json={"policy_id": "POL-100"}, headers=HEADERS)
        assert response.status_code == 409

    def test_first_submission_waits(self, client):
        _create_assignment(client)
        response = client.post("/reconciliation/submissions", json=_submission("AMMC"), headers=HEADERS)

        body = response.json()
        assert response.status_code == 201
        assert body["trigger"]["triggered"] is False
        assert body["trigger"]["reason"] == "Waiting for NIA survey"

    def test_unrecognised_recommendation_is_rejected(self, client):
        _create_assignment(client)
        response = client.post(
            "/reconciliation/submissions",
            json=_submission("AMMC", recommendation="decline"),
            headers=HEADERS,
        )

        assert response.status_code == 422
        assert "Invalid recommended action" in response.text

        status = client.get("/reconciliation/policies/POL-100/status", headers=HEADERS).json()
        assert status["completion_status"] == 0

    def test_draft_does_not_trigger(self, client):
        _create_assignment(client)
        response = client.post("/reconciliation/submissions", json=_submission("AMMC", status="draft"), headers=HEADERS)

        assert response.json()["trigger"] is None

    def test_valuation_discrepancy_end_to_end(self, client):
        trigger = _merge_via_submissions(client, nia={"estimated_value": 60_000_000})

        assert trigger["triggered"] is True
        assert trigger["reason"] == "Merged"
        report_id = trigger["merge"]["merged_report_id"]

        report = client.get(f"/reconciliation/merged-reports/{report_id}", headers=HEADERS).json()
        assert report["release_status"] == "released"
        assert report["payment_enabled"] is True
        assert report["payment_decision"]["decision"] == "approve"
        assert report["conflicts"][0]["discrepancy_percentage"] == 16.7

        status = client.get("/reconciliation/policies/POL-100/status", headers=HEADERS).json()
        assert status["completion_status"] == 100
        assert status["report"]["status"] == "completed"

    def test_recommendation_mismatch_end_to_end(self, client):
        trigger = _merge_via_submissions(client, nia={"recommendation": "reject"})
        report_id = trigger["merge"]["merged_report_id"]

        report = client.get(f"/reconciliation/merged-reports/{report_id}", headers=HEADERS).json()
        assert report["release_status"] == "withheld"
        assert report["payment_enabled"] is False

        flags = client.get(f"/reconciliation/merged-reports/{report_id}/conflict-flags", headers=HEADERS).json()
        assert flags["count"] == 1
        assert flags["flags"][0]["severity"] == "critical"

        status = client.get("/reconciliation/policies/POL-100/status", headers=HEADERS).json()
        assert status["report"]["status"] == "under_review"

    def test_unknown_policy_status(self, client):
        assert client.get("/reconciliation/policies/POL-404/status", headers=HEADERS).status_code == 404

    def test_unknown_report(self, client):
        assert client.get("/reconciliation/merged-reports/missing", headers=HEADERS).status_code == 404

    def test_access_is_logged(self, client, session_factory):
        trigger = _merge_via_submissions(client)
        report_id = trigger["merge"]["merged_report_id"]
        client.get(f"/reconciliation/merged-reports/{report_id}?accessed_by=auditor", headers=HEADERS)

        db = session_factory()
        report = db.query(MergedReportDB).filter(MergedReportDB.id == report_id).one()
        assert report.access_history[-1]["accessed_by"] == "auditor"
        db.close()

    def test_process_assignment_endpoint(self, client):
        assignment = _create_assignment(client)
        response = client.post(f"/reconciliation/assignments/{assignment['id']}/process", headers=HEADERS)
        assert response.status_code == 400

        assert client.post("/reconciliation/assignments/missing/process", headers=HEADERS).status_code == 404

    def test_process_assignment_after_merge_conflicts(self, client):
        trigger = _merge_via_submissions(client)
        response = client.post(f"/reconciliation/assignments/{trigger['dual_assignment_id']}/process", headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["detail"]["merged_report_id"] == trigger["merge"]["merged_report_id"]

    def test_retrigger_is_noop(self, client):
        _merge_via_submissions(client)
        response = client.post("/reconciliation/trigger", json={"policy_id": "POL-100", "organization": "AMMC"}, headers=HEADERS)

        assert response.json()["triggered"] is False
        assert response.json()["reason"] == "Already processed"


# =============================================================================
# TEST: RELEASE & FLAG ADMINISTRATION
# =============================================================================

class TestAdministrationRoutes:

    def test_manual_release_then_payment(self, client):
        trigger = _merge_via_submissions(client, nia={"recommendation": "reject"})
        report_id = trigger["merge"]["merged_report_id"]

        response = client.post(f"/reconciliation/merged-reports/{report_id}/release", json={
            "released_by": "admin-1",
            "reason": "Surveyors confirmed the rejection",
        }, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["release_status"] == "released"

        response = client.post(f"/payment-decisions/{report_id}", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["decision"]["decision"] == "reject"
        assert response.json()["payment_enabled"] is False

        second = client.post(f"/payment-decisions/{report_id}", headers=HEADERS)
        assert second.json()["decision"] == response.json()["decision"]

    def test_release_twice_is_rejected(self, client):
        trigger = _merge_via_submissions(client)
        report_id = trigger["merge"]["merged_report_id"]

        response = client.post(f"/reconciliation/merged-reports/{report_id}/release", json={
            "released_by": "admin-1",
            "reason": "again",
        }, headers=HEADERS)
        assert response.status_code == 400

    def test_payment_on_withheld_report(self, client):
        trigger = _merge_via_submissions(client, nia={"recommendation": "reject"})
        response = client.post(f"/payment-decisions/{trigger['merge']['merged_report_id']}", headers=HEADERS)
        assert response.status_code == 400

    def test_payment_on_unknown_report(self, client):
        assert client.post("/payment-decisions/missing", headers=HEADERS).status_code == 404

    def test_clear_payment_decision(self, client):
        trigger = _merge_via_submissions(client)
        report_id = trigger["merge"]["merged_report_id"]

        response = client.delete(
            f"/payment-decisions/{report_id}",
            params={"cleared_by": "admin-1", "reason": "Valuation under audit"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["payment_decision"] is None
        assert response.json()["payment_enabled"] is False

        summary = client.post("/payment-decisions/process-all", headers=HEADERS).json()
        assert summary["processed"] == 1
        assert summary["results"][0]["decision"] == "approve"

    def test_flag_review_resolve_escalate(self, client):
        trigger = _merge_via_submissions(
            client,
            ammc={"property_details": property_details(structural_assessment="sound")},
            nia={"property_details": property_details(structural_assessment="minor_defects"), "recommendation": "reject"},
        )
        report_id = trigger["merge"]["merged_report_id"]
        flags = client.get(f"/reconciliation/merged-reports/{report_id}/conflict-flags", headers=HEADERS).json()["flags"]
        by_field = {flag["field_name"]: flag["id"] for flag in flags}

        response = client.post(f"/reconciliation/conflict-flags/{by_field['recommendation']}/escalate", json={
            "escalated_by": "admin-1",
            "escalated_to": "director@example.com",
        }, headers=HEADERS)
        assert response.json()["escalation_level"] == 1

        response = client.post(f"/reconciliation/conflict-flags/{by_field['structural_assessment']}/review", json={
            "reviewed_by": "admin-1",
            "decision": "valid_conflict",
        }, headers=HEADERS)
        assert response.json()["flag_status"] == "reviewed"

        response = client.post(f"/reconciliation/conflict-flags/{by_field['structural_assessment']}/resolve", json={
            "resolved_by": "admin-1",
            "method": "surveyor_clarification",
        }, headers=HEADERS)
        assert response.json()["flag_status"] == "resolved"

        response = client.post(f"/reconciliation/conflict-flags/{by_field['recommendation']}/review", json={
            "reviewed_by": "admin-1",
            "decision": "not-a-decision",
        }, headers=HEADERS)
        assert response.status_code == 400

    def test_unknown_flag(self, client):
        response = client.post("/reconciliation/conflict-flags/missing/resolve", json={
            "resolved_by": "admin-1",
            "method": "admin_override",
        }, headers=HEADERS)
        assert response.status_code == 404


# =============================================================================
# TEST: SCHEDULER
# =============================================================================

class TestSchedulerRoutes:

    def test_status(self, client):
        body = client.get("/internal/scheduler/status", headers=HEADERS).json()
        assert body["pending_count"] == 0
        assert body["failed_assignments"] == []
        assert body["is_running"] is False

    def test_process_pending_merges_missed_assignment(self, client, session_factory):
        _create_assignment(client)
        client.post("/reconciliation/submissions", json=_submission("AMMC"), headers=HEADERS)
        # Second submission recorded as a draft, then promoted outside the trigger
        client.post("/reconciliation/submissions", json=_submission("NIA", status="draft"), headers=HEADERS)
        db = session_factory()
        submission = db.query(SurveySubmissionDB).filter(SurveySubmissionDB.status == SubmissionStatus.DRAFT).one()
        submission.status = SubmissionStatus.SUBMITTED
        submission.submitted_at = utcnow()
        assignment = db.query(DualAssignmentDB).one()
        assignment.completion_status = 100
        db.commit()
        db.close()

        summary = client.post("/internal/scheduler/process-pending", headers=HEADERS).json()
        assert summary["succeeded"] == 1

        status = client.get("/reconciliation/policies/POL-100/status", headers=HEADERS).json()
        assert status["processing_status"] == "completed"

    def test_process_single_unknown(self, client):
        assert client.post("/internal/scheduler/process/missing", headers=HEADERS).status_code == 400

    def test_trigger_sweep(self, client):
        body = client.post("/internal/scheduler/trigger", headers=HEADERS).json()
        assert body["candidates"] == 0

    def test_retry_failed_and_cleanup(self, client):
        assert client.post("/internal/scheduler/retry-failed", headers=HEADERS).json()["reset"] == 0
        assert client.post("/internal/scheduler/cleanup", headers=HEADERS).json()["deleted"] == 0

    def test_reset_stats(self, client):
        assert client.post("/internal/scheduler/reset-stats", headers=HEADERS).json() == {"status": "reset"}
