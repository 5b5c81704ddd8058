"""
Tests for the conflict flag registry.

1. Flags are created only for high and critical conflicts
2. Review, resolve and escalate lifecycle
3. Closing the last open flag marks the report's conflicts resolved
4. Admin alerts never raise
"""
import pytest

from dual_survey.models.db_models import ConflictFlagDB, FlagStatus, MergedReportDB
from dual_survey.services.notifications import NotificationKind
from dual_survey.services.reconciliation import ConflictFlagError, ConflictFlagRegistry, ReportMerger
from dual_survey.services.reconciliation.conflict_flags import MAX_ESCALATION_LEVEL, can_transition

from conftest import property_details, valuation


@pytest.fixture
def flagged_report(db, notifier, completed_policy):
    """Report with one high (structural) and one critical (recommendation) flag."""
    assignment = completed_policy(
        ammc={"details": property_details(structural_assessment="sound")},
        nia={"details": property_details(structural_assessment="minor_defects"), "recommendation": "reject"},
    )
    outcome = ReportMerger(db, notifier=notifier, admin_emails=[]).process_assignment(assignment.id)
    return db.query(MergedReportDB).filter(MergedReportDB.id == outcome.merged_report_id).one()


def _flag(db, report, field_name):
    return db.query(ConflictFlagDB).filter(
        ConflictFlagDB.merged_report_id == report.id,
        ConflictFlagDB.field_name == field_name,
    ).one()


# =============================================================================
# TEST: CREATION
# =============================================================================

class TestFlagCreation:

    def test_only_significant_conflicts_are_flagged(self, db, notifier, completed_policy):
        assignment = completed_policy(
            ammc={"details": property_details(condition="good"), "values": valuation(50_000_000)},
            nia={"details": property_details(condition="fair"), "values": valuation(60_000_000)},
        )
        outcome = ReportMerger(db, notifier=notifier, admin_emails=[]).process_assignment(assignment.id)

        assert outcome.conflict_count == 2
        assert db.query(ConflictFlagDB).count() == 0

    def test_flag_fields(self, db, flagged_report):
        flag = _flag(db, flagged_report, "structural_assessment")
        assert flag.policy_id == "POL-001"
        assert flag.dual_assignment_id == flagged_report.dual_assignment_id
        assert flag.ammc_value == "sound"
        assert flag.nia_value == "minor_defects"
        assert flag.section == "property_details"
        assert flag.escalation_level == 0
        assert flag.detection_metadata["detection_method"] == "automatic"

    def test_admin_alert_per_flag(self, db, notifier, completed_policy):
        assignment = completed_policy(nia={"recommendation": "reject"})
        ReportMerger(db, notifier=notifier, admin_emails=["a@example.com", "b@example.com"]).process_assignment(assignment.id)

        flag = db.query(ConflictFlagDB).one()
        assert flag.admin_notified is True
        assert [entry["recipient"] for entry in flag.notification_log] == ["a@example.com", "b@example.com"]
        assert notifier.notify.call_count == 2

    def test_alert_failure_is_logged_not_raised(self, db, notifier, completed_policy):
        notifier.notify.side_effect = RuntimeError("mail relay down")
        assignment = completed_policy(nia={"recommendation": "reject"})

        ReportMerger(db, notifier=notifier, admin_emails=["a@example.com"]).process_assignment(assignment.id)

        flag = db.query(ConflictFlagDB).one()
        assert flag.admin_notified is False
        assert flag.notification_log[0]["status"] == "failed"


# =============================================================================
# TEST: LIFECYCLE
# =============================================================================

class TestFlagLifecycle:

    def test_transition_table(self):
        assert can_transition(FlagStatus.ACTIVE, FlagStatus.REVIEWED)[0] is True
        assert can_transition(FlagStatus.REVIEWED, FlagStatus.RESOLVED)[0] is True
        assert can_transition(FlagStatus.RESOLVED, FlagStatus.ACTIVE)[0] is False
        assert can_transition(FlagStatus.DISMISSED, FlagStatus.RESOLVED)[0] is False

    def test_review_valid_conflict(self, db, notifier, flagged_report):
        flag = _flag(db, flagged_report, "structural_assessment")
        ConflictFlagRegistry(db, notifier=notifier).review(flag.id, "admin-1", "valid_conflict", "Confirmed on site")

        assert flag.flag_status == FlagStatus.REVIEWED
        assert flag.review_details["reviewed_by"] == "admin-1"
        assert flag.review_details["review_notes"] == "Confirmed on site"
        assert flagged_report.conflict_resolved is False

    def test_review_escalate_raises_level(self, db, notifier, flagged_report):
        flag = _flag(db, flagged_report, "structural_assessment")
        ConflictFlagRegistry(db, notifier=notifier).review(flag.id, "admin-1", "escalate")

        assert flag.escalation_level == 1
        assert flag.priority == "urgent"

    def test_unknown_review_decision(self, db, notifier, flagged_report):
        flag = _flag(db, flagged_report, "structural_assessment")
        with pytest.raises(ConflictFlagError):
            ConflictFlagRegistry(db, notifier=notifier).review(flag.id, "admin-1", "shrug")

    def test_resolve(self, db, notifier, flagged_report):
        flag = _flag(db, flagged_report, "structural_assessment")
        ConflictFlagRegistry(db, notifier=notifier).resolve(flag.id, "admin-1", "surveyor_clarification")

        assert flag.flag_status == FlagStatus.RESOLVED
        assert flag.resolution_details["resolution_method"] == "surveyor_clarification"

    def test_unknown_resolution_method(self, db, notifier, flagged_report):
        flag = _flag(db, flagged_report, "structural_assessment")
        with pytest.raises(ConflictFlagError):
            ConflictFlagRegistry(db, notifier=notifier).resolve(flag.id, "admin-1", "coin_toss")

    def test_resolved_flag_is_terminal(self, db, notifier, flagged_report):
        flag = _flag(db, flagged_report, "structural_assessment")
        registry = ConflictFlagRegistry(db, notifier=notifier)
        registry.resolve(flag.id, "admin-1", "admin_override")

        with pytest.raises(ConflictFlagError):
            registry.review(flag.id, "admin-1", "valid_conflict")
        with pytest.raises(ConflictFlagError):
            registry.escalate(flag.id, "admin-1", "director@example.com")

    def test_closing_last_flag_resolves_report(self, db, notifier, flagged_report):
        registry = ConflictFlagRegistry(db, notifier=notifier)
        registry.resolve(_flag(db, flagged_report, "structural_assessment").id, "admin-1", "admin_override")
        assert flagged_report.conflict_resolved is False

        registry.review(_flag(db, flagged_report, "recommendation").id, "admin-1", "false_positive")

        assert flagged_report.conflict_resolved is True
        actions = [entry["action"] for entry in flagged_report.audit_history]
        assert "flag_resolved" in actions
        assert "flag_false_positive" in actions
        assert actions[-1] == "conflicts_resolved"

    def test_escalation(self, db, notifier, flagged_report):
        flag = _flag(db, flagged_report, "recommendation")
        registry = ConflictFlagRegistry(db, notifier=notifier)

        registry.escalate(flag.id, "admin-1", "manager@example.com", "Needs second opinion")

        assert flag.escalation_level == 1
        assert flag.escalated_to == "manager@example.com"
        assert flag.escalated_at is not None
        assert flag.priority == "high"
        notifier.notify.assert_called_with("manager@example.com", NotificationKind.REVIEW_REQUIRED, {
            "flag_id": flag.id,
            "policy_id": "POL-001",
            "escalation_level": 1,
            "escalated_by": "admin-1",
            "reason": "Needs second opinion",
        })

    def test_escalation_is_capped(self, db, notifier, flagged_report):
        flag = _flag(db, flagged_report, "recommendation")
        registry = ConflictFlagRegistry(db, notifier=notifier)
        for _ in range(MAX_ESCALATION_LEVEL):
            registry.escalate(flag.id, "admin-1", "director@example.com")

        assert flag.escalation_level == MAX_ESCALATION_LEVEL
        assert flag.priority == "urgent"
        with pytest.raises(ConflictFlagError, match="maximum"):
            registry.escalate(flag.id, "admin-1", "director@example.com")

    def test_unknown_flag(self, db, notifier):
        with pytest.raises(ConflictFlagError):
            ConflictFlagRegistry(db, notifier=notifier).get_flag("missing")
