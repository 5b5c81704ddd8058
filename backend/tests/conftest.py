"""
Shared fixtures: in-memory database, mock notifier and record factories.
"""
from datetime import timedelta
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dual_survey.database import Base
from dual_survey.models import db_models  # noqa: F401
from dual_survey.models.db_models import (
    DualAssignmentDB, SurveySubmissionDB, SubmissionStatus, utcnow,
)
from dual_survey.models.ssot import Organization
from dual_survey.services.notifications import DeliveryStatus, Notifier


ADMIN_EMAILS = ["admin@example.com"]
POLICYHOLDER_EMAIL = "holder@example.com"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notifier():
    mock = MagicMock(spec=Notifier)
    mock.notify.return_value = DeliveryStatus.DELIVERED
    return mock


# =============================================================================
# FACTORIES
# =============================================================================

def property_details(**overrides):
    details = {
        "property_type": "residential",
        "condition": "good",
        "structural_assessment": "sound",
        "risk_factors": ["flood_zone"],
        "address": "12 Marina Road, Lagos",
        "coordinates": {"latitude": 6.4541, "longitude": 3.3947},
    }
    details.update(overrides)
    return details


def valuation(estimated_value=50_000_000, **overrides):
    values = {
        "estimated_value": estimated_value,
        "market_value": 52_000_000,
        "valuation_method": "comparative",
    }
    values.update(overrides)
    return values


@pytest.fixture
def make_assignment(db):
    def _make(policy_id="POL-001", completion_status=0, email=POLICYHOLDER_EMAIL, **fields):
        fields.setdefault("ammc_completed", completion_status >= 100)
        fields.setdefault("nia_completed", completion_status >= 100)
        assignment = DualAssignmentDB(
            id=str(uuid4()),
            policy_id=policy_id,
            ammc_assignment_id=f"AMMC-{policy_id}",
            nia_assignment_id=f"NIA-{policy_id}",
            policyholder_email=email,
            completion_status=completion_status,
            **fields,
        )
        db.add(assignment)
        db.commit()
        return assignment
    return _make


@pytest.fixture
def make_submission(db):
    def _make(
        policy_id="POL-001",
        organization=Organization.AMMC,
        recommendation="approve",
        estimated_value=50_000_000,
        status=SubmissionStatus.SUBMITTED,
        details=None,
        measurements=None,
        values=None,
        surveyor_name=None,
        submitted_at=None,
    ):
        org = Organization(organization)
        submission = SurveySubmissionDB(
            id=str(uuid4()),
            policy_id=policy_id,
            organization=org,
            assignment_id=f"{org.value}-{policy_id}",
            surveyor_id=f"SRV-{org.value}",
            surveyor_name=surveyor_name or f"{org.value} Surveyor",
            surveyor_license=f"LIC-{org.value}",
            property_details=details if details is not None else property_details(),
            measurements=measurements if measurements is not None else {"total_area": 450, "land_area": 600},
            valuation=values if values is not None else valuation(estimated_value),
            recommended_action=recommendation,
            survey_notes="Inspection completed",
            photos=[f"https://files.example.com/{org.value.lower()}/front.jpg"],
            status=status,
            submitted_at=submitted_at or (utcnow() - timedelta(minutes=5) if status != SubmissionStatus.DRAFT else None),
        )
        db.add(submission)
        db.commit()
        return submission
    return _make


@pytest.fixture
def completed_policy(make_assignment, make_submission):
    """Assignment at 100% with both submissions in place."""
    def _make(policy_id="POL-001", ammc=None, nia=None, **assignment_fields):
        assignment = make_assignment(policy_id=policy_id, completion_status=100, **assignment_fields)
        make_submission(policy_id=policy_id, organization=Organization.AMMC, **(ammc or {}))
        make_submission(policy_id=policy_id, organization=Organization.NIA, **(nia or {}))
        return assignment
    return _make
