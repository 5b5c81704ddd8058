"""
Dual Survey Engine - SQLAlchemy ORM Models
Relational storage for assignments, submissions, merged reports, flags and jobs
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum, Boolean
from sqlalchemy.orm import relationship

from ..database import Base
from .ssot import Organization, Recommendation, Severity, ConflictType


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.utcnow()


# =============================================================================
# LIFECYCLE ENUMS
# =============================================================================

class ProcessingStatus(str, Enum):
    """DualAssignment processing status. Acts as the advisory lock."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubmissionStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"


class ReleaseStatus(str, Enum):
    PENDING = "pending"
    WITHHELD = "withheld"
    RELEASED = "released"


class FlagStatus(str, Enum):
    ACTIVE = "active"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    REPORT_MERGING = "report_merging"
    SCHEDULED_REPORT_MERGING = "scheduled_report_merging"
    PAYMENT_DECISION = "payment_decision"


# =============================================================================
# DUAL ASSIGNMENT
# =============================================================================

class DualAssignmentDB(Base):
    """
    Pairing of two independent survey assignments against one policy.

    processing_status is checked-and-set before any merge work; a completed
    assignment always carries merged_report_id.
    """
    __tablename__ = "dual_assignments"

    id = Column(String(36), primary_key=True)
    policy_id = Column(String(64), nullable=False, unique=True, index=True)
    ammc_assignment_id = Column(String(64), nullable=True)
    nia_assignment_id = Column(String(64), nullable=True)
    policyholder_email = Column(String(255), nullable=True)

    # Completion (0 / 50 / 100)
    completion_status = Column(Integer, default=0, nullable=False)
    ammc_completed = Column(Boolean, default=False, nullable=False)
    nia_completed = Column(Boolean, default=False, nullable=False)
    ammc_completed_at = Column(DateTime, nullable=True)
    nia_completed_at = Column(DateTime, nullable=True)

    # Processing
    processing_status = Column(SQLEnum(ProcessingStatus), default=ProcessingStatus.PENDING, nullable=False, index=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)
    processing_failed_at = Column(DateTime, nullable=True)
    processing_error = Column(Text, nullable=True)
    processing_error_trace = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    recoverable = Column(Boolean, default=True, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    last_attempt_error = Column(Text, nullable=True)

    # Set once by the merger, never changed
    merged_report_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def completed_flag(self, organization: Organization) -> bool:
        if organization == Organization.AMMC:
            return bool(self.ammc_completed)
        return bool(self.nia_completed)


# =============================================================================
# SURVEY SUBMISSION
# =============================================================================

class SurveySubmissionDB(Base):
    """One organization's survey for a policy."""
    __tablename__ = "survey_submissions"

    id = Column(String(36), primary_key=True)
    policy_id = Column(String(64), nullable=False, index=True)
    organization = Column(SQLEnum(Organization), nullable=False, index=True)
    assignment_id = Column(String(64), nullable=True)

    # Surveyor identity
    surveyor_id = Column(String(64), nullable=True)
    surveyor_name = Column(String(255), nullable=True)
    surveyor_license = Column(String(64), nullable=True)

    # Sections
    property_details = Column(JSON, nullable=True)
    measurements = Column(JSON, nullable=True)
    valuation = Column(JSON, nullable=True)
    recommended_action = Column(String(32), nullable=True)
    survey_notes = Column(Text, nullable=True)
    photos = Column(JSON, nullable=True)   # Opaque URLs, never read

    status = Column(SQLEnum(SubmissionStatus), default=SubmissionStatus.DRAFT, nullable=False)
    submitted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# MERGED REPORT
# =============================================================================

class MergedReportDB(Base):
    """
    Reconciled report - exactly one per policy.

    Created by the merger only. Mutated by the release gate and the payment
    decision engine. Never deleted.
    """
    __tablename__ = "merged_reports"

    id = Column(String(36), primary_key=True)
    policy_id = Column(String(64), nullable=False, unique=True, index=True)
    dual_assignment_id = Column(String(36), ForeignKey("dual_assignments.id"), nullable=False, index=True)
    ammc_submission_id = Column(String(36), nullable=False)
    nia_submission_id = Column(String(36), nullable=False)

    # Merge output
    merged_data = Column(JSON, nullable=False)
    conflicts = Column(JSON, default=list)
    conflict_detected = Column(Boolean, default=False, nullable=False)
    conflict_resolved = Column(Boolean, default=False, nullable=False)
    final_recommendation = Column(SQLEnum(Recommendation), nullable=True)
    confidence_score = Column(Integer, default=0, nullable=False)
    quality_metrics = Column(JSON, nullable=True)
    report_sections = Column(JSON, nullable=True)     # Frozen per-organization snapshots
    merging_metadata = Column(JSON, nullable=True)    # merged_by, merged_at, algorithm_version, processing_time_ms

    # Release
    release_status = Column(SQLEnum(ReleaseStatus), default=ReleaseStatus.PENDING, nullable=False, index=True)
    released_at = Column(DateTime, nullable=True)
    released_by = Column(String(64), nullable=True)
    release_reason = Column(Text, nullable=True)

    # Payment
    payment_enabled = Column(Boolean, default=False, nullable=False)
    payment_decision = Column(JSON(none_as_null=True), nullable=True)

    # Histories (JSON lists, reassigned on every append)
    notifications = Column(JSON, default=list)
    audit_history = Column(JSON, default=list)
    access_history = Column(JSON, default=list)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    conflict_flags = relationship("ConflictFlagDB", back_populates="merged_report", order_by="ConflictFlagDB.created_at")


# =============================================================================
# CONFLICT FLAG
# =============================================================================

class ConflictFlagDB(Base):
    """Significant conflict persisted for independent admin review."""
    __tablename__ = "conflict_flags"

    id = Column(String(36), primary_key=True)
    merged_report_id = Column(String(36), ForeignKey("merged_reports.id"), nullable=False, index=True)
    policy_id = Column(String(64), nullable=False, index=True)
    dual_assignment_id = Column(String(36), nullable=True)

    conflict_type = Column(SQLEnum(ConflictType), nullable=False)
    severity = Column(SQLEnum(Severity), nullable=False)
    field_name = Column(String(64), nullable=False)
    section = Column(String(32), nullable=True)
    ammc_value = Column(JSON, nullable=True)
    nia_value = Column(JSON, nullable=True)
    discrepancy_percentage = Column(Float, nullable=True)
    description = Column(Text, nullable=True)

    flag_status = Column(SQLEnum(FlagStatus), default=FlagStatus.ACTIVE, nullable=False, index=True)
    priority = Column(String(16), default="normal", nullable=False)
    escalation_level = Column(Integer, default=0, nullable=False)   # 0-3
    escalated_to = Column(String(255), nullable=True)
    escalated_at = Column(DateTime, nullable=True)

    review_details = Column(JSON, nullable=True)
    resolution_details = Column(JSON, nullable=True)
    notification_log = Column(JSON, default=list)
    admin_notified = Column(Boolean, default=False, nullable=False)
    detection_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    merged_report = relationship("MergedReportDB", back_populates="conflict_flags")


# =============================================================================
# PROCESSING JOB
# =============================================================================

class ProcessingJobDB(Base):
    """Bookkeeping record for one unit of background or manual work."""
    __tablename__ = "processing_jobs"

    id = Column(String(36), primary_key=True)
    job_type = Column(SQLEnum(JobType), nullable=False, index=True)
    entity_id = Column(String(36), nullable=False, index=True)
    entity_type = Column(String(32), nullable=False, default="DualAssignment")
    status = Column(SQLEnum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    initiated_by = Column(String(64), nullable=False, default="system")

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)

    created_at = Column(DateTime, default=utcnow, index=True)
