"""
Dual Survey Engine - Single Source of Truth Models

Plain data structures passed between the classifier, merger, release gate
and payment engine. ORM rows are converted into these at the service
boundary; the rule code never touches a database row directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# ENUMS
# =============================================================================

class Organization(str, Enum):
    """The two independent surveying organizations."""
    AMMC = "AMMC"
    NIA = "NIA"


class Recommendation(str, Enum):
    """Survey recommendation - also the merged final recommendation."""
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_MORE_INFO = "request_more_info"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def escalate(self) -> "Severity":
        """Next severity up, saturating at CRITICAL."""
        ordered = list(_SEVERITY_RANK)
        return ordered[min(self.rank + 1, len(ordered) - 1)]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ConflictType(str, Enum):
    """Conflict categories used by flags and payment weighting."""
    RECOMMENDATION_MISMATCH = "recommendation_mismatch"
    VALUE_DISCREPANCY = "value_discrepancy"
    RISK_ASSESSMENT_DIFFERENCE = "risk_assessment_difference"
    STRUCTURAL_DISAGREEMENT = "structural_disagreement"
    TIMELINE_DISCREPANCY = "timeline_discrepancy"
    PHOTO_EVIDENCE_CONFLICT = "photo_evidence_conflict"
    CONDITION_ASSESSMENT_MISMATCH = "condition_assessment_mismatch"
    OTHER = "other"


class PaymentDecisionType(str, Enum):
    APPROVE = "approve"
    CONDITIONAL = "conditional"
    REJECT = "reject"
    REQUEST_MORE_INFO = "request_more_info"


class ReviewEscalation(str, Enum):
    """Who must look at a payment decision before it is acted on."""
    NONE = "none"
    SUPERVISOR = "supervisor"
    MANAGER = "manager"
    DIRECTOR = "director"


class SectionKind(str, Enum):
    PROPERTY_DETAILS = "property_details"
    MEASUREMENTS = "measurements"
    VALUATION = "valuation"
    RECOMMENDATION = "recommendation"


# =============================================================================
# SURVEY SECTIONS (one variant per comparable section)
# =============================================================================

@dataclass
class GeoPoint:
    latitude: float
    longitude: float

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["GeoPoint"]:
        if not data:
            return None
        lat, lng = data.get("latitude"), data.get("longitude")
        if lat is None or lng is None:
            return None
        return cls(latitude=float(lat), longitude=float(lng))


@dataclass
class PropertyDetails:
    """Descriptive findings about the property."""
    FIELDS = ("property_type", "condition", "structural_assessment", "risk_factors", "address", "coordinates")

    property_type: Optional[str] = None
    condition: Optional[str] = None                 # excellent | good | fair | poor
    structural_assessment: Optional[str] = None     # sound | minor_defects | major_defects | unsafe
    risk_factors: Optional[List[str]] = None
    address: Optional[str] = None
    coordinates: Optional[GeoPoint] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PropertyDetails":
        data = data or {}
        risk = data.get("risk_factors")
        if isinstance(risk, str):
            risk = [part.strip() for part in risk.split(",") if part.strip()]
        return cls(
            property_type=data.get("property_type"),
            condition=data.get("condition"),
            structural_assessment=data.get("structural_assessment"),
            risk_factors=risk,
            address=data.get("address"),
            coordinates=GeoPoint.from_dict(data.get("coordinates")),
        )


@dataclass
class Measurements:
    FIELDS = ("total_area", "land_area")

    total_area: Optional[float] = None   # square metres
    land_area: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Measurements":
        data = data or {}
        return cls(
            total_area=_as_float(data.get("total_area")),
            land_area=_as_float(data.get("land_area")),
        )


@dataclass
class Valuation:
    FIELDS = ("estimated_value", "market_value", "valuation_method")

    estimated_value: Optional[float] = None
    market_value: Optional[float] = None
    valuation_method: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Valuation":
        data = data or {}
        return cls(
            estimated_value=_as_float(data.get("estimated_value")),
            market_value=_as_float(data.get("market_value")),
            valuation_method=data.get("valuation_method"),
        )


@dataclass
class SurveySections:
    """All comparable sections of one organization's submission."""
    organization: Organization
    property_details: PropertyDetails = field(default_factory=PropertyDetails)
    measurements: Measurements = field(default_factory=Measurements)
    valuation: Valuation = field(default_factory=Valuation)
    recommendation: Optional[Recommendation] = None

    @classmethod
    def from_submission(cls, submission) -> "SurveySections":
        """Build from a SurveySubmissionDB row (or anything shaped like one)."""
        return cls(
            organization=Organization(submission.organization),
            property_details=PropertyDetails.from_dict(submission.property_details),
            measurements=Measurements.from_dict(submission.measurements),
            valuation=Valuation.from_dict(submission.valuation),
            recommendation=normalize_recommendation(submission.recommended_action),
        )


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


_RECOMMENDATION_ALIASES = {
    "approve": Recommendation.APPROVE,
    "approved": Recommendation.APPROVE,
    "accept": Recommendation.APPROVE,
    "reject": Recommendation.REJECT,
    "rejected": Recommendation.REJECT,
    "deny": Recommendation.REJECT,
    "request_more_info": Recommendation.REQUEST_MORE_INFO,
    "more_info": Recommendation.REQUEST_MORE_INFO,
    # Intermediate signal - treated as "not yet approvable"
    "conditional": Recommendation.REQUEST_MORE_INFO,
}


def normalize_recommendation(value: Any) -> Optional[Recommendation]:
    """Map free-form recommendation input onto the Recommendation enum."""
    if value is None:
        return None
    if isinstance(value, Recommendation):
        return value
    key = str(value).strip().lower().replace(" ", "_").replace("-", "_")
    if not key:
        return None
    return _RECOMMENDATION_ALIASES.get(key)


# =============================================================================
# CLASSIFIER / MERGER OUTPUT
# =============================================================================

@dataclass
class Conflict:
    """A classified disagreement on one field. value_a is AMMC, value_b is NIA."""
    field: str
    section: SectionKind
    conflict_type: ConflictType
    severity: Severity
    value_a: Any
    value_b: Any
    description: str
    discrepancy_percentage: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "section": self.section.value,
            "type": self.conflict_type.value,
            "severity": self.severity.value,
            "ammc_value": self.value_a,
            "nia_value": self.value_b,
            "description": self.description,
            "discrepancy_percentage": self.discrepancy_percentage,
        }


@dataclass
class SectionMerge:
    section: SectionKind
    merged: Dict[str, Any]
    conflicts: List[Conflict] = field(default_factory=list)


@dataclass
class QualityAssessment:
    confidence_score: int
    release_assessment: str          # withheld | pending | ready
    total_conflicts: int = 0
    critical_conflicts: int = 0
    high_conflicts: int = 0
    medium_conflicts: int = 0
    low_conflicts: int = 0
    data_completeness: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MergeResult:
    merged_data: Dict[str, Any]
    conflicts: List[Conflict]
    final_recommendation: Optional[Recommendation]
    quality: QualityAssessment


@dataclass
class MergeOutcome:
    """What processAssignment reports back to its caller."""
    merged_report_id: str
    conflict_count: int
    recommendation: Optional[str]
    processing_time_ms: int
    release_status: str
    confidence_score: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TriggerResult:
    triggered: bool
    reason: str
    completion_status: int = 0
    dual_assignment_id: Optional[str] = None
    merge: Optional[MergeOutcome] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "reason": self.reason,
            "completion_status": self.completion_status,
            "dual_assignment_id": self.dual_assignment_id,
            "merge": self.merge.to_dict() if self.merge else None,
            "error": self.error,
        }


# =============================================================================
# RELEASE / PAYMENT OUTPUT
# =============================================================================

@dataclass
class ReleaseCheck:
    eligible: bool
    reason: str


@dataclass
class ReleaseResult:
    released: bool
    release_status: str
    reason: str
    released_at: Optional[datetime] = None


@dataclass
class PaymentAnalysis:
    base_recommendation: Optional[Recommendation]
    confidence_score: int
    adjusted_score: int
    conflict_count: int
    severity_counts: Dict[Severity, int]
    type_counts: Dict[ConflictType, int]
    severity_penalty: int = 0
    type_penalty: int = 0
    risk_factors: List[str] = field(default_factory=list)
    mitigating_factors: List[str] = field(default_factory=list)


@dataclass
class PaymentDecision:
    decision: PaymentDecisionType
    payment_enabled: bool
    confidence: int
    reasoning: List[str] = field(default_factory=list)
    conditions: List[str] = field(default_factory=list)
    required_actions: List[str] = field(default_factory=list)
    review_required: bool = False
    escalation_level: ReviewEscalation = ReviewEscalation.NONE
    decided_at: Optional[datetime] = None
    decided_by: str = "PaymentDecisionEngine"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "payment_enabled": self.payment_enabled,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "conditions": list(self.conditions),
            "required_actions": list(self.required_actions),
            "review_required": self.review_required,
            "escalation_level": self.escalation_level.value,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "decided_by": self.decided_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentDecision":
        decided_at = data.get("decided_at")
        return cls(
            decision=PaymentDecisionType(data["decision"]),
            payment_enabled=bool(data.get("payment_enabled")),
            confidence=int(data.get("confidence", 0)),
            reasoning=list(data.get("reasoning") or []),
            conditions=list(data.get("conditions") or []),
            required_actions=list(data.get("required_actions") or []),
            review_required=bool(data.get("review_required")),
            escalation_level=ReviewEscalation(data.get("escalation_level", "none")),
            decided_at=datetime.fromisoformat(decided_at) if decided_at else None,
            decided_by=data.get("decided_by", "PaymentDecisionEngine"),
        )
