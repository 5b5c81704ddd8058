"""Dual Survey Engine - Data Models"""
from .ssot import (
    # Enums
    Organization, Recommendation, Severity, ConflictType, PaymentDecisionType,
    ReviewEscalation, SectionKind,
    # Survey sections
    GeoPoint, PropertyDetails, Measurements, Valuation, SurveySections,
    normalize_recommendation,
    # Merge output
    Conflict, SectionMerge, QualityAssessment, MergeResult, MergeOutcome, TriggerResult,
    # Release / payment output
    ReleaseCheck, ReleaseResult, PaymentAnalysis, PaymentDecision,
)

__all__ = [
    "Organization", "Recommendation", "Severity", "ConflictType", "PaymentDecisionType",
    "ReviewEscalation", "SectionKind",
    "GeoPoint", "PropertyDetails", "Measurements", "Valuation", "SurveySections",
    "normalize_recommendation",
    "Conflict", "SectionMerge", "QualityAssessment", "MergeResult", "MergeOutcome", "TriggerResult",
    "ReleaseCheck", "ReleaseResult", "PaymentAnalysis", "PaymentDecision",
]
