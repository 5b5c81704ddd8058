"""
Dual Survey Engine - Conflict Rules

Field-by-field comparison of two organizations' survey sections.
Every function here is pure: sections in, merged values and classified
conflicts out. Nothing touches the database.
"""
from __future__ import annotations
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ...models.ssot import (
    Conflict, ConflictType, GeoPoint, Measurements, PropertyDetails,
    Recommendation, SectionKind, SectionMerge, Severity, Valuation,
)

logger = logging.getLogger(__name__)


# =============================================================================
# POLICY CONSTANTS
# =============================================================================

# (conflict threshold, high threshold, critical threshold) on relative difference
VALUATION_THRESHOLDS = (0.15, 0.30, 0.50)
AREA_THRESHOLDS = (0.10, 0.25, 0.50)

# Absolute degrees. Beyond the far threshold the surveyors were likely at
# different sites.
COORDINATE_EPSILON = 0.001
COORDINATE_FAR_EPSILON = 0.01

# Best first
CONDITION_SCALE = ("excellent", "good", "fair", "poor")
STRUCTURAL_SCALE = ("sound", "minor_defects", "major_defects", "unsafe")

# Field -> ConflictFlag type
FIELD_CONFLICT_TYPES: Dict[str, ConflictType] = {
    "recommendation": ConflictType.RECOMMENDATION_MISMATCH,
    "estimated_value": ConflictType.VALUE_DISCREPANCY,
    "market_value": ConflictType.VALUE_DISCREPANCY,
    "property_type": ConflictType.STRUCTURAL_DISAGREEMENT,
    "structural_assessment": ConflictType.STRUCTURAL_DISAGREEMENT,
    "total_area": ConflictType.STRUCTURAL_DISAGREEMENT,
    "land_area": ConflictType.STRUCTURAL_DISAGREEMENT,
    "condition": ConflictType.CONDITION_ASSESSMENT_MISMATCH,
    "risk_factors": ConflictType.RISK_ASSESSMENT_DIFFERENCE,
    "coordinates": ConflictType.OTHER,
}


def conflict_type_for(field_name: str) -> ConflictType:
    """Map a compared field onto its ConflictFlag type."""
    return FIELD_CONFLICT_TYPES.get(field_name, ConflictType.OTHER)


# =============================================================================
# NORMALIZATION HELPERS
# =============================================================================

def normalize_token(value: Any) -> str:
    """Lowercase, trim and snake_case a categorical value."""
    if value is None:
        return ""
    text = str(value).strip().lower()
    return re.sub(r"[\s\-]+", "_", text)


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple, set)) and not value:
        return True
    return False


def relative_difference(a: float, b: float) -> float:
    """|a - b| / max(|a|, |b|). Zero when both are zero."""
    denominator = max(abs(a), abs(b))
    if denominator == 0:
        return 0.0
    return abs(a - b) / denominator


def mean_or_present(a: Optional[float], b: Optional[float]) -> Optional[float]:
    """Arithmetic mean when both present, otherwise whichever is present."""
    if a is not None and b is not None:
        return (a + b) / 2
    return a if a is not None else b


def first_present(a: Any, b: Any) -> Any:
    return b if is_missing(a) else a


# =============================================================================
# FIELD CLASSIFIERS
# =============================================================================
#
# Each classifier returns (merged_value, conflict or None). A field missing
# on one side is never a conflict; it is filled from the side that has it.
#

def classify_numeric(
    field_name: str,
    section: SectionKind,
    a: Optional[float],
    b: Optional[float],
    thresholds: Tuple[float, float, float],
    label: str,
) -> Tuple[Optional[float], Optional[Conflict]]:
    """Relative-difference comparison with escalating severity."""
    merged = mean_or_present(a, b)
    if a is None or b is None:
        return merged, None

    threshold, high, critical = thresholds
    diff = relative_difference(a, b)
    if diff <= threshold:
        return merged, None

    if diff > critical:
        severity = Severity.CRITICAL
    elif diff > high:
        severity = Severity.HIGH
    else:
        severity = Severity.MEDIUM

    percentage = round(diff * 100, 1)
    return merged, Conflict(
        field=field_name,
        section=section,
        conflict_type=conflict_type_for(field_name),
        severity=severity,
        value_a=a,
        value_b=b,
        description=f"Significant difference in {label} ({percentage}%)",
        discrepancy_percentage=percentage,
    )


def classify_categorical(
    field_name: str,
    section: SectionKind,
    a: Any,
    b: Any,
    severity: Severity,
    label: str,
) -> Tuple[Any, Optional[Conflict]]:
    """Equality after normalization. Keeps the AMMC value on disagreement."""
    if is_missing(a) or is_missing(b):
        return first_present(a, b), None
    if normalize_token(a) == normalize_token(b):
        return a, None
    return a, Conflict(
        field=field_name,
        section=section,
        conflict_type=conflict_type_for(field_name),
        severity=severity,
        value_a=a,
        value_b=b,
        description=f"{label} differs between surveyors",
    )


def classify_rating(
    field_name: str,
    section: SectionKind,
    a: Optional[str],
    b: Optional[str],
    scale: Sequence[str],
    base_severity: Severity,
    label: str,
) -> Tuple[Optional[str], Optional[Conflict]]:
    """
    Ordered rating comparison.

    Any disagreement is a conflict at base_severity; a gap of two or more
    steps escalates it one level. The merged value is the worse rating.
    Values off the scale fall back to plain categorical comparison.
    """
    if is_missing(a) or is_missing(b):
        return first_present(a, b), None

    norm_a, norm_b = normalize_token(a), normalize_token(b)
    if norm_a == norm_b:
        return a, None
    if norm_a not in scale or norm_b not in scale:
        return classify_categorical(field_name, section, a, b, base_severity, label)

    rank_a, rank_b = scale.index(norm_a), scale.index(norm_b)
    gap = abs(rank_a - rank_b)
    severity = base_severity.escalate() if gap >= 2 else base_severity
    merged = a if rank_a > rank_b else b

    return merged, Conflict(
        field=field_name,
        section=section,
        conflict_type=conflict_type_for(field_name),
        severity=severity,
        value_a=a,
        value_b=b,
        description=f"{label} differs between surveyors ({norm_a} vs {norm_b})",
    )


def normalize_risk_tags(values: Optional[Iterable[str]]) -> List[str]:
    """Normalized, de-duplicated tags in first-seen order."""
    tags: List[str] = []
    for value in values or []:
        tag = normalize_token(value)
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def classify_risk_factors(
    a: Optional[List[str]],
    b: Optional[List[str]],
) -> Tuple[Optional[List[str]], Optional[Conflict]]:
    """Risk factors merge as the union of tags; differing sets conflict."""
    tags_a, tags_b = normalize_risk_tags(a), normalize_risk_tags(b)
    if not tags_a or not tags_b:
        union = tags_a or tags_b
        return (union or None), None

    union = tags_a + [tag for tag in tags_b if tag not in tags_a]
    if set(tags_a) == set(tags_b):
        return union, None

    only_a = sorted(set(tags_a) - set(tags_b))
    only_b = sorted(set(tags_b) - set(tags_a))
    return union, Conflict(
        field="risk_factors",
        section=SectionKind.PROPERTY_DETAILS,
        conflict_type=ConflictType.RISK_ASSESSMENT_DIFFERENCE,
        severity=Severity.MEDIUM,
        value_a=tags_a,
        value_b=tags_b,
        description=(
            "Risk factors assessment differs between surveyors "
            f"(AMMC only: {', '.join(only_a) or 'none'}; NIA only: {', '.join(only_b) or 'none'})"
        ),
    )


def classify_coordinates(
    a: Optional[GeoPoint],
    b: Optional[GeoPoint],
) -> Tuple[Optional[Dict[str, float]], Optional[Conflict]]:
    """Absolute-epsilon comparison on latitude and longitude."""
    if a is None or b is None:
        point = a or b
        return ({"latitude": point.latitude, "longitude": point.longitude} if point else None), None

    merged = {
        "latitude": (a.latitude + b.latitude) / 2,
        "longitude": (a.longitude + b.longitude) / 2,
    }
    drift = max(abs(a.latitude - b.latitude), abs(a.longitude - b.longitude))
    if drift <= COORDINATE_EPSILON:
        return merged, None

    severity = Severity.MEDIUM if drift > COORDINATE_FAR_EPSILON else Severity.LOW
    return merged, Conflict(
        field="coordinates",
        section=SectionKind.PROPERTY_DETAILS,
        conflict_type=ConflictType.OTHER,
        severity=severity,
        value_a={"latitude": a.latitude, "longitude": a.longitude},
        value_b={"latitude": b.latitude, "longitude": b.longitude},
        description=f"GPS coordinates differ by {drift:.4f} degrees",
    )


# =============================================================================
# RECOMMENDATION
# =============================================================================

def merge_recommendations(
    a: Optional[Recommendation],
    b: Optional[Recommendation],
) -> Optional[Recommendation]:
    """
    Conservative tie-break.

    reject if either says reject; else request_more_info if either says so;
    else approve. A missing side defers to the other.
    """
    present = [rec for rec in (a, b) if rec is not None]
    if not present:
        return None
    if Recommendation.REJECT in present:
        return Recommendation.REJECT
    if Recommendation.REQUEST_MORE_INFO in present:
        return Recommendation.REQUEST_MORE_INFO
    return Recommendation.APPROVE


def classify_recommendation(
    a: Optional[Recommendation],
    b: Optional[Recommendation],
) -> Tuple[Optional[Recommendation], Optional[Conflict]]:
    """Recommendation mismatches are always critical."""
    merged = merge_recommendations(a, b)
    if a is None or b is None or a == b:
        return merged, None
    return merged, Conflict(
        field="recommendation",
        section=SectionKind.RECOMMENDATION,
        conflict_type=ConflictType.RECOMMENDATION_MISMATCH,
        severity=Severity.CRITICAL,
        value_a=a.value,
        value_b=b.value,
        description=f"Surveyors have different recommendations ({a.value} vs {b.value})",
    )


# =============================================================================
# SECTION CLASSIFIERS
# =============================================================================

def _collect(section: SectionKind, results: Dict[str, Tuple[Any, Optional[Conflict]]]) -> SectionMerge:
    merged = {name: value for name, (value, _) in results.items()}
    conflicts = [conflict for _, conflict in results.values() if conflict is not None]
    return SectionMerge(section=section, merged=merged, conflicts=conflicts)


def classify_property_details(a: PropertyDetails, b: PropertyDetails) -> SectionMerge:
    section = SectionKind.PROPERTY_DETAILS
    return _collect(section, {
        "property_type": classify_categorical(
            "property_type", section, a.property_type, b.property_type, Severity.MEDIUM, "Property type",
        ),
        "condition": classify_rating(
            "condition", section, a.condition, b.condition,
            CONDITION_SCALE, Severity.MEDIUM, "Property condition assessment",
        ),
        "structural_assessment": classify_rating(
            "structural_assessment", section, a.structural_assessment, b.structural_assessment,
            STRUCTURAL_SCALE, Severity.HIGH, "Structural assessment",
        ),
        "risk_factors": classify_risk_factors(a.risk_factors, b.risk_factors),
        "address": (first_present(a.address, b.address), None),
        "coordinates": classify_coordinates(a.coordinates, b.coordinates),
    })


def classify_measurements(a: Measurements, b: Measurements) -> SectionMerge:
    section = SectionKind.MEASUREMENTS
    return _collect(section, {
        "total_area": classify_numeric(
            "total_area", section, a.total_area, b.total_area, AREA_THRESHOLDS, "total area",
        ),
        "land_area": classify_numeric(
            "land_area", section, a.land_area, b.land_area, AREA_THRESHOLDS, "land area",
        ),
    })


def classify_valuation(a: Valuation, b: Valuation) -> SectionMerge:
    section = SectionKind.VALUATION
    return _collect(section, {
        "estimated_value": classify_numeric(
            "estimated_value", section, a.estimated_value, b.estimated_value,
            VALUATION_THRESHOLDS, "property valuation",
        ),
        "market_value": classify_numeric(
            "market_value", section, a.market_value, b.market_value,
            VALUATION_THRESHOLDS, "market value",
        ),
        "valuation_method": (first_present(a.valuation_method, b.valuation_method), None),
    })
