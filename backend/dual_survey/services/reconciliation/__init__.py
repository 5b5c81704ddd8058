"""
Reconciliation Services

Field-level conflict classification, report merging and conflict flags.
"""

from .conflict_rules import merge_recommendations, conflict_type_for
from .conflict_flags import ConflictFlagRegistry, ConflictFlagError
from .merger import (
    ReportMerger,
    MergePreconditionError,
    MergedReportExistsError,
    MergeProcessingError,
    merge_sections,
)

__all__ = [
    'merge_recommendations',
    'conflict_type_for',
    'ConflictFlagRegistry',
    'ConflictFlagError',
    'ReportMerger',
    'MergePreconditionError',
    'MergedReportExistsError',
    'MergeProcessingError',
    'merge_sections',
]
