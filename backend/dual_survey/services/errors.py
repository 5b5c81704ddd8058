"""Dual Survey Engine - base error for the reconciliation pipeline"""


class ReconciliationError(Exception):
    """Base for every expected pipeline failure. Routers map subclasses to HTTP codes."""
    pass
