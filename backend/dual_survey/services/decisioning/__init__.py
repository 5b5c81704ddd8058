"""
Decisioning Services

Release gate and payment decision engine for merged reports.
"""

from .release_gate import ReleaseGate, ReleaseGateError
from .payment_engine import PaymentDecisionEngine, PaymentDecisionError

__all__ = [
    'ReleaseGate',
    'ReleaseGateError',
    'PaymentDecisionEngine',
    'PaymentDecisionError',
]
