"""Dual Survey Engine - API Routers"""
from .reconciliation import router as reconciliation_router
from .payment import router as payment_router
from .scheduler import router as scheduler_router

__all__ = [
    "reconciliation_router",
    "payment_router",
    "scheduler_router",
]
