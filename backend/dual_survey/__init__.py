"""Dual Survey Engine - dual-survey reconciliation and payment decisioning"""
__version__ = "1.0.0"
