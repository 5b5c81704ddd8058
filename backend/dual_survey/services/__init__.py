"""Dual Survey Engine - Services"""
