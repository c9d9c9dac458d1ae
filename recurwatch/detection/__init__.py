"""
Detection Package

The pure building blocks of a detection run. The pipeline, detectors
and verifier are imported from their modules directly.
"""

from recurwatch.detection.categories import categorize_merchant, normalize_category
from recurwatch.detection.series import build_series, normalize_merchant
from recurwatch.detection.stability import analyze_all, analyze_series, classify_periodicity

__all__ = [
    "analyze_all",
    "analyze_series",
    "build_series",
    "categorize_merchant",
    "classify_periodicity",
    "normalize_category",
    "normalize_merchant",
]
