"""
Preprocessing module.

This module provides:
- Gap detection and interpolation (linear, polynomial, spline)
- Outlier detection and clipping
- Invertible normalization fit on the training split
"""

from .engine import (
    PreprocessedSeries,
    PreprocessingConfig,
    PreprocessingEngine,
    QualityReport,
    split_boundaries,
)
from .interpolation import Gap, find_gaps, interpolate
from .normalization import NormalizationParams, fit_normalization

__all__ = [
    "Gap",
    "NormalizationParams",
    "PreprocessedSeries",
    "PreprocessingConfig",
    "PreprocessingEngine",
    "QualityReport",
    "find_gaps",
    "fit_normalization",
    "interpolate",
    "split_boundaries",
]
