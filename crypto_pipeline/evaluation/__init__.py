"""
Evaluation module for model performance assessment.

This module provides:
- MAE, RMSE, MAPE and R² metrics
- Paired significance tests between models
- Cross-asset aggregation and ranking
"""

from .engine import EvaluationConfig, EvaluationEngine, EvaluationReport, EvaluationResult
from .metrics import calculate_metrics, compare_models, mean_absolute_percentage_error
from .significance import SignificanceResult, compare_pair, paired_test

__all__ = [
    "EvaluationConfig",
    "EvaluationEngine",
    "EvaluationReport",
    "EvaluationResult",
    "SignificanceResult",
    "calculate_metrics",
    "compare_models",
    "compare_pair",
    "mean_absolute_percentage_error",
    "paired_test",
]
