"""
Metrics calculation module for model evaluation.

Point-forecast accuracy metrics:
- MAE  = mean(|pred - actual|)
- RMSE = sqrt(mean((pred - actual)²))
- MAPE = mean(|pred - actual| / |actual|) × 100, over points with |actual| >= epsilon
- R²   = 1 - SS_res / SS_tot
"""

import logging
from typing import Dict, Optional, Union

import pandas as pd
import numpy as np
from sklearn.metrics import (
    mean_absolute_error,
    mean_squared_error,
    r2_score
)

logger = logging.getLogger(__name__)

ArrayLike = Union[pd.Series, np.ndarray, list]

MAPE_EPSILON = 1e-8


def mean_absolute_percentage_error(
    y_true: ArrayLike,
    y_pred: ArrayLike,
    epsilon: float = MAPE_EPSILON
) -> Optional[float]:
    """
    MAPE over points whose actual magnitude is at least ``epsilon``.

    Points with ``|actual| < epsilon`` are excluded rather than floored.
    Returns None when no point qualifies.
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)

    mask = np.abs(y_true) >= epsilon
    if mask.sum() == 0:
        return None

    return float(np.mean(np.abs(y_pred[mask] - y_true[mask]) / np.abs(y_true[mask])) * 100)


def calculate_metrics(
    y_true: ArrayLike,
    y_pred: ArrayLike,
    epsilon: float = MAPE_EPSILON
) -> Dict[str, Optional[float]]:
    """
    Calculate regression metrics.

    Args:
        y_true: True target values
        y_pred: Predicted values
        epsilon: Smallest |actual| included in MAPE

    Returns:
        Dictionary with mae, rmse, mape and r2; unavailable metrics are None
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)

    if y_true.shape != y_pred.shape:
        raise ValueError(f"Shape mismatch: actual {y_true.shape} vs predicted {y_pred.shape}")

    # Remove any NaN values
    mask = np.isfinite(y_true) & np.isfinite(y_pred)
    y_true = y_true[mask]
    y_pred = y_pred[mask]

    if len(y_true) == 0:
        return {'mae': None, 'rmse': None, 'mape': None, 'r2': None}

    mae = float(mean_absolute_error(y_true, y_pred))
    rmse = float(np.sqrt(mean_squared_error(y_true, y_pred)))
    mape = mean_absolute_percentage_error(y_true, y_pred, epsilon)

    # R² score
    r2 = float(r2_score(y_true, y_pred)) if len(y_true) > 1 else None

    return {
        'mae': mae,
        'rmse': rmse,
        'mape': mape,
        'r2': r2
    }


def compare_models(results: Dict[str, Dict[str, Optional[float]]]) -> pd.DataFrame:
    """
    Compare metrics across multiple models.

    Args:
        results: Dictionary mapping model names to metrics

    Returns:
        DataFrame comparison with a rank column per metric
    """
    comparison = pd.DataFrame(results).T.astype(float)
    comparison.index.name = 'model'

    for col in list(comparison.columns):
        ascending = col != 'r2'
        comparison[f'{col}_rank'] = comparison[col].rank(ascending=ascending)

    return comparison
