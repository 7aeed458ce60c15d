"""
Invertible normalization and outlier handling.

Scalers are fit on the training split only. The fitted statistics are kept
as an (offset, scale) pair so forecasts can be mapped back to original
units after the pipeline has finished.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Tuple

import numpy as np
from sklearn.preprocessing import MinMaxScaler, RobustScaler, StandardScaler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizationParams:
    """Fitted parameters of one variable's transform."""
    method: str
    offset: float
    scale: float
    fitted: Dict[str, float] = field(default_factory=dict)

    def transform(self, values) -> np.ndarray:
        return (np.asarray(values, dtype=float) - self.offset) / self.scale

    def inverse_transform(self, values) -> np.ndarray:
        return np.asarray(values, dtype=float) * self.scale + self.offset

    def to_dict(self) -> Dict[str, float]:
        return {'method': self.method, 'offset': self.offset, 'scale': self.scale, **self.fitted}


def fit_normalization(train_values: np.ndarray, method: str) -> NormalizationParams:
    """
    Fit a scaler on training values.

    Args:
        train_values: 1-D training split values
        method: 'minmax', 'standard' or 'robust'

    Returns:
        NormalizationParams
    """
    X = np.asarray(train_values, dtype=float).reshape(-1, 1)

    if method == 'minmax':
        scaler = MinMaxScaler().fit(X)
        low, high = float(scaler.data_min_[0]), float(scaler.data_max_[0])
        scale = high - low
        return NormalizationParams(
            method=method,
            offset=low,
            scale=scale if scale > 0 else 1.0,
            fitted={'min': low, 'max': high}
        )

    if method == 'standard':
        scaler = StandardScaler().fit(X)
        mean, std = float(scaler.mean_[0]), float(scaler.scale_[0])
        return NormalizationParams(
            method=method,
            offset=mean,
            scale=std if std > 0 else 1.0,
            fitted={'mean': mean, 'std': std}
        )

    if method == 'robust':
        scaler = RobustScaler().fit(X)
        median, iqr = float(scaler.center_[0]), float(scaler.scale_[0])
        return NormalizationParams(
            method=method,
            offset=median,
            scale=iqr if iqr > 0 else 1.0,
            fitted={'median': median, 'iqr': iqr}
        )

    raise ValueError(f"Unknown normalization method: {method}")


def outlier_bounds(train_values: np.ndarray, method: str, threshold: float) -> Tuple[float, float]:
    """
    Compute outlier bounds from training values.

    Args:
        train_values: 1-D training split values
        method: 'zscore' (mean ± threshold·std) or 'iqr' (quartiles ± threshold·IQR)
        threshold: Z-score or IQR multiple

    Returns:
        (lower, upper) bounds
    """
    values = np.asarray(train_values, dtype=float)

    if method == 'zscore':
        mean = float(np.mean(values))
        std = float(np.std(values, ddof=1)) if len(values) > 1 else 0.0
        if std == 0:
            return -np.inf, np.inf
        return mean - threshold * std, mean + threshold * std

    if method == 'iqr':
        q1, q3 = (float(q) for q in np.percentile(values, [25, 75]))
        iqr = q3 - q1
        if iqr == 0:
            return -np.inf, np.inf
        return q1 - threshold * iqr, q3 + threshold * iqr

    raise ValueError(f"Unknown outlier method: {method}")
