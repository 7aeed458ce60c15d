"""
Baseline forecasters.

Naive, mean and drift forecasts with residual-based prediction intervals.
They are cheap, dependency-free references for the learned models.
"""

import logging
from typing import Any, Dict, Tuple

import numpy as np
from scipy.stats import norm

from .base import BaseForecaster, TrainedModel, TrainingSplit

logger = logging.getLogger(__name__)


def _z(confidence: float) -> float:
    return float(norm.ppf(0.5 + confidence / 2))


class NaiveForecaster(BaseForecaster):
    """Naive baseline: every future value equals the last observed one."""

    name = 'naive'
    DEFAULT_PARAMS = {'confidence': 0.95}

    def _fit(self, split: TrainingSplit, params: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        y = split.y_train
        sigma = float(np.std(np.diff(y), ddof=1)) if len(y) > 2 else 0.0
        return {'last': float(y[-1]), 'sigma': sigma}, {}

    def _forecast(self, model: TrainedModel, horizon: int):
        state = model.state
        point = np.full(horizon, state['last'])
        width = _z(model.hyperparameters['confidence']) * state['sigma'] * np.sqrt(np.arange(1, horizon + 1))
        return point, point - width, point + width


class MeanForecaster(BaseForecaster):
    """Mean baseline: every future value equals the training mean."""

    name = 'mean'
    DEFAULT_PARAMS = {'confidence': 0.95}

    def _fit(self, split: TrainingSplit, params: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        y = split.y_train
        sigma = float(np.std(y, ddof=1)) if len(y) > 1 else 0.0
        return {'mean': float(np.mean(y)), 'sigma': sigma}, {}

    def _forecast(self, model: TrainedModel, horizon: int):
        state = model.state
        point = np.full(horizon, state['mean'])
        width = _z(model.hyperparameters['confidence']) * state['sigma']
        return point, point - width, point + width


class DriftForecaster(BaseForecaster):
    """Drift baseline: linear extrapolation of the average step."""

    name = 'drift'
    DEFAULT_PARAMS = {'confidence': 0.95}

    def _fit(self, split: TrainingSplit, params: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        y = split.y_train
        n = len(y)

        if n < 2:
            return {'last': float(y[-1]), 'drift': 0.0, 'sigma': 0.0}, {}

        # Calculate overall drift
        drift = (y[-1] - y[0]) / (n - 1)
        residuals = np.diff(y) - drift
        sigma = float(np.std(residuals, ddof=1)) if n > 2 else 0.0

        return {'last': float(y[-1]), 'drift': float(drift), 'sigma': sigma}, {'drift': float(drift)}

    def _forecast(self, model: TrainedModel, horizon: int):
        state = model.state
        steps = np.arange(1, horizon + 1)
        point = state['last'] + state['drift'] * steps
        width = _z(model.hyperparameters['confidence']) * state['sigma'] * np.sqrt(steps)
        return point, point - width, point + width
