"""
Models module for cryptocurrency price forecasting.

This module provides:
- Base forecaster interface (train/predict)
- Naive, mean and drift baselines
- XGBoost and LightGBM autoregressive forecasters
- Forecaster registry
- Trained model persistence
"""

from .base import BaseForecaster, Forecast, TrainedModel, TrainingSplit
from .baselines import DriftForecaster, MeanForecaster, NaiveForecaster
from .gradient_boosting import LightGBMForecaster, XGBoostForecaster
from .registry import ForecasterRegistry, default_registry
from .store import ModelStore

__all__ = [
    "BaseForecaster",
    "DriftForecaster",
    "Forecast",
    "ForecasterRegistry",
    "LightGBMForecaster",
    "MeanForecaster",
    "ModelStore",
    "NaiveForecaster",
    "TrainedModel",
    "TrainingSplit",
    "XGBoostForecaster",
    "default_registry",
]
