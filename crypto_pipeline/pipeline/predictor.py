"""
Prediction pipeline for forecasts beyond the collected data.

Handles:
- Refitting each trained forecaster on the full preprocessed history
- Generating multi-step forecasts with intervals in original units
- Current value, predicted value and percentage change per (model, asset)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from ..models.base import Forecast, TrainedModel, TrainingSplit
from ..models.registry import ForecasterRegistry
from ..preprocessing.engine import PreprocessedSeries

logger = logging.getLogger(__name__)

ModelKey = Tuple[str, str]


@dataclass(frozen=True)
class Prediction:
    """Forward forecast of one model for one asset."""
    model: str
    asset: str
    target: str
    current_timestamp: pd.Timestamp
    current_value: float
    forecast: Forecast

    @property
    def predicted_value(self) -> float:
        return float(self.forecast.point[-1])

    @property
    def change_pct(self) -> Optional[float]:
        if self.current_value == 0:
            return None
        return (self.predicted_value - self.current_value) / abs(self.current_value) * 100

    def to_records(self) -> List[Dict[str, Any]]:
        """One row per forecast step."""
        records = []
        for step, timestamp in enumerate(self.forecast.index):
            value = float(self.forecast.point[step])
            records.append({
                'model': self.model,
                'asset': self.asset,
                'target': self.target,
                'horizon': step + 1,
                'future_date': timestamp,
                'current_value': self.current_value,
                'predicted_value': value,
                'change_pct': (
                    (value - self.current_value) / abs(self.current_value) * 100
                    if self.current_value != 0 else None
                ),
                'lower': float(self.forecast.lower[step]) if self.forecast.has_intervals else None,
                'upper': float(self.forecast.upper[step]) if self.forecast.has_intervals else None,
            })
        return records


@dataclass
class PredictionReport:
    """Forward forecasts for every (model, asset) pair that could be refit."""
    horizon: int
    predictions: Dict[ModelKey, Prediction] = field(default_factory=dict)
    errors: Dict[ModelKey, Exception] = field(default_factory=dict)

    def prediction(self, model: str, asset: str) -> Prediction:
        return self.predictions[(model, asset)]

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for _, prediction in sorted(self.predictions.items()):
            rows.extend(prediction.to_records())
        return pd.DataFrame(rows)

    def summary_frame(self) -> pd.DataFrame:
        """Final step per (model, asset)."""
        rows = [
            {
                'model': p.model,
                'asset': p.asset,
                'current_value': p.current_value,
                'predicted_value': p.predicted_value,
                'change_pct': p.change_pct,
                'future_date': p.forecast.index[-1],
            }
            for _, p in sorted(self.predictions.items())
        ]
        return pd.DataFrame(rows)


def full_history_split(series: PreprocessedSeries, target: str) -> TrainingSplit:
    """Every preprocessed row as training data, no validation rows."""
    normalized = series.normalized
    return TrainingSplit(
        asset=series.asset,
        target=target,
        train=normalized.copy(),
        validation=normalized.iloc[0:0].copy(),
        freq=series.freq
    )


class PredictionPipeline:
    """
    Prediction generation pipeline.

    Each trained model is refit with its own hyperparameters on the whole
    preprocessed history, so forecasts start from the latest collected day.
    """

    def __init__(self, registry: ForecasterRegistry):
        """
        Initialize prediction pipeline.

        Args:
            registry: Forecasters that produced the trained models
        """
        self.registry = registry

    def predict_one(self, model: TrainedModel, series: PreprocessedSeries, horizon: int) -> Prediction:
        """
        Forecast ``horizon`` days past the end of the collected data.

        Returns:
            Prediction in original units
        """
        forecaster = self.registry.get(model.model_name)
        target = model.target

        refit = forecaster.train(full_history_split(series, target), dict(model.hyperparameters))
        forecast = forecaster.predict(refit, horizon)

        point = series.denormalize(target, forecast.point)
        if not np.all(np.isfinite(point)):
            raise ValueError("forecast contains non-finite values")

        lower = upper = None
        if forecast.has_intervals:
            lower = series.denormalize(target, forecast.lower)
            upper = series.denormalize(target, forecast.upper)

        current = series.values[target]

        return Prediction(
            model=model.model_name,
            asset=model.asset,
            target=target,
            current_timestamp=current.index[-1],
            current_value=float(current.iloc[-1]),
            forecast=Forecast(
                model_name=forecast.model_name,
                asset=forecast.asset,
                index=forecast.index,
                point=point,
                lower=lower,
                upper=upper
            )
        )

    def predict_ahead(
        self,
        models: Mapping[ModelKey, TrainedModel],
        series: Mapping[str, PreprocessedSeries],
        horizon: int,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> PredictionReport:
        """
        Generate forward forecasts for every trained model.

        Args:
            models: Trained models keyed by (model name, asset)
            series: Preprocessed series per asset
            horizon: Days to forecast past the last collected day
            should_stop: Polled between pairs; stops early when true

        Returns:
            PredictionReport

        Raises:
            ValueError: if horizon is not positive
        """
        if horizon < 1:
            raise ValueError(f"Horizon must be positive, got {horizon}")

        logger.info(f"Generating {horizon}-day forecasts for {len(models)} models...")
        report = PredictionReport(horizon=horizon)

        for key in sorted(models):
            if should_stop is not None and should_stop():
                break

            model_name, asset = key
            try:
                prediction = self.predict_one(models[key], series[asset], horizon)
                report.predictions[key] = prediction
                change = prediction.change_pct
                logger.info(
                    f"✓ {model_name}/{asset}: {prediction.current_value:,.2f} -> "
                    f"{prediction.predicted_value:,.2f} "
                    f"({'n/a' if change is None else f'{change:+.2f}%'})"
                )
            except Exception as e:
                report.errors[key] = e
                logger.error(f"✗ Prediction failed for {model_name}/{asset}: {e}")

        return report
