"""
Base forecaster interface for all prediction models.

Every forecaster exposes ``train(split, hyperparameters) -> TrainedModel``
and ``predict(model, horizon) -> Forecast``. The orchestrator treats them
polymorphically and never looks at a forecaster's internals.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingSplit:
    """Normalized training (and validation) data handed to a forecaster."""
    asset: str
    target: str
    train: pd.DataFrame
    validation: pd.DataFrame
    freq: pd.Timedelta = pd.Timedelta(days=1)

    @classmethod
    def from_series(cls, series, target: str) -> 'TrainingSplit':
        """Build from a PreprocessedSeries."""
        return cls(
            asset=series.asset,
            target=target,
            train=series.train,
            validation=series.validation,
            freq=series.freq
        )

    @property
    def y_train(self) -> np.ndarray:
        return self.train[self.target].to_numpy(dtype=float)

    @property
    def y_validation(self) -> np.ndarray:
        return self.validation[self.target].to_numpy(dtype=float)

    @property
    def last_timestamp(self) -> pd.Timestamp:
        return self.train.index[-1]


@dataclass(frozen=True)
class TrainedModel:
    """
    Opaque per (model, asset) artifact.

    Created during training, consumed during evaluation, never mutated.
    """
    model_name: str
    asset: str
    target: str
    state: Any
    last_timestamp: pd.Timestamp
    freq: pd.Timedelta
    hyperparameters: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        # Plain dicts (e.g. from a loaded file) are copied behind read-only views
        for name in ('hyperparameters', 'metadata'):
            value = getattr(self, name)
            if not isinstance(value, MappingProxyType):
                object.__setattr__(self, name, MappingProxyType(dict(value)))

    @property
    def key(self) -> Tuple[str, str]:
        return (self.model_name, self.asset)

    def describe(self) -> Dict[str, Any]:
        """Plain metadata for reporting collaborators."""
        return {
            'model': self.model_name,
            'asset': self.asset,
            'target': self.target,
            'trained_until': self.last_timestamp.isoformat(),
            'hyperparameters': dict(self.hyperparameters),
            **dict(self.metadata),
        }


@dataclass(frozen=True)
class Forecast:
    """Point forecasts with optional prediction intervals."""
    model_name: str
    asset: str
    index: pd.DatetimeIndex
    point: np.ndarray
    lower: Optional[np.ndarray] = None
    upper: Optional[np.ndarray] = None

    @property
    def horizon(self) -> int:
        return len(self.point)

    @property
    def has_intervals(self) -> bool:
        return self.lower is not None and self.upper is not None

    def to_frame(self) -> pd.DataFrame:
        data = {'forecast': self.point}
        if self.has_intervals:
            data['lower'] = self.lower
            data['upper'] = self.upper
        return pd.DataFrame(data, index=self.index)


class BaseForecaster(ABC):
    """
    Abstract base class for forecasters.

    Subclasses set ``name`` and ``DEFAULT_PARAMS`` and implement ``_fit``
    and ``_forecast``. Hyperparameters passed to ``train`` are merged over
    the defaults.
    """

    name: str = 'base'
    DEFAULT_PARAMS: Dict[str, Any] = {}

    def resolve_params(self, hyperparameters: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Merge hyperparameters with the defaults."""
        merged = dict(self.DEFAULT_PARAMS)
        if hyperparameters:
            merged.update(hyperparameters)
        return merged

    @abstractmethod
    def _fit(self, split: TrainingSplit, params: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        """
        Fit on the training split.

        Returns:
            Tuple of (state, metadata)
        """

    @abstractmethod
    def _forecast(
        self,
        model: TrainedModel,
        horizon: int
    ) -> Tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
        """
        Forecast ``horizon`` steps after the training split.

        Returns:
            Tuple of (point, lower, upper); bounds may be None
        """

    def train(
        self,
        split: TrainingSplit,
        hyperparameters: Optional[Mapping[str, Any]] = None
    ) -> TrainedModel:
        """
        Train the forecaster.

        Args:
            split: Normalized training data for one asset
            hyperparameters: Settings merged over DEFAULT_PARAMS

        Returns:
            Immutable TrainedModel
        """
        if split.target not in split.train.columns:
            raise ValueError(f"Target '{split.target}' not in training data")
        if len(split.train) == 0:
            raise ValueError("Training split is empty")

        params = self.resolve_params(hyperparameters)
        state, metadata = self._fit(split, params)

        metadata = {
            'created_at': datetime.now().isoformat(),
            'n_samples': len(split.train),
            **metadata,
        }

        return TrainedModel(
            model_name=self.name,
            asset=split.asset,
            target=split.target,
            state=state,
            last_timestamp=split.last_timestamp,
            freq=split.freq,
            hyperparameters=MappingProxyType(params),
            metadata=MappingProxyType(metadata)
        )

    def predict(self, model: TrainedModel, horizon: int) -> Forecast:
        """
        Generate forecasts.

        Args:
            model: Model produced by this forecaster's ``train``
            horizon: Number of steps after the end of the training split

        Returns:
            Forecast in normalized units
        """
        if model.model_name != self.name:
            raise ValueError(f"Model '{model.model_name}' was not trained by '{self.name}'")
        if horizon < 1:
            raise ValueError(f"Horizon must be positive, got {horizon}")

        point, lower, upper = self._forecast(model, horizon)

        index = pd.date_range(
            start=model.last_timestamp + model.freq,
            periods=horizon,
            freq=model.freq,
            name='timestamp'
        )

        return Forecast(
            model_name=self.name,
            asset=model.asset,
            index=index,
            point=np.asarray(point, dtype=float),
            lower=None if lower is None else np.asarray(lower, dtype=float),
            upper=None if upper is None else np.asarray(upper, dtype=float)
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"
