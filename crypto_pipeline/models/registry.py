"""Forecaster registry."""

import logging
from typing import Dict, Iterator, List, Optional

from .base import BaseForecaster
from .baselines import DriftForecaster, MeanForecaster, NaiveForecaster
from .gradient_boosting import LightGBMForecaster, XGBoostForecaster

logger = logging.getLogger(__name__)


class ForecasterRegistry:
    """Uniform lookup over forecaster implementations, in registration order."""

    def __init__(self, forecasters: Optional[List[BaseForecaster]] = None):
        self._forecasters: Dict[str, BaseForecaster] = {}
        for forecaster in forecasters or []:
            self.register(forecaster)

    def register(self, forecaster: BaseForecaster, replace: bool = False) -> None:
        """Register a forecaster under its ``name``."""
        if not isinstance(forecaster, BaseForecaster):
            raise TypeError("Forecaster must inherit from BaseForecaster.")
        key = forecaster.name.strip()
        if not key:
            raise ValueError("Forecaster name must be non-empty.")
        if key in self._forecasters and not replace:
            raise ValueError(f"Forecaster '{key}' is already registered.")
        self._forecasters[key] = forecaster
        logger.debug(f"Registered forecaster: {key}")

    def unregister(self, name: str) -> None:
        if name not in self._forecasters:
            raise KeyError(f"Forecaster '{name}' is not registered.")
        del self._forecasters[name]

    def get(self, name: str) -> BaseForecaster:
        if name not in self._forecasters:
            raise KeyError(f"Forecaster '{name}' is not registered.")
        return self._forecasters[name]

    def names(self) -> List[str]:
        return list(self._forecasters)

    def select(self, names: Optional[List[str]] = None) -> 'ForecasterRegistry':
        """A new registry restricted to ``names`` (all when None)."""
        if names is None:
            return ForecasterRegistry(list(self._forecasters.values()))
        return ForecasterRegistry([self.get(name) for name in names])

    def __contains__(self, name: str) -> bool:
        return name in self._forecasters

    def __iter__(self) -> Iterator[BaseForecaster]:
        return iter(list(self._forecasters.values()))

    def __len__(self) -> int:
        return len(self._forecasters)


def default_registry() -> ForecasterRegistry:
    """Registry with the built-in baselines and gradient-boosted forecasters."""
    return ForecasterRegistry([
        NaiveForecaster(),
        MeanForecaster(),
        DriftForecaster(),
        XGBoostForecaster(),
        LightGBMForecaster(),
    ])
