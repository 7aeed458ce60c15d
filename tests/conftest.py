"""
Shared fixtures for the crypto_pipeline test suite.

Provides:
- CoinGecko-shaped payload builders and in-memory market data sources
- Synthetic AssetSeries
- Deterministic forecasters (oracle, failing, blocking)
"""

from __future__ import annotations

import threading
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd
import pytest

from crypto_pipeline.data import AssetSeries, series_from_frame
from crypto_pipeline.models.base import BaseForecaster


START = date(2024, 1, 1)
DAYS = 100


# ══════════════════════════════════════════════════════════════════════════════
# PAYLOADS & SOURCES
# ══════════════════════════════════════════════════════════════════════════════


def _ms(day: date, hour: int = 0) -> int:
    moment = datetime.combine(day, time(hour=hour), tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def price_path(days: int = DAYS, base: float = 100.0, slope: float = 1.0) -> np.ndarray:
    """Upward trend with a small deterministic wiggle."""
    steps = np.arange(days, dtype=float)
    return base + slope * steps + 2.0 * np.sin(steps / 3.0)


def make_payload(
    start: date = START,
    days: int = DAYS,
    base: float = 100.0,
    slope: float = 1.0,
    missing_days: Iterable[int] = ()
) -> Dict[str, list]:
    """CoinGecko ``market_chart`` payload, one point per day at 01:00 UTC."""
    missing = set(missing_days)
    prices = price_path(days, base, slope)
    payload = {'prices': [], 'total_volumes': [], 'market_caps': []}

    for i in range(days):
        if i in missing:
            continue
        stamp = _ms(start + timedelta(days=i), hour=1)
        payload['prices'].append([stamp, float(prices[i])])
        payload['total_volumes'].append([stamp, float(1e6 + 1e3 * i)])
        payload['market_caps'].append([stamp, float(prices[i] * 1e4)])

    return payload


class FakeSource:
    """In-memory market data source; values may be payloads or exceptions."""

    def __init__(self, responses: Dict[str, object]):
        self.responses = dict(responses)
        self.calls = []
        self._lock = threading.Lock()

    def get_market_chart_range(self, asset, start, end):
        with self._lock:
            self.calls.append((asset, start, end))
        response = self.responses[asset]
        if isinstance(response, Exception):
            raise response
        return response


class GatedSource(FakeSource):
    """Holds requests for ``gated`` assets until ``release`` is set."""

    def __init__(self, responses: Dict[str, object], gated: Iterable[str]):
        super().__init__(responses)
        self.gated = set(gated)
        self.started = threading.Event()
        self.release = threading.Event()

    def get_market_chart_range(self, asset, start, end):
        if asset in self.gated:
            self.started.set()
            self.release.wait(timeout=10)
        return super().get_market_chart_range(asset, start, end)


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource({
        'bitcoin': make_payload(base=40000.0, slope=50.0, missing_days=(10, 11, 40)),
        'ethereum': make_payload(base=2000.0, slope=5.0),
    })


@pytest.fixture
def raw_parameters() -> Dict[str, object]:
    return {
        'assets': ['bitcoin', 'ethereum'],
        'start_date': START.isoformat(),
        'end_date': (START + timedelta(days=DAYS - 1)).isoformat(),
        'variables': ['price', 'volume', 'market_cap'],
        'normalization': 'minmax',
        'interpolation': 'linear',
        'split': {'train': 0.8, 'validation': 0.1, 'test': 0.1},
    }


# ══════════════════════════════════════════════════════════════════════════════
# SERIES
# ══════════════════════════════════════════════════════════════════════════════


def make_series(
    asset: str = 'bitcoin',
    days: int = DAYS,
    prices: Optional[np.ndarray] = None,
    missing: Iterable[int] = ()
) -> AssetSeries:
    """Daily AssetSeries with price, volume and market cap."""
    index = pd.date_range(START, periods=days, freq='D', name='timestamp')
    price = np.array(price_path(days) if prices is None else prices, dtype=float)
    df = pd.DataFrame({
        'price': price,
        'volume': 1e6 + 1e3 * np.arange(days),
        'market_cap': price * 1e4,
    }, index=index)
    for i in missing:
        df.iloc[i, 0] = np.nan
    return series_from_frame(asset, df)


@pytest.fixture
def series() -> AssetSeries:
    return make_series()


# ══════════════════════════════════════════════════════════════════════════════
# FORECASTERS
# ══════════════════════════════════════════════════════════════════════════════


class OracleForecaster(BaseForecaster):
    """Forecasts the true normalized values of a known preprocessed series."""

    name = 'oracle'

    def __init__(self, preprocessed):
        self.preprocessed = preprocessed

    def _fit(self, split, params):
        return {}, {}

    def _forecast(self, model, horizon):
        normalized = self.preprocessed[model.asset].normalized[model.target]
        position = normalized.index.get_loc(model.last_timestamp)
        point = normalized.to_numpy()[position + 1:position + 1 + horizon]
        return point, None, None


class FailingForecaster(BaseForecaster):
    """Raises on every training call."""

    name = 'failing'

    def _fit(self, split, params):
        raise RuntimeError("boom")

    def _forecast(self, model, horizon):
        raise AssertionError("never trained")


class BlockingForecaster(BaseForecaster):
    """Holds training until released, so tests can act mid-stage."""

    name = 'blocking'

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def _fit(self, split, params):
        self.started.set()
        self.release.wait(timeout=10)
        return {'last': float(split.y_train[-1])}, {}

    def _forecast(self, model, horizon):
        return np.full(horizon, model.state['last']), None, None
