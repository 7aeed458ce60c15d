"""
Per-asset market time series.

Rows are daily UTC timestamps, strictly increasing and unique. Absent
observations are stored as NaN so that gaps stay visible downstream.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..parameters import VARIABLES

logger = logging.getLogger(__name__)

# CoinGecko payload keys for each variable
PAYLOAD_KEYS = {
    'price': 'prices',
    'volume': 'total_volumes',
    'market_cap': 'market_caps',
}


@dataclass(frozen=True)
class AssetSeries:
    """Ordered daily observations for one asset."""
    asset: str
    frame: pd.DataFrame

    def __post_init__(self):
        index = self.frame.index
        if not isinstance(index, pd.DatetimeIndex):
            raise ValueError(f"{self.asset}: index must be a DatetimeIndex")
        if index.has_duplicates:
            raise ValueError(f"{self.asset}: duplicate timestamps")
        if not index.is_monotonic_increasing:
            raise ValueError(f"{self.asset}: timestamps must be strictly increasing")
        unknown = [c for c in self.frame.columns if c not in VARIABLES]
        if unknown:
            raise ValueError(f"{self.asset}: unknown variables {unknown}")

    @property
    def variables(self) -> List[str]:
        return list(self.frame.columns)

    @property
    def timestamps(self) -> pd.DatetimeIndex:
        return self.frame.index

    def __len__(self) -> int:
        return len(self.frame)

    def missing_counts(self) -> Dict[str, int]:
        """Number of absent values per variable."""
        return {col: int(n) for col, n in self.frame.isna().sum().items()}

    def values(self, variable: str) -> np.ndarray:
        return self.frame[variable].to_numpy(dtype=float, copy=True)


def daily_calendar(start: date, end: date) -> pd.DatetimeIndex:
    """Every UTC day from ``start`` to ``end`` inclusive."""
    return pd.date_range(start=pd.Timestamp(start), end=pd.Timestamp(end), freq='D', name='timestamp')


def _points_to_daily(points: Iterable[Sequence[float]]) -> pd.Series:
    """Bucket [ms, value] pairs to UTC days, last observation per day wins."""
    points = [p for p in points if p is not None and len(p) >= 2]
    if not points:
        return pd.Series(dtype=float)

    timestamps = pd.to_datetime([p[0] for p in points], unit='ms').floor('D')
    values = pd.to_numeric(pd.Series([p[1] for p in points]), errors='coerce').to_numpy(dtype=float)
    series = pd.Series(values, index=timestamps)
    series = series.sort_index(kind='mergesort')
    return series[~series.index.duplicated(keep='last')]


def series_from_market_chart(
    asset: str,
    payload: Dict,
    variables: Sequence[str],
    date_range: Tuple[date, date]
) -> AssetSeries:
    """
    Build an AssetSeries from a CoinGecko ``market_chart`` payload.

    Days without any observation inside the requested range are kept as
    NaN rows rather than dropped or fabricated.

    Args:
        asset: CoinGecko asset id
        payload: Decoded JSON with ``prices``, ``total_volumes``, ``market_caps``
        variables: Variables to keep
        date_range: Inclusive (start, end) dates

    Returns:
        AssetSeries on the full daily calendar
    """
    calendar = daily_calendar(*date_range)
    columns = {}

    for variable in [v for v in VARIABLES if v in variables]:
        daily = _points_to_daily(payload.get(PAYLOAD_KEYS[variable]) or [])
        columns[variable] = daily.reindex(calendar).to_numpy(dtype=float)

    frame = pd.DataFrame(columns, index=calendar)

    missing = int(frame.isna().sum().sum())
    if missing:
        logger.debug(f"{asset}: {missing} absent values across {len(frame)} days")

    return AssetSeries(asset=asset, frame=frame)


def series_from_frame(
    asset: str,
    df: pd.DataFrame,
    variables: Optional[Sequence[str]] = None,
    timestamp_col: str = 'timestamp'
) -> AssetSeries:
    """Build an AssetSeries from a DataFrame with a timestamp column or index."""
    df = df.copy()
    if timestamp_col in df.columns:
        df = df.set_index(timestamp_col)
    df.index = pd.DatetimeIndex(pd.to_datetime(df.index), name='timestamp')
    df = df.sort_index(kind='mergesort')
    df = df[~df.index.duplicated(keep='last')]

    keep = [v for v in VARIABLES if v in df.columns and (variables is None or v in variables)]
    frame = df[keep].astype(float)

    return AssetSeries(asset=asset, frame=frame)
