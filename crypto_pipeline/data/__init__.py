"""
Data module for cryptocurrency market data.

This module provides:
- CoinGecko API client with retry and rate limiting
- Parallel per-asset fetching into daily series
- Validation of collected series
"""

from .ingestion import CoinGeckoClient, FetchResult, MarketDataFetcher
from .series import AssetSeries, series_from_frame, series_from_market_chart
from .validator import SeriesValidator, ValidationReport

__all__ = [
    "AssetSeries",
    "CoinGeckoClient",
    "FetchResult",
    "MarketDataFetcher",
    "SeriesValidator",
    "ValidationReport",
    "series_from_frame",
    "series_from_market_chart",
]
