"""
Crypto Pipeline - Cryptocurrency Forecast Comparison Pipeline

This package provides a staged, cancellable workflow for:
- Fetching daily market data (price, volume, market cap) from CoinGecko
- Gap-filling, outlier handling and train-only normalization
- Training baseline and gradient boosting forecasters per asset
- Comparing forecasters with accuracy metrics and paired significance tests

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Crypto Forecast Team"

from .config import Config
from .parameters import ParameterSet, validate
from .pipeline.orchestrator import Pipeline

__all__ = ["Config", "ParameterSet", "Pipeline", "validate", "__version__"]
