"""
Configuration management module.

Provides centralized configuration loading and validation.
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv

from .evaluation.engine import EvaluationConfig
from .parameters import ParameterSet, validate
from .preprocessing.engine import PreprocessingConfig

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """
    Central configuration manager.

    Loads configuration from YAML file and provides typed access
    to all settings with validation.
    """

    def __init__(self, config_path: str = "config/config.yaml", setup_logging: bool = True):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML configuration file
            setup_logging: Configure the root logger from the logging section
        """
        self.config_path = Path(config_path)
        self._raw_config: Dict[str, Any] = {}
        self._load_config()
        if setup_logging:
            self._setup_logging()
        self._validate_config()

    def _load_config(self) -> None:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            self._raw_config = yaml.safe_load(f) or {}

        logger.info(f"Configuration loaded from {self.config_path}")

    def _setup_logging(self) -> None:
        """Configure logging based on settings."""
        log_config = self._raw_config.get('logging', {})
        log_level = getattr(logging, log_config.get('level', 'INFO'))
        log_format = log_config.get('format', '%(asctime)s - %(levelname)s - %(message)s')
        log_file = log_config.get('file', 'logs/pipeline.log')

        handlers: List[logging.Handler] = [logging.StreamHandler()]
        if log_file:
            os.makedirs(os.path.dirname(log_file) or '.', exist_ok=True)
            handlers.insert(0, logging.FileHandler(log_file))

        # Configure root logger
        logging.basicConfig(
            level=log_level,
            format=log_format,
            handlers=handlers
        )

    def _validate_config(self) -> None:
        """Validate configuration values."""
        required_sections = ['api', 'pipeline']

        for section in required_sections:
            if section not in self._raw_config:
                raise ValueError(f"Missing required config section: {section}")

        if 'coingecko' not in self._raw_config['api']:
            raise ValueError("Missing API settings: api.coingecko")

        # Fail early on pipeline parameters, reporting every issue at once
        self.parameter_set()

        logger.info("Configuration validation passed")

    # ==========================================================================
    # API Configuration
    # ==========================================================================

    @property
    def _coingecko(self) -> Dict[str, Any]:
        return self._raw_config['api']['coingecko']

    @property
    def coingecko_base_url(self) -> str:
        return self._coingecko.get('base_url', 'https://api.coingecko.com/api/v3')

    @property
    def api_timeout(self) -> float:
        return self._coingecko.get('timeout', 30)

    @property
    def api_max_retries(self) -> int:
        return self._coingecko.get('max_retries', 3)

    @property
    def api_backoff_factor(self) -> float:
        return self._coingecko.get('backoff_factor', 2.0)

    @property
    def api_max_backoff(self) -> float:
        return self._coingecko.get('max_backoff', 60.0)

    @property
    def rate_limit_delay(self) -> float:
        return self._coingecko.get('rate_limit_delay', 1.5)

    @property
    def api_key(self) -> Optional[str]:
        """Demo API key, read from the environment (never from the YAML file)."""
        return os.getenv('COINGECKO_API_KEY') or None

    # ==========================================================================
    # Pipeline Parameters
    # ==========================================================================

    @property
    def raw_parameters(self) -> Dict[str, Any]:
        return dict(self._raw_config['pipeline'])

    def parameter_set(self, **overrides) -> ParameterSet:
        """
        Build the validated ParameterSet.

        Args:
            **overrides: Raw values replacing those from the file (e.g. assets)

        Raises:
            ValidationError: with every violation found
        """
        raw = self.raw_parameters
        raw.update({k: v for k, v in overrides.items() if v is not None})
        return validate(raw)

    @property
    def coins(self) -> List[str]:
        return list(self._raw_config['pipeline'].get('assets', []))

    # ==========================================================================
    # Preprocessing / Evaluation Configuration
    # ==========================================================================

    @property
    def preprocessing_config(self) -> PreprocessingConfig:
        """Get preprocessing configuration."""
        prep = self._raw_config.get('preprocessing', {})
        outliers = prep.get('outliers', {})

        return PreprocessingConfig(
            polynomial_degree=prep.get('polynomial_degree', 2),
            polynomial_window=prep.get('polynomial_window', 3),
            max_gap=prep.get('max_gap'),
            outlier_method=outliers.get('method', 'zscore'),
            outlier_threshold=outliers.get('threshold', 5.0),
            outlier_action=outliers.get('action', 'clip'),
            missing_value_threshold=self._raw_config['pipeline'].get('missing_value_threshold', 0.05)
        )

    @property
    def evaluation_config(self) -> EvaluationConfig:
        """Get evaluation configuration."""
        ev = self._raw_config.get('evaluation', {})

        return EvaluationConfig(
            mape_epsilon=ev.get('mape_epsilon', 1e-8),
            significance_test=ev.get('significance_test', 'wilcoxon'),
            alpha=ev.get('alpha', 0.05)
        )

    @property
    def enabled_models(self) -> Optional[List[str]]:
        """Forecasters to train; None means every registered one."""
        return self._raw_config.get('models', {}).get('enabled')

    # ==========================================================================
    # Storage Configuration
    # ==========================================================================

    @property
    def persist_models(self) -> bool:
        return self._raw_config.get('storage', {}).get('enabled', False)

    @property
    def models_path(self) -> Path:
        return Path(self._raw_config.get('storage', {}).get('models_path', 'models'))

    @property
    def model_prefix(self) -> str:
        return self._raw_config.get('storage', {}).get('model_prefix', 'forecaster')

    @property
    def keep_last_n_models(self) -> int:
        return self._raw_config.get('storage', {}).get('keep_last_n', 3)

    # ==========================================================================
    # Parallel Processing
    # ==========================================================================

    @property
    def max_workers(self) -> int:
        workers = self._raw_config.get('parallel', {}).get('max_workers', -1)
        if workers == -1:
            return os.cpu_count() or 1
        return workers

    # ==========================================================================
    # Utility Methods
    # ==========================================================================

    def set(self, section: str, key: str, value: Any) -> None:
        """Override a single setting (used by the CLI)."""
        self._raw_config.setdefault(section, {})[key] = value

    def to_dict(self) -> Dict[str, Any]:
        """Return raw configuration dictionary."""
        return self._raw_config.copy()

    def __repr__(self) -> str:
        return f"Config(path={self.config_path}, coins={len(self.coins)})"


# Convenience function for loading config
def load_config(config_path: str = "config/config.yaml") -> Config:
    """Load configuration from file."""
    return Config(config_path)
