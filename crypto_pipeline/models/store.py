"""
Trained model persistence.

Saves TrainedModel artifacts with joblib, one file per (model, asset) and
timestamp, and keeps only the most recent versions.
"""

import logging
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Tuple

import joblib

from .base import TrainedModel

logger = logging.getLogger(__name__)


class ModelStore:
    """Versioned on-disk storage for trained models."""

    def __init__(self, models_path, model_prefix: str = 'forecaster', keep_last_n: int = 3):
        """
        Initialize model store.

        Args:
            models_path: Directory for model files
            model_prefix: File name prefix
            keep_last_n: Versions kept per (model, asset)
        """
        self.models_path = Path(models_path)
        self.model_prefix = model_prefix
        self.keep_last_n = max(1, int(keep_last_n))

    def _stem(self, model_name: str, asset: str) -> str:
        return f"{self.model_prefix}_{model_name}_{asset}"

    def save(self, model: TrainedModel) -> Path:
        """
        Save model to disk.

        Args:
            model: Trained model

        Returns:
            Path to saved model
        """
        self.models_path.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
        stem = self._stem(model.model_name, model.asset)
        filepath = self.models_path / f"{stem}_{timestamp}.joblib"

        save_data = {
            'model_name': model.model_name,
            'asset': model.asset,
            'target': model.target,
            'state': model.state,
            'last_timestamp': model.last_timestamp,
            'freq': model.freq,
            'hyperparameters': dict(model.hyperparameters),
            'metadata': {**dict(model.metadata), 'saved_at': datetime.now().isoformat()},
        }

        joblib.dump(save_data, filepath)
        logger.info(f"Model saved to {filepath}")

        self._cleanup_old_models(stem)

        return filepath

    def save_all(self, models: Dict[Tuple[str, str], TrainedModel]) -> List[Path]:
        return [self.save(model) for _, model in sorted(models.items())]

    def load(self, model_name: str, asset: str) -> TrainedModel:
        """
        Load latest model for a (model, asset) pair.

        Raises:
            FileNotFoundError: if nothing was saved for the pair
        """
        files = self._versions(self._stem(model_name, asset))

        if not files:
            raise FileNotFoundError(f"No models found for {model_name}/{asset}")

        data = joblib.load(files[0])
        logger.info(f"Model loaded from {files[0]}")

        return TrainedModel(
            model_name=data['model_name'],
            asset=data['asset'],
            target=data['target'],
            state=data['state'],
            last_timestamp=data['last_timestamp'],
            freq=data['freq'],
            hyperparameters=MappingProxyType(dict(data['hyperparameters'])),
            metadata=MappingProxyType(dict(data['metadata']))
        )

    def _versions(self, stem: str) -> List[Path]:
        """Saved files for a stem, newest first."""
        return sorted(self.models_path.glob(f"{stem}_*.joblib"), reverse=True)

    def _cleanup_old_models(self, stem: str) -> None:
        """Remove old model versions."""
        for old_file in self._versions(stem)[self.keep_last_n:]:
            old_file.unlink()
            logger.debug(f"Removed old model: {old_file}")
