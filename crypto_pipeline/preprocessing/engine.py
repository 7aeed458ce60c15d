"""
Preprocessing engine.

Turns a collected AssetSeries into a PreprocessedSeries:
1. Gap analysis and interpolation
2. Chronological train/validation/test split
3. Outlier detection and handling on the training split
4. Normalization fit on the training split, applied unchanged to the rest
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..data.series import AssetSeries
from ..exceptions import PreprocessingError
from ..parameters import Split
from .interpolation import interpolate
from .normalization import NormalizationParams, fit_normalization, outlier_bounds

logger = logging.getLogger(__name__)

SPLITS = ('train', 'validation', 'test')


@dataclass(frozen=True)
class PreprocessingConfig:
    """Preprocessing thresholds (all configurable, none inferred)."""
    polynomial_degree: int = 2
    polynomial_window: int = 3
    max_gap: Optional[int] = None
    outlier_method: str = 'zscore'
    outlier_threshold: float = 5.0
    outlier_action: str = 'clip'
    missing_value_threshold: float = 0.05

    def __post_init__(self):
        if self.outlier_method not in ('zscore', 'iqr'):
            raise ValueError(f"Unknown outlier method: {self.outlier_method}")
        if self.outlier_action not in ('clip', 'leave'):
            raise ValueError(f"Unknown outlier action: {self.outlier_action}")
        if self.polynomial_degree < 1 or self.polynomial_window < 1:
            raise ValueError("Polynomial degree and window must be positive")


@dataclass(frozen=True)
class VariableQuality:
    """Quality summary for one variable of one asset."""
    missing: int
    missing_fraction: float
    interpolated: int
    edge_filled: int
    long_gaps: int
    exceeds_missing_threshold: bool
    outliers_detected: int
    outliers_clipped: int


@dataclass(frozen=True)
class QualityReport:
    """Output quality summary for one asset."""
    asset: str
    rows: int
    outlier_method: str
    outlier_threshold: float
    outlier_action: str
    variables: Dict[str, VariableQuality] = field(default_factory=dict)

    @property
    def filled_values(self) -> int:
        return sum(q.interpolated + q.edge_filled for q in self.variables.values())

    @property
    def outliers(self) -> int:
        return sum(q.outliers_detected for q in self.variables.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'asset': self.asset,
            'rows': self.rows,
            'outlier_method': self.outlier_method,
            'outlier_threshold': self.outlier_threshold,
            'outlier_action': self.outlier_action,
            'variables': {name: vars(q).copy() for name, q in self.variables.items()},
        }


@dataclass(frozen=True)
class PreprocessedSeries:
    """
    Cleaned and normalized series for one asset.

    Read-only once produced: every accessor hands out a copy. ``raw`` keeps
    the collected values (NaN where absent) for scoring against real data.
    """
    asset: str
    interpolation: str
    normalization: str
    raw: pd.DataFrame
    values: pd.DataFrame
    normalized: pd.DataFrame
    params: Dict[str, NormalizationParams]
    train_end: int
    validation_end: int
    interpolated_mask: pd.DataFrame
    edge_filled_mask: pd.DataFrame
    quality: QualityReport

    @property
    def variables(self) -> List[str]:
        return list(self.values.columns)

    @property
    def timestamps(self) -> pd.DatetimeIndex:
        return self.values.index.copy()

    @property
    def freq(self) -> pd.Timedelta:
        if len(self.values.index) > 1:
            return self.values.index[1] - self.values.index[0]
        return pd.Timedelta(days=1)

    def _bounds(self, split: str) -> slice:
        if split == 'train':
            return slice(0, self.train_end)
        if split == 'validation':
            return slice(self.train_end, self.validation_end)
        if split == 'test':
            return slice(self.validation_end, len(self.values))
        raise KeyError(f"Unknown split: {split}")

    def split_frame(self, split: str, normalized: bool = True) -> pd.DataFrame:
        """Return a copy of one chronological split."""
        source = self.normalized if normalized else self.values
        return source.iloc[self._bounds(split)].copy()

    def actual_frame(self, split: str) -> pd.DataFrame:
        """Return a copy of one split as collected, before filling or clipping."""
        return self.raw.iloc[self._bounds(split)].copy()

    @property
    def train(self) -> pd.DataFrame:
        return self.split_frame('train')

    @property
    def validation(self) -> pd.DataFrame:
        return self.split_frame('validation')

    @property
    def test(self) -> pd.DataFrame:
        return self.split_frame('test')

    def split_sizes(self) -> Dict[str, int]:
        return {name: len(self.split_frame(name)) for name in SPLITS}

    def normalize(self, variable: str, values) -> np.ndarray:
        return self.params[variable].transform(values)

    def denormalize(self, variable: str, values) -> np.ndarray:
        """Map normalized values back to original units."""
        return self.params[variable].inverse_transform(values)

    def summary(self) -> Dict[str, Any]:
        return {
            'asset': self.asset,
            'rows': len(self.values),
            'start': self.values.index[0].isoformat(),
            'end': self.values.index[-1].isoformat(),
            'interpolation': self.interpolation,
            'normalization': self.normalization,
            'splits': self.split_sizes(),
            'params': {var: p.to_dict() for var, p in self.params.items()},
            'quality': self.quality.to_dict(),
        }


def split_boundaries(n: int, split: Union[Split, Sequence[float]]) -> Tuple[int, int]:
    """Chronological split indices (train_end, validation_end)."""
    train, validation, _ = split.as_tuple() if isinstance(split, Split) else tuple(split)
    train_end = int(round(n * train, 9))
    validation_end = train_end + int(round(n * validation, 9))
    return train_end, validation_end


class PreprocessingEngine:
    """Missing-value interpolation, outlier handling and normalization."""

    def __init__(self, config: Optional[PreprocessingConfig] = None):
        """
        Initialize preprocessing engine.

        Args:
            config: Thresholds (defaults when omitted)
        """
        self.config = config or PreprocessingConfig()

    def process(
        self,
        series: AssetSeries,
        interpolation: str,
        normalization: str,
        split: Union[Split, Sequence[float]] = (0.8, 0.1, 0.1),
        missing_value_threshold: Optional[float] = None
    ) -> PreprocessedSeries:
        """
        Preprocess one asset's series.

        Args:
            series: Collected series with NaN for absent values
            interpolation: 'linear', 'polynomial' or 'spline'
            normalization: 'minmax', 'standard' or 'robust'
            split: (train, validation, test) fractions
            missing_value_threshold: Overrides the configured threshold

        Returns:
            PreprocessedSeries

        Raises:
            PreprocessingError: if the series has no usable points or splits are empty
        """
        cfg = self.config
        threshold = cfg.missing_value_threshold if missing_value_threshold is None else missing_value_threshold
        asset = series.asset
        frame = series.frame
        n = len(frame)

        logger.info(f"Preprocessing {asset}: {n} rows, {interpolation} / {normalization}")

        if n == 0 or frame.shape[1] == 0:
            raise PreprocessingError(asset, "series is empty")

        train_end, validation_end = split_boundaries(n, split)
        if train_end < 2:
            raise PreprocessingError(asset, f"training split has {train_end} rows, need at least 2")
        if validation_end >= n:
            raise PreprocessingError(asset, "test split is empty")

        filled = {}
        interpolated_mask = {}
        edge_mask = {}
        gap_info = {}

        # Step 1: Gap analysis and interpolation
        for variable in frame.columns:
            raw = frame[variable].to_numpy(dtype=float)
            if np.isnan(raw).all():
                raise PreprocessingError(asset, "no usable points after gap analysis", variable)

            values, interp, edge, gaps = interpolate(
                raw,
                method=interpolation,
                polynomial_degree=cfg.polynomial_degree,
                polynomial_window=cfg.polynomial_window
            )
            filled[variable] = values
            interpolated_mask[variable] = interp
            edge_mask[variable] = edge

            missing = int(np.isnan(raw).sum())
            long_gaps = 0
            if cfg.max_gap is not None:
                long_gaps = sum(1 for g in gaps if g.length > cfg.max_gap)
            gap_info[variable] = (missing, long_gaps)

            if missing / n > threshold:
                logger.warning(
                    f"{asset}/{variable}: {missing / n:.1%} missing exceeds threshold {threshold:.1%}"
                )

        # Step 2: Outliers in the training split only; validation and test stay as observed
        outlier_counts = {}
        for variable, values in filled.items():
            train_values = values[:train_end]
            lower, upper = outlier_bounds(train_values, cfg.outlier_method, cfg.outlier_threshold)
            outside = (train_values < lower) | (train_values > upper)
            detected = int(outside.sum())
            clipped = 0
            if detected and cfg.outlier_action == 'clip':
                values = values.copy()
                values[:train_end] = np.clip(train_values, lower, upper)
                filled[variable] = values
                clipped = detected
            outlier_counts[variable] = (detected, clipped)
            if detected:
                logger.info(f"{asset}/{variable}: {detected} outliers ({cfg.outlier_action})")

        # Step 3: Normalization fit on the training split only
        params = {}
        normalized = {}
        for variable, values in filled.items():
            fitted = fit_normalization(values[:train_end], normalization)
            params[variable] = fitted
            normalized[variable] = fitted.transform(values)

        index = frame.index.copy()
        columns = list(frame.columns)

        quality = QualityReport(
            asset=asset,
            rows=n,
            outlier_method=cfg.outlier_method,
            outlier_threshold=cfg.outlier_threshold,
            outlier_action=cfg.outlier_action,
            variables={
                variable: VariableQuality(
                    missing=gap_info[variable][0],
                    missing_fraction=gap_info[variable][0] / n,
                    interpolated=int(interpolated_mask[variable].sum()),
                    edge_filled=int(edge_mask[variable].sum()),
                    long_gaps=gap_info[variable][1],
                    exceeds_missing_threshold=gap_info[variable][0] / n > threshold,
                    outliers_detected=outlier_counts[variable][0],
                    outliers_clipped=outlier_counts[variable][1],
                )
                for variable in columns
            }
        )

        logger.info(
            f"✓ {asset}: filled {quality.filled_values} values, "
            f"{quality.outliers} outliers, split {train_end}/{validation_end - train_end}/{n - validation_end}"
        )

        return PreprocessedSeries(
            asset=asset,
            interpolation=interpolation,
            normalization=normalization,
            raw=frame.astype(float).copy(),
            values=pd.DataFrame(filled, index=index, columns=columns),
            normalized=pd.DataFrame(normalized, index=index, columns=columns),
            params=params,
            train_end=train_end,
            validation_end=validation_end,
            interpolated_mask=pd.DataFrame(interpolated_mask, index=index, columns=columns),
            edge_filled_mask=pd.DataFrame(edge_mask, index=index, columns=columns),
            quality=quality,
        )
