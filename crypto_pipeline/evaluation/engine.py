"""
Evaluation engine.

Scores every trained (model, asset) pair on the held-out test split in
original units, compares models pairwise with a paired significance test,
aggregates metrics across assets and ranks the models.
"""

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from ..exceptions import EvaluationError
from ..models.base import Forecast, TrainedModel
from ..models.registry import ForecasterRegistry
from ..preprocessing.engine import PreprocessedSeries
from .metrics import MAPE_EPSILON, calculate_metrics
from .significance import TESTS, SignificanceResult, compare_pair

logger = logging.getLogger(__name__)

METRICS = ('mae', 'rmse', 'mape', 'r2')

ModelKey = Tuple[str, str]


@dataclass(frozen=True)
class EvaluationConfig:
    """Evaluation settings."""
    mape_epsilon: float = MAPE_EPSILON
    significance_test: str = 'wilcoxon'
    alpha: float = 0.05

    def __post_init__(self):
        if self.significance_test not in TESTS:
            raise ValueError(f"Unknown significance test: {self.significance_test}")
        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")


@dataclass(frozen=True)
class EvaluationResult:
    """Accuracy of one model on one asset's test split."""
    model: str
    asset: str
    mae: Optional[float]
    rmse: Optional[float]
    mape: Optional[float]
    r2: Optional[float]
    n_points: int
    flags: Tuple[str, ...] = ()

    @property
    def mape_available(self) -> bool:
        return self.mape is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'asset': self.asset,
            'mae': self.mae,
            'rmse': self.rmse,
            'mape': self.mape,
            'r2': self.r2,
            'n_points': self.n_points,
            'flags': list(self.flags),
        }


@dataclass(frozen=True)
class EvaluationReport:
    """Everything the evaluation stage produces for one pipeline run."""
    results: Mapping[ModelKey, EvaluationResult]
    significance: Tuple[SignificanceResult, ...]
    aggregate: Mapping[str, Mapping[str, Optional[float]]]
    best_per_asset: Mapping[str, str]
    overall_winner: Optional[str]
    forecasts: Mapping[ModelKey, Forecast] = field(default_factory=dict)
    errors: Mapping[ModelKey, EvaluationError] = field(default_factory=dict)
    excluded: Mapping[ModelKey, str] = field(default_factory=dict)

    @property
    def models(self) -> List[str]:
        return sorted({model for model, _ in self.results})

    @property
    def assets(self) -> List[str]:
        return sorted({asset for _, asset in self.results})

    def result(self, model: str, asset: str) -> EvaluationResult:
        return self.results[(model, asset)]

    def to_frame(self) -> pd.DataFrame:
        """One row per (model, asset)."""
        rows = [r.to_dict() for _, r in sorted(self.results.items())]
        columns = ['model', 'asset', *METRICS, 'n_points', 'flags']
        return pd.DataFrame(rows, columns=columns)

    def aggregate_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.aggregate).T
        frame.index.name = 'model'
        return frame

    def significance_frame(self) -> pd.DataFrame:
        rows = [s.to_dict() for s in self.significance]
        return pd.DataFrame(rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'results': [r.to_dict() for _, r in sorted(self.results.items())],
            'aggregate': {m: dict(v) for m, v in self.aggregate.items()},
            'significance': [s.to_dict() for s in self.significance],
            'best_per_asset': dict(self.best_per_asset),
            'overall_winner': self.overall_winner,
            'errors': {f"{m}/{a}": str(e) for (m, a), e in sorted(self.errors.items())},
            'excluded': {f"{m}/{a}": reason for (m, a), reason in sorted(self.excluded.items())},
        }


def _mean(values: List[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return float(np.mean(present)) if present else None


class EvaluationEngine:
    """Computes accuracy metrics, significance tests and rankings."""

    def __init__(self, config: Optional[EvaluationConfig] = None):
        """
        Initialize evaluation engine.

        Args:
            config: Evaluation settings (defaults when omitted)
        """
        self.config = config or EvaluationConfig()

    def evaluate_model(
        self,
        forecaster,
        model: TrainedModel,
        series: PreprocessedSeries
    ) -> Tuple[EvaluationResult, Forecast, np.ndarray, Optional[EvaluationError]]:
        """
        Score one trained model on its asset's test split.

        The model forecasts across the validation and test splits from the
        end of its training data; only the test part is scored, against the
        values as collected. Days that were absent upstream are skipped.

        Returns:
            Tuple of (result, forecast in original units, absolute errors
            (NaN on skipped days), degradation note or None)
        """
        sizes = series.split_sizes()
        n_test = sizes['test']
        horizon = sizes['validation'] + n_test
        target = model.target

        forecast = forecaster.predict(model, horizon)
        if forecast.horizon != horizon:
            raise ValueError(f"expected {horizon} forecasts, got {forecast.horizon}")

        point = series.denormalize(target, forecast.point[-n_test:])
        lower = upper = None
        if forecast.has_intervals:
            lower = series.denormalize(target, forecast.lower[-n_test:])
            upper = series.denormalize(target, forecast.upper[-n_test:])

        if not np.all(np.isfinite(point)):
            raise ValueError("forecast contains non-finite values")

        # Collected values only: interpolated and edge-filled days are not ground truth
        actual = series.actual_frame('test')[target].to_numpy(dtype=float)
        observed = np.isfinite(actual)
        if not observed.any():
            raise ValueError("test split has no observed values")

        metrics = calculate_metrics(actual, point, self.config.mape_epsilon)

        flags = []
        degradation = None
        if not observed.all():
            flags.append('filled_actuals_excluded')
        if metrics['mape'] is None:
            flags.append('mape_unavailable')
            degradation = EvaluationError(
                model.model_name, model.asset,
                f"MAPE unavailable: no actual value with |actual| >= {self.config.mape_epsilon}"
            )
        if metrics['r2'] is None:
            flags.append('r2_unavailable')

        result = EvaluationResult(
            model=model.model_name,
            asset=model.asset,
            n_points=int(observed.sum()),
            flags=tuple(flags),
            **metrics
        )

        scored = Forecast(
            model_name=forecast.model_name,
            asset=forecast.asset,
            index=forecast.index[-n_test:],
            point=point,
            lower=lower,
            upper=upper
        )

        return result, scored, np.abs(point - actual), degradation

    def evaluate(
        self,
        models: Mapping[ModelKey, TrainedModel],
        series: Mapping[str, PreprocessedSeries],
        registry: ForecasterRegistry,
        excluded: Optional[Mapping[ModelKey, str]] = None,
        on_complete: Optional[Callable[[ModelKey, Optional[Exception]], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> EvaluationReport:
        """
        Evaluate every trained model.

        Args:
            models: Trained models keyed by (model name, asset)
            series: Preprocessed series per asset
            registry: Forecasters that produced the models
            excluded: (model, asset) pairs that failed training, with reasons
            on_complete: Called after each pair with its error (or None)
            should_stop: Polled between pairs; stops early when true

        Returns:
            EvaluationReport
        """
        results: Dict[ModelKey, EvaluationResult] = {}
        forecasts: Dict[ModelKey, Forecast] = {}
        abs_errors: Dict[ModelKey, np.ndarray] = {}
        errors: Dict[ModelKey, EvaluationError] = {}

        for key in sorted(models):
            if should_stop is not None and should_stop():
                break

            model_name, asset = key
            error = None
            try:
                result, forecast, abs_error, degradation = self.evaluate_model(
                    registry.get(model_name), models[key], series[asset]
                )
                results[key] = result
                forecasts[key] = forecast
                abs_errors[key] = abs_error
                if degradation is not None:
                    errors[key] = degradation
                    logger.warning(f"  {degradation}")
                logger.info(
                    f"✓ {model_name}/{asset}: MAE={result.mae:.4f} RMSE={result.rmse:.4f} "
                    f"MAPE={'n/a' if result.mape is None else f'{result.mape:.2f}%'}"
                )
            except Exception as e:
                error = EvaluationError(model_name, asset, f"{type(e).__name__}: {e}")
                errors[key] = error
                logger.error(f"✗ {error}")

            if on_complete is not None:
                on_complete(key, error)

        significance = self._significance(abs_errors)
        aggregate = self._aggregate(results)
        best_per_asset = self._best_per_asset(results)
        overall_winner = self._overall_winner(aggregate)

        if overall_winner:
            logger.info(f"Overall winner: {overall_winner}")

        return EvaluationReport(
            results=results,
            significance=tuple(significance),
            aggregate=aggregate,
            best_per_asset=best_per_asset,
            overall_winner=overall_winner,
            forecasts=forecasts,
            errors=errors,
            excluded=dict(excluded or {})
        )

    def _significance(self, abs_errors: Dict[ModelKey, np.ndarray]) -> List[SignificanceResult]:
        test, alpha = self.config.significance_test, self.config.alpha
        model_names = sorted({m for m, _ in abs_errors})
        assets = sorted({a for _, a in abs_errors})
        comparisons = []

        for model_a, model_b in combinations(model_names, 2):
            pooled_a, pooled_b = [], []

            for asset in assets:
                if (model_a, asset) not in abs_errors or (model_b, asset) not in abs_errors:
                    continue
                errors_a, errors_b = abs_errors[(model_a, asset)], abs_errors[(model_b, asset)]
                comparisons.append(compare_pair(model_a, model_b, errors_a, errors_b, asset, test, alpha))
                pooled_a.append(errors_a)
                pooled_b.append(errors_b)

            if pooled_a:
                comparisons.append(compare_pair(
                    model_a, model_b,
                    np.concatenate(pooled_a), np.concatenate(pooled_b),
                    'pooled', test, alpha
                ))

        return comparisons

    @staticmethod
    def _aggregate(results: Dict[ModelKey, EvaluationResult]) -> Dict[str, Dict[str, Optional[float]]]:
        """Mean of each metric across assets, per model."""
        aggregate = {}
        for model in sorted({m for m, _ in results}):
            rows = [r for (m, _), r in results.items() if m == model]
            aggregate[model] = {
                metric: _mean([getattr(r, metric) for r in rows]) for metric in METRICS
            }
            aggregate[model]['assets'] = len(rows)
        return aggregate

    @staticmethod
    def _best_per_asset(results: Dict[ModelKey, EvaluationResult]) -> Dict[str, str]:
        """Lowest MAPE per asset; lowest RMSE when any candidate lacks MAPE."""
        best = {}
        for asset in sorted({a for _, a in results}):
            candidates = [r for (_, a), r in results.items() if a == asset]
            use_mape = all(r.mape is not None for r in candidates)

            def key(r: EvaluationResult):
                primary = r.mape if use_mape else r.rmse
                r2 = r.r2 if r.r2 is not None else -np.inf
                return (primary, -r2, r.model)

            best[asset] = min(candidates, key=key).model
        return best

    @staticmethod
    def _overall_winner(aggregate: Dict[str, Dict[str, Optional[float]]]) -> Optional[str]:
        """Lowest mean MAPE, ties broken by higher mean R²."""
        if not aggregate:
            return None

        candidates = [m for m, agg in aggregate.items() if agg['mape'] is not None]
        primary = 'mape'
        if not candidates:
            candidates = [m for m, agg in aggregate.items() if agg['rmse'] is not None]
            primary = 'rmse'
        if not candidates:
            return None

        def key(model: str):
            r2 = aggregate[model]['r2']
            return (aggregate[model][primary], -(r2 if r2 is not None else -np.inf), model)

        return min(candidates, key=key)
