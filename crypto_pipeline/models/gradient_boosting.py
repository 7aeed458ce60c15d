"""
Gradient-boosted autoregressive forecasters.

XGBoost and LightGBM regressors trained on lagged values of the target.
Multi-step forecasts are produced recursively: each prediction is fed back
as the most recent lag for the next step. The validation split, when
present, is used as the early-stopping evaluation set.
"""

import logging
from abc import abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import xgboost as xgb
import lightgbm as lgb

from .base import BaseForecaster, TrainedModel, TrainingSplit

logger = logging.getLogger(__name__)

# Settings that shape the lag matrix or training loop rather than the estimator
NON_ESTIMATOR_PARAMS = ('lags', 'early_stopping_rounds', 'epochs', 'batch_size')


def lag_matrix(y: np.ndarray, lags: List[int], start: int) -> pd.DataFrame:
    """
    Build lag features for rows ``start`` .. ``len(y) - 1``.

    Args:
        y: Target history
        lags: Positive lag offsets
        start: First row to build (must be >= max(lags))

    Returns:
        DataFrame with one ``lag_k`` column per lag
    """
    rows = np.arange(start, len(y))
    return pd.DataFrame({f'lag_{lag}': y[rows - lag] for lag in lags})


class LagRegressionForecaster(BaseForecaster):
    """Shared training and recursive prediction for lag regressors."""

    def _lags(self, params: Dict[str, Any]) -> List[int]:
        lags = sorted({int(lag) for lag in params.get('lags', [1])})
        if not lags or lags[0] < 1:
            raise ValueError(f"Lags must be positive integers, got {params.get('lags')}")
        return lags

    @abstractmethod
    def _build_estimator(self, params: Dict[str, Any], early_stopping: bool):
        """Create the underlying regressor."""

    @abstractmethod
    def _fit_estimator(self, estimator, X, y, eval_set, params: Dict[str, Any]) -> Dict[str, Any]:
        """Fit and return training metadata."""

    def _fit(self, split: TrainingSplit, params: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        lags = self._lags(params)
        max_lag = lags[-1]
        y_train = split.y_train

        if len(y_train) - max_lag < 2:
            raise ValueError(
                f"Need more than {max_lag + 1} training rows for lags {lags}, got {len(y_train)}"
            )

        X_train = lag_matrix(y_train, lags, max_lag)
        target = y_train[max_lag:]

        eval_set = None
        y_val = split.y_validation
        if len(y_val) > 0:
            history = np.concatenate([y_train, y_val])
            X_val = lag_matrix(history, lags, len(y_train))
            eval_set = [(X_val, y_val)]

        early_stopping = eval_set is not None and bool(params.get('early_stopping_rounds'))
        estimator = self._build_estimator(params, early_stopping)

        logger.info(f"Training {self.name} on {len(X_train)} samples for {split.asset}...")
        metadata = self._fit_estimator(estimator, X_train, target, eval_set, params)

        residuals = target - estimator.predict(X_train)
        state = {
            'estimator': estimator,
            'lags': lags,
            'history': y_train[-max_lag:].copy(),
            'residual_std': float(np.std(residuals)),
        }
        metadata.update({'n_features': len(lags), 'lags': lags})

        return state, metadata

    def _forecast(self, model: TrainedModel, horizon: int):
        state = model.state
        lags = state['lags']
        history = list(state['history'])
        estimator = state['estimator']
        point = np.empty(horizon)

        for step in range(horizon):
            features = pd.DataFrame([[history[-lag] for lag in lags]], columns=[f'lag_{lag}' for lag in lags])
            value = float(estimator.predict(features)[0])
            point[step] = value
            history.append(value)

        return point, None, None

    @staticmethod
    def _estimator_params(params: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in params.items() if k not in NON_ESTIMATOR_PARAMS}


class XGBoostForecaster(LagRegressionForecaster):
    """
    XGBoost autoregressive forecaster.

    Features:
    - Gradient boosted trees over lagged target values
    - Early stopping on the validation split
    """

    name = 'xgboost'
    DEFAULT_PARAMS = {
        'lags': [1, 2, 3, 7, 14],
        'learning_rate': 0.05,
        'max_depth': 6,
        'n_estimators': 500,
        'subsample': 0.8,
        'colsample_bytree': 0.8,
        'reg_alpha': 0.1,
        'reg_lambda': 1.0,
        'tree_method': 'hist',
        'n_jobs': 1,
        'random_state': 42,
        'early_stopping_rounds': 50
    }

    def _build_estimator(self, params: Dict[str, Any], early_stopping: bool):
        estimator_params = self._estimator_params(params)
        if early_stopping:
            estimator_params['early_stopping_rounds'] = int(params['early_stopping_rounds'])
        return xgb.XGBRegressor(**estimator_params)

    def _fit_estimator(self, estimator, X, y, eval_set, params: Dict[str, Any]) -> Dict[str, Any]:
        estimator.fit(X, y, eval_set=eval_set, verbose=False)

        try:
            best_iteration = int(estimator.best_iteration)
            logger.info(f"XGBoost training complete. Best iteration: {best_iteration}")
        except AttributeError:
            best_iteration = int(estimator.n_estimators)
            logger.info(f"XGBoost training complete. Used {best_iteration} estimators (no early stopping)")

        return {'best_iteration': best_iteration}


class LightGBMForecaster(LagRegressionForecaster):
    """
    LightGBM autoregressive forecaster.

    Features:
    - Leaf-wise gradient boosting over lagged target values
    - Early stopping on the validation split
    """

    name = 'lightgbm'
    DEFAULT_PARAMS = {
        'lags': [1, 2, 3, 7, 14],
        'learning_rate': 0.05,
        'num_leaves': 31,
        'max_depth': -1,
        'n_estimators': 500,
        'subsample': 0.8,
        'colsample_bytree': 0.8,
        'reg_alpha': 0.1,
        'reg_lambda': 1.0,
        'n_jobs': 1,
        'random_state': 42,
        'verbose': -1,
        'early_stopping_rounds': 50
    }

    def _build_estimator(self, params: Dict[str, Any], early_stopping: bool):
        return lgb.LGBMRegressor(**self._estimator_params(params))

    def _fit_estimator(self, estimator, X, y, eval_set, params: Dict[str, Any]) -> Dict[str, Any]:
        callbacks = [lgb.log_evaluation(period=0)]
        if eval_set is not None and params.get('early_stopping_rounds'):
            callbacks.append(lgb.early_stopping(
                stopping_rounds=int(params['early_stopping_rounds']),
                verbose=False
            ))

        estimator.fit(X, y, eval_set=eval_set, callbacks=callbacks)

        best_iteration = estimator.best_iteration_ or estimator.n_estimators
        logger.info(f"LightGBM training complete. Best iteration: {best_iteration}")

        return {'best_iteration': int(best_iteration)}
