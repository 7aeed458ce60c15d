"""
Tests for crypto_pipeline.models.

These tests cover:
- Baseline forecasters (naive, mean, drift) and their intervals
- XGBoost and LightGBM autoregressive forecasters
- Forecaster registry
- Versioned model persistence
"""

from __future__ import annotations

import dataclasses

import numpy as np
import pandas as pd
import pytest

from crypto_pipeline.models import (
    BaseForecaster,
    DriftForecaster,
    ForecasterRegistry,
    LightGBMForecaster,
    MeanForecaster,
    ModelStore,
    NaiveForecaster,
    TrainingSplit,
    XGBoostForecaster,
    default_registry,
)
from crypto_pipeline.preprocessing import PreprocessingEngine

from conftest import make_series


# ══════════════════════════════════════════════════════════════════════════════
# FIXTURES & HELPERS
# ══════════════════════════════════════════════════════════════════════════════


def _split(values, validation=()) -> TrainingSplit:
    """TrainingSplit over a plain price array."""
    values = np.asarray(values, dtype=float)
    validation = np.asarray(validation, dtype=float)
    index = pd.date_range('2024-01-01', periods=len(values) + len(validation), freq='D')
    return TrainingSplit(
        asset='bitcoin',
        target='price',
        train=pd.DataFrame({'price': values}, index=index[:len(values)]),
        validation=pd.DataFrame({'price': validation}, index=index[len(values):]),
    )


@pytest.fixture
def preprocessed_split() -> TrainingSplit:
    series = PreprocessingEngine().process(make_series(), 'linear', 'minmax', (0.8, 0.1, 0.1))
    return TrainingSplit.from_series(series, 'price')


# ══════════════════════════════════════════════════════════════════════════════
# TEST: BASELINES
# ══════════════════════════════════════════════════════════════════════════════


class TestBaselines:
    """Naive, mean and drift reference forecasters."""

    def test_naive_repeats_last_value(self) -> None:
        forecaster = NaiveForecaster()
        model = forecaster.train(_split([1.0, 2.0, 4.0, 3.0]))

        forecast = forecaster.predict(model, 3)

        np.testing.assert_allclose(forecast.point, [3.0, 3.0, 3.0])

    def test_mean_forecasts_training_mean(self) -> None:
        forecaster = MeanForecaster()
        model = forecaster.train(_split([1.0, 2.0, 3.0, 6.0]))

        np.testing.assert_allclose(forecaster.predict(model, 2).point, [3.0, 3.0])

    def test_drift_extrapolates_average_step(self) -> None:
        forecaster = DriftForecaster()
        model = forecaster.train(_split([10.0, 12.0, 14.0, 16.0]))

        forecast = forecaster.predict(model, 3)

        np.testing.assert_allclose(forecast.point, [18.0, 20.0, 22.0])
        assert model.metadata['drift'] == pytest.approx(2.0)

    @pytest.mark.parametrize("cls", [NaiveForecaster, MeanForecaster, DriftForecaster])
    def test_intervals_contain_point(self, cls, preprocessed_split) -> None:
        forecaster = cls()
        forecast = forecaster.predict(forecaster.train(preprocessed_split), 10)

        assert forecast.has_intervals
        assert (forecast.lower <= forecast.point).all()
        assert (forecast.point <= forecast.upper).all()

    def test_naive_intervals_widen_with_horizon(self, preprocessed_split) -> None:
        forecaster = NaiveForecaster()
        forecast = forecaster.predict(forecaster.train(preprocessed_split), 5)

        widths = forecast.upper - forecast.lower
        assert (np.diff(widths) > 0).all()

    def test_confidence_from_hyperparameters(self, preprocessed_split) -> None:
        forecaster = MeanForecaster()
        narrow = forecaster.predict(forecaster.train(preprocessed_split, {'confidence': 0.5}), 1)
        wide = forecaster.predict(forecaster.train(preprocessed_split, {'confidence': 0.99}), 1)

        assert (wide.upper - wide.lower)[0] > (narrow.upper - narrow.lower)[0]


# ══════════════════════════════════════════════════════════════════════════════
# TEST: BASE FORECASTER CONTRACT
# ══════════════════════════════════════════════════════════════════════════════


class TestForecasterContract:
    """Behaviour shared by every forecaster."""

    def test_forecast_index_follows_training_end(self, preprocessed_split) -> None:
        forecaster = NaiveForecaster()
        model = forecaster.train(preprocessed_split)

        forecast = forecaster.predict(model, 4)

        assert forecast.index[0] == preprocessed_split.last_timestamp + pd.Timedelta(days=1)
        assert len(forecast.index) == 4
        assert list(forecast.to_frame().columns) == ['forecast', 'lower', 'upper']

    def test_trained_model_is_frozen(self, preprocessed_split) -> None:
        model = NaiveForecaster().train(preprocessed_split)

        with pytest.raises(dataclasses.FrozenInstanceError):
            model.asset = 'ethereum'
        with pytest.raises(TypeError):
            model.hyperparameters['confidence'] = 0.5

    def test_plain_dicts_are_wrapped_read_only(self, preprocessed_split) -> None:
        model = NaiveForecaster().train(preprocessed_split)
        rebuilt = dataclasses.replace(model, hyperparameters={'confidence': 0.8}, metadata={})

        with pytest.raises(TypeError):
            rebuilt.hyperparameters['confidence'] = 0.5

    def test_trained_model_records_settings(self, preprocessed_split) -> None:
        model = MeanForecaster().train(preprocessed_split, {'confidence': 0.9})

        assert model.key == ('mean', 'bitcoin')
        assert model.hyperparameters['confidence'] == 0.9
        assert model.metadata['n_samples'] == 80
        assert model.describe()['trained_until'] == preprocessed_split.last_timestamp.isoformat()

    def test_predict_rejects_foreign_model(self, preprocessed_split) -> None:
        model = NaiveForecaster().train(preprocessed_split)
        with pytest.raises(ValueError):
            MeanForecaster().predict(model, 1)

    def test_predict_rejects_empty_horizon(self, preprocessed_split) -> None:
        forecaster = NaiveForecaster()
        with pytest.raises(ValueError):
            forecaster.predict(forecaster.train(preprocessed_split), 0)

    def test_unknown_target(self, preprocessed_split) -> None:
        split = dataclasses.replace(preprocessed_split, target='open_interest')
        with pytest.raises(ValueError):
            NaiveForecaster().train(split)


# ══════════════════════════════════════════════════════════════════════════════
# TEST: GRADIENT BOOSTING
# ══════════════════════════════════════════════════════════════════════════════


SMALL = {'n_estimators': 30, 'lags': [1, 2, 3], 'early_stopping_rounds': 5}


class TestGradientBoosting:
    """Lag-based XGBoost and LightGBM forecasters."""

    @pytest.mark.parametrize("cls", [XGBoostForecaster, LightGBMForecaster])
    def test_train_and_forecast(self, cls, preprocessed_split) -> None:
        forecaster = cls()
        model = forecaster.train(preprocessed_split, SMALL)

        forecast = forecaster.predict(model, 20)

        assert forecast.horizon == 20
        assert np.isfinite(forecast.point).all()
        assert not forecast.has_intervals
        assert model.metadata['lags'] == [1, 2, 3]
        assert model.metadata['best_iteration'] >= 1

    @pytest.mark.parametrize("cls", [XGBoostForecaster, LightGBMForecaster])
    def test_without_validation_split(self, cls) -> None:
        values = np.linspace(0.0, 1.0, 60) + 0.01 * np.sin(np.arange(60))
        forecaster = cls()

        model = forecaster.train(_split(values), SMALL)

        assert forecaster.predict(model, 5).horizon == 5

    @pytest.mark.parametrize("cls", [XGBoostForecaster, LightGBMForecaster])
    def test_deterministic(self, cls, preprocessed_split) -> None:
        forecaster = cls()
        first = forecaster.predict(forecaster.train(preprocessed_split, SMALL), 5)
        second = forecaster.predict(forecaster.train(preprocessed_split, SMALL), 5)

        np.testing.assert_allclose(first.point, second.point)

    def test_ignores_neural_settings(self, preprocessed_split) -> None:
        settings = {**SMALL, 'epochs': 10, 'batch_size': 32}
        model = XGBoostForecaster().train(preprocessed_split, settings)
        assert model.hyperparameters['epochs'] == 10

    def test_too_few_rows_for_lags(self) -> None:
        with pytest.raises(ValueError):
            XGBoostForecaster().train(_split([0.1, 0.2, 0.3]), {'lags': [1, 7]})


# ══════════════════════════════════════════════════════════════════════════════
# TEST: REGISTRY
# ══════════════════════════════════════════════════════════════════════════════


class TestRegistry:
    """Forecaster lookup by name."""

    def test_default_registry(self) -> None:
        registry = default_registry()
        assert registry.names() == ['naive', 'mean', 'drift', 'xgboost', 'lightgbm']
        assert all(isinstance(f, BaseForecaster) for f in registry)

    def test_duplicate_name_rejected(self) -> None:
        registry = ForecasterRegistry([NaiveForecaster()])
        with pytest.raises(ValueError):
            registry.register(NaiveForecaster())
        registry.register(NaiveForecaster(), replace=True)
        assert len(registry) == 1

    def test_select_and_unregister(self) -> None:
        registry = default_registry().select(['drift', 'naive'])

        assert registry.names() == ['drift', 'naive']
        registry.unregister('drift')
        assert 'drift' not in registry
        with pytest.raises(KeyError):
            registry.get('drift')

    def test_rejects_non_forecasters(self) -> None:
        with pytest.raises(TypeError):
            ForecasterRegistry().register(object())


# ══════════════════════════════════════════════════════════════════════════════
# TEST: MODEL STORE
# ══════════════════════════════════════════════════════════════════════════════


class TestModelStore:
    """joblib persistence with version cleanup."""

    def test_save_and_load(self, tmp_path, preprocessed_split) -> None:
        forecaster = DriftForecaster()
        model = forecaster.train(preprocessed_split)
        store = ModelStore(tmp_path)

        path = store.save(model)
        loaded = store.load('drift', 'bitcoin')

        assert path.exists()
        assert loaded.key == model.key
        assert loaded.last_timestamp == model.last_timestamp
        np.testing.assert_allclose(
            forecaster.predict(loaded, 5).point, forecaster.predict(model, 5).point
        )

    def test_loaded_model_is_read_only(self, tmp_path, preprocessed_split) -> None:
        store = ModelStore(tmp_path)
        store.save(MeanForecaster().train(preprocessed_split, {'confidence': 0.9}))

        loaded = store.load('mean', 'bitcoin')

        assert loaded.hyperparameters['confidence'] == 0.9
        with pytest.raises(TypeError):
            loaded.hyperparameters['confidence'] = 0.5
        with pytest.raises(TypeError):
            loaded.metadata['saved_at'] = 'never'

    def test_keeps_last_n_versions(self, tmp_path, preprocessed_split) -> None:
        model = NaiveForecaster().train(preprocessed_split)
        store = ModelStore(tmp_path, keep_last_n=2)

        for _ in range(4):
            store.save(model)

        assert len(list(tmp_path.glob('forecaster_naive_bitcoin_*.joblib'))) == 2

    def test_missing_model(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            ModelStore(tmp_path).load('naive', 'bitcoin')
