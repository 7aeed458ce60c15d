"""
Pipeline orchestrator for the end-to-end forecasting workflow.

Manages the staged workflow:
1. Data collection
2. Preprocessing
3. Model training
4. Evaluation

Stages run strictly in order. Work inside a stage (assets, models) runs
concurrently, and a stage's output is published only once every sub-task
has resolved and the run has not been cancelled or reset in the meantime.
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Tuple, Union
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from ..data.ingestion import FetchResult, MarketDataFetcher
from ..data.validator import SeriesValidator
from ..evaluation.engine import EvaluationEngine
from ..exceptions import (
    EvaluationError,
    FetchError,
    PipelineCancelled,
    PipelineError,
    PreprocessingError,
    StageTransitionError,
    TrainingError,
)
from ..models.base import TrainingSplit
from ..models.registry import ForecasterRegistry, default_registry
from ..models.store import ModelStore
from ..parameters import ParameterSet, validate
from ..preprocessing.engine import PreprocessingEngine
from .predictor import PredictionPipeline, PredictionReport
from .run import (
    STAGES,
    PipelineRun,
    PipelineState,
    ProgressEvent,
    StageFailure,
    StageStatus,
)

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]

NEXT_STAGE = {
    PipelineState.CONFIGURED: PipelineState.COLLECTING,
    PipelineState.COLLECTING: PipelineState.PREPROCESSING,
    PipelineState.PREPROCESSING: PipelineState.TRAINING,
    PipelineState.TRAINING: PipelineState.EVALUATING,
}

# Seconds between cancellation checks while waiting on sub-tasks
POLL_INTERVAL = 0.05


class Pipeline:
    """
    Main pipeline orchestrator.

    Sole owner of the PipelineRun. Callers read the run through
    ``current_run`` and drive it with ``advance``, ``run``, ``start``,
    ``cancel`` and ``reset``.
    """

    def __init__(
        self,
        parameters: Union[ParameterSet, Mapping[str, Any]],
        fetcher: MarketDataFetcher,
        registry: Optional[ForecasterRegistry] = None,
        preprocessing: Optional[PreprocessingEngine] = None,
        evaluation: Optional[EvaluationEngine] = None,
        validator: Optional[SeriesValidator] = None,
        store: Optional[ModelStore] = None,
        max_workers: int = 4,
        listeners: Optional[List[ProgressListener]] = None
    ):
        """
        Initialize pipeline.

        Args:
            parameters: Validated ParameterSet, or a raw mapping validated here
            fetcher: Market data fetcher
            registry: Forecasters to train (all built-ins when omitted)
            preprocessing: Preprocessing engine
            evaluation: Evaluation engine
            validator: Checks applied to collected series
            store: Where trained models are persisted (not persisted when None)
            max_workers: Concurrent sub-tasks per stage
            listeners: Progress event callbacks

        Raises:
            ValidationError: if raw parameters are invalid
        """
        if not isinstance(parameters, ParameterSet):
            parameters = validate(parameters)

        self.parameters = parameters
        self.fetcher = fetcher
        self.registry = registry if registry is not None else default_registry()
        self.preprocessing = preprocessing or PreprocessingEngine()
        self.evaluation = evaluation or EvaluationEngine()
        self.validator = validator or SeriesValidator(parameters.missing_value_threshold)
        self.store = store
        self.max_workers = max(1, int(max_workers))
        self._listeners: List[ProgressListener] = list(listeners or [])

        self._lock = threading.RLock()
        self._generation = 0
        self._cancel_event = threading.Event()
        self._active = False
        self._background: Optional[ThreadPoolExecutor] = None
        self._run = self._new_run()

    @classmethod
    def from_config(cls, config, parameters: Optional[ParameterSet] = None, **kwargs) -> 'Pipeline':
        """Build a pipeline from a Config object."""
        registry = default_registry()
        if config.enabled_models:
            registry = registry.select(config.enabled_models)

        store = None
        if config.persist_models:
            store = ModelStore(config.models_path, config.model_prefix, config.keep_last_n_models)

        return cls(
            parameters=parameters or config.parameter_set(),
            fetcher=MarketDataFetcher.from_config(config),
            registry=registry,
            preprocessing=PreprocessingEngine(config.preprocessing_config),
            evaluation=EvaluationEngine(config.evaluation_config),
            store=store,
            max_workers=config.max_workers,
            **kwargs
        )

    # ==========================================================================
    # State
    # ==========================================================================

    def _new_run(self) -> PipelineRun:
        return PipelineRun(parameters=self.parameters, run_id=uuid.uuid4().hex[:12])

    @property
    def current_run(self) -> PipelineRun:
        """Handle to the current run (read-only for callers)."""
        return self._run

    @property
    def state(self) -> PipelineState:
        return self._run.state

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    # ==========================================================================
    # Control
    # ==========================================================================

    def advance(self) -> PipelineState:
        """
        Run exactly the next stage.

        Returns:
            State after the stage: the stage itself when it completed,
            ``done`` after evaluation, or ``failed``

        Raises:
            StageTransitionError: when done, failed, busy or missing inputs
            PipelineCancelled: when cancelled or reset while the stage ran
        """
        with self._lock:
            run = self._run
            if self._active:
                raise StageTransitionError(f"Stage '{run.state.value}' is already running")
            if run.state == PipelineState.FAILED:
                raise StageTransitionError("Pipeline has failed; reset it before running again")
            if run.state == PipelineState.DONE:
                raise StageTransitionError("Pipeline is done; reset it to run again")

            stage = NEXT_STAGE[run.state]
            self._check_inputs(run, stage)

            generation = self._generation
            token = self._cancel_event
            self._active = True
            run.state = stage
            run.stage_status[stage.value] = StageStatus.RUNNING
            if run.started_at is None:
                run.started_at = datetime.now()

        logger.info("\n" + "=" * 60)
        logger.info(f"STAGE: {stage.value.upper()}")
        logger.info("=" * 60)

        handlers = {
            PipelineState.COLLECTING: self._collect,
            PipelineState.PREPROCESSING: self._preprocess,
            PipelineState.TRAINING: self._train,
            PipelineState.EVALUATING: self._evaluate,
        }

        unit_errors: Dict[str, Exception] = {}
        try:
            output = handlers[stage](run, generation, token, unit_errors)
        except PipelineCancelled:
            self._abandon(generation, stage)
            raise
        except Exception as e:
            if token.is_set():
                self._abandon(generation, stage)
                raise PipelineCancelled(f"Stage '{stage.value}' cancelled") from e
            return self._fail(generation, stage, e, unit_errors)

        with self._lock:
            if generation != self._generation or token.is_set():
                self._abandon(generation, stage)
                raise PipelineCancelled(f"Stage '{stage.value}' cancelled")

            self._publish(run, stage, output)

            # Under the lock: an abandoned generation never reaches the store
            if stage == PipelineState.TRAINING and self.store is not None:
                try:
                    self.store.save_all(run.trained_models)
                except OSError as e:
                    unit_errors['storage'] = e
                    logger.error(f"✗ Could not save models: {e}")

            if unit_errors:
                run.errors[stage.value] = dict(unit_errors)
            run.stage_status[stage.value] = StageStatus.COMPLETED
            if stage == PipelineState.EVALUATING:
                run.state = PipelineState.DONE
                run.finished_at = datetime.now()
            self._active = False
            new_state = run.state

        logger.info(f"✓ Stage {stage.value} completed")
        return new_state

    def run(self, until: Optional[Union[PipelineState, str]] = None) -> PipelineRun:
        """
        Advance until ``done``, ``failed`` or the ``until`` stage completes.

        Args:
            until: Optional stage after which to stop

        Returns:
            The run handle (a fresh run if the pipeline was reset meanwhile)
        """
        until = PipelineState(until) if until is not None else None
        generation = self._generation
        start_time = datetime.now()

        logger.info("=" * 80)
        logger.info("CRYPTO FORECAST PIPELINE")
        logger.info(f"Start time: {start_time}")
        logger.info(f"Assets: {self.parameters.ordered_assets}")
        logger.info("=" * 80)

        while generation == self._generation:
            state = self.state
            if state in (PipelineState.DONE, PipelineState.FAILED):
                break
            if until is not None and state == until and \
                    self._run.stage_status.get(state.value) == StageStatus.COMPLETED:
                break
            try:
                self.advance()
            except PipelineCancelled as e:
                logger.warning(f"Pipeline cancelled: {e}")
                break

        self._print_summary(self._run, (datetime.now() - start_time).total_seconds())
        return self._run

    def start(self, until: Optional[Union[PipelineState, str]] = None) -> Future:
        """Run in a background thread; the future resolves to the run handle."""
        with self._lock:
            if self._background is None:
                self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix='pipeline')
            return self._background.submit(self.run, until)

    def cancel(self) -> None:
        """Abandon in-flight work; the run moves to ``failed`` once the stage unwinds."""
        with self._lock:
            self._cancel_event.set()
        logger.warning("Cancellation requested")

    def reset(self) -> PipelineRun:
        """
        Clear all stage state and return to ``configured``.

        In-flight sub-tasks are abandoned; whatever they produce is discarded.
        """
        with self._lock:
            self._cancel_event.set()
            self._generation += 1
            self._cancel_event = threading.Event()
            self._active = False
            self._run = self._new_run()
            run = self._run

        logger.info(f"Pipeline reset (run {run.run_id})")
        return run

    def forecast(self, horizon: int) -> PredictionReport:
        """
        Forecast ``horizon`` days past the collected data with every trained model.

        Raises:
            StageTransitionError: unless the run is done
        """
        with self._lock:
            run = self._run
            if run.state != PipelineState.DONE:
                raise StageTransitionError(
                    f"Forecasting requires a completed run, pipeline is '{run.state.value}'"
                )
            token = self._cancel_event

        return PredictionPipeline(self.registry).predict_ahead(
            run.trained_models, run.preprocessed, horizon, should_stop=token.is_set
        )

    def shutdown(self) -> None:
        if self._background is not None:
            self._background.shutdown(wait=True)
            self._background = None

    # ==========================================================================
    # Bookkeeping
    # ==========================================================================

    @staticmethod
    def _check_inputs(run: PipelineRun, stage: PipelineState) -> None:
        if stage == PipelineState.PREPROCESSING and (run.raw_series is None or not run.raw_series.series):
            raise StageTransitionError("Preprocessing requires collected series")
        if stage == PipelineState.TRAINING and not run.preprocessed:
            raise StageTransitionError("Training requires preprocessed series")
        if stage == PipelineState.EVALUATING and not run.trained_models:
            raise StageTransitionError("Evaluation requires trained models")

    @staticmethod
    def _publish(run: PipelineRun, stage: PipelineState, output: Any) -> None:
        if stage == PipelineState.COLLECTING:
            run.raw_series, run.validation = output
        elif stage == PipelineState.PREPROCESSING:
            run.preprocessed = output
        elif stage == PipelineState.TRAINING:
            run.trained_models = output
        elif stage == PipelineState.EVALUATING:
            run.evaluation = output

    def _abandon(self, generation: int, stage: PipelineState) -> None:
        """Record a cancelled stage if the run it belongs to is still current."""
        with self._lock:
            if generation != self._generation:
                logger.info(f"Discarded output of stage '{stage.value}' from a reset run")
                return
            self._active = False
            run = self._run
            run.state = PipelineState.FAILED
            run.stage_status[stage.value] = StageStatus.FAILED
            run.failure = StageFailure(stage.value, None, 'cancelled', 'PipelineCancelled')
            run.finished_at = datetime.now()

    def _fail(self, generation: int, stage: PipelineState, error: Exception,
              unit_errors: Optional[Dict[str, Exception]] = None) -> PipelineState:
        unit = None
        if isinstance(error, TrainingError):
            unit = f"{error.model}/{error.asset}"
        elif isinstance(error, (FetchError, PreprocessingError, EvaluationError)):
            unit = error.asset

        reason = getattr(error, 'reason', None) or str(error)

        with self._lock:
            if generation != self._generation:
                return self._run.state
            self._active = False
            run = self._run
            run.state = PipelineState.FAILED
            run.stage_status[stage.value] = StageStatus.FAILED
            run.failure = StageFailure(stage.value, unit, reason, type(error).__name__)
            if unit_errors:
                run.errors[stage.value] = dict(unit_errors)
            run.finished_at = datetime.now()

        if isinstance(error, PipelineError):
            logger.error(f"✗ Stage {stage.value} failed: {run.failure}")
        else:
            logger.error(f"✗ Stage {stage.value} failed unexpectedly: {run.failure}", exc_info=error)
        return PipelineState.FAILED

    def _emit(self, generation: int, stage: PipelineState, completed: int, total: int,
              unit: Optional[str] = None, message: str = '') -> None:
        event = ProgressEvent(stage.value, completed, total, unit, message)
        with self._lock:
            if generation != self._generation:
                return
            self._run.progress[stage.value] = event

        logger.info(f"[{stage.value} {completed}/{total}] {unit or ''} {message}".rstrip())
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")

    def _run_units(
        self,
        stage: PipelineState,
        units: Dict[Hashable, Callable[[], Any]],
        generation: int,
        token: threading.Event,
        label: Callable[[Hashable], str] = str
    ) -> Tuple[Dict[Hashable, Any], Dict[Hashable, Exception]]:
        """
        Run independent sub-tasks concurrently and wait for all of them.

        Returns:
            Tuple of (results, errors) keyed like ``units``

        Raises:
            PipelineCancelled: if cancellation is requested while waiting
        """
        results: Dict[Hashable, Any] = {}
        errors: Dict[Hashable, Exception] = {}
        total = len(units)

        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, total) or 1)
        try:
            pending = {executor.submit(fn): key for key, fn in units.items()}
            while pending:
                if token.is_set():
                    raise PipelineCancelled(f"Stage '{stage.value}' cancelled")

                done, _ = wait(list(pending), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    key = pending.pop(future)
                    error = future.exception()
                    if error is None:
                        results[key] = future.result()
                        message = 'done'
                    else:
                        errors[key] = error
                        message = f'failed: {error}'
                    self._emit(generation, stage, len(results) + len(errors), total, label(key), message)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results, errors

    # ==========================================================================
    # Stages
    # ==========================================================================

    def _collect(self, run: PipelineRun, generation: int, token: threading.Event,
                 unit_errors: Dict[str, Exception]):
        params = run.parameters
        assets = params.ordered_assets
        completed = []

        def on_complete(asset: str, error: Optional[FetchError]) -> None:
            completed.append(asset)
            self._emit(generation, PipelineState.COLLECTING, len(completed), len(assets),
                       asset, 'done' if error is None else f'failed: {error.reason}')

        fetched = self.fetcher.fetch(
            assets,
            params.date_range,
            params.ordered_variables,
            allow_partial=params.allow_partial,
            on_complete=on_complete,
            should_stop=token.is_set
        )
        if token.is_set():
            raise PipelineCancelled("Collection cancelled")

        result = FetchResult(errors=dict(fetched.errors))
        unit_errors.update(fetched.errors)
        reports = {}

        # Structurally broken series count as failed downloads
        for asset, series in sorted(fetched.series.items()):
            report = self.validator.validate(series, params.ordered_variables)
            reports[asset] = report
            if report.critical_passed:
                result.series[asset] = series
                continue

            error = FetchError(asset, f"invalid data: {report.failures}")
            unit_errors[asset] = error
            if not params.allow_partial:
                raise error
            result.errors[asset] = error
            logger.warning(f"✗ Dropping {asset}: {error.reason}")

        if not result.series:
            raise FetchError(", ".join(result.failed) or "all", "no usable asset data collected")

        return result, reports

    def _preprocess(self, run: PipelineRun, generation: int, token: threading.Event,
                    unit_errors: Dict[str, Exception]):
        params = run.parameters
        series = run.raw_series.series

        units = {
            asset: (lambda s=s: self.preprocessing.process(
                s,
                params.interpolation,
                params.normalization,
                params.split,
                params.missing_value_threshold
            ))
            for asset, s in sorted(series.items())
        }

        results, errors = self._run_units(PipelineState.PREPROCESSING, units, generation, token)

        for asset, error in sorted(errors.items()):
            if not isinstance(error, PreprocessingError):
                error = PreprocessingError(asset, f"{type(error).__name__}: {error}")
            unit_errors[asset] = error

        # Any unusable series aborts the run
        if unit_errors:
            raise unit_errors[sorted(unit_errors)[0]]

        return results

    def _train(self, run: PipelineRun, generation: int, token: threading.Event,
               unit_errors: Dict[str, Exception]):
        params = run.parameters
        units = {}

        for forecaster in self.registry:
            hyperparameters = params.hyperparameters_for(forecaster.name)
            for asset, series in sorted(run.preprocessed.items()):
                split = TrainingSplit.from_series(series, params.target)
                units[(forecaster.name, asset)] = (
                    lambda f=forecaster, s=split, h=hyperparameters: f.train(s, h)
                )

        results, errors = self._run_units(
            PipelineState.TRAINING, units, generation, token,
            label=lambda key: f"{key[0]}/{key[1]}"
        )

        for (model_name, asset), error in sorted(errors.items()):
            if not isinstance(error, TrainingError):
                error = TrainingError(model_name, asset, f"{type(error).__name__}: {error}")
            unit_errors[f"{model_name}/{asset}"] = error
            logger.error(f"✗ {error}")

        if not results:
            raise PipelineError("No forecaster trained successfully")

        logger.info(f"✓ Trained {len(results)}/{len(units)} models")
        return dict(sorted(results.items()))

    def _evaluate(self, run: PipelineRun, generation: int, token: threading.Event,
                  unit_errors: Dict[str, Exception]):
        total = len(run.trained_models)
        completed = []

        def on_complete(key, error) -> None:
            completed.append(key)
            self._emit(generation, PipelineState.EVALUATING, len(completed), total,
                       f"{key[0]}/{key[1]}", 'done' if error is None else f'failed: {error}')

        excluded = {}
        for unit, error in run.errors.get(PipelineState.TRAINING.value, {}).items():
            if '/' not in unit:
                continue
            model_name, asset = unit.split('/', 1)
            excluded[(model_name, asset)] = str(error)

        report = self.evaluation.evaluate(
            run.trained_models,
            run.preprocessed,
            self.registry,
            excluded=excluded,
            on_complete=on_complete,
            should_stop=token.is_set
        )
        if token.is_set():
            raise PipelineCancelled("Evaluation cancelled")

        unit_errors.update({f"{m}/{a}": e for (m, a), e in report.errors.items()})

        if not report.results:
            raise EvaluationError(None, 'all', 'no model could be evaluated')

        return report

    def _print_summary(self, run: PipelineRun, duration: float) -> None:
        """Log execution summary."""
        logger.info("\n" + "=" * 80)
        logger.info("PIPELINE SUMMARY")
        logger.info("=" * 80)
        logger.info(f"Duration: {duration:.1f} seconds")
        logger.info(f"State: {run.state.value.upper()}")

        for stage in STAGES:
            status = run.stage_status[stage.value]
            mark = "✓" if status == StageStatus.COMPLETED else "✗" if status == StageStatus.FAILED else "·"
            logger.info(f"  {mark} {stage.value} ({status.value})")

        if run.failure:
            logger.info(f"Failure: {run.failure}")
        if run.evaluation is not None and run.evaluation.overall_winner:
            logger.info(f"Overall winner: {run.evaluation.overall_winner}")

        logger.info("=" * 80)
