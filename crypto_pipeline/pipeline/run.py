"""
Pipeline run state.

A PipelineRun aggregates one ParameterSet with the outputs and status of
every stage. Only the orchestrator writes to it; readers get a handle and
treat it as read-only.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..data.ingestion import FetchResult
from ..data.validator import ValidationReport
from ..evaluation.engine import EvaluationReport
from ..models.base import TrainedModel
from ..parameters import ParameterSet
from ..preprocessing.engine import PreprocessedSeries


class PipelineState(str, Enum):
    CONFIGURED = 'configured'
    COLLECTING = 'collecting'
    PREPROCESSING = 'preprocessing'
    TRAINING = 'training'
    EVALUATING = 'evaluating'
    DONE = 'done'
    FAILED = 'failed'


class StageStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


# Work stages in execution order
STAGES = (
    PipelineState.COLLECTING,
    PipelineState.PREPROCESSING,
    PipelineState.TRAINING,
    PipelineState.EVALUATING,
)


@dataclass(frozen=True)
class ProgressEvent:
    """Completion of one unit of work inside a stage."""
    stage: str
    completed: int
    total: int
    unit: Optional[str] = None
    message: str = ''

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


@dataclass(frozen=True)
class StageFailure:
    """Why a stage failed: the stage, the unit of work and the reason."""
    stage: str
    unit: Optional[str]
    reason: str
    error_type: str

    def __str__(self) -> str:
        where = f"{self.stage}[{self.unit}]" if self.unit else self.stage
        return f"{where}: {self.reason}"


@dataclass
class PipelineRun:
    """Stage outputs and statuses for one run of the pipeline."""
    parameters: ParameterSet
    run_id: str
    state: PipelineState = PipelineState.CONFIGURED
    stage_status: Dict[str, StageStatus] = field(
        default_factory=lambda: {stage.value: StageStatus.PENDING for stage in STAGES}
    )
    raw_series: Optional[FetchResult] = None
    validation: Dict[str, ValidationReport] = field(default_factory=dict)
    preprocessed: Dict[str, PreprocessedSeries] = field(default_factory=dict)
    trained_models: Dict[Tuple[str, str], TrainedModel] = field(default_factory=dict)
    evaluation: Optional[EvaluationReport] = None
    errors: Dict[str, Dict[str, Exception]] = field(default_factory=dict)
    failure: Optional[StageFailure] = None
    progress: Dict[str, ProgressEvent] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def assets(self) -> List[str]:
        """Assets still in play after collection."""
        if self.raw_series is None:
            return self.parameters.ordered_assets
        return self.raw_series.succeeded

    def stage_output(self, stage: str) -> Any:
        """Output of a stage, addressable by stage name."""
        outputs = {
            PipelineState.COLLECTING.value: self.raw_series,
            PipelineState.PREPROCESSING.value: self.preprocessed or None,
            PipelineState.TRAINING.value: self.trained_models or None,
            PipelineState.EVALUATING.value: self.evaluation,
        }
        if stage not in outputs:
            raise KeyError(f"Unknown stage: {stage}")
        return outputs[stage]

    def unit_errors(self, stage: str) -> Dict[str, Exception]:
        return dict(self.errors.get(stage, {}))

    def summary(self) -> Dict[str, Any]:
        """Plain structured view for reporting collaborators."""
        summary = {
            'run_id': self.run_id,
            'state': self.state.value,
            'stages': {stage: status.value for stage, status in self.stage_status.items()},
            'parameters': self.parameters.to_dict(),
            'assets': self.assets,
            'errors': {
                stage: {unit: str(error) for unit, error in units.items()}
                for stage, units in self.errors.items() if units
            },
            'failure': str(self.failure) if self.failure else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.preprocessed:
            summary['preprocessing'] = {a: s.summary() for a, s in sorted(self.preprocessed.items())}
        if self.trained_models:
            summary['models'] = [m.describe() for _, m in sorted(self.trained_models.items())]
        if self.evaluation is not None:
            summary['evaluation'] = self.evaluation.to_dict()
        return summary
