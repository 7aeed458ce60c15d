"""
Error taxonomy for the forecasting pipeline.

Errors that affect a single unit of parallel work (one asset, one model)
are recorded on the pipeline run and do not stop sibling units. Errors that
leave a stage without usable output move the run to ``failed``.
"""

from dataclasses import dataclass
from typing import List, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


@dataclass(frozen=True)
class ValidationIssue:
    """A single parameter violation."""
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ValidationError(PipelineError):
    """
    Raised when a parameter set is invalid.

    Carries every violation found so callers can report them all at once.
    """

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues)
        super().__init__(f"{len(self.issues)} parameter issue(s): {summary}")

    @property
    def messages(self) -> List[str]:
        return [str(issue) for issue in self.issues]


class FetchError(PipelineError):
    """Market data for one asset could not be retrieved."""

    def __init__(self, asset: str, reason: str, transient: bool = False,
                 status_code: Optional[int] = None):
        self.asset = asset
        self.reason = reason
        self.transient = transient
        self.status_code = status_code
        kind = "transient" if transient else "fatal"
        super().__init__(f"Fetch failed for '{asset}' ({kind}): {reason}")


class PreprocessingError(PipelineError):
    """A series cannot be turned into usable model input."""

    def __init__(self, asset: str, reason: str, variable: Optional[str] = None):
        self.asset = asset
        self.variable = variable
        self.reason = reason
        where = f"{asset}/{variable}" if variable else asset
        super().__init__(f"Preprocessing failed for '{where}': {reason}")


class TrainingError(PipelineError):
    """A forecaster failed to train on one asset."""

    def __init__(self, model: str, asset: str, reason: str):
        self.model = model
        self.asset = asset
        self.reason = reason
        super().__init__(f"Training '{model}' on '{asset}' failed: {reason}")


class EvaluationError(PipelineError):
    """A metric or forecast could not be produced for a (model, asset) pair."""

    def __init__(self, model: Optional[str], asset: str, reason: str):
        self.model = model
        self.asset = asset
        self.reason = reason
        who = f"'{model}' on '{asset}'" if model else f"'{asset}'"
        super().__init__(f"Evaluation of {who}: {reason}")


class StageTransitionError(PipelineError):
    """An operation was requested in a state that does not allow it."""


class PipelineCancelled(PipelineError):
    """The run was cancelled or reset while a stage was in flight."""
