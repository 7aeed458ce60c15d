"""
Pipeline module for orchestrating the forecasting workflow.

This module provides:
- Staged orchestration (collect, preprocess, train, evaluate)
- Step-by-step and background execution control
- Run state for reporting collaborators
- Forward forecasts from a completed run
"""

from .orchestrator import Pipeline
from .predictor import Prediction, PredictionPipeline, PredictionReport
from .run import PipelineRun, PipelineState, ProgressEvent, StageFailure, StageStatus

__all__ = [
    "Pipeline",
    "PipelineRun",
    "PipelineState",
    "Prediction",
    "PredictionPipeline",
    "PredictionReport",
    "ProgressEvent",
    "StageFailure",
    "StageStatus",
]
