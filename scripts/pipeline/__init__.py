"""
Pipeline Stage Interface for the finding synthesis engine.

Key components:
- ``PipelineStage`` -- Protocol every stage implements
- ``PipelineContext`` -- Shared state flowing through stages
- ``StageResult`` -- Outcome returned by each stage
- ``PipelineOrchestrator`` -- Composes and runs stages in order
- ``BaseStage`` -- Convenience ABC for implementing stages
- ``build_default_stages`` -- Factory for the standard synthesis pipeline
- ``run_synthesis`` -- Build, run and summarize in one call
"""

from .protocol import PipelineStage, PipelineContext, StageResult
from .orchestrator import PipelineOrchestrator
from .base_stage import BaseStage
from .stages import (
    AnalysisStage,
    IngestStage,
    ScoreStage,
    DedupeStage,
    ThresholdStage,
    PriorityStage,
    TriageStage,
    TaskSinkStage,
    TranscriptStage,
    build_default_stages,
    build_transcript,
    save_transcript,
)
from .runner import run_synthesis

__all__ = [
    # Core protocol
    "PipelineStage",
    "PipelineContext",
    "StageResult",
    # Orchestrator
    "PipelineOrchestrator",
    # Base class
    "BaseStage",
    # Concrete stages
    "AnalysisStage",
    "IngestStage",
    "ScoreStage",
    "DedupeStage",
    "ThresholdStage",
    "PriorityStage",
    "TriageStage",
    "TaskSinkStage",
    "TranscriptStage",
    # Factory and helpers
    "build_default_stages",
    "build_transcript",
    "save_transcript",
    "run_synthesis",
]
