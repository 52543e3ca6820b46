"""
Pipeline Protocol - Defines the stage interface and shared context.

Every pipeline stage implements the ``PipelineStage`` protocol. Stages are
composed into an ordered pipeline by ``PipelineOrchestrator``.

The ``PipelineContext`` dataclass holds all state that flows through the
synthesis run.  Stages read what they need and write their contributions.

The ``StageResult`` dataclass captures the outcome of a single stage
execution for logging and error reporting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@dataclass
class PipelineContext:
    """Shared state flowing through the synthesis pipeline.

    Attributes
    ----------
    config : dict
        Flat configuration dict produced by ``config_loader.build_unified_config``.
    target_path : str
        Review target handed to every analyzer.
    analyzers : list
        Analyzers to run in the analysis stage.
    analyzer_results : dict
        ``AnalyzerResult`` per analyzer id, written by the analysis stage.
    ingestion : Any
        ``IngestionResult`` with accepted findings and per-item errors.
    total_ingested : int
        Findings accepted at ingestion, before any reduction.
    findings : list
        The primary data.  Ingestion fills it; dedup, filter and sort
        replace it with reduced or reordered lists.
    dedup_result : Any
        ``DeduplicationResult`` from the dedup stage.
    filter_result : Any
        ``FilterResult`` from the threshold stage.
    decision_provider : Any
        Decision provider used by the triage stage.
    triage_session : Any
        The ``TriageSession`` once triage has started.
    task_sink : Any
        ``TaskSink`` receiving accepted findings.
    sink_report : Any
        ``SinkReport`` from the last flush.
    transcript : Any
        ``TriageTranscript`` built by the transcript stage.
    phase_timings : dict
        Wall-clock seconds per stage, keyed by ``stage.name``.
    errors : list
        Non-fatal errors collected during the run.
    """

    # -- Configuration --
    config: Dict[str, Any] = field(default_factory=dict)
    target_path: str = ""
    started_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    # -- Analysis and ingestion --
    analyzers: List[Any] = field(default_factory=list)
    analyzer_results: Dict[str, Any] = field(default_factory=dict)
    ingestion: Any = None
    total_ingested: int = 0

    # -- Primary pipeline data --
    findings: List[Any] = field(default_factory=list)

    # -- Reduction outputs --
    dedup_result: Any = None
    filter_result: Any = None

    # -- Triage and task sink --
    decision_provider: Any = None
    triage_session: Any = None
    task_sink: Any = None
    sink_report: Any = None

    # -- Session-end summary --
    transcript: Any = None

    # -- Phase timings --
    phase_timings: Dict[str, float] = field(default_factory=dict)

    # -- Error collection --
    errors: List[str] = field(default_factory=list)


@dataclass
class StageResult:
    """Outcome returned by each pipeline stage.

    Attributes
    ----------
    success : bool
        Whether the stage completed without fatal errors.
    stage_name : str
        Identifier matching ``PipelineStage.name``.
    duration_seconds : float
        Wall-clock execution time.
    findings_before : int
        Number of findings in context before execution.
    findings_after : int
        Number of findings in context after execution.
    error : str | None
        Human-readable error message if the stage failed.
    skipped : bool
        ``True`` if the stage was intentionally skipped (preconditions not met).
    skip_reason : str
        Why the stage was skipped.
    metadata : dict
        Stage-specific metadata (merge counts, analyzer status, ...).
    """

    success: bool
    stage_name: str
    duration_seconds: float = 0.0
    findings_before: int = 0
    findings_after: int = 0
    error: Optional[str] = None
    skipped: bool = False
    skip_reason: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PipelineStage(Protocol):
    """Protocol that every pipeline stage must implement.

    Stages are composable, independently testable units that:
    1. Declare their name and dependencies
    2. Check whether they should run (preconditions)
    3. Execute their logic, updating ``PipelineContext``
    4. Return a ``StageResult`` with outcome metadata

    Example
    -------
    ::

        class MyStage:
            name = "my_stage"
            display_name = "My Custom Stage"
            phase_number = 4.5
            required_stages: list[str] = []

            def should_run(self, ctx: PipelineContext) -> bool:
                return True

            def execute(self, ctx: PipelineContext) -> StageResult:
                return StageResult(success=True, stage_name=self.name)

            def rollback(self, ctx: PipelineContext) -> None:
                pass
    """

    @property
    def name(self) -> str:
        """Unique stage identifier, e.g. ``dedupe``."""
        ...

    @property
    def display_name(self) -> str:
        """Human-readable name, e.g. ``Phase 4: Deduplication``."""
        ...

    @property
    def phase_number(self) -> float:
        """Numeric phase for ordering."""
        ...

    @property
    def required_stages(self) -> List[str]:
        """Names of stages that must complete successfully before this one."""
        ...

    def should_run(self, ctx: PipelineContext) -> bool:
        """Check preconditions.  Return ``False`` to skip this stage."""
        ...

    def execute(self, ctx: PipelineContext) -> StageResult:
        """Execute the stage logic.

        Must handle its own errors gracefully (log and report failure).
        """
        ...

    def rollback(self, ctx: PipelineContext) -> None:
        """Optional cleanup if the stage fails."""
        ...
