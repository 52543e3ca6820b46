"""
Concrete Pipeline Stages for the synthesis run.

    Phase 1  analysis     run analyzers concurrently with per-analyzer deadlines
    Phase 2  ingest       validate payloads into Findings
    Phase 3  score        confidence from captured signals
    Phase 4  dedupe       merge corroborating findings, flag conflicts
    Phase 5  filter       drop findings under the confidence threshold
    Phase 6  sort         severity, confidence, id
    Phase 7  triage       present findings to the decision provider
    Phase 8  task_sink    create tracker tasks for accepted findings
    Phase 9  transcript   session-end summary

Each stage can be instantiated and run on its own; failures are logged and
reported through ``StageResult`` without crashing the pipeline.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from .base_stage import BaseStage
from .protocol import PipelineContext

logger = logging.getLogger(__name__)

# Ensure scripts dir is importable
_SCRIPT_DIR = Path(__file__).resolve().parent.parent
if str(_SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(_SCRIPT_DIR))

from analyzer_runner import run_analyzers  # noqa: E402
from confidence_scorer import ConfidenceScorer  # noqa: E402
from config_loader import analyzer_timeout_for, parse_duration  # noqa: E402
from finding_deduplicator import FindingDeduplicator  # noqa: E402
from finding_ingestor import FindingIngestor  # noqa: E402
from prioritization import DEFAULT_THRESHOLD, ThresholdFilter, sort_by_priority  # noqa: E402
from schemas.transcript import DecisionRecord, TriageTranscript, confidence_buckets  # noqa: E402
from triage_session import DecisionOutcome, TriageSession  # noqa: E402


# ============================================================================
# Phase 1-2: Analysis and ingestion
# ============================================================================


class AnalysisStage(BaseStage):
    """Phase 1: Run every analyzer against the review target."""

    name = "analysis"
    display_name = "Phase 1: Analyzer Execution"
    phase_number = 1.0

    def should_run(self, ctx: PipelineContext) -> bool:
        return bool(ctx.analyzers)

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        config = ctx.config
        timeouts = {
            a.analyzer_id: analyzer_timeout_for(config, a.analyzer_id) for a in ctx.analyzers
        }
        ctx.analyzer_results = run_analyzers(
            ctx.analyzers,
            ctx.target_path,
            timeout=parse_duration(config.get("analyzer_timeout", "120s")),
            timeouts=timeouts,
            workers=int(config.get("analyzer_workers", 0) or 0),
        )
        status = {aid: r.status for aid, r in ctx.analyzer_results.items()}
        degraded = [aid for aid, s in status.items() if s != "ok"]
        for analyzer_id in degraded:
            ctx.errors.append(
                f"Analyzer {analyzer_id}: {ctx.analyzer_results[analyzer_id].error}"
            )
        return {"analyzer_status": status, "degraded": degraded}


class IngestStage(BaseStage):
    """Phase 2: Normalize analyzer payloads into findings."""

    name = "ingest"
    display_name = "Phase 2: Finding Ingestion"
    phase_number = 2.0
    required_stages = ["analysis"]

    def __init__(self, ingestor: Optional[FindingIngestor] = None):
        self.ingestor = ingestor or FindingIngestor()

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        batches = {aid: r.payloads for aid, r in ctx.analyzer_results.items()}
        ctx.ingestion = self.ingestor.ingest_all(batches)
        ctx.findings = list(ctx.ingestion.findings)
        ctx.total_ingested = len(ctx.findings)
        for error in ctx.ingestion.errors:
            ctx.errors.append(f"Ingest {error.analyzer_id}[{error.index}]: {error}")
        return {
            "accepted": ctx.ingestion.accepted_count,
            "rejected": ctx.ingestion.rejected_count,
        }


# ============================================================================
# Phase 3-6: Scoring and reduction
# ============================================================================


class ScoreStage(BaseStage):
    """Phase 3: Compute confidence for every ingested finding."""

    name = "score"
    display_name = "Phase 3: Confidence Scoring"
    phase_number = 3.0
    required_stages = ["ingest"]

    def __init__(self, scorer: Optional[ConfidenceScorer] = None):
        self.scorer = scorer or ConfidenceScorer()

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        ctx.findings = self.scorer.score_all(ctx.findings)
        return {"scored": len(ctx.findings)}


class DedupeStage(BaseStage):
    """Phase 4: Merge duplicates across analyzers and flag conflicts.

    Runs once, after every analyzer has returned or timed out.
    """

    name = "dedupe"
    display_name = "Phase 4: Deduplication"
    phase_number = 4.0
    required_stages = ["score"]

    def __init__(self, deduplicator: Optional[FindingDeduplicator] = None):
        self.deduplicator = deduplicator or FindingDeduplicator()

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        ctx.dedup_result = self.deduplicator.deduplicate(ctx.findings)
        ctx.findings = list(ctx.dedup_result.findings)
        return {
            "duplicates_removed": ctx.dedup_result.duplicates_removed,
            "conflict_groups": len(ctx.dedup_result.conflict_groups),
        }


class ThresholdStage(BaseStage):
    """Phase 5: Drop findings below the confidence threshold."""

    name = "filter"
    display_name = "Phase 5: Confidence Threshold"
    phase_number = 5.0
    required_stages = ["dedupe"]

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        threshold = ctx.config.get("confidence_threshold", DEFAULT_THRESHOLD)
        ctx.filter_result = ThresholdFilter(threshold).apply(ctx.findings)
        ctx.findings = list(ctx.filter_result.kept)
        return {
            "threshold": threshold,
            "kept": len(ctx.filter_result.kept),
            "dropped": len(ctx.filter_result.dropped),
        }


class PriorityStage(BaseStage):
    """Phase 6: Order survivors for presentation."""

    name = "sort"
    display_name = "Phase 6: Priority Sort"
    phase_number = 6.0
    required_stages = ["filter"]

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        ctx.findings = sort_by_priority(ctx.findings)
        return {"queued": len(ctx.findings)}


# ============================================================================
# Phase 7-8: Triage and task creation
# ============================================================================


class TriageStage(BaseStage):
    """Phase 7: Walk the queue with the decision provider.

    Accepted findings go straight into the task sink's durable store, so a
    decision survives a crash before the tracker is reached.
    """

    name = "triage"
    display_name = "Phase 7: Interactive Triage"
    phase_number = 7.0
    required_stages = ["sort"]

    def should_run(self, ctx: PipelineContext) -> bool:
        return ctx.decision_provider is not None

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        sink = ctx.task_sink
        if ctx.triage_session is None:
            ctx.triage_session = TriageSession(
                ctx.findings,
                ctx.decision_provider,
                on_accepted=sink.enqueue if sink is not None else None,
                session_id=sink.session_id if sink is not None else None,
            )
            errors_before = 0
            ctx.triage_session.run()
        else:
            errors_before = len(ctx.triage_session.errors)
            ctx.triage_session.resume()

        session = ctx.triage_session
        ctx.errors.extend(session.errors[errors_before:])
        return {
            "accepted": session.counts.accepted,
            "skipped": session.counts.skipped,
            "edited": session.counts.edited,
            "incomplete": session.incomplete,
        }


class TaskSinkStage(BaseStage):
    """Phase 8: Create tracker tasks for accepted findings.

    Failed submissions are recoverable: they stay in the store and are
    reported, they do not fail the stage.
    """

    name = "task_sink"
    display_name = "Phase 8: Task Creation"
    phase_number = 8.0
    required_stages = ["triage"]

    def should_run(self, ctx: PipelineContext) -> bool:
        return ctx.task_sink is not None and ctx.triage_session is not None

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        ctx.sink_report = ctx.task_sink.flush()
        for submission in ctx.sink_report.failed:
            ctx.errors.append(
                f"Task for {submission.finding_id} not created after "
                f"{submission.attempts} attempts: {submission.last_error}"
            )
        return {
            "created": len(ctx.sink_report.submitted),
            "failed": len(ctx.sink_report.failed),
        }


# ============================================================================
# Phase 9: Transcript
# ============================================================================


def build_transcript(ctx: PipelineContext) -> TriageTranscript:
    """Summarize the run as a ``TriageTranscript``.

    Confidence buckets describe the deduplicated set, before the threshold
    cut, so the transcript shows how much was filtered away.
    """
    session = ctx.triage_session
    deduplicated = ctx.dedup_result.findings if ctx.dedup_result is not None else []
    threshold = (
        ctx.filter_result.threshold
        if ctx.filter_result is not None
        else ctx.config.get("confidence_threshold", DEFAULT_THRESHOLD)
    )

    decisions: List[DecisionRecord] = []
    accepted = skipped = edited = 0
    if session is not None:
        current = {f.id: f for f in session.queue}
        for decision in session.history:
            finding = (
                decision.edited_finding
                if decision.outcome is DecisionOutcome.EDITED
                else current[decision.finding_id]
            )
            decisions.append(
                DecisionRecord(
                    finding_id=decision.finding_id,
                    outcome=decision.outcome.value,
                    title=finding.title,
                    severity=finding.severity.value,
                    confidence=finding.confidence,
                )
            )
        accepted = session.counts.accepted
        skipped = session.counts.skipped
        edited = session.counts.edited
        undecided = len(session.undecided_findings)
        incomplete = session.incomplete
    else:
        undecided = len(ctx.findings)
        incomplete = undecided > 0

    report = ctx.sink_report
    return TriageTranscript(
        session_id=session.session_id if session is not None else str(uuid.uuid4()),
        started_at=ctx.started_at,
        duration_seconds=round(
            sum(v for k, v in ctx.phase_timings.items() if not k.startswith("_")), 3
        ),
        incomplete=incomplete,
        total_ingested=ctx.total_ingested,
        ingestion_errors=len(ctx.ingestion.errors) if ctx.ingestion is not None else 0,
        analyzer_status={aid: r.status for aid, r in ctx.analyzer_results.items()},
        threshold=threshold,
        total_after_dedup=len(deduplicated),
        surviving_threshold=len(ctx.filter_result.kept) if ctx.filter_result is not None else 0,
        conflicts=sum(1 for f in deduplicated if f.conflict),
        confidence_buckets=confidence_buckets(f.confidence for f in deduplicated),
        accepted=accepted,
        skipped=skipped,
        edited=edited,
        undecided=undecided,
        decisions=decisions,
        external_ids=report.external_ids if report is not None else [],
        failed_submissions=[s.finding_id for s in report.failed] if report is not None else [],
    )


def save_transcript(transcript: TriageTranscript, path: str) -> None:
    """Atomic write using temp+rename."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = str(target) + ".tmp"
    with open(temp_path, "w", encoding="utf-8") as fh:
        json.dump(transcript.model_dump(mode="json"), fh, indent=2)
    os.replace(temp_path, target)


class TranscriptStage(BaseStage):
    """Phase 9: Build the transcript and optionally write it to disk."""

    name = "transcript"
    display_name = "Phase 9: Triage Transcript"
    phase_number = 9.0

    def __init__(self, output_path: Optional[str] = None):
        self.output_path = output_path

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        ctx.transcript = build_transcript(ctx)
        logger.info(ctx.transcript.summary_line())
        if self.output_path:
            save_transcript(ctx.transcript, self.output_path)
            logger.info("Transcript written to %s", self.output_path)
        return {"incomplete": ctx.transcript.incomplete, "path": self.output_path}


# ============================================================================
# Factory: Build default pipeline
# ============================================================================


def build_default_stages(transcript_path: Optional[str] = None) -> List[BaseStage]:
    """Build the standard synthesis pipeline.

    Returns all stages; the orchestrator uses ``should_run`` to skip
    triage and task creation when no provider or sink is attached.
    """
    return [
        AnalysisStage(),
        IngestStage(),
        ScoreStage(),
        DedupeStage(),
        ThresholdStage(),
        PriorityStage(),
        TriageStage(),
        TaskSinkStage(),
        TranscriptStage(output_path=transcript_path),
    ]
