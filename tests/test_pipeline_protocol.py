"""
Tests for the pipeline stage interface

Tests the Protocol, PipelineContext, StageResult, PipelineOrchestrator,
BaseStage, and the concrete synthesis stages.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict

import pytest

# Ensure scripts/ is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from analyzer_runner import AnalyzerResult, FunctionAnalyzer
from config_loader import get_default_config
from decision_providers import ScriptedDecisionProvider
from pipeline.protocol import PipelineContext, PipelineStage, StageResult
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.base_stage import BaseStage
from pipeline.stages import (
    AnalysisStage,
    DedupeStage,
    IngestStage,
    PriorityStage,
    ScoreStage,
    TaskSinkStage,
    ThresholdStage,
    TranscriptStage,
    TriageStage,
    build_default_stages,
    build_transcript,
)
from task_sink import TaskSink


def _payload(title, severity="P2", line=10, signals=None, file="src/app.ts", category="quality"):
    return {
        "title": title,
        "category": category,
        "severity": severity,
        "location": {"file": file, "line": line},
        "evidenceSnippets": ["const x = eval(input)"],
        "rawConfidenceSignals": signals or {"changed_content": True, "documented_rule": True},
    }


# ============================================================================
# Test PipelineContext
# ============================================================================


class TestPipelineContext:
    def test_default_construction(self):
        ctx = PipelineContext()
        assert ctx.config == {}
        assert ctx.findings == []
        assert ctx.analyzer_results == {}
        assert ctx.triage_session is None
        assert ctx.transcript is None
        assert ctx.errors == []
        assert ctx.started_at

    def test_independent_defaults(self):
        a, b = PipelineContext(), PipelineContext()
        a.errors.append("x")
        assert b.errors == []


# ============================================================================
# Test StageResult
# ============================================================================


class TestStageResult:
    def test_success_result(self):
        r = StageResult(success=True, stage_name="score", findings_before=4, findings_after=4)
        assert r.success
        assert r.error is None
        assert not r.skipped

    def test_skipped_result(self):
        r = StageResult(success=True, stage_name="triage", skipped=True, skip_reason="no provider")
        assert r.skipped
        assert r.skip_reason == "no provider"


# ============================================================================
# Test PipelineStage Protocol
# ============================================================================


class TestPipelineStageProtocol:
    def test_concrete_stages_comply(self):
        for stage in build_default_stages():
            assert isinstance(stage, PipelineStage)

    def test_non_compliant_object(self):
        class NotAStage:
            name = "nope"

        assert not isinstance(NotAStage(), PipelineStage)


# ============================================================================
# Test BaseStage
# ============================================================================


class CountingStage(BaseStage):
    """Test stage that adds N placeholder findings."""

    name = "counting_stage"
    display_name = "Counting Stage"
    phase_number = 1.0
    _required = []

    def __init__(self, count: int = 3):
        self.count = count

    @property
    def required_stages(self):
        return self._required

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        for i in range(self.count):
            ctx.findings.append({"id": f"F-{i}"})
        return {"added": self.count}


class FailingStage(BaseStage):
    """Test stage that always raises."""

    name = "failing_stage"
    display_name = "Failing Stage"
    phase_number = 2.0

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        raise RuntimeError("intentional failure")


class SkippableStage(BaseStage):
    """Test stage that skips unless a config flag is set."""

    name = "skippable_stage"
    display_name = "Skippable Stage"
    phase_number = 3.0

    def should_run(self, ctx: PipelineContext) -> bool:
        return ctx.config.get("run_skippable", False)

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        ctx.findings.append({"id": "from-skippable"})
        return {}


class TestBaseStage:
    def test_execute_success(self):
        result = CountingStage(count=5).execute(PipelineContext())
        assert result.success
        assert result.findings_before == 0
        assert result.findings_after == 5
        assert result.metadata["added"] == 5

    def test_execute_failure_handled(self):
        result = FailingStage().execute(PipelineContext())
        assert not result.success
        assert "intentional failure" in result.error

    def test_rollback_before_execute_is_noop(self):
        ctx = PipelineContext(findings=[{"id": "F-0"}])
        CountingStage().rollback(ctx)
        assert ctx.findings == [{"id": "F-0"}]

    def test_failed_stage_findings_restored(self):
        class HalfwayStage(FailingStage):
            name = "halfway_stage"

            def _execute(self, ctx):
                ctx.findings.pop()
                raise RuntimeError("dedupe blew up")

        ctx, results = PipelineOrchestrator(
            stages=[CountingStage(count=3), HalfwayStage()], config={}
        ).run("src/")

        assert not results[1].success
        assert results[1].findings_after == 2
        assert [f["id"] for f in ctx.findings] == ["F-0", "F-1", "F-2"]


# ============================================================================
# Test PipelineOrchestrator
# ============================================================================


class TestPipelineOrchestrator:
    def test_sorted_by_phase(self):
        stage1 = CountingStage(count=3)
        stage2 = CountingStage(count=2)
        stage2.name = "counting_stage_2"
        stage2.display_name = "Counting Stage 2"
        stage2.phase_number = 2.0
        ctx, results = PipelineOrchestrator(stages=[stage2, stage1], config={}).run("src/")
        assert [r.stage_name for r in results] == ["counting_stage", "counting_stage_2"]
        assert len(ctx.findings) == 5

    def test_skipped_stage(self):
        ctx, results = PipelineOrchestrator(
            stages=[CountingStage(count=1), SkippableStage()], config={}
        ).run("src/")
        assert results[1].skipped
        assert results[1].success
        assert len(ctx.findings) == 1

    def test_skipped_stage_satisfies_dependents(self):
        dependent = CountingStage(count=1)
        dependent.name = "after_skip"
        dependent.phase_number = 4.0
        dependent._required = ["skippable_stage"]
        ctx, results = PipelineOrchestrator(
            stages=[SkippableStage(), dependent], config={}
        ).run("src/")
        assert results[1].success and not results[1].skipped

    def test_failed_stage_continues(self):
        stage3 = CountingStage(count=1)
        stage3.name = "counting_stage_final"
        stage3.phase_number = 3.0
        ctx, results = PipelineOrchestrator(
            stages=[CountingStage(count=1), FailingStage(), stage3], config={}
        ).run("src/")
        assert [r.success for r in results] == [True, False, True]
        assert any("intentional failure" in e for e in ctx.errors)

    def test_dependency_validation(self):
        stage = CountingStage()
        stage._required = ["nonexistent_stage"]
        with pytest.raises(ValueError, match="nonexistent_stage"):
            PipelineOrchestrator(stages=[stage], config={})

    def test_failed_dependency_skips_dependent(self):
        dependent = CountingStage()
        dependent.name = "dependent_stage"
        dependent.phase_number = 3.0
        dependent._required = ["failing_stage"]
        ctx, results = PipelineOrchestrator(
            stages=[FailingStage(), dependent], config={}
        ).run("src/")
        assert results[1].skipped
        assert "Unmet dependencies" in results[1].skip_reason
        assert ctx.findings == []

    def test_phase_timings_recorded(self):
        ctx, _ = PipelineOrchestrator(stages=[CountingStage(count=1)], config={}).run("src/")
        assert ctx.phase_timings["counting_stage"] >= 0
        assert "_total" in ctx.phase_timings

    def test_custom_context(self):
        custom = PipelineContext(config={"custom": True}, target_path="/custom")
        ctx, _ = PipelineOrchestrator(stages=[CountingStage(count=1)], config={}).run(
            "/other", ctx=custom
        )
        assert ctx is custom
        assert ctx.config["custom"]
        assert ctx.target_path == "/custom"


# ============================================================================
# Test Concrete Stages
# ============================================================================


class TestConcreteStages:
    def test_build_default_stages(self):
        names = [s.name for s in build_default_stages()]
        assert names == [
            "analysis",
            "ingest",
            "score",
            "dedupe",
            "filter",
            "sort",
            "triage",
            "task_sink",
            "transcript",
        ]

    def test_analysis_skips_without_analyzers(self):
        assert not AnalysisStage().should_run(PipelineContext())

    def test_analysis_records_status(self):
        ctx = PipelineContext(
            config=get_default_config(),
            analyzers=[
                FunctionAnalyzer("ok", lambda t: [_payload("a")]),
                FunctionAnalyzer("broken", lambda t: 1 / 0),
            ],
        )
        result = AnalysisStage().execute(ctx)
        assert result.success
        assert result.metadata["analyzer_status"] == {"ok": "ok", "broken": "failed"}
        assert result.metadata["degraded"] == ["broken"]
        assert any("broken" in e for e in ctx.errors)

    def test_ingest_reports_rejections(self):
        ctx = PipelineContext()
        ctx.analyzer_results = {
            "a": AnalyzerResult("a", payloads=[_payload("good"), {"title": "no category"}])
        }
        result = IngestStage().execute(ctx)
        assert result.metadata == {"accepted": 1, "rejected": 1}
        assert ctx.total_ingested == 1
        assert any("Ingest a[1]" in e for e in ctx.errors)

    def test_reduction_stages(self):
        ctx = PipelineContext(config={"confidence_threshold": 80})
        ctx.analyzer_results = {
            "a": AnalyzerResult("a", payloads=[_payload("strong", severity="P2", line=5)]),
            "b": AnalyzerResult(
                "b",
                payloads=[
                    _payload("strong dup", severity="P2", line=5),
                    _payload("weak", severity="P1", line=50, signals={"style_preference": True}),
                    _payload("urgent", severity="P1", line=90),
                ],
            ),
        }
        for stage in (IngestStage(), ScoreStage(), DedupeStage(), ThresholdStage(), PriorityStage()):
            assert stage.execute(ctx).success

        assert ctx.dedup_result.duplicates_removed == 1
        assert [f.title for f in ctx.findings] == ["urgent", "strong"]
        assert [f.confidence for f in ctx.findings] == [80, 90]
        assert [f.title for f in ctx.filter_result.dropped] == ["weak"]

    def test_threshold_stage_fails_on_bad_threshold(self):
        ctx = PipelineContext(config={"confidence_threshold": "high"})
        result = ThresholdStage().execute(ctx)
        assert not result.success
        assert "TypeError" in result.error

    def test_triage_skips_without_provider(self):
        assert not TriageStage().should_run(PipelineContext())

    def test_task_sink_skips_without_session(self):
        assert not TaskSinkStage().should_run(PipelineContext(task_sink=object()))

    def test_transcript_without_triage_is_incomplete(self, tmp_path):
        ctx = PipelineContext(config=get_default_config())
        ctx.analyzer_results = {"a": AnalyzerResult("a", payloads=[_payload("x")])}
        for stage in (IngestStage(), ScoreStage(), DedupeStage(), ThresholdStage(), PriorityStage()):
            stage.execute(ctx)

        out = tmp_path / "out" / "transcript.json"
        result = TranscriptStage(output_path=str(out)).execute(ctx)

        assert result.success
        assert ctx.transcript.incomplete
        assert ctx.transcript.undecided == 1
        saved = json.loads(out.read_text())
        assert saved["incomplete"] is True
        assert saved["total_ingested"] == 1

    def test_transcript_with_no_findings_is_complete(self):
        transcript = build_transcript(PipelineContext(config=get_default_config()))
        assert not transcript.incomplete
        assert transcript.total_ingested == 0


# ============================================================================
# Test E2E Pipeline
# ============================================================================


class TestE2EPipeline:
    def test_full_pipeline(self, tmp_path):
        class Tracker:
            def __init__(self):
                self.titles = []

            def create_task(self, title, description, priority, labels):
                self.titles.append(title)
                return f"bd-{len(self.titles)}"

        tracker = Tracker()
        provider = ScriptedDecisionProvider(["accept", "skip"])
        ctx = PipelineContext(
            config=get_default_config(),
            target_path="src/",
            analyzers=[
                FunctionAnalyzer("security", lambda t: [_payload("eval of input", severity="P1")]),
                FunctionAnalyzer("quality", lambda t: [_payload("magic number", line=80)]),
            ],
            decision_provider=provider,
            task_sink=TaskSink(tracker, sleep=lambda s: None),
        )
        transcript_path = tmp_path / "transcript.json"
        ctx, results = PipelineOrchestrator(
            build_default_stages(str(transcript_path)), ctx.config
        ).run("src/", ctx=ctx)

        assert all(r.success for r in results)
        assert tracker.titles == ["eval of input"]
        transcript = ctx.transcript
        assert transcript.accepted == 1
        assert transcript.skipped == 1
        assert transcript.external_ids == ["bd-1"]
        assert not transcript.incomplete
        assert transcript_path.exists()
