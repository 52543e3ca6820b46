"""Tests for confidence_scorer point-based scoring."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "scripts"))

from confidence_scorer import (
    ConfidenceScorer,
    explain_signals,
    recompute_confidence,
    score_signals,
)
from schemas.finding import Category, Finding, Severity

ALL_EVIDENCE = {
    "location_present": True,
    "excerpt_attached": True,
    "changed_content": True,
    "documented_rule": True,
}


def _finding(signals, merged_from=()):
    return Finding(
        id="F-00001",
        source_analyzer="security",
        category=Category.SECURITY,
        severity=Severity.P1,
        location_file="src/app.ts",
        location_line=10,
        title="Hardcoded secret",
        raw_confidence_signals=signals,
        merged_from=merged_from,
    )


class TestScoreSignals:
    def test_no_signals_scores_zero(self):
        assert score_signals({}) == 0

    def test_each_evidence_signal_adds_twenty(self):
        assert score_signals({"location_present": True}) == 20
        assert score_signals({"location_present": True, "excerpt_attached": True}) == 40
        assert score_signals(ALL_EVIDENCE) == 80

    def test_penalties_subtract_twenty(self):
        signals = dict(ALL_EVIDENCE, baseline_content=True)
        assert score_signals(signals) == 60

    def test_clamped_at_zero(self):
        signals = {
            "location_present": True,
            "baseline_content": True,
            "style_preference": True,
        }
        assert score_signals(signals) == 0

    def test_false_and_zero_weight_signals_are_absent(self):
        signals = {"location_present": False, "excerpt_attached": 0.0, "documented_rule": 0.5}
        assert score_signals(signals) == 20

    def test_unknown_signals_ignored(self):
        assert score_signals({"model_vibes": True, "location_present": True}) == 20

    def test_deterministic(self):
        signals = dict(ALL_EVIDENCE, suppression_marker=True)
        assert score_signals(signals) == score_signals(dict(signals))

    def test_score_stays_within_bounds(self):
        everything = dict(
            ALL_EVIDENCE,
            baseline_content=True,
            deterministic_check=True,
            suppression_marker=True,
            style_preference=True,
        )
        for signals in ({}, ALL_EVIDENCE, everything):
            assert 0 <= score_signals(signals) <= 100


class TestExplainSignals:
    def test_breakdown_lists_contributions(self):
        breakdown = explain_signals(dict(ALL_EVIDENCE, deterministic_check=True))
        assert breakdown.evidence_counted == [
            "location_present",
            "excerpt_attached",
            "changed_content",
            "documented_rule",
        ]
        assert breakdown.penalties == ["deterministic_check"]
        assert breakdown.raw_total == 60
        assert breakdown.score == 60

    def test_describe(self):
        text = explain_signals({"location_present": True, "style_preference": True}).describe()
        assert text.startswith("0 = clamp(0)")
        assert "+20 location_present" in text
        assert "-20 style_preference" in text

    def test_describe_without_signals(self):
        assert explain_signals({}).describe() == "0 = clamp(0): no signals"

    def test_negative_raw_total_is_clamped(self):
        breakdown = explain_signals({"baseline_content": True, "style_preference": True})
        assert breakdown.raw_total == -40
        assert breakdown.score == 0


class TestConfidenceScorer:
    def test_score_returns_copy_with_confidence(self):
        original = _finding(ALL_EVIDENCE)
        scored = ConfidenceScorer().score(original)
        assert scored.confidence == 80
        assert original.confidence is None
        assert scored.id == original.id

    def test_score_all_keeps_order(self):
        findings = [
            _finding({"location_present": True}).model_copy(update={"id": "F-00002"}),
            _finding(ALL_EVIDENCE),
        ]
        scored = ConfidenceScorer().score_all(findings)
        assert [f.id for f in scored] == ["F-00002", "F-00001"]
        assert [f.confidence for f in scored] == [20, 80]

    def test_one_evidence_two_penalties_scores_zero(self):
        finding = _finding(
            {"location_present": True, "baseline_content": True, "style_preference": True}
        )
        assert ConfidenceScorer().score(finding).confidence == 0


class TestRecomputeConfidence:
    def test_without_corroboration_matches_base(self):
        assert recompute_confidence(_finding(ALL_EVIDENCE)) == 80

    def test_each_absorbed_finding_adds_ten(self):
        assert recompute_confidence(_finding(ALL_EVIDENCE, ("F-00002",))) == 90
        assert recompute_confidence(_finding({"location_present": True}, ("F-2", "F-3"))) == 40

    def test_capped_at_one_hundred(self):
        assert recompute_confidence(_finding(ALL_EVIDENCE, ("a", "b", "c"))) == 100
