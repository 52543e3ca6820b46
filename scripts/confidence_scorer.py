#!/usr/bin/env python3
"""
Confidence Scoring Module

Point-based trust score for a single finding, computed only from the
signals captured at ingestion time:

- +20 for each present evidence-quality signal, at most 4 counted
  (location present, excerpt attached, changed content, documented rule)
- -20 for each present false-positive indicator, uncapped
  (baseline content, deterministic check, suppression marker,
  style preference)
- the running total is clamped to [0, 100]

Corroboration by other analyzers is not applied here: it needs
cross-finding information and is added by the deduplicator.  Everything in
this module is pure, so identical signal sets always produce identical
scores.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping

from schemas.finding import (
    EVIDENCE_SIGNALS,
    FALSE_POSITIVE_SIGNALS,
    Finding,
    signal_present,
)

__all__ = [
    "EVIDENCE_POINTS",
    "MAX_EVIDENCE_SIGNALS",
    "FALSE_POSITIVE_PENALTY",
    "CORROBORATION_BONUS",
    "ScoreBreakdown",
    "ConfidenceScorer",
    "score_signals",
    "explain_signals",
    "recompute_confidence",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EVIDENCE_POINTS: int = 20
MAX_EVIDENCE_SIGNALS: int = 4
FALSE_POSITIVE_PENALTY: int = 20
CORROBORATION_BONUS: int = 10

SCORE_MIN: int = 0
SCORE_MAX: int = 100


def _clamp(value: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, value))


# ---------------------------------------------------------------------------
# Breakdown
# ---------------------------------------------------------------------------


@dataclass
class ScoreBreakdown:
    """Which signals contributed to a score, for display during triage."""

    evidence_counted: List[str] = field(default_factory=list)
    evidence_ignored: List[str] = field(default_factory=list)
    penalties: List[str] = field(default_factory=list)
    raw_total: int = 0
    score: int = 0

    def describe(self) -> str:
        parts = [f"+{EVIDENCE_POINTS} {name}" for name in self.evidence_counted]
        parts += [f"-{FALSE_POSITIVE_PENALTY} {name}" for name in self.penalties]
        text = ", ".join(parts) if parts else "no signals"
        if self.evidence_ignored:
            text += f" (over cap: {', '.join(self.evidence_ignored)})"
        return f"{self.score} = clamp({self.raw_total}): {text}"


def explain_signals(signals: Mapping[str, Any]) -> ScoreBreakdown:
    """Compute the score for *signals* and record how it was reached."""
    breakdown = ScoreBreakdown()

    for signal in EVIDENCE_SIGNALS:
        if signal_present(signals.get(signal.value)):
            if len(breakdown.evidence_counted) < MAX_EVIDENCE_SIGNALS:
                breakdown.evidence_counted.append(signal.value)
            else:
                breakdown.evidence_ignored.append(signal.value)

    for signal in FALSE_POSITIVE_SIGNALS:
        if signal_present(signals.get(signal.value)):
            breakdown.penalties.append(signal.value)

    breakdown.raw_total = (
        EVIDENCE_POINTS * len(breakdown.evidence_counted)
        - FALSE_POSITIVE_PENALTY * len(breakdown.penalties)
    )
    breakdown.score = _clamp(breakdown.raw_total)
    return breakdown


def score_signals(signals: Mapping[str, Any]) -> int:
    """Base confidence (0-100) for a signal set, before corroboration."""
    return explain_signals(signals).score


def recompute_confidence(finding: Finding) -> int:
    """Confidence as a function of signals plus corroboration count.

    Every absorbed finding in ``merged_from`` is one corroboration.
    """
    base = score_signals(finding.raw_confidence_signals)
    return min(SCORE_MAX, base + CORROBORATION_BONUS * len(finding.merged_from))


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


class ConfidenceScorer:
    """Assign base confidence to freshly ingested findings."""

    def score(self, finding: Finding) -> Finding:
        """Return a copy of *finding* with ``confidence`` set."""
        confidence = score_signals(finding.raw_confidence_signals)
        return finding.model_copy(update={"confidence": confidence})

    def score_all(self, findings: List[Finding]) -> List[Finding]:
        scored = [self.score(f) for f in findings]
        logger.info("Scored %d findings", len(scored))
        return scored
