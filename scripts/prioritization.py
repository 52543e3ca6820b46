#!/usr/bin/env python3
"""
Threshold Filter and Priority Sorter

Two small reductions that run after deduplication:

- ``ThresholdFilter`` drops findings whose confidence is below a cut-off.
  Findings flagged ``conflict`` always pass, since analyzer disagreement
  must be adjudicated by a human whatever the score.  Raising the
  threshold can only ever remove findings.
- ``sort_by_priority`` orders the survivors by severity (P1 first), then
  confidence (highest first), then id, so identical input always yields
  identical order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from schemas.finding import Finding

__all__ = [
    "DEFAULT_THRESHOLD",
    "FilterResult",
    "ThresholdFilter",
    "priority_key",
    "sort_by_priority",
]

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD: int = 80


@dataclass
class FilterResult:
    """Findings that passed the threshold and those that were dropped."""

    threshold: int
    kept: List[Finding] = field(default_factory=list)
    dropped: List[Finding] = field(default_factory=list)

    @property
    def forced_conflicts(self) -> List[Finding]:
        """Conflicts that passed only because of their flag."""
        return [
            f for f in self.kept
            if f.conflict and (f.confidence or 0) < self.threshold
        ]


class ThresholdFilter:
    """Drop low-confidence findings, always keeping conflicts.

    Parameters
    ----------
    threshold : int
        Minimum confidence (0-100) a non-conflicting finding needs.
    """

    def __init__(self, threshold: int = DEFAULT_THRESHOLD) -> None:
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise TypeError(f"threshold must be an int, got {threshold!r}")
        if not 0 <= threshold <= 100:
            raise ValueError(f"threshold must be between 0 and 100, got {threshold}")
        self.threshold = threshold

    def passes(self, finding: Finding) -> bool:
        if finding.conflict:
            return True
        return finding.confidence is not None and finding.confidence >= self.threshold

    def apply(self, findings: List[Finding]) -> FilterResult:
        result = FilterResult(threshold=self.threshold)
        for finding in findings:
            if self.passes(finding):
                result.kept.append(finding)
            else:
                result.dropped.append(finding)

        logger.info(
            "Threshold %d: kept %d of %d findings (%d conflicts forced through)",
            self.threshold,
            len(result.kept),
            len(findings),
            len(result.forced_conflicts),
        )
        return result


def priority_key(finding: Finding):
    """Sort key: severity rank, confidence descending, id ascending."""
    confidence = finding.confidence if finding.confidence is not None else -1
    return (finding.severity.rank, -confidence, finding.id)


def sort_by_priority(findings: List[Finding]) -> List[Finding]:
    """Return a new list ordered for presentation."""
    return sorted(findings, key=priority_key)
