#!/usr/bin/env python3
"""
Finding Deduplicator / Merger

Groups findings that describe the same underlying issue and merges them,
boosting confidence for every corroborating analyzer.

Grouping keys:

  - **located**    : same file + category, with overlapping or coincident
                     line spans (spans chain, so 1-5, 4-8 and 7-9 form one
                     group)
  - **file-level** : same file + category, no line, same normalized title
  - **repo-wide**  : no file, same category + normalized title (case and
                     whitespace folded)

Each group of two or more elects a *survivor*: the member with the highest
confidence (ties go to the lowest id).  The survivor absorbs the others'
ids into ``merged_from`` and gains ``+10`` confidence per absorbed member,
capped at 100.

Groups whose members disagree on severity are **not** merged.  Every member
is emitted with ``conflict`` set so that filtering lets it through and a
human resolves the disagreement.

Running the deduplicator over its own output changes nothing.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from confidence_scorer import CORROBORATION_BONUS, SCORE_MAX, score_signals
from schemas.finding import Finding

__all__ = [
    "DeduplicationResult",
    "FindingDeduplicator",
    "normalize_title",
]

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """Fold case and collapse runs of whitespace."""
    return _WHITESPACE.sub(" ", title).strip().lower()


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class DeduplicationResult:
    """Outcome of a deduplication run."""

    original_count: int
    deduplicated_count: int
    duplicates_removed: int
    findings: List[Finding] = field(default_factory=list)
    merge_groups: List[dict] = field(default_factory=list)
    conflict_groups: List[List[str]] = field(default_factory=list)
    removed_ids: List[str] = field(default_factory=list)

    @property
    def conflict_count(self) -> int:
        return sum(len(group) for group in self.conflict_groups)


# ---------------------------------------------------------------------------
# Main deduplicator
# ---------------------------------------------------------------------------


class FindingDeduplicator:
    """Merge duplicate findings reported by different analyzers."""

    # ------------------------------------------------------------------
    # Grouping
    # ------------------------------------------------------------------

    @staticmethod
    def _bucket_key(finding: Finding) -> Tuple:
        """Coarse key; located findings are further split by line overlap."""
        category = finding.category.value
        if finding.location_file is None:
            return ("repo", category, normalize_title(finding.title))
        if finding.location_line is None:
            return ("file", finding.location_file, category, normalize_title(finding.title))
        return ("line", finding.location_file, category)

    @staticmethod
    def _split_by_overlap(findings: List[Finding]) -> List[List[Finding]]:
        """Sweep located findings by span and cut where spans stop touching."""
        ordered = sorted(findings, key=lambda f: (f.line_span, f.id))
        groups: List[List[Finding]] = []
        current: List[Finding] = []
        current_end = -1

        for finding in ordered:
            start, end = finding.line_span
            if current and start <= current_end:
                current.append(finding)
                current_end = max(current_end, end)
            else:
                if current:
                    groups.append(current)
                current = [finding]
                current_end = end
        if current:
            groups.append(current)
        return groups

    def group(self, findings: List[Finding]) -> List[List[Finding]]:
        """Partition *findings* into duplicate groups."""
        buckets: Dict[Tuple, List[Finding]] = defaultdict(list)
        for finding in findings:
            buckets[self._bucket_key(finding)].append(finding)

        groups: List[List[Finding]] = []
        for key, members in buckets.items():
            if key[0] == "line":
                groups.extend(self._split_by_overlap(members))
            else:
                groups.append(members)
        return groups

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    @staticmethod
    def _confidence_of(finding: Finding) -> int:
        if finding.confidence is not None:
            return finding.confidence
        return score_signals(finding.raw_confidence_signals)

    @classmethod
    def _select_survivor(cls, group: List[Finding]) -> Finding:
        return min(group, key=lambda f: (-cls._confidence_of(f), f.id))

    @classmethod
    def _merge(cls, group: List[Finding]) -> Finding:
        survivor = cls._select_survivor(group)
        absorbed = set(survivor.merged_from)
        for member in group:
            if member.id != survivor.id:
                absorbed.add(member.id)
                absorbed.update(member.merged_from)

        confidence = min(
            SCORE_MAX,
            score_signals(survivor.raw_confidence_signals)
            + CORROBORATION_BONUS * len(absorbed),
        )
        return survivor.model_copy(
            update={"confidence": confidence, "merged_from": tuple(sorted(absorbed))}
        )

    @staticmethod
    def _has_conflict(group: List[Finding]) -> bool:
        return len({f.severity for f in group}) > 1

    # ------------------------------------------------------------------
    # Core deduplication
    # ------------------------------------------------------------------

    def deduplicate(self, findings: List[Finding]) -> DeduplicationResult:
        """Deduplicate *findings* and return a :class:`DeduplicationResult`.

        Output keeps input order: each emitted finding sits where its
        original appeared, merged survivors replacing their original.
        """
        if not findings:
            return DeduplicationResult(
                original_count=0, deduplicated_count=0, duplicates_removed=0
            )

        replacements: Dict[str, Finding] = {}
        removed: List[str] = []
        merge_groups: List[dict] = []
        conflict_groups: List[List[str]] = []

        for group in self.group(findings):
            if len(group) == 1:
                continue

            ids = sorted(f.id for f in group)
            if self._has_conflict(group):
                conflict_groups.append(ids)
                for member in group:
                    replacements[member.id] = member.model_copy(update={"conflict": True})
                logger.warning(
                    "Severity conflict between %s at %s (%s); not merging",
                    ", ".join(ids),
                    group[0].location,
                    "/".join(sorted({f.severity.value for f in group})),
                )
                continue

            merged = self._merge(group)
            replacements[merged.id] = merged
            absorbed = [f.id for f in group if f.id != merged.id]
            removed.extend(absorbed)
            merge_groups.append(
                {
                    "survivor": merged.id,
                    "absorbed": absorbed,
                    "count": len(group),
                    "analyzers": sorted({f.source_analyzer for f in group}),
                    "confidence": merged.confidence,
                }
            )

        removed_set = set(removed)
        kept = [
            replacements.get(f.id, f) for f in findings if f.id not in removed_set
        ]

        logger.info(
            "Deduplication complete: %d -> %d findings (%d merged, %d in conflict)",
            len(findings),
            len(kept),
            len(removed),
            sum(len(g) for g in conflict_groups),
        )

        return DeduplicationResult(
            original_count=len(findings),
            deduplicated_count=len(kept),
            duplicates_removed=len(removed),
            findings=kept,
            merge_groups=merge_groups,
            conflict_groups=conflict_groups,
            removed_ids=sorted(removed),
        )
