"""
Triage Transcript Schema - the structured summary emitted at session end.

The transcript is the only artifact of a review run that outlives the
process: it records how many findings went in, how many survived the
threshold, how confidence was distributed, what the reviewer decided and
which tracker tasks were created.  A cancelled session still produces a
transcript, marked ``incomplete``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

BUCKET_HIGH = "90-100"
BUCKET_MEDIUM = "80-89"
BUCKET_LOW = "<80"


def confidence_buckets(confidences: Iterable[Optional[int]]) -> Dict[str, int]:
    """Count confidences into the 90-100 / 80-89 / <80 buckets.

    Unscored findings (``None``) land in the lowest bucket.
    """
    buckets = {BUCKET_HIGH: 0, BUCKET_MEDIUM: 0, BUCKET_LOW: 0}
    for value in confidences:
        if value is not None and value >= 90:
            buckets[BUCKET_HIGH] += 1
        elif value is not None and value >= 80:
            buckets[BUCKET_MEDIUM] += 1
        else:
            buckets[BUCKET_LOW] += 1
    return buckets


class DecisionRecord(BaseModel):
    """One entry of the decision log kept in the transcript."""

    finding_id: str
    outcome: str  # accepted / skipped / edited
    title: str
    severity: str
    confidence: Optional[int] = None


class TriageTranscript(BaseModel):
    """Session-end summary of a synthesis and triage run."""

    session_id: str
    started_at: str
    finished_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    duration_seconds: float = 0.0
    incomplete: bool = False

    # Ingestion
    total_ingested: int = 0
    ingestion_errors: int = 0
    analyzer_status: Dict[str, str] = Field(default_factory=dict)

    # Filtering
    threshold: int = 80
    total_after_dedup: int = 0
    surviving_threshold: int = 0
    conflicts: int = 0
    confidence_buckets: Dict[str, int] = Field(
        default_factory=lambda: {BUCKET_HIGH: 0, BUCKET_MEDIUM: 0, BUCKET_LOW: 0}
    )

    # Triage
    accepted: int = 0
    skipped: int = 0
    edited: int = 0
    undecided: int = 0
    decisions: List[DecisionRecord] = Field(default_factory=list)

    # Task sink
    external_ids: List[str] = Field(default_factory=list)
    failed_submissions: List[str] = Field(default_factory=list)

    def summary_line(self) -> str:
        status = "INCOMPLETE" if self.incomplete else "complete"
        return (
            f"Triage {status}: {self.total_ingested} ingested, "
            f"{self.surviving_threshold} above threshold {self.threshold}, "
            f"{self.accepted} accepted / {self.skipped} skipped / "
            f"{self.edited} edited, {len(self.external_ids)} tasks created"
        )


__all__ = [
    "BUCKET_HIGH",
    "BUCKET_MEDIUM",
    "BUCKET_LOW",
    "confidence_buckets",
    "DecisionRecord",
    "TriageTranscript",
]
