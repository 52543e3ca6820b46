#!/usr/bin/env python3
"""
Triage Session

A strictly sequential state machine that walks the prioritized queue, shows
each finding to a decision provider and records what it decided.

Per-finding states::

    PRESENTED --accept--> ACCEPTED
    PRESENTED --skip----> SKIPPED
    PRESENTED --edit----> PRESENTED   (edited finding substituted, shown again)

The session ends when the queue is exhausted or the caller cancels.
Cancellation is only honoured between decisions: a decision is either
recorded completely or not at all.  A cancelled session is *incomplete*,
not failed; calling ``resume()`` carries on from the cursor.

Decision providers are plain synchronous callables (see
``decision_providers.py``), so the same session drives a terminal prompt and
a scripted test harness.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from confidence_scorer import explain_signals
from exceptions import TriageCancelled, ValidationError
from schemas.finding import Finding

__all__ = [
    "DecisionOutcome",
    "FindingState",
    "TriageDecision",
    "FindingPresentation",
    "DecisionProvider",
    "TriageCounts",
    "TriageSession",
]

logger = logging.getLogger(__name__)

# Fields an edit may not touch: they carry the finding's identity and the
# inputs its confidence is computed from.
PROTECTED_FIELDS = (
    "id",
    "source_analyzer",
    "raw_confidence_signals",
    "confidence",
    "merged_from",
    "conflict",
)


class DecisionOutcome(str, Enum):
    ACCEPTED = "accepted"
    SKIPPED = "skipped"
    EDITED = "edited"


class FindingState(str, Enum):
    PRESENTED = "presented"
    ACCEPTED = "accepted"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Decisions and presentations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TriageDecision:
    """A decision about one finding.

    ``edited_finding`` is present exactly when the outcome is ``EDITED``.
    """

    finding_id: str
    outcome: DecisionOutcome
    edited_finding: Optional[Finding] = None
    decided_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def __post_init__(self):
        if (self.outcome is DecisionOutcome.EDITED) != (self.edited_finding is not None):
            raise ValueError(
                "edited_finding must be given for EDITED decisions and only for them"
            )

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not DecisionOutcome.EDITED

    @classmethod
    def accept(cls, finding: Finding) -> "TriageDecision":
        return cls(finding_id=finding.id, outcome=DecisionOutcome.ACCEPTED)

    @classmethod
    def skip(cls, finding: Finding) -> "TriageDecision":
        return cls(finding_id=finding.id, outcome=DecisionOutcome.SKIPPED)

    @classmethod
    def edit(cls, finding: Finding, **changes) -> "TriageDecision":
        """Raises ``ValidationError`` when the changes do not make a valid finding."""
        try:
            edited = Finding.model_validate({**finding.model_dump(), **changes})
        except PydanticValidationError as exc:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or 'finding'}: {err['msg']}"
                for err in exc.errors()
            ]
            raise ValidationError(
                f"Invalid edit of {finding.id}: " + "; ".join(errors), errors=errors
            ) from exc
        return cls(
            finding_id=finding.id, outcome=DecisionOutcome.EDITED, edited_finding=edited
        )


@dataclass(frozen=True)
class FindingPresentation:
    """Everything shown to the decision provider for one finding."""

    finding: Finding
    position: int
    total: int
    revision: int = 0

    @property
    def score_explanation(self) -> str:
        return explain_signals(self.finding.raw_confidence_signals).describe()

    def render(self) -> str:
        """Plain-text view containing every field of the finding."""
        f = self.finding
        header = f"[{self.position}/{self.total}] {f.severity.value} {f.title}"
        if self.revision:
            header += f" (edited x{self.revision})"
        lines = [
            header,
            f"  id:          {f.id}",
            f"  analyzer:    {f.source_analyzer}",
            f"  category:    {f.category.value}",
            f"  severity:    {f.severity.value}",
            f"  confidence:  {f.confidence}",
            f"  location:    {f.location}",
        ]
        if f.conflict:
            lines.append("  conflict:    analyzers disagree on severity at this location")
        if f.merged_from:
            lines.append(f"  merged from: {', '.join(f.merged_from)}")
        signals = ", ".join(
            f"{name}={value}" for name, value in sorted(f.raw_confidence_signals.items())
        )
        lines.append(f"  signals:     {signals or '(none)'}")
        lines.append(f"  score:       {self.score_explanation}")
        lines.append("  description:")
        lines.extend(f"    {line}" for line in (f.description or "(none)").splitlines())
        lines.append("  evidence:")
        if f.evidence_snippets:
            for snippet in f.evidence_snippets:
                lines.extend(f"    | {line}" for line in snippet.splitlines() or [""])
        else:
            lines.append("    (none)")
        return "\n".join(lines)


class DecisionProvider(Protocol):
    """Anything that can decide on a presented finding.

    May block indefinitely.  Raise ``TriageCancelled`` to stop the session
    before this finding is decided.
    """

    def decide(self, presentation: FindingPresentation) -> TriageDecision:
        ...


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class TriageCounts:
    accepted: int = 0
    skipped: int = 0
    edited: int = 0


class TriageSession:
    """Drive a decision provider over a prioritized queue of findings.

    Args:
        queue: Findings in presentation order (already filtered and sorted)
        provider: Decision provider consulted for each presentation
        on_accepted: Called with the final finding before an accept is
            recorded; the task sink uses it to persist a pending submission.
            If it raises, the accept is not recorded.
        session_id: Optional identifier; generated when omitted
    """

    # Consecutive rejected edits of one finding before the session gives up.
    max_invalid_edits = 3

    def __init__(
        self,
        queue: List[Finding],
        provider: DecisionProvider,
        on_accepted: Optional[Callable[[Finding], None]] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.provider = provider
        self.on_accepted = on_accepted
        self.queue: List[Finding] = list(queue)
        self.cursor = 0
        self.counts = TriageCounts()
        self.start_time = time.time()
        self.history: List[TriageDecision] = []
        self.errors: List[str] = []
        self._invalid_edits = 0
        self.states: Dict[str, FindingState] = {f.id: FindingState.PRESENTED for f in self.queue}
        self._revisions: Dict[str, int] = {}
        self._cancel = threading.Event()

        if len(self.states) != len(self.queue):
            raise ValueError("triage queue contains duplicate finding ids")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_complete(self) -> bool:
        return self.cursor >= len(self.queue)

    @property
    def incomplete(self) -> bool:
        return not self.is_complete

    @property
    def accepted_findings(self) -> List[Finding]:
        return [f for f in self.queue if self.states[f.id] is FindingState.ACCEPTED]

    @property
    def undecided_findings(self) -> List[Finding]:
        return [f for f in self.queue if self.states[f.id] is FindingState.PRESENTED]

    def terminal_decisions(self) -> Dict[str, TriageDecision]:
        """Last terminal decision per finding id."""
        return {d.finding_id: d for d in self.history if d.is_terminal}

    def cancel(self) -> None:
        """Request a stop before the next finding is presented."""
        self._cancel.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self) -> "TriageSession":
        """Present findings from the cursor until done or cancelled."""
        logger.info(
            "Triage session %s: %d findings queued, starting at %d",
            self.session_id,
            len(self.queue),
            self.cursor,
        )

        while not self.is_complete:
            if self._cancel.is_set():
                break

            finding = self.queue[self.cursor]
            presentation = FindingPresentation(
                finding=finding,
                position=self.cursor + 1,
                total=len(self.queue),
                revision=self._revisions.get(finding.id, 0),
            )
            try:
                decision = self.provider.decide(presentation)
            except TriageCancelled:
                logger.info("Decision provider cancelled at finding %s", finding.id)
                self._cancel.set()
                break
            except ValidationError as exc:
                self._invalid_edits += 1
                self.errors.append(str(exc))
                logger.warning("Rejected edit, presenting %s again: %s", finding.id, exc)
                if self._invalid_edits >= self.max_invalid_edits:
                    logger.error(
                        "Giving up on %s after %d invalid edits", finding.id, self._invalid_edits
                    )
                    self._cancel.set()
                    break
                continue

            self._invalid_edits = 0
            self._record(finding, decision)

        if self.incomplete:
            logger.info(
                "Triage session %s incomplete: %d findings undecided",
                self.session_id,
                len(self.undecided_findings),
            )
        else:
            logger.info(
                "Triage session %s complete: %d accepted, %d skipped, %d edits",
                self.session_id,
                self.counts.accepted,
                self.counts.skipped,
                self.counts.edited,
            )
        return self

    def resume(self) -> "TriageSession":
        """Clear a previous cancellation and continue from the cursor."""
        self._cancel.clear()
        self._invalid_edits = 0
        return self.run()

    def _record(self, finding: Finding, decision: TriageDecision) -> None:
        if decision.finding_id != finding.id:
            raise ValueError(
                f"decision for {decision.finding_id} returned while {finding.id} was presented"
            )

        if decision.outcome is DecisionOutcome.EDITED:
            edited = self._apply_edit(finding, decision.edited_finding)
            self.queue[self.cursor] = edited
            self._revisions[finding.id] = self._revisions.get(finding.id, 0) + 1
            self.history.append(
                TriageDecision(
                    finding_id=finding.id,
                    outcome=DecisionOutcome.EDITED,
                    edited_finding=edited,
                    decided_at=decision.decided_at,
                )
            )
            self.counts.edited += 1
            logger.debug("Finding %s edited; presenting again", finding.id)
            return

        if decision.outcome is DecisionOutcome.ACCEPTED:
            # Nothing is recorded if the callback fails; the finding stays
            # at the cursor and is presented again on resume().
            if self.on_accepted is not None:
                self.on_accepted(finding)
            self.history.append(decision)
            self.states[finding.id] = FindingState.ACCEPTED
            self.counts.accepted += 1
        else:
            self.history.append(decision)
            self.states[finding.id] = FindingState.SKIPPED
            self.counts.skipped += 1
        self.cursor += 1

    @staticmethod
    def _apply_edit(original: Finding, edited: Finding) -> Finding:
        """Keep the reviewer's changes but restore identity and scoring inputs."""
        data = edited.model_dump()
        for name in PROTECTED_FIELDS:
            data[name] = getattr(original, name)
        return Finding.model_validate(data)
