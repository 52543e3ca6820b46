#!/usr/bin/env python3
"""
Decision Providers for the Triage Session

- ``TerminalDecisionProvider`` asks a human on the terminal:
  ``[a]ccept / [s]kip / [e]dit / [q]uit``.
- ``ScriptedDecisionProvider`` replays a fixed list of decisions; used by
  tests and unattended runs.  When the script runs out the session is
  cancelled, leaving the remaining findings undecided.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from exceptions import TriageCancelled
from schemas.finding import Severity
from triage_session import FindingPresentation, TriageDecision

__all__ = ["TerminalDecisionProvider", "ScriptedDecisionProvider"]

logger = logging.getLogger(__name__)

_CHOICES = {
    "a": "accept",
    "accept": "accept",
    "s": "skip",
    "skip": "skip",
    "e": "edit",
    "edit": "edit",
    "q": "quit",
    "quit": "quit",
}


class TerminalDecisionProvider:
    """Interactive provider reading answers from ``input_fn``.

    Args:
        input_fn: Prompt function, ``input`` by default
        output_fn: Output function, ``print`` by default
    """

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], Any] = print,
    ):
        self.input_fn = input_fn
        self.output_fn = output_fn

    def _ask(self, prompt: str) -> str:
        try:
            return self.input_fn(prompt)
        except (EOFError, KeyboardInterrupt) as exc:
            raise TriageCancelled("input closed") from exc

    def decide(self, presentation: FindingPresentation) -> TriageDecision:
        self.output_fn("")
        self.output_fn(presentation.render())

        while True:
            answer = self._ask("[a]ccept / [s]kip / [e]dit / [q]uit > ").strip().lower()
            choice = _CHOICES.get(answer)
            if choice is None:
                self.output_fn(f"Unrecognised answer {answer!r}")
                continue
            break

        finding = presentation.finding
        if choice == "quit":
            raise TriageCancelled("reviewer quit")
        if choice == "accept":
            return TriageDecision.accept(finding)
        if choice == "skip":
            return TriageDecision.skip(finding)
        return TriageDecision.edit(finding, **self._collect_edits(finding))

    def _collect_edits(self, finding) -> Dict[str, Any]:
        """Ask for replacement values; blank answers keep the current one."""
        changes: Dict[str, Any] = {}

        title = self._ask(f"title [{finding.title}]: ").strip()
        if title:
            changes["title"] = title

        while True:
            severity = self._ask(f"severity [{finding.severity.value}]: ").strip().upper()
            if not severity:
                break
            if severity in Severity.__members__:
                changes["severity"] = Severity(severity)
                break
            self.output_fn("Severity must be one of P1, P2, P3")

        description = self._ask("description (blank keeps current): ").strip()
        if description:
            changes["description"] = description
        return changes


ScriptStep = Union[str, Tuple[str, Dict[str, Any]]]


class ScriptedDecisionProvider:
    """Replay decisions from a script.

    Each step is ``"accept"``, ``"skip"``, ``"quit"`` or
    ``("edit", {field: value, ...})``.  A mapping of finding id to steps may
    be given instead of a sequence.  The value is one step or a list of
    steps; an edit re-presents the finding, so ``[("edit", {...}), "accept"]``
    edits and then accepts it.  Ids with no steps left use ``default``.

    Every presentation is kept in ``presented`` for inspection.
    """

    def __init__(
        self,
        script: Union[Sequence[ScriptStep], Dict[str, Union[ScriptStep, List[ScriptStep]]]],
        default: Optional[ScriptStep] = None,
    ):
        self._by_id: Optional[Dict[str, List[ScriptStep]]] = None
        self._steps: List[ScriptStep] = []
        if isinstance(script, dict):
            self._by_id = {
                finding_id: list(steps) if isinstance(steps, list) else [steps]
                for finding_id, steps in script.items()
            }
        else:
            self._steps = list(script)
        self.default = default
        self.presented: List[FindingPresentation] = []

    def _next_step(self, finding_id: str) -> Optional[ScriptStep]:
        if self._by_id is not None:
            steps = self._by_id.get(finding_id)
            return steps.pop(0) if steps else self.default
        if self._steps:
            return self._steps.pop(0)
        return self.default

    def decide(self, presentation: FindingPresentation) -> TriageDecision:
        self.presented.append(presentation)
        finding = presentation.finding
        step = self._next_step(finding.id)

        if step is None or step == "quit":
            raise TriageCancelled("script exhausted")
        if step == "accept":
            return TriageDecision.accept(finding)
        if step == "skip":
            return TriageDecision.skip(finding)
        if isinstance(step, tuple) and step[0] == "edit":
            return TriageDecision.edit(finding, **step[1])
        raise ValueError(f"Unknown scripted step: {step!r}")
