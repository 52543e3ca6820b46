#!/usr/bin/env python3
"""
Task Sink Adapter

Turns accepted findings into tasks in an external tracker.

For each accepted finding the sink:

1. maps severity to the tracker's priority scale (P1 -> highest,
   P2 -> medium, P3 -> lowest),
2. records a ``TaskSubmission`` in the durable store,
3. calls ``tracker.create_task(title, description, priority, labels)``,
   retrying with exponential backoff up to ``max_attempts`` times.

Submissions are retried independently on a small worker pool, so one
failing submission never holds up the others.  A submission that exhausts
its attempts is marked ``failed`` and reported to the caller; it stays in
the store for ``resubmit_failed()``.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Protocol, Sequence

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from exceptions import TrackerError
from schemas.finding import Finding, Severity
from submission_store import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUBMITTED,
    SubmissionStore,
    TaskSubmission,
)

__all__ = [
    "TaskPriority",
    "PRIORITY_BY_SEVERITY",
    "severity_to_priority",
    "TaskTracker",
    "SinkReport",
    "TaskSink",
    "build_task_description",
]

logger = logging.getLogger(__name__)


class TaskPriority(str, Enum):
    HIGHEST = "highest"
    MEDIUM = "medium"
    LOWEST = "lowest"


PRIORITY_BY_SEVERITY = {
    Severity.P1: TaskPriority.HIGHEST,
    Severity.P2: TaskPriority.MEDIUM,
    Severity.P3: TaskPriority.LOWEST,
}


def severity_to_priority(severity: Severity) -> TaskPriority:
    """Total mapping from severity to tracker priority."""
    return PRIORITY_BY_SEVERITY[Severity(severity)]


class TaskTracker(Protocol):
    """External tracker contract.  Raise ``TrackerError`` on failure."""

    def create_task(
        self,
        title: str,
        description: str,
        priority: TaskPriority,
        labels: Sequence[str],
    ) -> str:
        ...


def build_task_description(finding: Finding) -> str:
    """Task body carrying everything needed to act on the finding."""
    lines = [
        finding.description or finding.title,
        "",
        f"Location: {finding.location}",
        f"Severity: {finding.severity.value}",
        f"Category: {finding.category.value}",
        f"Confidence: {finding.confidence}",
        f"Reported by: {finding.source_analyzer}",
    ]
    if finding.merged_from:
        lines.append(f"Corroborated by findings: {', '.join(finding.merged_from)}")
    if finding.conflict:
        lines.append("Note: analyzers disagreed on severity for this location.")
    if finding.evidence_snippets:
        lines.append("")
        lines.append("Evidence:")
        for snippet in finding.evidence_snippets:
            lines.append("```")
            lines.append(snippet)
            lines.append("```")
    lines.append("")
    lines.append(f"Finding: {finding.id}")
    return "\n".join(lines)


def _same_finding(submission: TaskSubmission, finding: Finding) -> bool:
    # Fields a reviewer cannot edit identify the finding.
    recorded = submission.finding
    if not recorded:
        return True
    return (
        recorded.get("source_analyzer") == finding.source_analyzer
        and list(recorded.get("merged_from") or []) == list(finding.merged_from)
    )


@dataclass
class SinkReport:
    """Result of a flush: what was created and what is left failing."""

    submitted: List[TaskSubmission] = field(default_factory=list)
    failed: List[TaskSubmission] = field(default_factory=list)

    @property
    def external_ids(self) -> List[str]:
        return [s.external_id for s in self.submitted if s.external_id]

    @property
    def ok(self) -> bool:
        return not self.failed


class TaskSink:
    """Submit accepted findings to a tracker with bounded, independent retries.

    Args:
        tracker: Object implementing ``TaskTracker``
        store: Durable submission store (in-memory when omitted)
        max_attempts: Tracker calls per submission per flush
        backoff_seconds: Exponential backoff multiplier (0 disables waiting)
        backoff_max_seconds: Upper bound for a single wait
        workers: Concurrent submissions
        labels: Labels added to every task
        sleep: Sleep function used between retries
        session_id: Review session the submissions belong to (generated
            when omitted)
    """

    def __init__(
        self,
        tracker: TaskTracker,
        store: Optional[SubmissionStore] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        workers: int = 4,
        labels: Iterable[str] = ("code-review",),
        sleep: Callable[[float], None] = time.sleep,
        session_id: Optional[str] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.tracker = tracker
        self.store = store if store is not None else SubmissionStore()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.workers = max(1, workers)
        self.labels = list(labels)
        self._sleep = sleep
        self.session_id = session_id or str(uuid.uuid4())

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def labels_for(self, finding: Finding) -> List[str]:
        labels = list(self.labels)
        labels.append(f"category:{finding.category.value}")
        labels.append(f"severity:{finding.severity.value}")
        if finding.conflict:
            labels.append("conflict")
        return labels

    def enqueue(self, finding: Finding) -> TaskSubmission:
        """Durably record a pending submission for an accepted finding.

        Submissions are keyed by this sink's session, so findings from an
        earlier session that reused the same id are left alone.  Within the
        session, a finding that already has a confirmed task is not queued
        again.

        Raises:
            ValueError: The slot for this id holds a different finding
        """
        existing = self.store.get(finding.id, self.session_id)
        if existing is not None and not _same_finding(existing, finding):
            raise ValueError(
                f"Submission {existing.key} belongs to a different finding "
                f"(reported by {existing.finding.get('source_analyzer')})"
            )
        if existing is not None and existing.is_submitted:
            logger.info(
                "Finding %s already tracked as %s", finding.id, existing.external_id
            )
            return existing

        submission = TaskSubmission(
            finding_id=finding.id,
            title=finding.title,
            description=build_task_description(finding),
            priority=severity_to_priority(finding.severity).value,
            labels=self.labels_for(finding),
            finding=finding.model_dump(mode="json"),
            session_id=self.session_id,
        )
        if existing is not None:
            submission.attempts = existing.attempts
            submission.last_error = existing.last_error
        self.store.put(submission)
        return submission

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _attempt(self, submission: TaskSubmission) -> None:
        submission.attempts += 1
        try:
            external_id = self.tracker.create_task(
                submission.title,
                submission.description,
                TaskPriority(submission.priority),
                list(submission.labels),
            )
        except Exception as exc:
            submission.last_error = f"{type(exc).__name__}: {exc}"
            self.store.put(submission)
            if isinstance(exc, TrackerError):
                raise
            raise TrackerError(submission.last_error) from exc

        if not external_id:
            submission.last_error = "tracker returned an empty id"
            self.store.put(submission)
            raise TrackerError(submission.last_error)

        submission.external_id = str(external_id)
        submission.status = STATUS_SUBMITTED
        self.store.put(submission)

    def submit(self, submission: TaskSubmission) -> TaskSubmission:
        """Create the task for one submission, retrying on tracker errors."""
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_seconds, max=self.backoff_max_seconds
            ),
            retry=retry_if_exception_type(TrackerError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            for attempt in retryer:
                with attempt:
                    self._attempt(submission)
        except TrackerError as exc:
            submission.status = STATUS_FAILED
            self.store.put(submission)
            logger.error(
                "Giving up on task for finding %s after %d attempts: %s",
                submission.finding_id,
                submission.attempts,
                exc,
            )
            return submission

        logger.info(
            "Created task %s for finding %s (attempt %d)",
            submission.external_id,
            submission.finding_id,
            submission.attempts,
        )
        return submission

    def flush(self) -> SinkReport:
        """Submit every pending submission and report the outcome."""
        pending = self.store.pending()
        report = SinkReport()
        if not pending:
            return report

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.workers, len(pending))
        ) as executor:
            results = list(executor.map(self.submit, pending))

        for submission in results:
            if submission.status == STATUS_SUBMITTED:
                report.submitted.append(submission)
            else:
                report.failed.append(submission)

        logger.info(
            "Task sink flushed %d submissions: %d created, %d failed",
            len(pending),
            len(report.submitted),
            len(report.failed),
        )
        return report

    def submit_findings(self, findings: Iterable[Finding]) -> SinkReport:
        for finding in findings:
            self.enqueue(finding)
        return self.flush()

    def resubmit_failed(self) -> SinkReport:
        """Put failed submissions back to pending and flush again."""
        failed = self.store.failed()
        for submission in failed:
            submission.status = STATUS_PENDING
            self.store.put(submission)
        logger.info("Resubmitting %d failed submissions", len(failed))
        return self.flush()
