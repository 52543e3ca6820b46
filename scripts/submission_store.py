"""
Durable store for tracker submissions.

Every accepted finding gets a ``TaskSubmission`` that is written to disk
before the tracker is called and rewritten after every attempt, so a crash
or an exhausted retry budget never loses it.  Writes are atomic
(temp file + rename) and guarded by a lock, since the task sink submits
from several worker threads.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SUBMITTED = "submitted"
STATUS_FAILED = "failed"


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def submission_key(finding_id: str, session_id: str = "") -> str:
    """Store key.  Finding ids are only unique within one session."""
    return f"{session_id}:{finding_id}" if session_id else finding_id


@dataclass
class TaskSubmission:
    """One tracker submission for an accepted finding.

    ``external_id`` stays ``None`` until the tracker confirms creation.
    ``attempts`` counts every tracker call made for this submission.
    """

    finding_id: str
    title: str
    description: str
    priority: str
    labels: List[str] = field(default_factory=list)
    external_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    status: str = STATUS_PENDING
    finding: Dict[str, Any] = field(default_factory=dict)
    session_id: str = ""
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def key(self) -> str:
        return submission_key(self.finding_id, self.session_id)

    @property
    def is_submitted(self) -> bool:
        return self.external_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskSubmission":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class SubmissionStore:
    """JSON-file backed map of (session, finding id) -> ``TaskSubmission``.

    Pass ``path=None`` for a purely in-memory store.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._submissions: Dict[str, TaskSubmission] = {}
        if self.path is not None and self.path.is_file():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
        for entry in raw.get("submissions", []):
            submission = TaskSubmission.from_dict(entry)
            self._submissions[submission.key] = submission
        logger.info("Loaded %d submissions from %s", len(self._submissions), self.path)

    def _save(self) -> None:
        """Atomic write using temp+rename."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = str(self.path) + ".tmp"
        data = {
            "updated_at": _now(),
            "submissions": [s.to_dict() for s in self._submissions.values()],
        }
        try:
            with open(temp_path, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(temp_path, self.path)
        except Exception:
            with contextlib.suppress(OSError):
                os.unlink(temp_path)
            raise

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def put(self, submission: TaskSubmission) -> None:
        """Insert or replace *submission* and persist immediately."""
        with self._lock:
            submission.updated_at = _now()
            self._submissions[submission.key] = submission
            self._save()

    def get(self, finding_id: str, session_id: str = "") -> Optional[TaskSubmission]:
        with self._lock:
            return self._submissions.get(submission_key(finding_id, session_id))

    def all(self) -> List[TaskSubmission]:
        with self._lock:
            return list(self._submissions.values())

    def with_status(self, status: str) -> List[TaskSubmission]:
        with self._lock:
            return [s for s in self._submissions.values() if s.status == status]

    def pending(self) -> List[TaskSubmission]:
        return self.with_status(STATUS_PENDING)

    def failed(self) -> List[TaskSubmission]:
        return self.with_status(STATUS_FAILED)

    def __len__(self) -> int:
        with self._lock:
            return len(self._submissions)
