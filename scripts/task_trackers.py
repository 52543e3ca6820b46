#!/usr/bin/env python3
"""
Tracker backends for the task sink.

- ``BeadsTracker`` creates issues with the ``bd`` CLI.
- ``FileTracker`` appends tasks to a JSONL file; useful offline and in CI
  where no tracker is installed.

Both raise ``TrackerError`` on any failure so the sink can retry.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from exceptions import TrackerError
from task_sink import TaskPriority, TaskTracker

__all__ = ["BeadsTracker", "FileTracker", "BEADS_PRIORITY", "create_tracker"]

logger = logging.getLogger(__name__)

# bd priorities run 0 (highest) to 4 (lowest)
BEADS_PRIORITY: Dict[TaskPriority, int] = {
    TaskPriority.HIGHEST: 0,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOWEST: 4,
}


class BeadsTracker:
    """Create tasks with ``bd create ... --json``."""

    def __init__(
        self,
        cwd: Optional[str] = None,
        timeout_seconds: float = 60.0,
        executable: str = "bd",
    ):
        self.cwd = Path(cwd) if cwd else None
        self.timeout_seconds = timeout_seconds
        self.executable = executable

    def _run_bd(self, args: Sequence[str]) -> str:
        try:
            completed = subprocess.run(
                [self.executable, *args],
                cwd=self.cwd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise TrackerError(
                "bd CLI not found (install beads and ensure it's on PATH)."
            ) from e
        except subprocess.TimeoutExpired as e:
            raise TrackerError(
                f"bd {args[0]} timed out after {self.timeout_seconds:.0f}s."
            ) from e

        if completed.returncode != 0:
            details = (completed.stderr or "").strip() or (completed.stdout or "").strip()
            raise TrackerError(
                f"bd {args[0]} failed (exit={completed.returncode}): {details or '<no output>'}"
            )
        return completed.stdout or ""

    @staticmethod
    def _parse_issue_id(stdout: str) -> str:
        payload = stdout.strip()
        if not payload:
            raise TrackerError("bd create returned no output")
        try:
            data: Any = json.loads(payload)
        except json.JSONDecodeError as e:
            raise TrackerError(f"Failed to parse bd --json output: {e}") from e
        if isinstance(data, list) and data:
            data = data[0]
        issue_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(issue_id, str) or not issue_id.strip():
            raise TrackerError("bd create --json: missing string id")
        return issue_id

    def create_task(
        self,
        title: str,
        description: str,
        priority: TaskPriority,
        labels: Sequence[str],
    ) -> str:
        args = [
            "create",
            title,
            "--description",
            description,
            "--priority",
            str(BEADS_PRIORITY[TaskPriority(priority)]),
        ]
        if labels:
            args.extend(["--labels", ",".join(labels)])
        args.append("--json")
        issue_id = self._parse_issue_id(self._run_bd(args))
        logger.debug("bd created %s: %s", issue_id, title)
        return issue_id


class FileTracker:
    """Append tasks to a JSONL file and hand out sequential ids."""

    def __init__(self, path: str = ".synthesis/tasks.jsonl", id_prefix: str = "task"):
        self.path = Path(path)
        self.id_prefix = id_prefix
        self._lock = threading.Lock()

    def _next_number(self) -> int:
        if not self.path.is_file():
            return 1
        with open(self.path, "r", encoding="utf-8") as fh:
            return sum(1 for line in fh if line.strip()) + 1

    def create_task(
        self,
        title: str,
        description: str,
        priority: TaskPriority,
        labels: Sequence[str],
    ) -> str:
        with self._lock:
            task_id = f"{self.id_prefix}-{self._next_number():04d}"
            record = {
                "id": task_id,
                "title": title,
                "description": description,
                "priority": TaskPriority(priority).value,
                "labels": list(labels),
            }
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(json.dumps(record) + "\n")
            except OSError as e:
                raise TrackerError(f"Cannot write task file {self.path}: {e}") from e
        return task_id


def create_tracker(backend: str, cwd: Optional[str] = None) -> TaskTracker:
    """Build the tracker named by the ``tracker_backend`` setting."""
    if backend == "beads":
        return BeadsTracker(cwd=cwd)
    if backend == "file":
        base = Path(cwd) if cwd else Path(".")
        return FileTracker(path=str(base / ".synthesis" / "tasks.jsonl"))
    raise ValueError(f"Unknown tracker backend: {backend!r}")
