#!/usr/bin/env python3
"""
Deterministic pre-check analyzers.

Validators for runtime compatibility, secrets, UI props and the like print a
JSON report.  Two shapes are in use::

    {"scanned": ..., "total": N, "critical": N, "warnings": N, "violations": [...]}
    {"errors": N, "warnings": N, "issues": [...]}

Every entry carries ``file``, ``line``, ``code``, ``type``, ``severity``
(critical / error / warning / info), ``message`` and ``fix``.  This module
turns those reports into ordinary analyzer payloads, so pre-check findings go
through ingestion, scoring and dedup like any other analyzer's.

Also here: ``JsonFileAnalyzer``, which replays a saved analyzer report from
disk, and ``discover_report_analyzers`` for a directory of such reports.
"""

import json
import logging
import shlex
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from exceptions import AnalyzerError

logger = logging.getLogger(__name__)

PRECHECK_SEVERITY = {
    "critical": "P1",
    "error": "P1",
    "warning": "P2",
}
DEFAULT_PRECHECK_SEVERITY = "P3"

# analyzer id keyword -> category
_CATEGORY_HINTS = (
    ("secret", "security"),
    ("security", "security"),
    ("auth", "security"),
    ("runtime", "runtime"),
    ("component", "ui"),
    ("ui", "ui"),
    ("type", "quality"),
    ("lint", "quality"),
    ("test", "testing"),
    ("perf", "performance"),
    ("kv", "platform-pattern"),
    ("d1", "platform-pattern"),
    ("binding", "platform-pattern"),
)


def category_for(analyzer_id: str, default: str = "quality") -> str:
    """Guess a finding category from a pre-check's name."""
    lowered = analyzer_id.lower()
    for hint, category in _CATEGORY_HINTS:
        if hint in lowered:
            return category
    return default


def _report_entries(report: Any) -> List[Dict[str, Any]]:
    if isinstance(report, list):
        return [e for e in report if isinstance(e, dict)]
    if isinstance(report, dict):
        for key in ("violations", "issues"):
            entries = report.get(key)
            if isinstance(entries, list):
                return [e for e in entries if isinstance(e, dict)]
    return []


def is_precheck_report(report: Any) -> bool:
    return isinstance(report, dict) and (
        isinstance(report.get("violations"), list) or isinstance(report.get("issues"), list)
    )


def adapt_precheck_entry(
    entry: Dict[str, Any], category: str, diff_scoped: bool = False
) -> Dict[str, Any]:
    """Convert one validator entry into an analyzer payload."""
    severity = PRECHECK_SEVERITY.get(
        str(entry.get("severity", "")).lower(), DEFAULT_PRECHECK_SEVERITY
    )
    rule = entry.get("type") or ""
    message = entry.get("message") or rule or "pre-check violation"
    title = f"{rule}: {message}" if rule and rule not in message else message

    description = message
    if entry.get("fix"):
        description += f"\n\nFix: {entry['fix']}"
    if entry.get("context"):
        description += f"\n\nContext: {entry['context']}"

    code = entry.get("code")
    snippets = [str(code)] if code else []

    payload: Dict[str, Any] = {
        "title": title,
        "category": category,
        "severity": severity,
        "description": description,
        "evidenceSnippets": snippets,
        "rawConfidenceSignals": {
            "location_present": bool(entry.get("file") and entry.get("line")),
            "excerpt_attached": bool(snippets),
            "documented_rule": bool(rule),
            "changed_content": diff_scoped,
        },
    }
    if entry.get("file"):
        payload["location"] = {"file": str(entry["file"]), "line": entry.get("line") or None}
    return payload


def adapt_precheck_report(
    report: Any, category: str, diff_scoped: bool = False
) -> List[Dict[str, Any]]:
    """Convert a whole validator report into analyzer payloads."""
    return [adapt_precheck_entry(e, category, diff_scoped) for e in _report_entries(report)]


class CommandPrecheckAnalyzer:
    """Run a validator command and adapt its JSON report.

    ``{target}`` in *command* is replaced by the review target; without the
    placeholder the target is appended as the last argument.  Validators
    exit non-zero when they find critical violations, so the exit code is
    ignored whenever stdout holds a JSON report.

    Args:
        analyzer_id: Name used for findings from this pre-check
        command: Command line, e.g. ``"node validate-runtime.js {target}"``
        category: Finding category; guessed from *analyzer_id* when omitted
        cwd: Working directory for the command
        timeout_seconds: Hard limit for the subprocess
        diff_scoped: The command only inspects changed files
    """

    def __init__(
        self,
        analyzer_id: str,
        command: str,
        category: Optional[str] = None,
        cwd: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        diff_scoped: bool = False,
    ):
        self.analyzer_id = analyzer_id
        self.command = command
        self.category = category or category_for(analyzer_id)
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds
        self.diff_scoped = diff_scoped

    def build_argv(self, target: Any) -> List[str]:
        argv = shlex.split(self.command)
        if target is None:
            return argv
        if any("{target}" in part for part in argv):
            return [part.replace("{target}", str(target)) for part in argv]
        return argv + [str(target)]

    def analyze(self, target: Any) -> List[Dict[str, Any]]:
        argv = self.build_argv(target)
        logger.info("Running pre-check %s: %s", self.analyzer_id, " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise AnalyzerError(f"{self.analyzer_id}: command not found: {argv[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise AnalyzerError(
                f"{self.analyzer_id}: timed out after {self.timeout_seconds}s"
            ) from e

        stdout = (completed.stdout or "").strip()
        try:
            report = json.loads(stdout) if stdout else None
        except json.JSONDecodeError as e:
            details = (completed.stderr or "").strip() or stdout[:200]
            raise AnalyzerError(
                f"{self.analyzer_id}: output is not JSON (exit={completed.returncode}): {details}"
            ) from e

        if report is None:
            if completed.returncode != 0:
                details = (completed.stderr or "").strip() or "<no output>"
                raise AnalyzerError(
                    f"{self.analyzer_id} failed (exit={completed.returncode}): {details}"
                )
            return []

        payloads = adapt_precheck_report(report, self.category, self.diff_scoped)
        logger.debug(
            "Pre-check %s exit=%d, %d violations",
            self.analyzer_id,
            completed.returncode,
            len(payloads),
        )
        return payloads


class JsonFileAnalyzer:
    """Replay an analyzer report saved as JSON.

    Accepted file contents:

    - a list of analyzer payloads,
    - ``{"analyzer": "<id>", "findings": [...]}``,
    - a pre-check report (``violations`` / ``issues``), adapted on load.
    """

    def __init__(self, path: str, analyzer_id: Optional[str] = None):
        self.path = Path(path)
        self.analyzer_id = analyzer_id or self._declared_id() or self.path.stem

    def _read(self) -> Any:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise AnalyzerError(f"Cannot read analyzer report {self.path}: {e}") from e

    def _declared_id(self) -> Optional[str]:
        try:
            data = self._read()
        except AnalyzerError:
            return None
        if isinstance(data, dict) and isinstance(data.get("analyzer"), str):
            return data["analyzer"]
        return None

    def analyze(self, target: Any) -> List[Any]:
        data = self._read()
        if isinstance(data, list):
            return data
        if is_precheck_report(data):
            return adapt_precheck_report(data, category_for(self.analyzer_id))
        if isinstance(data, dict) and isinstance(data.get("findings"), list):
            return data["findings"]
        raise AnalyzerError(f"{self.path}: unrecognised report format")


def discover_report_analyzers(reports_dir: str) -> List[JsonFileAnalyzer]:
    """One ``JsonFileAnalyzer`` per ``*.json`` file, sorted by file name."""
    directory = Path(reports_dir)
    if not directory.is_dir():
        raise AnalyzerError(f"Reports directory not found: {reports_dir}")
    analyzers = [JsonFileAnalyzer(str(p)) for p in sorted(directory.glob("*.json"))]

    seen: Dict[str, Path] = {}
    for analyzer in analyzers:
        if analyzer.analyzer_id in seen:
            raise AnalyzerError(
                f"Analyzer id '{analyzer.analyzer_id}' declared by both "
                f"{seen[analyzer.analyzer_id]} and {analyzer.path}"
            )
        seen[analyzer.analyzer_id] = analyzer.path
    return analyzers


def build_precheck_analyzers(
    commands: Dict[str, str], cwd: Optional[str] = None, timeouts: Optional[Dict[str, float]] = None
) -> List[CommandPrecheckAnalyzer]:
    """Pre-check analyzers from the ``precheck_commands`` setting."""
    timeouts = timeouts or {}
    return [
        CommandPrecheckAnalyzer(analyzer_id, command, cwd=cwd, timeout_seconds=timeouts.get(analyzer_id))
        for analyzer_id, command in sorted(commands.items())
    ]
