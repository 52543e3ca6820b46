"""
Finding Schemas - Typed models for analyzer output and normalized findings.

Two layers live here:

- ``AnalyzerFindingPayload`` validates the raw analyzer output contract
  (``{title, category, severity, location?, description, evidenceSnippets[],
  rawConfidenceSignals{}}``).  It is lenient about key spelling (camelCase or
  snake_case) and location shape, strict about the fields every finding needs.
- ``Finding`` is the canonical, frozen record that flows from ingestion to
  triage.  Stages never mutate a ``Finding`` in place; they derive updated
  copies with ``model_copy(update=...)``.

Hierarchy:
    Severity           - ordinal P1 > P2 > P3
    Category           - fixed finding taxonomy
    ConfidenceSignal   - named evidence / false-positive signals
    Location           - file + optional line span
    AnalyzerFindingPayload
    Finding
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """Finding severity.  ``P1`` is the most severe."""

    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        """Sort rank: 1 for P1, 3 for P3."""
        return int(self.value[1:])


class Category(str, Enum):
    """Fixed set of finding categories an analyzer may report."""

    SECURITY = "security"
    PERFORMANCE = "performance"
    PLATFORM_PATTERN = "platform-pattern"
    DESIGN = "design"
    QUALITY = "quality"
    RUNTIME = "runtime"
    UI = "ui"
    TESTING = "testing"


class ConfidenceSignal(str, Enum):
    """Named signals an analyzer can attach to a finding.

    The first four raise trust in a finding, the last four lower it.
    """

    # Evidence quality
    LOCATION_PRESENT = "location_present"
    EXCERPT_ATTACHED = "excerpt_attached"
    CHANGED_CONTENT = "changed_content"
    DOCUMENTED_RULE = "documented_rule"

    # False-positive indicators
    BASELINE_CONTENT = "baseline_content"
    DETERMINISTIC_CHECK = "deterministic_check"
    SUPPRESSION_MARKER = "suppression_marker"
    STYLE_PREFERENCE = "style_preference"


EVIDENCE_SIGNALS: Tuple[ConfidenceSignal, ...] = (
    ConfidenceSignal.LOCATION_PRESENT,
    ConfidenceSignal.EXCERPT_ATTACHED,
    ConfidenceSignal.CHANGED_CONTENT,
    ConfidenceSignal.DOCUMENTED_RULE,
)

FALSE_POSITIVE_SIGNALS: Tuple[ConfidenceSignal, ...] = (
    ConfidenceSignal.BASELINE_CONTENT,
    ConfidenceSignal.DETERMINISTIC_CHECK,
    ConfidenceSignal.SUPPRESSION_MARKER,
    ConfidenceSignal.STYLE_PREFERENCE,
)


def signal_present(value: Any) -> bool:
    """A signal counts when it is ``True`` or carries a positive weight."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    return False


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------

_LOCATION_STRING = re.compile(r"^(?P<file>.+?):(?P<line>\d+)(?:-(?P<end>\d+))?$")


class Location(BaseModel):
    """Position of a finding.  ``line`` is absent for file-level findings."""

    file: str = Field(min_length=1)
    line: Optional[int] = Field(default=None, ge=1)
    end_line: Optional[int] = Field(default=None, ge=1, alias="endLine")

    model_config = {"populate_by_name": True, "str_strip_whitespace": True}

    @model_validator(mode="before")
    @classmethod
    def parse_string_form(cls, value: Any) -> Any:
        """Accept ``"path"``, ``"path:12"`` and ``"path:12-18"`` shorthands."""
        if isinstance(value, str):
            match = _LOCATION_STRING.match(value.strip())
            if match:
                parsed: Dict[str, Any] = {
                    "file": match.group("file"),
                    "line": int(match.group("line")),
                }
                if match.group("end"):
                    parsed["end_line"] = int(match.group("end"))
                return parsed
            return {"file": value}
        return value

    @model_validator(mode="after")
    def check_span(self) -> "Location":
        if self.end_line is not None:
            if self.line is None:
                raise ValueError("endLine given without line")
            if self.end_line < self.line:
                raise ValueError(
                    f"endLine {self.end_line} precedes line {self.line}"
                )
        return self


# ---------------------------------------------------------------------------
# Analyzer output contract
# ---------------------------------------------------------------------------


class AnalyzerFindingPayload(BaseModel):
    """One raw finding as returned by an analyzer.

    Only ``title``, ``category`` and ``severity`` are required.  Severity
    must be one of P1/P2/P3 (case-insensitive); category must be one of
    the fixed ``Category`` values.
    """

    title: str = Field(min_length=1)
    category: Category
    severity: Severity
    location: Optional[Location] = None
    description: str = ""
    evidence_snippets: List[str] = Field(default_factory=list, alias="evidenceSnippets")
    raw_confidence_signals: Dict[str, Union[bool, float]] = Field(
        default_factory=dict, alias="rawConfidenceSignals"
    )

    model_config = {
        "populate_by_name": True,
        "str_strip_whitespace": True,
        "extra": "ignore",
    }

    @model_validator(mode="before")
    @classmethod
    def lift_flat_location(cls, value: Any) -> Any:
        """Some analyzers report ``file``/``line`` at top level."""
        if isinstance(value, dict) and value.get("location") is None and value.get("file"):
            value = dict(value)
            value["location"] = {"file": value.pop("file"), "line": value.pop("line", None)}
        return value

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower().replace("_", "-").replace(" ", "-")
        return v

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("evidence_snippets", mode="before")
    @classmethod
    def coerce_snippets(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


# ---------------------------------------------------------------------------
# Canonical finding
# ---------------------------------------------------------------------------


class Finding(BaseModel):
    """Normalized finding flowing from ingestion through triage.

    ``confidence`` is ``None`` until the scorer runs.  It is only ever set by
    the scorer and the deduplicator, and stays recomputable from
    ``raw_confidence_signals`` plus the number of absorbed findings in
    ``merged_from``.
    """

    id: str
    source_analyzer: str
    category: Category
    severity: Severity
    location_file: Optional[str] = None
    location_line: Optional[int] = None
    location_end_line: Optional[int] = None
    title: str
    description: str = ""
    evidence_snippets: Tuple[str, ...] = ()
    raw_confidence_signals: Dict[str, Union[bool, float]] = Field(default_factory=dict)
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    merged_from: Tuple[str, ...] = ()
    conflict: bool = False

    model_config = {"frozen": True}

    @property
    def is_repo_wide(self) -> bool:
        return self.location_file is None

    @property
    def location(self) -> str:
        """Human-readable location, e.g. ``src/app.ts:12-14``."""
        if self.location_file is None:
            return "(repository-wide)"
        if self.location_line is None:
            return self.location_file
        if self.location_end_line and self.location_end_line != self.location_line:
            return f"{self.location_file}:{self.location_line}-{self.location_end_line}"
        return f"{self.location_file}:{self.location_line}"

    @property
    def line_span(self) -> Optional[Tuple[int, int]]:
        if self.location_line is None:
            return None
        return self.location_line, self.location_end_line or self.location_line

    def present_signals(self) -> List[str]:
        """Names of signals that count as present, in stable order."""
        return sorted(
            name for name, value in self.raw_confidence_signals.items()
            if signal_present(value)
        )


__all__ = [
    "Severity",
    "Category",
    "ConfidenceSignal",
    "EVIDENCE_SIGNALS",
    "FALSE_POSITIVE_SIGNALS",
    "signal_present",
    "Location",
    "AnalyzerFindingPayload",
    "Finding",
]
