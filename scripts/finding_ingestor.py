#!/usr/bin/env python3
"""
Finding Ingestor

Validates raw analyzer output and normalizes it into canonical ``Finding``
records.  Each payload is validated on its own: a malformed payload is
reported as a ``ValidationError`` next to the successful findings and never
aborts the batch.

Ingestion also captures the signals that are observable from the payload
itself (a file+line location, an attached excerpt) so that scoring later is
a pure function of what was recorded here.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from exceptions import ValidationError
from schemas.finding import AnalyzerFindingPayload, ConfidenceSignal, Finding

__all__ = ["FindingIngestor", "IngestionResult"]

logger = logging.getLogger(__name__)

KNOWN_SIGNALS = {signal.value for signal in ConfidenceSignal}


@dataclass
class IngestionResult:
    """Outcome of ingesting one or more analyzer batches."""

    findings: List[Finding] = field(default_factory=list)
    errors: List[ValidationError] = field(default_factory=list)

    @property
    def accepted_count(self) -> int:
        return len(self.findings)

    @property
    def rejected_count(self) -> int:
        return len(self.errors)

    def extend(self, other: "IngestionResult") -> None:
        self.findings.extend(other.findings)
        self.errors.extend(other.errors)


class FindingIngestor:
    """Turn raw analyzer payloads into ``Finding`` records.

    Identifiers are assigned from a per-ingestor counter (``F-00001``,
    ``F-00002``, ...).  Zero padding keeps lexical order equal to ingestion
    order, which the priority sorter relies on as its final tiebreaker.
    One ingestor should be used per review session.
    """

    def __init__(self, id_prefix: str = "F"):
        self.id_prefix = id_prefix
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _next_id(self) -> str:
        with self._lock:
            return f"{self.id_prefix}-{next(self._counter):05d}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ingest(self, analyzer_id: str, payloads: Iterable[Any]) -> IngestionResult:
        """Validate and normalize one analyzer's batch.

        Args:
            analyzer_id: Identifier of the producing analyzer
            payloads: Raw finding payloads (dicts) in analyzer order

        Returns:
            IngestionResult with the normalized findings and per-item errors
        """
        result = IngestionResult()

        for index, payload in enumerate(payloads):
            try:
                finding = self.normalize(analyzer_id, index, payload)
            except ValidationError as exc:
                logger.warning(
                    "Rejected finding %d from %s: %s", index, analyzer_id, exc
                )
                result.errors.append(exc)
                continue
            result.findings.append(finding)

        logger.info(
            "Ingested %d findings from %s (%d rejected)",
            result.accepted_count,
            analyzer_id,
            result.rejected_count,
        )
        return result

    def ingest_all(self, batches: Dict[str, Iterable[Any]]) -> IngestionResult:
        """Ingest several analyzers' batches, keyed by analyzer id.

        Batches are processed in sorted analyzer order so that identifiers
        are reproducible for identical input.
        """
        combined = IngestionResult()
        for analyzer_id in sorted(batches):
            combined.extend(self.ingest(analyzer_id, batches[analyzer_id]))
        return combined

    def normalize(self, analyzer_id: str, index: int, payload: Any) -> Finding:
        """Validate a single payload and build its ``Finding``.

        Raises:
            ValidationError: If required fields are missing or invalid
        """
        if not isinstance(payload, dict):
            raise ValidationError(
                f"payload must be an object, got {type(payload).__name__}",
                analyzer_id=analyzer_id,
                index=index,
            )

        try:
            parsed = AnalyzerFindingPayload.model_validate(payload)
        except PydanticValidationError as exc:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
                for err in exc.errors()
            ]
            raise ValidationError(
                "; ".join(errors), analyzer_id=analyzer_id, index=index, errors=errors
            ) from exc

        return Finding(
            id=self._next_id(),
            source_analyzer=analyzer_id,
            category=parsed.category,
            severity=parsed.severity,
            location_file=parsed.location.file if parsed.location else None,
            location_line=parsed.location.line if parsed.location else None,
            location_end_line=parsed.location.end_line if parsed.location else None,
            title=parsed.title,
            description=parsed.description,
            evidence_snippets=tuple(parsed.evidence_snippets),
            raw_confidence_signals=self._capture_signals(parsed, analyzer_id),
        )

    # ------------------------------------------------------------------
    # Signal capture
    # ------------------------------------------------------------------

    @staticmethod
    def _capture_signals(parsed: AnalyzerFindingPayload, analyzer_id: str) -> Dict[str, Any]:
        """Copy the analyzer's signals and fill in the observable ones.

        An explicit value from the analyzer always wins; derived signals are
        only added when the analyzer left them unset.
        """
        signals: Dict[str, Any] = dict(parsed.raw_confidence_signals)

        unknown = sorted(set(signals) - KNOWN_SIGNALS)
        if unknown:
            logger.debug(
                "Analyzer %s sent unrecognised signals %s; kept but not scored",
                analyzer_id,
                unknown,
            )

        location: Optional[Any] = parsed.location
        if ConfidenceSignal.LOCATION_PRESENT.value not in signals:
            signals[ConfidenceSignal.LOCATION_PRESENT.value] = bool(
                location is not None and location.line is not None
            )
        if ConfidenceSignal.EXCERPT_ATTACHED.value not in signals:
            signals[ConfidenceSignal.EXCERPT_ATTACHED.value] = any(
                snippet.strip() for snippet in parsed.evidence_snippets
            )
        return signals
