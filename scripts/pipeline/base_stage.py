"""
Shared base for synthesis stages.

A stage works on ``ctx.findings`` (ingest replaces it, score and dedupe
rewrite it, filter and sort narrow it).  ``BaseStage.execute`` wraps the
stage's ``_execute`` with timing, the before/after finding counts that end
up in the stage summary, and failure capture.  The default ``rollback``
puts back the finding list as it was when the stage started.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .protocol import PipelineContext, StageResult

logger = logging.getLogger(__name__)


class BaseStage(ABC):
    """Implements ``PipelineStage`` around a single ``_execute`` hook.

    Concrete stages set ``name``, ``display_name`` and ``phase_number``
    (class attributes are enough) and list the stages they depend on in
    ``required_stages``.  ``should_run`` lets a stage sit out a run, e.g.
    triage without a decision provider.
    """

    _findings_snapshot: Optional[List[Any]] = None

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def phase_number(self) -> float:
        ...

    @property
    def required_stages(self) -> List[str]:
        return []

    def should_run(self, ctx: PipelineContext) -> bool:
        return True

    @abstractmethod
    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        """Do the stage's work on ``ctx``; the returned dict becomes metadata."""
        ...

    def execute(self, ctx: PipelineContext) -> StageResult:
        self._findings_snapshot = list(ctx.findings)
        findings_before = len(ctx.findings)
        start = time.time()

        try:
            metadata = self._execute(ctx) or {}
        except Exception as exc:
            logger.error(
                "%s failed with %d findings in hand: %s",
                self.display_name,
                findings_before,
                exc,
                exc_info=True,
            )
            return StageResult(
                success=False,
                stage_name=self.name,
                duration_seconds=time.time() - start,
                findings_before=findings_before,
                findings_after=len(ctx.findings),
                error=f"{type(exc).__name__}: {exc}",
            )

        return StageResult(
            success=True,
            stage_name=self.name,
            duration_seconds=time.time() - start,
            findings_before=findings_before,
            findings_after=len(ctx.findings),
            metadata=metadata,
        )

    def rollback(self, ctx: PipelineContext) -> None:
        """Restore ``ctx.findings`` to its state before ``execute``."""
        if self._findings_snapshot is not None:
            ctx.findings = list(self._findings_snapshot)
