"""
One-call entry point for a full synthesis run.

Builds the default stages, attaches the caller's analyzers, decision
provider and task sink to a fresh ``PipelineContext`` and runs it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .orchestrator import PipelineOrchestrator
from .protocol import PipelineContext, StageResult
from .stages import build_default_stages

logger = logging.getLogger(__name__)


def run_synthesis(
    analyzers: Sequence[Any],
    target: str,
    config: Dict[str, Any],
    decision_provider: Any = None,
    task_sink: Any = None,
    transcript_path: Optional[str] = None,
) -> Tuple[PipelineContext, List[StageResult]]:
    """Analyze *target*, triage the survivors and file tasks.

    ``ctx.transcript`` holds the session summary when the call returns;
    it is marked incomplete if triage was cancelled or never ran.
    """
    ctx = PipelineContext(
        config=config,
        target_path=target,
        analyzers=list(analyzers),
        decision_provider=decision_provider,
        task_sink=task_sink,
    )
    orchestrator = PipelineOrchestrator(build_default_stages(transcript_path), config)
    return orchestrator.run(target, ctx=ctx)
