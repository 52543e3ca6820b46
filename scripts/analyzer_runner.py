#!/usr/bin/env python3
"""
Analyzer Runner

Runs every analyzer concurrently against a review target and collects one
``AnalyzerResult`` per analyzer id.  Each analyzer gets its own deadline,
measured from the start of the run.  An analyzer that misses its deadline
or raises contributes an empty result and a logged warning; it never aborts
the run or holds back the analyzers that finished.

Late analyzers are abandoned, not killed: their threads may keep running in
the background, but nothing they return after the deadline is used.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

__all__ = [
    "STATUS_OK",
    "STATUS_TIMEOUT",
    "STATUS_FAILED",
    "Analyzer",
    "FunctionAnalyzer",
    "AnalyzerResult",
    "run_analyzers",
]

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_TIMEOUT = "timeout"
STATUS_FAILED = "failed"

DEFAULT_TIMEOUT_SECONDS = 120.0


class Analyzer(Protocol):
    """An opaque producer of candidate findings for a review target."""

    analyzer_id: str

    def analyze(self, target: Any) -> List[Dict[str, Any]]:
        ...


class FunctionAnalyzer:
    """Adapt a plain callable ``fn(target) -> list`` to the analyzer contract."""

    def __init__(self, analyzer_id: str, fn: Callable[[Any], List[Dict[str, Any]]]):
        self.analyzer_id = analyzer_id
        self.fn = fn

    def analyze(self, target: Any) -> List[Dict[str, Any]]:
        return self.fn(target)

    def __repr__(self) -> str:
        return f"FunctionAnalyzer({self.analyzer_id!r})"


@dataclass
class AnalyzerResult:
    """What one analyzer contributed to the run."""

    analyzer_id: str
    payloads: List[Any] = field(default_factory=list)
    status: str = STATUS_OK
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "payloads": len(self.payloads),
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def _timed_analyze(analyzer: Analyzer, target: Any) -> tuple:
    started = time.monotonic()
    payloads = analyzer.analyze(target)
    return payloads, time.monotonic() - started


def run_analyzers(
    analyzers: Sequence[Analyzer],
    target: Any,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    timeouts: Optional[Mapping[str, float]] = None,
    workers: int = 0,
) -> Dict[str, AnalyzerResult]:
    """Run *analyzers* concurrently and collect their results.

    Args:
        analyzers: Analyzers with unique ``analyzer_id`` values
        target: Review target handed to every analyzer
        timeout: Default deadline in seconds
        timeouts: Per-analyzer deadline overrides
        workers: Thread pool size; 0 means one thread per analyzer

    Returns:
        ``AnalyzerResult`` per analyzer id, in the order given.
    """
    ids = [a.analyzer_id for a in analyzers]
    if len(set(ids)) != len(ids):
        raise ValueError(f"duplicate analyzer ids: {ids}")

    results: Dict[str, AnalyzerResult] = {}
    if not analyzers:
        return results

    timeouts = dict(timeouts or {})
    max_workers = workers if workers > 0 else len(analyzers)
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix="analyzer"
    )
    run_started = time.monotonic()
    logger.info("Running %d analyzers (workers=%d)", len(analyzers), max_workers)

    try:
        futures = {a.analyzer_id: executor.submit(_timed_analyze, a, target) for a in analyzers}

        for analyzer_id, future in futures.items():
            deadline = run_started + float(timeouts.get(analyzer_id, timeout))
            remaining = max(0.0, deadline - time.monotonic())
            try:
                payloads, duration = future.result(timeout=remaining)
            except concurrent.futures.TimeoutError:
                future.cancel()
                elapsed = time.monotonic() - run_started
                logger.warning(
                    "Analyzer %s timed out after %.1fs; continuing without it",
                    analyzer_id,
                    elapsed,
                )
                results[analyzer_id] = AnalyzerResult(
                    analyzer_id=analyzer_id,
                    status=STATUS_TIMEOUT,
                    error=f"timed out after {elapsed:.1f}s",
                    duration_seconds=elapsed,
                )
                continue
            except Exception as e:
                logger.warning(
                    "Analyzer %s failed: %s; continuing without it", analyzer_id, e
                )
                results[analyzer_id] = AnalyzerResult(
                    analyzer_id=analyzer_id,
                    status=STATUS_FAILED,
                    error=f"{type(e).__name__}: {e}",
                    duration_seconds=time.monotonic() - run_started,
                )
                continue

            if payloads is None:
                payloads = []
            if not isinstance(payloads, (list, tuple)):
                logger.warning(
                    "Analyzer %s returned %s instead of a list; ignoring its output",
                    analyzer_id,
                    type(payloads).__name__,
                )
                results[analyzer_id] = AnalyzerResult(
                    analyzer_id=analyzer_id,
                    status=STATUS_FAILED,
                    error=f"expected a list, got {type(payloads).__name__}",
                    duration_seconds=duration,
                )
                continue

            results[analyzer_id] = AnalyzerResult(
                analyzer_id=analyzer_id,
                payloads=list(payloads),
                duration_seconds=duration,
            )
            logger.info(
                "Analyzer %s returned %d findings in %.2fs",
                analyzer_id,
                len(payloads),
                duration,
            )
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return results
