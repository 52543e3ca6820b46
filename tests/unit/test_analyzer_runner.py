"""Tests for concurrent analyzer execution with per-analyzer deadlines."""

import logging
import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "scripts"))

from analyzer_runner import (
    STATUS_FAILED,
    STATUS_OK,
    STATUS_TIMEOUT,
    FunctionAnalyzer,
    run_analyzers,
)
from finding_ingestor import FindingIngestor


def _payloads(analyzer, count):
    return [
        {
            "title": f"{analyzer} finding {i}",
            "category": "quality",
            "severity": "P3",
            "location": f"src/{analyzer}.ts:{i + 1}",
        }
        for i in range(count)
    ]


@pytest.fixture()
def release():
    event = threading.Event()
    yield event
    event.set()


class TestRunAnalyzers:
    def test_slow_analyzer_does_not_block_others(self, release, caplog):
        analyzers = [
            FunctionAnalyzer("A", lambda target: _payloads("a", 5)),
            FunctionAnalyzer("B", lambda target: release.wait(10) and _payloads("b", 4)),
            FunctionAnalyzer("C", lambda target: _payloads("c", 3)),
        ]

        started = time.monotonic()
        with caplog.at_level(logging.WARNING, logger="analyzer_runner"):
            results = run_analyzers(analyzers, "src/", timeout=5, timeouts={"B": 0.2})
        elapsed = time.monotonic() - started

        assert elapsed < 5
        assert list(results) == ["A", "B", "C"]
        assert results["A"].status == STATUS_OK
        assert results["B"].status == STATUS_TIMEOUT
        assert results["B"].payloads == []
        assert results["C"].status == STATUS_OK
        assert any("Analyzer B timed out" in r.getMessage() for r in caplog.records)

        ingested = FindingIngestor().ingest_all({aid: r.payloads for aid, r in results.items()})
        assert ingested.accepted_count == 8

    def test_target_passed_to_every_analyzer(self):
        seen = []
        analyzers = [
            FunctionAnalyzer("one", lambda target: seen.append(target) or []),
            FunctionAnalyzer("two", lambda target: seen.append(target) or []),
        ]
        run_analyzers(analyzers, "diff.patch")
        assert seen == ["diff.patch", "diff.patch"]

    def test_raising_analyzer_is_recorded(self, caplog):
        def boom(target):
            raise RuntimeError("model refused")

        with caplog.at_level(logging.WARNING, logger="analyzer_runner"):
            results = run_analyzers(
                [FunctionAnalyzer("bad", boom), FunctionAnalyzer("good", lambda t: _payloads("g", 1))],
                "src/",
            )

        assert results["bad"].status == STATUS_FAILED
        assert "model refused" in results["bad"].error
        assert results["good"].ok
        assert any("Analyzer bad failed" in r.getMessage() for r in caplog.records)

    def test_non_list_output_is_a_failure(self):
        results = run_analyzers([FunctionAnalyzer("odd", lambda t: {"title": "x"})], "src/")
        assert results["odd"].status == STATUS_FAILED
        assert "expected a list" in results["odd"].error

    def test_none_output_means_no_findings(self):
        results = run_analyzers([FunctionAnalyzer("quiet", lambda t: None)], "src/")
        assert results["quiet"].ok
        assert results["quiet"].payloads == []

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            run_analyzers(
                [FunctionAnalyzer("x", lambda t: []), FunctionAnalyzer("x", lambda t: [])], "src/"
            )

    def test_no_analyzers(self):
        assert run_analyzers([], "src/") == {}

    def test_limited_workers_still_run_everything(self):
        analyzers = [FunctionAnalyzer(f"a{i}", lambda t, i=i: _payloads(f"a{i}", i)) for i in range(5)]
        results = run_analyzers(analyzers, "src/", workers=2)
        assert [len(r.payloads) for r in results.values()] == [0, 1, 2, 3, 4]

    def test_summary(self):
        result = run_analyzers([FunctionAnalyzer("a", lambda t: _payloads("a", 2))], "src/")["a"]
        summary = result.summary()
        assert summary["status"] == "ok"
        assert summary["payloads"] == 2
        assert summary["error"] is None
