#!/usr/bin/env python3
"""
CLI for the finding synthesis engine

Commands:
    triage <reports-dir>   run saved analyzer reports (and configured
                           pre-checks) through scoring, dedup, filtering
                           and interactive triage; file accepted findings
    resubmit               retry tracker submissions that previously failed
    show-config            print the resolved configuration and any issues

Exit codes: 0 success, 1 error or failed submissions, 2 triage incomplete.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import yaml

from config_loader import (
    analyzer_timeout_for,
    build_unified_config,
    split_labels,
    validate_config,
)
from decision_providers import ScriptedDecisionProvider, TerminalDecisionProvider
from exceptions import AnalyzerError, ConfigError
from pipeline import run_synthesis
from precheck_analyzers import build_precheck_analyzers, discover_report_analyzers
from submission_store import SubmissionStore
from task_sink import TaskSink
from task_trackers import create_tracker

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INCOMPLETE = 2


def _configure_logging(level_name: str, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def _load_script(path: str) -> Any:
    """Read scripted decisions: a list of steps or a mapping of id -> step(s).

    ``{"edit": {...}}`` entries become ``("edit", {...})`` steps.
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)

    def convert(step: Any) -> Any:
        if isinstance(step, dict) and "edit" in step:
            return ("edit", dict(step["edit"]))
        return step

    if isinstance(raw, dict):
        return {
            key: [convert(s) for s in step] if isinstance(step, list) else convert(step)
            for key, step in raw.items()
        }
    return [convert(step) for step in raw]


def _resolve(repo_path: str, path: str) -> str:
    """Relative output paths live under the repository being reviewed."""
    p = Path(path)
    return str(p if p.is_absolute() else Path(repo_path) / p)


def _build_sink(config: dict, repo_path: str) -> TaskSink:
    return TaskSink(
        tracker=create_tracker(config["tracker_backend"], cwd=repo_path),
        store=SubmissionStore(_resolve(repo_path, config["submission_store_path"])),
        max_attempts=int(config["tracker_max_attempts"]),
        backoff_seconds=float(config["tracker_backoff_seconds"]),
        backoff_max_seconds=float(config["tracker_backoff_max_seconds"]),
        workers=int(config["tracker_workers"]),
        labels=split_labels(config["tracker_labels"]),
    )


def _check_config(config: dict) -> bool:
    issues = validate_config(config)
    for issue in issues:
        if issue.startswith("ERROR"):
            logger.error(issue)
        else:
            logger.warning(issue)
    return not any(issue.startswith("ERROR") for issue in issues)


def cmd_triage(args: argparse.Namespace, config: dict) -> int:
    if not _check_config(config):
        return EXIT_ERROR

    try:
        analyzers: List[Any] = discover_report_analyzers(args.reports_dir)
    except AnalyzerError as exc:
        logger.error("%s", exc)
        return EXIT_ERROR

    commands = config.get("precheck_commands") or {}
    if commands and not args.no_prechecks:
        timeouts = {aid: analyzer_timeout_for(config, aid) for aid in commands}
        analyzers.extend(build_precheck_analyzers(commands, cwd=args.repo_path, timeouts=timeouts))

    if not analyzers:
        logger.error("No analyzer reports found in %s", args.reports_dir)
        return EXIT_ERROR

    if args.decisions:
        provider = ScriptedDecisionProvider(_load_script(args.decisions))
    else:
        provider = TerminalDecisionProvider()

    sink = None if args.no_tasks else _build_sink(config, args.repo_path)

    ctx, _ = run_synthesis(
        analyzers,
        target=args.target or args.repo_path,
        config=config,
        decision_provider=provider,
        task_sink=sink,
        transcript_path=_resolve(args.repo_path, config["transcript_path"]),
    )

    transcript = ctx.transcript
    if transcript is None:
        logger.error("Run produced no transcript: %s", "; ".join(ctx.errors))
        return EXIT_ERROR

    print(transcript.summary_line())
    for external_id in transcript.external_ids:
        print(f"  created {external_id}")
    for finding_id in transcript.failed_submissions:
        print(f"  FAILED  {finding_id} (run 'resubmit' to retry)")

    if transcript.failed_submissions:
        return EXIT_ERROR
    if transcript.incomplete:
        return EXIT_INCOMPLETE
    return EXIT_OK


def cmd_resubmit(args: argparse.Namespace, config: dict) -> int:
    if not _check_config(config):
        return EXIT_ERROR
    sink = _build_sink(config, args.repo_path)
    if not sink.store.failed():
        print("No failed submissions.")
        return EXIT_OK

    report = sink.resubmit_failed()
    for submission in report.submitted:
        print(f"  created {submission.external_id} for {submission.finding_id}")
    for submission in report.failed:
        print(f"  FAILED  {submission.finding_id}: {submission.last_error}")
    return EXIT_OK if report.ok else EXIT_ERROR


def cmd_show_config(args: argparse.Namespace, config: dict) -> int:
    print(yaml.safe_dump(config, sort_keys=True, default_flow_style=False), end="")
    issues = validate_config(config)
    if issues:
        print("\nIssues:")
        for issue in issues:
            print(f"  {issue}")
    return EXIT_ERROR if any(i.startswith("ERROR") for i in issues) else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Finding synthesis and triage for automated code review",
    )
    parser.add_argument("--repo-path", default=".", help="Repository under review")
    parser.add_argument("--profile", default=None, help="Config profile name (e.g. 'default', 'strict')")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    triage = subparsers.add_parser("triage", help="Synthesize analyzer reports and triage them")
    triage.add_argument("reports_dir", help="Directory of analyzer report JSON files")
    triage.add_argument("--target", default=None, help="Review target passed to pre-checks")
    triage.add_argument("--threshold", type=int, default=None, help="Confidence threshold (0-100)")
    triage.add_argument("--analyzer-timeout", default=None, help="Per-analyzer timeout, e.g. 90s")
    triage.add_argument("--tracker", choices=["beads", "file"], default=None)
    triage.add_argument("--max-attempts", type=int, default=None, help="Tracker attempts per task")
    triage.add_argument("--labels", default=None, help="Comma-separated task labels")
    triage.add_argument("--store", default=None, help="Submission store path")
    triage.add_argument("--transcript", default=None, help="Transcript output path")
    triage.add_argument("--decisions", default=None, help="JSON file of scripted decisions")
    triage.add_argument("--no-prechecks", action="store_true", help="Skip configured pre-check commands")
    triage.add_argument("--no-tasks", action="store_true", help="Record decisions without creating tasks")

    resubmit = subparsers.add_parser("resubmit", help="Retry failed tracker submissions")
    resubmit.add_argument("--tracker", choices=["beads", "file"], default=None)
    resubmit.add_argument("--max-attempts", type=int, default=None)
    resubmit.add_argument("--store", default=None, help="Submission store path")

    subparsers.add_parser("show-config", help="Print the resolved configuration")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    try:
        config = build_unified_config(cli_args=args, repo_path=args.repo_path)
    except (ConfigError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        return EXIT_ERROR

    _configure_logging(config.get("log_level", "INFO"), args.verbose)

    commands = {
        "triage": cmd_triage,
        "resubmit": cmd_resubmit,
        "show-config": cmd_show_config,
    }
    return commands[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())
