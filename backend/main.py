#!/usr/bin/env python3
"""
Catalog Pipeline Command Line

Usage:
    python main.py run --config source.yml --inputs ./inputs --output ./output
    python main.py run --config source.yml --inputs ./inputs --target pl1 --target pl2
    python main.py check --config source.yml
    python main.py runs --limit 10

Exit codes: 0 success, 1 configuration error, 2 partial/failed/cancelled run.
"""

import argparse
import logging
import signal
import sys
import threading

import database
import journal
from config import get_settings, load_catalog_config
from errors import ConfigurationError
from log_utils import configure_logging
from pipeline_engine import CatalogPipelineEngine, RunStatus
from sources import LocalFileInputProvider

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUN_FAILED = 2

# ── Colours ────────────────────────────────────────────────────────────
GREEN = "\033[0;32m"
RED = "\033[0;31m"
YELLOW = "\033[1;33m"
BOLD = "\033[1m"
NC = "\033[0m"  # No Color

STATUS_COLOURS = {"ok": GREEN, "success": GREEN, "partial": YELLOW, "cancelled": YELLOW}


def _colour(status: str) -> str:
    return f"{STATUS_COLOURS.get(status, RED)}{status}{NC}"


def build_settings(args):
    """Process settings with command line overrides applied."""
    overrides = {}
    for key in ("config_dir", "output_dir", "log_level", "max_workers"):
        value = getattr(args, key, None)
        if value is not None:
            overrides[key] = value
    if getattr(args, "no_journal", False):
        overrides["journal_enabled"] = False
    return get_settings().model_copy(update=overrides)


def open_journal(settings) -> bool:
    """Initialize the catalog database; a failure disables journaling for this run."""
    if not settings.journal_enabled:
        return False
    try:
        database.init_db(settings.config_dir)
        return True
    except Exception as e:
        print(f"{YELLOW}Warning:{NC} run journal unavailable: {e}", file=sys.stderr)
        return False


def print_report(report) -> None:
    print()
    print(f"{BOLD}Run {_colour(report.status.value)}{BOLD}: {report.channels_total} channels{NC}")
    print(f"  {'Target':<24} {'Status':<10} {'Selected':>9} {'Written':>9}  Path")
    print(f"  {'─'*24} {'─'*10} {'─'*9} {'─'*9}  {'─'*20}")
    for result in report.targets:
        status = result.status.value
        print(
            f"  {result.target_name:<24} {_colour(status):<21} {result.channels_selected:>9} "
            f"{result.channels_written:>9}  {result.path or result.error or ''}"
        )
    if report.diagnostics:
        print(f"\n{YELLOW}{len(report.diagnostics)} malformed records skipped{NC}")
    for error in report.input_errors:
        print(f"{RED}{error}{NC}")


def cmd_run(args) -> int:
    settings = build_settings(args)
    configure_logging(settings.log_level)

    try:
        config = load_catalog_config(args.config)
        journal_ready = open_journal(settings)
        engine = CatalogPipelineEngine(
            config,
            settings=settings,
            provider=LocalFileInputProvider(args.inputs),
            session_factory=database.get_session if journal_ready else None,
            only_targets=args.target,
        )
    except ConfigurationError as e:
        print(f"{RED}Configuration error:{NC} {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    cancel_event = threading.Event()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
    try:
        report = engine.run(cancel_event)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print_report(report)
    return EXIT_OK if report.status == RunStatus.SUCCESS else EXIT_RUN_FAILED


def cmd_check(args) -> int:
    settings = build_settings(args)
    configure_logging(settings.log_level)
    try:
        config = load_catalog_config(args.config)
        engine = CatalogPipelineEngine(config, settings=settings)
    except ConfigurationError as e:
        print(f"{RED}Configuration error:{NC} {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    print(f"{GREEN}Configuration OK:{NC} {len(engine.registry)} templates, {engine.target_count} enabled targets")
    for _, targets in engine.compiled:
        for target in targets:
            filter_text = target.filter.to_text() if target.filter else "<all channels>"
            print(f"  {BOLD}{target.name}{NC} ({target.kind.value}, {len(target.pipeline)} rules): {filter_text}")
    return EXIT_OK


def cmd_runs(args) -> int:
    settings = build_settings(args)
    configure_logging(settings.log_level)
    database.init_db(settings.config_dir)
    runs = journal.get_runs(limit=args.limit)
    if not runs:
        print("No runs recorded.")
        return EXIT_OK

    print(f"  {'#':<6} {'Started':<28} {'Status':<10} {'OK':>4} {'Failed':>7} {'Skipped':>8}")
    print(f"  {'─'*6} {'─'*28} {'─'*10} {'─'*4} {'─'*7} {'─'*8}")
    for run in runs:
        print(
            f"  {run['id']:<6} {run['started_at']:<28} {_colour(run['status']):<21} "
            f"{run['targets_ok']:>4} {run['targets_failed']:>7} {run['records_skipped']:>8}"
        )
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config-dir", dest="config_dir", help="Directory holding catalog.db (env CONFIG_DIR)")
    common.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING or ERROR")

    parser = argparse.ArgumentParser(
        description="Filter, transform and publish IPTV catalogs.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", parents=[common], help="Run the pipeline")
    run_parser.add_argument("--config", "-c", required=True, help="Catalog configuration (.yml or .json)")
    run_parser.add_argument("--inputs", "-i", required=True, help="Directory with saved playlists and xtream dumps")
    run_parser.add_argument("--output", "-o", dest="output_dir", help="Output directory")
    run_parser.add_argument("--target", "-t", action="append", help="Only run this target (repeatable)")
    run_parser.add_argument("--workers", dest="max_workers", type=int, help="Targets processed concurrently")
    run_parser.add_argument("--no-journal", action="store_true", help="Do not record the run")
    run_parser.set_defaults(func=cmd_run)

    check_parser = subparsers.add_parser("check", parents=[common], help="Load and compile a configuration without running it")
    check_parser.add_argument("--config", "-c", required=True, help="Catalog configuration (.yml or .json)")
    check_parser.set_defaults(func=cmd_check)

    runs_parser = subparsers.add_parser("runs", parents=[common], help="List recorded runs")
    runs_parser.add_argument("--limit", "-n", type=int, default=20)
    runs_parser.set_defaults(func=cmd_runs)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
