#!/usr/bin/env python3
"""
CLI entry point for the site export engine.

Usage:
    # Export a content tree and database in-process, slice by slice:
    python -m site_export run --source-dir ./content --export-dir ./exports --database-url sqlite:///site.db

    # Start a scheduled session (slices run on the Celery workers):
    python -m site_export start

Or with environment variables in .env file:
    python -m site_export run
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from . import __version__
from .archive import ArchiveReader, verify_archive
from .config import ExportConfig, settings
from .drivers import ScheduledDriver, StepDriver
from .engine import ExportEngine
from .errors import ExportError
from .logging_config import setup_logging
from .monitor import ExportMonitor
from .triggers import SchedulerTrigger
from .types import ExportMode, ExportStatus
from .utils import format_bytes


def _add_session_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--source-dir", metavar="DIR", help="Content tree to export (default: SOURCE_DIR)")
    parser.add_argument("--database-url", metavar="URL", help="SQLAlchemy database URL (default: DATABASE_URL)")
    parser.add_argument("--base-path-name", metavar="NAME", help="Top-level directory name inside the archive")
    parser.add_argument("--site-name", metavar="NAME", help="Site name recorded in the metadata")
    parser.add_argument("--site-url", metavar="URL", help="Site URL recorded in the metadata")
    parser.add_argument("--time-budget", metavar="SECONDS", type=float, help="Archive slice time budget")
    parser.add_argument("--files-per-slice", metavar="N", type=int, help="Pause after N files (0 = time only)")
    parser.add_argument(
        "--exclude", metavar="PATTERN", action="append",
        help="Extra exclusion: 'dir/' for a directory, a glob, or a relative file path (repeatable)",
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="site_export",
        description="Site Export - resumable export of a content tree and its database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a whole export in this process
  python -m site_export run --source-dir /var/www/site/content --database-url mysql+pymysql://u:p@db/site

  # Check on the current session
  python -m site_export status

  # List the entries of a finished archive
  python -m site_export inspect ./exports/content_*.archive

Environment Variables (can be set in .env):
  SOURCE_DIR                      Content tree to export
  EXPORT_DIR                      Directory for state files and artifacts (default: ./exports)
  DATABASE_URL                    SQLAlchemy database URL
  TIME_BUDGET_SECONDS             Archive slice time budget (default: 10)
  CELERY_BROKER_URL               Broker used by scheduled sessions
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--export-dir", metavar="DIR", type=Path, help="Export directory (default: EXPORT_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (debug) logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress all output except errors")

    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a new session")
    start.add_argument(
        "--mode", choices=[m.value for m in ExportMode], default=ExportMode.SCHEDULED.value,
        help="How slices are triggered (default: scheduled)",
    )
    _add_session_options(start)

    run = subparsers.add_parser("run", help="Run a whole session in this process")
    run.add_argument("--max-steps", metavar="N", type=int, help="Stop after N slices")
    run.add_argument("--delay", metavar="SECONDS", type=float, default=0.0, help="Wait between slices")
    _add_session_options(run)

    status = subparsers.add_parser("status", help="Show a session's status")
    status.add_argument("session_id", nargs="?", help="Session id (default: current session)")

    abort = subparsers.add_parser("abort", help="Abort a session")
    abort.add_argument("session_id", nargs="?", help="Session id (default: current session)")

    subparsers.add_parser("monitor", help="Run one stuck-session check")

    inspect = subparsers.add_parser("inspect", help="List the entries of an archive")
    inspect.add_argument("archive", type=Path, help="Archive file")
    inspect.add_argument("--extract", metavar="DIR", type=Path, help="Extract entries into DIR")

    return parser.parse_args(argv)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _build_config(args: argparse.Namespace, engine: ExportEngine) -> ExportConfig:
    return ExportConfig.from_settings(
        engine.settings,
        export_dir=str(engine.export_dir),
        source_dir=args.source_dir,
        database_url=args.database_url,
        base_path_name=args.base_path_name,
        site_name=args.site_name,
        site_url=args.site_url,
        time_budget=args.time_budget,
        files_per_slice=args.files_per_slice,
        extra_exclusions=(list(settings.EXTRA_EXCLUSIONS) + args.exclude) if args.exclude else None,
    )


def _session_id(args: argparse.Namespace, engine: ExportEngine) -> str:
    if args.session_id:
        return args.session_id
    session = engine.current_session()
    if session is None:
        raise ExportError("No export session found", code="SESSION_001")
    return session.session_id


def _inspect(args: argparse.Namespace) -> int:
    logger = logging.getLogger("site_export")
    reader = ArchiveReader(str(args.archive))
    for entry in reader.entries():
        print(f"{entry.header.size:>12}  {entry.header.mtime:>10}  {entry.relative_path}")

    scan = verify_archive(str(args.archive))
    logger.info(f"{scan.entries} entries, {format_bytes(scan.payload_bytes)} of payload")

    if args.extract:
        written = reader.extract_all(str(args.extract))
        logger.info(f"Extracted {len(written)} files into {args.extract}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Setup logging
    if args.quiet:
        log_level = logging.ERROR
    elif args.verbose:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    setup_logging(level=log_level, json_format=False)
    logger = logging.getLogger("site_export")

    try:
        if args.command == "inspect":
            return _inspect(args)

        engine = ExportEngine(settings, export_dir=args.export_dir)

        if args.command == "start":
            mode = ExportMode(args.mode)
            config = _build_config(args, engine)
            if mode == ExportMode.STEP:
                _print(StepDriver(engine).start(config))
            else:
                session = ScheduledDriver(engine, SchedulerTrigger(engine.settings)).start(config)
                _print({"session_id": session.session_id, "status": engine.status_store.read()})
            return 0

        if args.command == "run":
            driver = StepDriver(engine)
            started = driver.start(_build_config(args, engine))
            session_id = started["session_id"]
            logger.info(f"Running session {session_id}")
            result = driver.run_to_completion(session_id, max_steps=args.max_steps, delay=args.delay)
            _print(engine.status(session_id))
            return 0 if result.status == ExportStatus.DONE.value else 1

        if args.command == "status":
            _print(engine.status(_session_id(args, engine)))
            return 0

        if args.command == "abort":
            session_id = _session_id(args, engine)
            engine.abort(session_id)
            _print({"session_id": session_id, "status": engine.status_store.read()})
            return 0

        if args.command == "monitor":
            report = ExportMonitor(engine, SchedulerTrigger(engine.settings)).check()
            _print(report.to_dict())
            return 0

    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    except ExportError as e:
        logger.error(f"{e.message}")
        for suggestion in e.suggestions:
            logger.error(f"  - {suggestion}")
        return 1

    except KeyboardInterrupt:
        logger.warning("Export interrupted by user")
        return 130

    return 1


if __name__ == "__main__":
    sys.exit(main())
