#!/usr/bin/env python3
"""
Command line entry point.

    python main.py rebuild  -u mongodb://... -d appdb
    python main.py compact  -u mongodb://... -d appdb --min-savings-mb 500
    python main.py cleanup  -u mongodb://... -d appdb

The connection string may also come from MONGODB_URL (environment or .env).
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from config import MaintenanceSettings
from database.exceptions import MaintenanceError
from observability import (
    bind_run_context,
    emit_event,
    generate_run_id,
    get_recent_errors,
    redact_mongo_url,
    setup_structlog_logging,
)
from services.confirmation import AutoConfirm, ConsoleConfirmation
from services.compaction_orchestrator import DatabaseCompactionOrchestrator
from services.orphan_reclaimer import OrphanReclaimer
from services.rebuild_orchestrator import DatabaseRebuildOrchestrator

EXIT_ABORTED = 3


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-u", "--uri", help="MongoDB connection string (default: MONGODB_URL)")
    parser.add_argument("-d", "--database", help="Database name (default: DATABASE_NAME)")
    parser.add_argument("--cluster-name", help="Label used in state/log file names")
    parser.add_argument(
        "--no-safe-run",
        dest="safe_run",
        action="store_false",
        default=None,
        help="Never ask for confirmation (dangerous!)",
    )
    parser.add_argument("-y", "--yes", action="store_true", help="Answer yes to every confirmation")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--log-format", choices=["json", "console"], help="Log renderer")


def _add_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--log-dir", help="Directory for performance logs")
    parser.add_argument("--specified-collections", help="Comma-separated collections to process")
    parser.add_argument("--ignored-collections", help="Comma-separated collections to skip (trailing * allowed)")
    parser.add_argument(
        "--no-performance-logging",
        dest="performance_logging",
        action="store_false",
        default=None,
        help="Do not write the performance log file",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Online MongoDB index rebuild and storage compaction",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    rebuild = sub.add_parser("rebuild", help="Rebuild secondary indexes without downtime")
    _add_common(rebuild)
    _add_filters(rebuild)
    rebuild.add_argument("--runtime-dir", help="Directory for the checkpoint and index backup")
    rebuild.add_argument("--cover-suffix", help="Name suffix of covering indexes")
    rebuild.add_argument("--cheap-field", help="Synthetic trailing field of covering indexes")
    rebuild.add_argument("--ignored-indexes", help="Comma-separated index names to skip (trailing * allowed)")
    rebuild.add_argument(
        "--save-collection-log",
        action="store_true",
        default=None,
        help="Also write one log file per collection",
    )

    compact = sub.add_parser("compact", help="Reclaim disk space with compact/autoCompact")
    _add_common(compact)
    _add_filters(compact)
    compact.add_argument("--min-savings-mb", type=float, help="Skip collections expected to free less")
    compact.add_argument("--convergence-tolerance", type=float, help="Relative tolerance, e.g. 0.2")
    compact.add_argument("--min-convergence-size-mb", type=float, help="Sizes below this never converge by tolerance")
    compact.add_argument("--stepdown-timeout", type=int, help="replSetStepDown seconds")
    compact.add_argument(
        "--force-stepdown",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Step the primary down after compacting secondaries (default: server < 8.0)",
    )
    compact.add_argument(
        "--auto-compact",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Use autoCompact on 8.0+ (default: on)",
    )
    compact.add_argument("--force-manual-compact", action="store_true", default=None)
    compact.add_argument("--max-iterations", type=int, help="Compaction iterations per collection")

    cleanup = sub.add_parser("cleanup", help="Drop every leftover covering index")
    _add_common(cleanup)
    cleanup.add_argument("--cover-suffix", help="Name suffix of covering indexes")
    return parser


def _load_settings(args: argparse.Namespace) -> MaintenanceSettings:
    overrides: Dict[str, Any] = {}
    if args.uri:
        overrides["MONGODB_URL"] = args.uri
    if args.database:
        overrides["DATABASE_NAME"] = args.database
    if args.log_level:
        overrides["LOG_LEVEL"] = args.log_level
    return MaintenanceSettings(**overrides)


def _confirmation(args: argparse.Namespace, safe_run: bool):
    if not safe_run:
        return None
    return AutoConfirm() if args.yes else ConsoleConfirmation()


async def _run(args: argparse.Namespace, settings: MaintenanceSettings) -> int:
    client = AsyncIOMotorClient(
        settings.MONGODB_URL,
        serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT_MS,
        appname=settings.MONGODB_APP_NAME,
    )
    try:
        db = client[settings.DATABASE_NAME]
        safe_run = settings.SAFE_RUN if args.safe_run is None else args.safe_run
        confirmation = _confirmation(args, safe_run)

        if args.command == "rebuild":
            config = settings.rebuild_config(
                cluster_name=args.cluster_name,
                log_dir=args.log_dir,
                runtime_dir=args.runtime_dir,
                cover_suffix=args.cover_suffix,
                cheap_suffix_field=args.cheap_field,
                safe_run=safe_run,
                specified_collections=args.specified_collections,
                ignored_collections=args.ignored_collections,
                ignored_indexes=args.ignored_indexes,
                performance_logging=args.performance_logging,
                save_collection_log=args.save_collection_log,
            )
            log = await DatabaseRebuildOrchestrator(db, config, confirmation=confirmation).run()
            if log.error or log.failed_index_count():
                return 1
            if log.session_history and log.session_history[-1].status == "aborted":
                return EXIT_ABORTED
            return 0

        if args.command == "compact":
            config = settings.compact_config(
                cluster_name=args.cluster_name,
                log_dir=args.log_dir,
                safe_run=safe_run,
                specified_collections=args.specified_collections,
                ignored_collections=args.ignored_collections,
                performance_logging=args.performance_logging,
                min_savings_mb=args.min_savings_mb,
                convergence_tolerance=args.convergence_tolerance,
                min_convergence_size_mb=args.min_convergence_size_mb,
                step_down_timeout_seconds=args.stepdown_timeout,
                force_stepdown=args.force_stepdown,
                auto_compact=args.auto_compact,
                force_manual_compact=args.force_manual_compact,
                max_iterations=args.max_iterations,
            )
            compact_log = await DatabaseCompactionOrchestrator(db, config, confirmation=confirmation).run()
            return 1 if compact_log.error else 0

        reclaimer = OrphanReclaimer(
            db, args.cover_suffix or settings.COVER_SUFFIX, confirmation=confirmation
        )
        removed = await reclaimer.reclaim()
        print(f"Dropped {len(removed)} covering index(es).")
        return 0
    finally:
        client.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = _load_settings(args)
    except ValidationError as exc:
        print(f"Configuration error:\n{exc}", file=sys.stderr)
        return 2
    if not settings.DATABASE_NAME:
        parser.error("a database name is required (--database or DATABASE_NAME)")

    setup_structlog_logging(settings.LOG_LEVEL, args.log_format)
    bind_run_context(run_id=generate_run_id(), operation=args.command, database=settings.DATABASE_NAME)
    emit_event("run_requested", command=args.command, target=redact_mongo_url(settings.MONGODB_URL))

    try:
        code = asyncio.run(_run(args, settings))
    except MaintenanceError as exc:
        emit_event("run_failed", severity="error", command=args.command, error=str(exc))
        code = 1
    except PyMongoError as exc:
        emit_event("run_failed", severity="critical", command=args.command, error=str(exc))
        code = 1
    except KeyboardInterrupt:
        print("Interrupted; completed work is kept in the checkpoint.", file=sys.stderr)
        return 130

    errors = get_recent_errors(limit=5)
    if errors:
        print("Recent errors:", file=sys.stderr)
        for entry in errors:
            print(f"  [{entry['event']}] {entry['error']}", file=sys.stderr)
    return code


if __name__ == "__main__":
    sys.exit(main())
