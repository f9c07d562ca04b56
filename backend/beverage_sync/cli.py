"""
Command-line entry point.

Usage:
    beverage-sync run forward
    beverage-sync run backfill --months 12 [--fresh]
    beverage-sync run geocode [--limit 500]
    beverage-sync run enrichment_sync [--full]
    beverage-sync trigger backfill --months 6 [--json]
    beverage-sync status backfill [--json]
    beverage-sync init-store
"""

import argparse
import asyncio
import logging
import signal
import sys

from beverage_sync.config import RunKind, Settings, get_settings
from beverage_sync.database import Store, init_store
from beverage_sync.errors import RemoteCommandError
from beverage_sync.schemas.run import RunOptions, StartStatus
from beverage_sync.services.control import get_controller
from beverage_sync.services.enrichment_sync import EnrichmentSync
from beverage_sync.services.geocode_pipeline import GeocodePipeline
from beverage_sync.services.orchestrator import IngestionOrchestrator
from beverage_sync.services.runner import PipelineRun, ShutdownFlag

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

EXIT_FAILED = 1
EXIT_UNREACHABLE = 2
EXIT_CONFLICT = 3

logger = logging.getLogger("beverage_sync.cli")


def configure_logging(settings: Settings, kind: RunKind | None = None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=LOG_FORMAT,
    )
    if kind is not None:
        path = settings.log_path(kind)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def build_pipeline(
    settings: Settings, kind: RunKind, args: argparse.Namespace, shutdown: ShutdownFlag
) -> PipelineRun:
    if kind in (RunKind.FORWARD, RunKind.BACKFILL):
        return IngestionOrchestrator(
            settings, mode=kind, shutdown=shutdown, months=args.months, fresh=args.fresh
        )
    if kind == RunKind.GEOCODE:
        return GeocodePipeline(settings, shutdown=shutdown, limit=args.limit, fresh=args.fresh)
    return EnrichmentSync(settings, shutdown=shutdown, full=args.full, fresh=args.fresh)


def install_signal_handlers(shutdown: ShutdownFlag) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set, f"received {sig.name}")


async def run_command(args: argparse.Namespace) -> int:
    settings = get_settings()
    kind = RunKind(args.kind)
    configure_logging(settings, kind)

    if kind != RunKind.BACKFILL:
        # Backfill only ever reads production before its swap
        store = Store.from_path(settings.store_path)
        try:
            await init_store(store)
        finally:
            await store.dispose()

    shutdown = ShutdownFlag()
    install_signal_handlers(shutdown)

    try:
        report = await build_pipeline(settings, kind, args, shutdown).run()
    except Exception:
        logger.exception(f"{kind} run crashed")
        return EXIT_FAILED

    print(report.to_json())
    return report.exit_code


async def trigger_command(args: argparse.Namespace) -> int:
    settings = get_settings()
    kind = RunKind(args.kind)
    options = RunOptions(months=args.months, fresh=args.fresh, limit=args.limit, full=args.full)
    try:
        result = await get_controller(settings).start(kind, options)
    except RemoteCommandError as e:
        print(f"Orchestrator host unreachable, retry later: {e}", file=sys.stderr)
        return EXIT_UNREACHABLE

    print(result.to_json() if args.json else result.message)
    return 0 if result.status == StartStatus.STARTED else EXIT_CONFLICT


async def status_command(args: argparse.Namespace) -> int:
    settings = get_settings()
    kind = RunKind(args.kind)
    try:
        status = await get_controller(settings).status(kind)
    except RemoteCommandError as e:
        print(f"Orchestrator host unreachable, retry later: {e}", file=sys.stderr)
        return EXIT_UNREACHABLE

    if args.json:
        print(status.to_json())
        return 0

    state = "running" if status.running else "not running"
    print(f"{kind}: {state}")
    if status.started_at:
        print(f"  started: {status.started_at} (pid {status.pid})")
    if status.lock_stale:
        print("  lock: stale (holder process is gone)")
    print(f"  session: {'active' if status.session_active else 'none'}")
    if status.log_tail:
        print("  log:")
        for line in status.log_tail:
            print(f"    {line}")
    return 0


async def init_store_command(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_logging(settings)
    store = Store.from_path(settings.store_path)
    try:
        await init_store(store)
    finally:
        await store.dispose()
    print(f"Store ready at {settings.store_path}")
    return 0


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("kind", choices=[k.value for k in RunKind])
    parser.add_argument("--months", type=int, help="Backfill window in months")
    parser.add_argument("--fresh", action="store_true", help="Discard any saved checkpoint")
    parser.add_argument("--limit", type=int, help="Geocode at most N locations")
    parser.add_argument("--full", action="store_true", help="Sync all enrichments, not just unsynced")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="beverage-sync",
        description="Incremental ingestion of Texas mixed beverage receipts",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a pipeline in the foreground")
    _add_run_options(run)
    run.set_defaults(handler=run_command)

    trigger = sub.add_parser("trigger", help="Start a detached run")
    _add_run_options(trigger)
    trigger.add_argument("--json", action="store_true")
    trigger.set_defaults(handler=trigger_command)

    status = sub.add_parser("status", help="Show lock, session and log tail for a run kind")
    status.add_argument("kind", choices=[k.value for k in RunKind])
    status.add_argument("--json", action="store_true")
    status.set_defaults(handler=status_command)

    init = sub.add_parser("init-store", help="Create the store schema")
    init.set_defaults(handler=init_store_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(args.handler(args))


if __name__ == "__main__":
    sys.exit(main())
