# src/main.py — v1
"""CLI entry point — run, status, runs, disable, enable, safe-mode, sweep-locks.

Usage:
    scrapegate run [SOURCE ...] [--sources-file FILE] [--max-concurrent N]
    scrapegate status SOURCE
    scrapegate runs SOURCE [-n N]
    scrapegate disable SOURCE [--reason TEXT]
    scrapegate enable SOURCE
    scrapegate safe-mode SOURCE {on,off}
    scrapegate sweep-locks
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from scrapegate.version import __version__

if TYPE_CHECKING:
    from scrapegate.api.facade import Engine
    from scrapegate.config.settings import Settings

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    from scrapegate.config.settings import ConfigurationError, load_settings
    from scrapegate.logging.logger import setup_logging

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    setup_logging(
        level="DEBUG" if args.verbose else settings.log_level,
        log_format="text" if args.verbose else settings.log_format,
        log_file=settings.log_file,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )

    try:
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="scrapegate",
        description=f"scrapegate v{__version__} — scrape run orchestration and data-quality gating",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging (text format)",
    )
    parser.add_argument(
        "--sources-file", type=Path, default=None,
        help="Sources JSON file (default: SOURCES_FILE setting)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Run sources (all enabled if none given)")
    p_run.add_argument("sources", nargs="*", help="Source keys to run")
    p_run.add_argument(
        "--max-concurrent", type=int, default=None,
        help="Concurrent runs (default: MAX_CONCURRENT_RUNS setting)",
    )
    p_run.set_defaults(func=_cmd_run)

    # --- status ---
    p_status = subparsers.add_parser("status", help="Show a source's health and lease")
    p_status.add_argument("source", help="Source key")
    p_status.set_defaults(func=_cmd_status)

    # --- runs ---
    p_runs = subparsers.add_parser("runs", help="List recent runs of a source")
    p_runs.add_argument("source", help="Source key")
    p_runs.add_argument("-n", "--limit", type=int, default=10, help="Runs to show (default: 10)")
    p_runs.set_defaults(func=_cmd_runs)

    # --- disable / enable ---
    p_disable = subparsers.add_parser("disable", help="Manually disable a source")
    p_disable.add_argument("source", help="Source key")
    p_disable.add_argument("--reason", default="", help="Reason recorded on the source")
    p_disable.set_defaults(func=_cmd_disable)

    p_enable = subparsers.add_parser("enable", help="Re-enable a source and reset its counters")
    p_enable.add_argument("source", help="Source key")
    p_enable.set_defaults(func=_cmd_enable)

    # --- safe-mode ---
    p_safe = subparsers.add_parser("safe-mode", help="Toggle safe mode for a source")
    p_safe.add_argument("source", help="Source key")
    p_safe.add_argument("state", choices=["on", "off"])
    p_safe.set_defaults(func=_cmd_safe_mode)

    # --- sweep-locks ---
    p_sweep = subparsers.add_parser("sweep-locks", help="Delete expired lock rows")
    p_sweep.set_defaults(func=_cmd_sweep_locks)

    return parser


async def _open_engine(args: argparse.Namespace, settings: Settings) -> Engine:
    """Build the engine, loading adapters and syncing the sources file if present."""
    from scrapegate.api.facade import build_engine
    from scrapegate.config.sources import load_sources_file, sync_source_configs
    from scrapegate.gateway.adapter_registry import AdapterRegistry

    sources_path: Path = args.sources_file or settings.sources_file
    registry = AdapterRegistry()
    engine = build_engine(settings, registry=registry)
    try:
        if sources_path.expanduser().exists():
            sources = load_sources_file(sources_path)
            registry.load(sources.adapters)
            await sync_source_configs(engine.gateway, sources.sources)
        elif args.sources_file is not None:
            raise FileNotFoundError(f"Sources file not found: {sources_path}")
    except Exception:
        engine.close()
        raise
    return engine


async def _cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    """Run the requested sources and print a summary."""
    from scrapegate.api.scheduler import run_sources

    engine = await _open_engine(args, settings)
    try:
        result = await run_sources(
            engine, args.sources or None, max_concurrent=args.max_concurrent
        )
    finally:
        engine.close()

    print(f"\nBatch complete in {result.duration_seconds:.1f}s:")
    for run in result.runs:
        score = "n/a" if run.confidence_score is None else f"{run.confidence_score:.3f}"
        print(
            f"  {run.source_key:<24} {run.status.value:<18} score={score:<6} "
            f"fetched={run.counts.fetched} new={run.counts.new} inactive={run.counts.inactive}"
        )
    for skipped in result.skipped:
        print(f"  {skipped.source_key:<24} skipped ({skipped.reason}) {skipped.detail}")
    for error in result.errors:
        print(f"  {error.source_key:<24} error: {error.error}")
    return 1 if result.errors else 0


async def _cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    """Display one source's health record."""
    from scrapegate.api.facade import source_status

    engine = await _open_engine(args, settings)
    try:
        status = await source_status(engine, args.source)
    finally:
        engine.close()

    config = status.config
    print(f"\nSource {config.source_key} (adapter {config.adapter or '-'}):")
    print(f"  State:                {status.state}")
    print(f"  Safe mode:            {'on' if config.safe_mode else 'off'}")
    print(f"  Consecutive failures: {config.consecutive_failures}")
    print(f"  Low-confidence runs:  {config.consecutive_low_confidence}")
    if config.disabled_reason or config.auto_disabled_reason:
        print(f"  Disabled reason:      {config.disabled_reason or config.auto_disabled_reason}")
    if config.retry_after:
        print(f"  Retry after:          {config.retry_after.isoformat()}")
    if status.lock:
        print(f"  Locked by:            {status.lock.holder_id} until {status.lock.expires_at.isoformat()}")
    if config.last_status:
        print(f"  Last status:          {config.last_status.value}")
    return 0


async def _cmd_runs(args: argparse.Namespace, settings: Settings) -> int:
    """List recent runs of a source."""
    engine = await _open_engine(args, settings)
    try:
        runs = await engine.gateway.list_runs(args.source, limit=args.limit)
    finally:
        engine.close()

    if not runs:
        print(f"No runs recorded for {args.source}")
        return 0
    for run in runs:
        score = "n/a" if run.confidence_score is None else f"{run.confidence_score:.3f}"
        print(
            f"  {run.started_at:%Y-%m-%d %H:%M:%S}  {run.run_id[:12]}  "
            f"{run.status.value:<18} score={score:<6} tier={run.tier.value if run.tier else '-':<8}"
            f"{' resumed' if run.resumed_count else ''}"
        )
    return 0


async def _cmd_disable(args: argparse.Namespace, settings: Settings) -> int:
    from scrapegate.api.facade import disable_source

    engine = await _open_engine(args, settings)
    try:
        await disable_source(engine, args.source, args.reason)
    finally:
        engine.close()
    print(f"Disabled {args.source}")
    return 0


async def _cmd_enable(args: argparse.Namespace, settings: Settings) -> int:
    from scrapegate.api.facade import enable_source

    engine = await _open_engine(args, settings)
    try:
        await enable_source(engine, args.source)
    finally:
        engine.close()
    print(f"Enabled {args.source}")
    return 0


async def _cmd_safe_mode(args: argparse.Namespace, settings: Settings) -> int:
    from scrapegate.api.facade import set_safe_mode

    engine = await _open_engine(args, settings)
    try:
        await set_safe_mode(engine, args.source, args.state == "on")
    finally:
        engine.close()
    print(f"Safe mode {args.state} for {args.source}")
    return 0


async def _cmd_sweep_locks(args: argparse.Namespace, settings: Settings) -> int:
    from scrapegate.api.facade import sweep_locks

    engine = await _open_engine(args, settings)
    try:
        removed = await sweep_locks(engine)
    finally:
        engine.close()
    print(f"Removed {removed} expired lock(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
