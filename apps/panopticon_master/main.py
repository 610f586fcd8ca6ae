"""Panopticon master service entry point.

Subscribes to the snapshot topic, merges windows reported by worker
processes and journals each delivery. Optionally spawns publishing worker
fixtures that share the master's start time.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from pathlib import Path

from apps.worker_fixture.harness import spawn_workers
from core.bus import Bus
from core.config import load_config
from core.logging import setup_json_logging
from panopticon.collector import Delivery, DeliveryCollector
from panopticon.timing import now_ms

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(description="Panopticon master collector")
    parser.add_argument(
        "--config-root",
        default=".",
        help="Directory containing config/ (defaults to current working directory)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Spawn this many worker fixtures publishing to the bus (default: 0)",
    )
    parser.add_argument(
        "--grace-period-ms",
        type=float,
        default=None,
        help="Override collector grace period for late snapshots",
    )
    return parser


def _log_delivery(delivery: Delivery) -> None:
    logger.info(
        "panopticon_delivery",
        extra={
            "panopticon_name": delivery.name,
            "interval_start_ms": delivery.interval_start_ms,
            "workers": sorted(delivery.workers),
        },
    )


async def run_master(config_root: str, workers: int, grace_period_ms: float | None) -> None:
    """Run the collector; with ``workers`` > 0, exit after their windows are delivered.

    Args:
        config_root: Config directory path
        workers: Number of worker fixtures to spawn
        grace_period_ms: Grace period override
    """
    config = load_config(config_root)
    setup_json_logging(config.logging.log_dir, config.logging.level, process_name="master")

    grace = config.collector.grace_period_ms if grace_period_ms is None else grace_period_ms
    bus = Bus(config.redis.url)
    collector = DeliveryCollector(
        bus=bus,
        topic=config.redis.topic,
        journal_dir=Path(config.paths.journal_dir),
        grace_period_ms=grace,
        flush_interval_seconds=config.collector.flush_interval_seconds,
    )
    collector.on_delivery(_log_delivery)

    start_time_ms = now_ms()
    logger.info(
        "panopticon_master_starting",
        extra={"start_time_ms": start_time_ms, "workers": workers, "grace_period_ms": grace},
    )

    run_task = asyncio.create_task(collector.run())
    try:
        if workers > 0:
            # Let the subscription settle before workers publish.
            await asyncio.sleep(0.2)
            results = await asyncio.to_thread(
                spawn_workers,
                workers,
                start_time_ms,
                ["--config-root", config_root, "--publish"],
            )
            failed = [r for r in results if r.returncode != 0]
            if failed:
                logger.warning("panopticon_master_worker_failures", extra={"count": len(failed)})
            await asyncio.sleep(grace / 1000.0)
            await collector.flush(force=True)
        else:
            await run_task
    finally:
        run_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await run_task
        await bus.close()
        logger.info("panopticon_master_shutdown")


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        asyncio.run(
            run_master(
                config_root=args.config_root,
                workers=args.workers,
                grace_period_ms=args.grace_period_ms,
            )
        )
    except KeyboardInterrupt:
        return 0

    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
