"""Worker fixture that records a known pair of metric writes.

A test harness spawns this script in child processes and passes one shared
start time as the first positional argument, so every worker aligns its
aggregation windows to the same origin. The fixture builds a Panopticon,
issues one ``set`` and one ``inc``, stops the aggregator and exits.

Errors are not handled here: a bad start time raises ``InvalidArgument`` and
any aggregator failure raises ``CollaboratorError``, both ending the process
with a non-zero status.
"""

from __future__ import annotations

import argparse
import logging
import math
import os
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

from core.bus import SyncBus
from core.config import load_config
from core.logging import setup_json_logging
from panopticon.aggregator import Panopticon
from panopticon.contracts import PanopticonOptions
from panopticon.errors import InvalidArgument
from panopticon.journal import JournalSink, SnapshotSink, journal_path

logger = logging.getLogger(__name__)

FIXTURE_NAME = "testSet"
FIXTURE_INTERVAL_MS = 100
FIXTURE_SCALE_FACTOR = 1
FIXTURE_PERSIST = True

PanopticonFactory = Callable[..., Any]


def parse_start_time(raw: str | None) -> float:
    """Parse the shared start time (ms since epoch).

    Raises:
        InvalidArgument: If the value is missing, non-numeric, non-finite or negative
    """
    if raw is None or not raw.strip():
        raise InvalidArgument("start time argument is required")
    try:
        value = float(raw)
    except ValueError as e:
        raise InvalidArgument(f"start time must be numeric, got {raw!r}") from e
    if not math.isfinite(value) or value < 0:
        raise InvalidArgument(f"start time must be finite and >= 0, got {raw!r}")
    return value


def fixture_options(start_time_ms: float) -> PanopticonOptions:
    return PanopticonOptions(
        start_time_ms=start_time_ms,
        name=FIXTURE_NAME,
        interval_ms=FIXTURE_INTERVAL_MS,
        scale_factor=FIXTURE_SCALE_FACTOR,
        persist=FIXTURE_PERSIST,
    )


def build_panopticon(
    start_time_ms: float,
    *,
    factory: PanopticonFactory = Panopticon,
    worker_id: str | None = None,
    sinks: Iterable[SnapshotSink] = (),
) -> Any:
    """Construct the fixture's aggregator; ``factory`` is swappable for a mock."""
    return factory(fixture_options(start_time_ms), worker_id=worker_id, sinks=list(sinks))


def record_measurements(panopticon: Any) -> None:
    """Issue the fixture's writes, in order, against the given aggregator."""
    panopticon.set([], "my name is", "slim shady")
    panopticon.inc([], "testInc", 1)


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(description="Panopticon worker fixture")
    # Optional here so a missing value surfaces as InvalidArgument, not an argparse exit.
    parser.add_argument("start_time", nargs="?", help="Shared start time (ms since epoch)")
    parser.add_argument(
        "--config-root",
        default=None,
        help="Directory containing config/ (enables logging and default journal dir)",
    )
    parser.add_argument(
        "--journal-dir",
        default=None,
        help="Persist closed windows as NDJSON in this directory",
    )
    parser.add_argument(
        "--publish",
        action="store_true",
        help="Publish closed windows to the Redis topic from config (needs --config-root)",
    )
    parser.add_argument("--worker-id", default=None, help="Worker id (defaults to pid)")
    return parser


def main(argv: Sequence[str] | None = None, factory: PanopticonFactory = Panopticon) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments (without the program name)
        factory: Aggregator constructor

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.publish and args.config_root is None:
        parser.error("--publish requires --config-root")

    start_time_ms = parse_start_time(args.start_time)

    journal_dir: Path | None = Path(args.journal_dir) if args.journal_dir else None
    closers: list[Callable[[], None]] = []
    sinks: list[SnapshotSink] = []

    if args.config_root is not None:
        config = load_config(args.config_root)
        setup_json_logging(config.logging.log_dir, config.logging.level, process_name="worker")
        if journal_dir is None:
            journal_dir = config.paths.journal_dir
        if args.publish:
            bus = SyncBus(config.redis.url, config.redis.topic)
            sinks.append(bus)
            closers.append(bus.close)

    if journal_dir is not None:
        worker_id = args.worker_id or str(os.getpid())
        journal = JournalSink(journal_path(journal_dir, FIXTURE_NAME, worker_id))
        sinks.append(journal)
        closers.append(journal.close)
    else:
        worker_id = args.worker_id

    try:
        panopticon = build_panopticon(
            start_time_ms, factory=factory, worker_id=worker_id, sinks=sinks
        )
        record_measurements(panopticon)
        panopticon.stop()
    finally:
        for close in closers:
            close()

    logger.info(
        "worker_fixture_done",
        extra={"start_time_ms": start_time_ms, "worker_id": worker_id, "sinks": len(sinks)},
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
