"""Master-side collector merging windows reported by worker processes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from panopticon.contracts import IntervalSnapshot
from panopticon.errors import MetricError
from panopticon.logs import merge_trees, tree_from_dict, tree_to_dict
from panopticon.reporter import DEFAULT_TOPIC
from panopticon.timing import now_ms

if TYPE_CHECKING:
    from core.bus import BusProto

logger = logging.getLogger(__name__)

WindowKey = tuple[str, float]
DeliveryListener = Callable[["Delivery"], None]


@dataclass
class Delivery:
    """All worker reports for one aggregator window.

    Attributes:
        name: Aggregator name
        interval_start_ms: Window start shared by every worker
        interval_ms: Window length
        workers: Serialized metric tree per worker id
    """

    name: str
    interval_start_ms: float
    interval_ms: float
    workers: dict[str, dict[str, Any]] = field(default_factory=dict)

    def merged(self) -> dict[str, Any]:
        """Combine worker trees (set: latest wins, inc: sum, sample: pooled)."""
        return tree_to_dict(merge_trees(tree_from_dict(data) for data in self.workers.values()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_start_ms": self.interval_start_ms,
            "interval_ms": self.interval_ms,
            "workers": self.workers,
            "merged": self.merged(),
        }


class DeliveryCollector:
    """Groups worker snapshots by window and delivers them after a grace period.

    Windows are keyed by ``(name, interval_start_ms)``. Since all workers
    share the start time, their windows line up exactly.
    """

    def __init__(
        self,
        bus: BusProto,
        topic: str = DEFAULT_TOPIC,
        journal_dir: Path | None = None,
        grace_period_ms: float = 500.0,
        flush_interval_seconds: float = 0.1,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        """Initialize collector.

        Args:
            bus: Event bus for subscribing to worker snapshots
            topic: Pub/sub topic workers publish to
            journal_dir: Directory for ``deliveries.ndjson`` (None disables it)
            grace_period_ms: Wait this long past a window's end for late reports
            flush_interval_seconds: How often ``run`` checks for due windows
            clock: Millisecond clock, injectable for tests
        """
        self.bus = bus
        self.topic = topic
        self.grace_period_ms = grace_period_ms
        self.flush_interval_seconds = flush_interval_seconds
        self._clock = clock

        self.journal_path: Path | None = None
        if journal_dir is not None:
            journal_dir = Path(journal_dir)
            journal_dir.mkdir(parents=True, exist_ok=True)
            self.journal_path = journal_dir / "deliveries.ndjson"
            self.journal_path.touch(exist_ok=True)

        self._pending: dict[WindowKey, Delivery] = {}
        # End of the latest delivered window per aggregator name.
        self._watermarks: dict[str, float] = {}
        self._listeners: list[DeliveryListener] = []
        self._lock = asyncio.Lock()

    def on_delivery(self, listener: DeliveryListener) -> None:
        self._listeners.append(listener)

    @property
    def pending_windows(self) -> list[WindowKey]:
        return sorted(self._pending)

    @property
    def watermarks(self) -> dict[str, float]:
        """End of the latest delivered window, per aggregator name."""
        return dict(self._watermarks)

    async def run(self) -> None:
        """Subscribe to worker snapshots and flush due windows periodically."""
        flush_task = asyncio.create_task(self._periodic_flush())
        try:
            async for payload in self.bus.subscribe(self.topic):
                try:
                    snapshot = IntervalSnapshot.from_dict(payload)
                except (KeyError, TypeError, ValueError, MetricError):
                    logger.warning("panopticon.collector_bad_payload", extra={"payload": payload})
                    continue
                await self.ingest(snapshot)
        finally:
            flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await flush_task

    async def ingest(self, snapshot: IntervalSnapshot) -> bool:
        """Add a worker snapshot to its window.

        Snapshots are rejected (logged, not raised) when their window starts
        before the name's watermark, when their metric tree is malformed, or
        when a slot conflicts in kind with what is already pending.

        Returns:
            False if the snapshot was dropped
        """
        key: WindowKey = (snapshot.name, snapshot.interval_start_ms)
        log_extra = {
            "panopticon_name": snapshot.name,
            "worker_id": snapshot.worker_id,
            "interval_start_ms": snapshot.interval_start_ms,
        }
        try:
            tree = tree_from_dict(snapshot.data)
        except MetricError as e:
            logger.warning(
                "panopticon.collector_bad_snapshot", extra={**log_extra, "error": str(e)}
            )
            return False

        async with self._lock:
            watermark = self._watermarks.get(snapshot.name)
            if watermark is not None and snapshot.interval_start_ms < watermark:
                logger.warning(
                    "panopticon.collector_late_snapshot",
                    extra={**log_extra, "watermark_ms": watermark},
                )
                return False

            delivery = self._pending.get(key)
            workers = delivery.workers if delivery is not None else {}
            existing = workers.get(snapshot.worker_id)
            try:
                if existing is not None:
                    # A worker can close the same window twice (e.g. stop right after a roll-over).
                    tree = merge_trees([tree_from_dict(existing), tree])
                # The merged view must stay buildable at delivery time.
                others = [
                    tree_from_dict(data)
                    for worker, data in workers.items()
                    if worker != snapshot.worker_id
                ]
                merge_trees([*others, tree])
            except MetricError as e:
                logger.warning(
                    "panopticon.collector_conflicting_snapshot",
                    extra={**log_extra, "error": str(e)},
                )
                return False

            if delivery is None:
                delivery = self._pending[key] = Delivery(
                    name=snapshot.name,
                    interval_start_ms=snapshot.interval_start_ms,
                    interval_ms=snapshot.interval_ms,
                )
            delivery.workers[snapshot.worker_id] = (
                dict(snapshot.data) if existing is None else tree_to_dict(tree)
            )
            return True

    async def flush(self, now: float | None = None, force: bool = False) -> list[Delivery]:
        """Deliver every window whose end plus grace period has passed.

        Delivered windows are not retained; the per-name watermark advances to
        the end of the latest one so late snapshots can still be recognized.

        Args:
            now: Clock override (ms)
            force: Deliver all pending windows regardless of time

        Returns:
            Deliveries in window order
        """
        now = self._clock() if now is None else now
        async with self._lock:
            due = [
                key
                for key, delivery in self._pending.items()
                if force
                or delivery.interval_start_ms + delivery.interval_ms + self.grace_period_ms <= now
            ]
            deliveries = [self._pending.pop(key) for key in sorted(due)]
            for delivery in deliveries:
                end = delivery.interval_start_ms + delivery.interval_ms
                if end > self._watermarks.get(delivery.name, -math.inf):
                    self._watermarks[delivery.name] = end

        for delivery in deliveries:
            for listener in self._listeners:
                try:
                    listener(delivery)
                except Exception:
                    logger.exception(
                        "panopticon.collector_listener_failed",
                        extra={
                            "panopticon_name": delivery.name,
                            "interval_start_ms": delivery.interval_start_ms,
                        },
                    )
        self._write_journal(deliveries)
        return deliveries

    async def _periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_seconds)
            try:
                await self.flush()
            except Exception:
                logger.exception("panopticon.collector_flush_failed")

    def _write_journal(self, deliveries: list[Delivery]) -> None:
        if not deliveries or self.journal_path is None:
            return
        # Serialize the whole batch before touching the file.
        lines = [json.dumps(delivery.to_dict()) + "\n" for delivery in deliveries]
        with open(self.journal_path, "a", encoding="utf-8") as f:
            f.writelines(lines)
        logger.debug(
            "panopticon.collector_flushed_to_journal",
            extra={"records": len(lines), "path": str(self.journal_path)},
        )
