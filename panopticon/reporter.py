"""Periodic publisher that ships closed windows from a worker to the bus."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from panopticon.contracts import IntervalSnapshot
from panopticon.timing import seconds_until_boundary

if TYPE_CHECKING:
    from core.bus import BusProto
    from panopticon.aggregator import Panopticon

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "panopticon.snapshots"


class PanopticonReporter:
    """Drives window roll-over at aligned boundaries and publishes the results.

    The reporter registers itself as a sink on the aggregator, so windows
    closed by a write (rather than by the timer) are published too.
    """

    def __init__(
        self, panopticon: Panopticon, bus: BusProto, topic: str = DEFAULT_TOPIC
    ) -> None:
        """Initialize reporter.

        Args:
            panopticon: Aggregator to drive
            bus: Event bus used for publishing
            topic: Pub/sub topic the master collector subscribes to
        """
        self.panopticon = panopticon
        self.bus = bus
        self.topic = topic
        self._pending: list[IntervalSnapshot] = []
        self._lock = asyncio.Lock()
        self.published = 0
        panopticon.add_sink(self)

    def __call__(self, snapshot: IntervalSnapshot) -> None:
        self._pending.append(snapshot)

    async def run(self) -> None:
        """Sleep until each boundary, roll the window over and publish."""
        options = self.panopticon.options
        while not self.panopticon.stopped:
            delay = seconds_until_boundary(
                options.start_time_ms, options.interval_ms, self.panopticon.now()
            )
            await asyncio.sleep(delay)
            self.panopticon.roll_over()
            await self.publish_pending()

    async def publish_pending(self) -> int:
        """Publish queued windows; failures are logged and the window is dropped.

        Returns:
            Number of windows published
        """
        async with self._lock:
            pending, self._pending = self._pending, []
            sent = 0
            for snapshot in pending:
                try:
                    await self.bus.publish_json(self.topic, snapshot.to_dict())
                    sent += 1
                except Exception:
                    logger.exception(
                        "panopticon.reporter_publish_failed",
                        extra={
                            "panopticon_name": snapshot.name,
                            "interval_start_ms": snapshot.interval_start_ms,
                        },
                    )
            self.published += sent
            return sent

    async def close(self) -> None:
        """Stop the aggregator and publish whatever is still queued."""
        self.panopticon.stop()
        await self.publish_pending()
