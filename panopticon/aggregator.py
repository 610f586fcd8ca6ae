"""In-process metric aggregator aligned to a shared start time."""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from panopticon.contracts import (
    IntervalSnapshot,
    MetricPath,
    PanopticonOptions,
    SetValue,
    normalize_path,
    value_kind,
)
from panopticon.errors import MetricError, SinkError
from panopticon.logs import IncLog, MetricLog, SampleLog, SetLog, carry_over_tree, tree_to_dict
from panopticon.timing import interval_bounds, now_ms

if TYPE_CHECKING:
    from panopticon.journal import SnapshotSink

logger = logging.getLogger(__name__)


class Panopticon:
    """Collects set values, counters and samples into aligned time windows.

    Every process constructed with the same ``start_time_ms`` and
    ``interval_ms`` computes the same window boundaries, so windows reported
    by different workers can be merged by a master collector.

    Windows close lazily: each write first rolls the open window over if the
    clock has passed its end. Drivers (see ``PanopticonReporter``) call
    ``roll_over`` at boundaries so quiet windows are still reported. A closed
    window is handed to every sink as an ``IntervalSnapshot``.
    """

    def __init__(
        self,
        options: PanopticonOptions | Mapping[str, Any],
        *,
        worker_id: str | None = None,
        sinks: Iterable[SnapshotSink] = (),
        clock: Callable[[], float] = now_ms,
    ) -> None:
        """Initialize aggregator.

        Args:
            options: Options object or mapping of option names
                (``startTime``, ``name``, ``interval``, ``scaleFactor``, ``persist``)
            worker_id: Identifier reported with each window (defaults to the pid)
            sinks: Callables receiving each closed window
            clock: Millisecond clock, injectable for tests
        """
        if not isinstance(options, PanopticonOptions):
            options = PanopticonOptions.from_dict(options)
        self.options = options
        self.worker_id = worker_id or str(os.getpid())
        self._sinks: list[SnapshotSink] = list(sinks)
        self._clock = clock
        self._tree: dict[str, Any] = {}
        self._window_start, self._window_end = interval_bounds(
            options.start_time_ms, options.interval_ms, clock()
        )
        self._stopped = False

        logger.debug(
            "panopticon.created",
            extra={
                "panopticon_name": options.name,
                "worker_id": self.worker_id,
                "window_start_ms": self._window_start,
            },
        )

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def stopped(self) -> bool:
        return self._stopped

    def now(self) -> float:
        """Current time on the aggregator clock (ms)."""
        return self._clock()

    @property
    def window(self) -> tuple[float, float]:
        """Bounds of the open window."""
        return self._window_start, self._window_end

    def add_sink(self, sink: SnapshotSink) -> None:
        self._sinks.append(sink)

    def set(self, path: Sequence[str], key: str, value: SetValue) -> None:
        """Create or overwrite a set slot.

        A failing sink during the roll-over that precedes the write raises
        ``SinkError``; the write is not applied and the open window is unchanged.

        Raises:
            MetricError: On invalid path/key/value, kind conflict, or after stop
        """
        value_kind(value)
        now = self._before_write()
        log = self._slot(path, key, SetLog)
        if log is None:
            self._branch(path)[key] = SetLog(value, now)
        else:
            log.update(value, now)

    def inc(self, path: Sequence[str], key: str, delta: float = 1) -> None:
        """Add ``delta`` to a counter, creating it at zero.

        Raises:
            MetricError: On invalid path/key/delta, kind conflict, or after stop
        """
        self._check_number("delta", delta)
        self._before_write()
        log = self._slot(path, key, IncLog)
        if log is None:
            log = self._branch(path)[key] = IncLog()
        log.update(delta)

    def sample(self, path: Sequence[str], key: str, value: float) -> None:
        """Add an observation to a window summary (count/min/max/mean/stdev)."""
        self._check_number("value", value)
        self._before_write()
        log = self._slot(path, key, SampleLog)
        if log is None:
            log = self._branch(path)[key] = SampleLog()
        log.update(value)

    def timed_sample(self, path: Sequence[str], key: str, duration_ns: int) -> None:
        """Record a duration (nanoseconds) as milliseconds times ``scale_factor``."""
        self._check_number("duration_ns", duration_ns)
        if duration_ns < 0:
            raise MetricError(f"duration_ns must be >= 0, got {duration_ns}")
        self.sample(path, key, duration_ns / 1_000_000 * self.options.scale_factor)

    def snapshot(self) -> IntervalSnapshot:
        """Serialized view of the open window; does not close it."""
        return IntervalSnapshot(
            name=self.options.name,
            worker_id=self.worker_id,
            interval_start_ms=self._window_start,
            interval_end_ms=self._window_end,
            data=tree_to_dict(self._tree),
        )

    def roll_over(self, now: float | None = None) -> IntervalSnapshot | None:
        """Close the open window if ``now`` is past its end.

        Returns:
            The closed window, or None if it is still open
        """
        if self._stopped:
            return None
        now = self._clock() if now is None else now
        if now < self._window_end:
            return None
        return self.collect(now)

    def collect(self, now: float | None = None) -> IntervalSnapshot:
        """Close the open window, deliver it to sinks and open the next one.

        Sinks receive the window before it is replaced, so a failing sink
        leaves the window open with its data intact. Sinks earlier in the list
        may see the same window again on the next attempt.

        Raises:
            SinkError: If a sink raises while receiving the window
        """
        if self._stopped:
            raise MetricError(f"Panopticon {self.options.name!r} is stopped")
        now = self._clock() if now is None else now
        closed = self.snapshot()
        self._deliver(closed)
        self._tree = carry_over_tree(self._tree, self.options.persist)
        self._window_start, self._window_end = interval_bounds(
            self.options.start_time_ms, self.options.interval_ms, max(now, closed.interval_end_ms)
        )
        return closed

    def stop(self) -> IntervalSnapshot | None:
        """Close the open window and refuse further writes. Idempotent."""
        if self._stopped:
            return None
        closed = self.collect()
        self._stopped = True
        logger.debug(
            "panopticon.stopped",
            extra={"panopticon_name": self.options.name, "worker_id": self.worker_id},
        )
        return closed

    def __enter__(self) -> Panopticon:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _deliver(self, snapshot: IntervalSnapshot) -> None:
        for sink in self._sinks:
            try:
                sink(snapshot)
            except Exception as e:
                raise SinkError(
                    f"Sink {sink!r} failed for window {snapshot.interval_start_ms}"
                ) from e
        logger.debug(
            "panopticon.window_closed",
            extra={
                "panopticon_name": snapshot.name,
                "worker_id": snapshot.worker_id,
                "interval_start_ms": snapshot.interval_start_ms,
                "sinks": len(self._sinks),
            },
        )

    def _before_write(self) -> float:
        if self._stopped:
            raise MetricError(f"Panopticon {self.options.name!r} is stopped")
        now = self._clock()
        self.roll_over(now)
        return now

    def _slot(self, path: Sequence[str], key: str, kind: type[MetricLog]) -> Any:
        segments = normalize_path(path)
        if not isinstance(key, str) or not key:
            raise MetricError(f"key must be a non-empty string (got {key!r})")
        node = self._walk(segments, create=False)
        if node is None:
            return None
        existing = node.get(key)
        if existing is None:
            return None
        if isinstance(existing, dict):
            raise MetricError(f"{'/'.join((*segments, key))} is a path, not a metric")
        if not isinstance(existing, kind):
            raise MetricError(
                f"{'/'.join((*segments, key))} holds a {existing.type_name} metric, "
                f"not {kind.type_name}"
            )
        return existing

    def _branch(self, path: Sequence[str]) -> dict[str, Any]:
        node = self._walk(normalize_path(path), create=True)
        assert node is not None
        return node

    def _walk(self, segments: MetricPath, create: bool) -> dict[str, Any] | None:
        node = self._tree
        for depth, segment in enumerate(segments):
            child = node.get(segment)
            if child is None:
                if not create:
                    return None
                child = node[segment] = {}
            elif not isinstance(child, dict):
                raise MetricError(f"{'/'.join(segments[: depth + 1])} is a metric, not a path")
            node = child
        return node

    @staticmethod
    def _check_number(name: str, value: Any) -> None:
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise MetricError(f"{name} must be a number (got {value!r})")
        if isinstance(value, float) and not math.isfinite(value):
            raise MetricError(f"{name} must be finite (got {value!r})")
