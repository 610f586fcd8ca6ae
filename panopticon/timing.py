"""Window arithmetic shared by every process aligned to one start time."""

from __future__ import annotations

import math
import time


def now_ms() -> float:
    """Wall clock in milliseconds since the epoch."""
    return time.time() * 1000.0


def interval_index(start_ms: float, interval_ms: float, t_ms: float) -> int:
    """Index of the window containing ``t_ms``.

    Window ``k`` covers ``[start + k * interval, start + (k + 1) * interval)``.
    Times before the origin yield negative indices.
    """
    if interval_ms <= 0:
        raise ValueError(f"interval_ms must be > 0, got {interval_ms}")
    return math.floor((t_ms - start_ms) / interval_ms)


def interval_bounds(start_ms: float, interval_ms: float, t_ms: float) -> tuple[float, float]:
    """Return ``(window_start_ms, window_end_ms)`` for the window containing ``t_ms``."""
    index = interval_index(start_ms, interval_ms, t_ms)
    window_start = start_ms + index * interval_ms
    return window_start, window_start + interval_ms


def seconds_until_boundary(start_ms: float, interval_ms: float, t_ms: float) -> float:
    """Seconds from ``t_ms`` until the end of its window."""
    _, window_end = interval_bounds(start_ms, interval_ms, t_ms)
    return max(0.0, (window_end - t_ms) / 1000.0)
