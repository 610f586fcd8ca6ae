"""Contracts shared by the aggregator, its sinks and the master collector.

This module defines the aggregator options, the closed value union accepted by
``set``, metric path handling and the serialized form of a closed window.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Literal

from panopticon.errors import InvalidOptionsError, MetricError

MetricPath = tuple[str, ...]
SetValue = str | int | float | bool
ValueKind = Literal["string", "number", "boolean"]


def value_kind(value: Any) -> ValueKind:
    """Tag a ``set`` value with its kind.

    Raises:
        MetricError: If the value is not a str, int, float or bool, or is a non-finite number
    """
    # bool first: it is an int subclass
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        if isinstance(value, float) and not math.isfinite(value):
            raise MetricError(f"set value must be finite (got {value!r})")
        return "number"
    if isinstance(value, str):
        return "string"
    raise MetricError(f"set value must be str, int, float or bool (got {type(value).__name__})")


def normalize_path(path: Sequence[str]) -> MetricPath:
    """Validate a metric path and return it as a tuple.

    Raises:
        MetricError: If path is a bare string or holds non-string/empty segments
    """
    if isinstance(path, str):
        raise MetricError(f"path must be a sequence of segments, not a string: {path!r}")
    segments = tuple(path)
    for segment in segments:
        if not isinstance(segment, str) or not segment:
            raise MetricError(f"path segments must be non-empty strings (got {segment!r})")
    return segments


def _as_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidOptionsError(f"{name} must be a number, got bool")
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError as e:
            raise InvalidOptionsError(f"{name} must be numeric, got {value!r}") from e
    if not isinstance(value, int | float):
        raise InvalidOptionsError(f"{name} must be a number, got {type(value).__name__}")
    return float(value)


@dataclass(frozen=True)
class PanopticonOptions:
    """Aggregator configuration.

    Attributes:
        start_time_ms: Shared origin for window boundaries (ms since epoch)
        name: Aggregator name, used to group deliveries
        interval_ms: Window length in milliseconds
        scale_factor: Multiplier applied to timed samples (1 = milliseconds)
        persist: Carry set values and counter totals across windows

    Raises:
        InvalidOptionsError: If any field fails validation
    """

    start_time_ms: float
    name: str
    interval_ms: float
    scale_factor: float = 1.0
    persist: bool = False

    _ALIASES: ClassVar[dict[str, str]] = {
        "startTime": "start_time_ms",
        "start_time": "start_time_ms",
        "interval": "interval_ms",
        "scaleFactor": "scale_factor",
    }

    def __post_init__(self) -> None:
        start = _as_number("start_time_ms", self.start_time_ms)
        if not math.isfinite(start) or start < 0:
            raise InvalidOptionsError(f"start_time_ms must be finite and >= 0, got {start}")
        object.__setattr__(self, "start_time_ms", start)

        if not isinstance(self.name, str) or not self.name:
            raise InvalidOptionsError("name must be a non-empty string")

        interval = _as_number("interval_ms", self.interval_ms)
        if not math.isfinite(interval) or interval <= 0:
            raise InvalidOptionsError(f"interval_ms must be > 0, got {interval}")
        object.__setattr__(self, "interval_ms", interval)

        scale = _as_number("scale_factor", self.scale_factor)
        if not math.isfinite(scale) or scale <= 0:
            raise InvalidOptionsError(f"scale_factor must be > 0, got {scale}")
        object.__setattr__(self, "scale_factor", scale)

        if not isinstance(self.persist, bool):
            raise InvalidOptionsError(f"persist must be a bool, got {self.persist!r}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PanopticonOptions:
        """Build options from a mapping using either camelCase or snake_case names.

        Args:
            data: e.g. ``{"startTime": ..., "name": ..., "interval": ...,
                "scaleFactor": ..., "persist": ...}``

        Returns:
            PanopticonOptions instance
        """
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            target = cls._ALIASES.get(key, key)
            if target not in ("start_time_ms", "name", "interval_ms", "scale_factor", "persist"):
                raise InvalidOptionsError(f"Unknown option: {key}")
            kwargs[target] = value
        missing = {"start_time_ms", "name", "interval_ms"} - set(kwargs)
        if missing:
            raise InvalidOptionsError(f"Missing required options: {sorted(missing)}")
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startTime": self.start_time_ms,
            "name": self.name,
            "interval": self.interval_ms,
            "scaleFactor": self.scale_factor,
            "persist": self.persist,
        }


@dataclass(frozen=True)
class IntervalSnapshot:
    """A closed window reported by one worker.

    Attributes:
        name: Aggregator name
        worker_id: Reporting worker (process id by default)
        interval_start_ms: Window start (inclusive)
        interval_end_ms: Window end (exclusive)
        data: Nested mapping of serialized metric logs
    """

    name: str
    worker_id: str
    interval_start_ms: float
    interval_end_ms: float
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name must not be empty")
        if self.interval_end_ms <= self.interval_start_ms:
            raise ValueError(
                f"interval_end_ms ({self.interval_end_ms}) must be > "
                f"interval_start_ms ({self.interval_start_ms})"
            )
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @property
    def interval_ms(self) -> float:
        return self.interval_end_ms - self.interval_start_ms

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary.

        Returns:
            JSON-compatible dictionary
        """
        return {
            "name": self.name,
            "worker_id": self.worker_id,
            "interval_start_ms": self.interval_start_ms,
            "interval_end_ms": self.interval_end_ms,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IntervalSnapshot:
        """Deserialize from dictionary.

        Args:
            data: Dictionary produced by ``to_dict``

        Returns:
            IntervalSnapshot instance
        """
        return cls(
            name=data["name"],
            worker_id=str(data["worker_id"]),
            interval_start_ms=float(data["interval_start_ms"]),
            interval_end_ms=float(data["interval_end_ms"]),
            data=dict(data.get("data", {})),
        )
