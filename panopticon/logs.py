"""Per-slot metric logs and the trees that hold them."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from typing import Any, ClassVar

from panopticon.contracts import SetValue, value_kind
from panopticon.errors import MetricError


class SetLog:
    """Latest value written to a slot."""

    type_name: ClassVar[str] = "set"

    def __init__(self, value: SetValue, timestamp_ms: float) -> None:
        self.value = value
        self.timestamp_ms = timestamp_ms
        self.kind = value_kind(value)

    def update(self, value: SetValue, timestamp_ms: float) -> None:
        self.kind = value_kind(value)
        self.value = value
        self.timestamp_ms = timestamp_ms

    def carry_over(self) -> SetLog | None:
        return self

    def merge(self, other: SetLog) -> SetLog:
        """Latest write wins; ties keep ``self``."""
        latest = other if other.timestamp_ms > self.timestamp_ms else self
        return SetLog(latest.value, latest.timestamp_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type_name,
            "kind": self.kind,
            "value": self.value,
            "timestamp_ms": self.timestamp_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SetLog:
        return cls(data["value"], float(data["timestamp_ms"]))


class IncLog:
    """Running total of increments."""

    type_name: ClassVar[str] = "inc"

    def __init__(self, value: float = 0) -> None:
        self.value = value

    def update(self, delta: float) -> None:
        self.value += delta

    def carry_over(self) -> IncLog | None:
        return self

    def merge(self, other: IncLog) -> IncLog:
        return IncLog(self.value + other.value)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type_name, "value": self.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IncLog:
        value = data["value"]
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise MetricError(f"inc value must be a number (got {value!r})")
        if isinstance(value, float) and not math.isfinite(value):
            raise MetricError(f"inc value must be finite (got {value!r})")
        return cls(value)


class SampleLog:
    """Streaming summary of observations (Welford's algorithm).

    Standard deviation is the population value; merging two logs pools their
    moments so per-worker summaries combine exactly.
    """

    type_name: ClassVar[str] = "sample"

    def __init__(self) -> None:
        self.count = 0
        self.mean = 0.0
        self.m2 = 0.0
        self.min = math.inf
        self.max = -math.inf

    def update(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    @property
    def stdev(self) -> float:
        if self.count == 0:
            return 0.0
        return math.sqrt(self.m2 / self.count)

    def carry_over(self) -> SampleLog | None:
        # Summaries describe a single window.
        return None

    def merge(self, other: SampleLog) -> SampleLog:
        merged = SampleLog()
        merged.count = self.count + other.count
        if merged.count == 0:
            return merged
        delta = other.mean - self.mean
        merged.mean = self.mean + delta * other.count / merged.count
        merged.m2 = self.m2 + other.m2 + delta * delta * self.count * other.count / merged.count
        merged.min = min(self.min, other.min)
        merged.max = max(self.max, other.max)
        return merged

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type_name,
            "count": self.count,
            "min": self.min if self.count else None,
            "max": self.max if self.count else None,
            "mean": self.mean,
            "stdev": self.stdev,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SampleLog:
        log = cls()
        log.count = int(data["count"])
        if log.count:
            log.mean = float(data["mean"])
            log.m2 = float(data["stdev"]) ** 2 * log.count
            log.min = float(data["min"])
            log.max = float(data["max"])
        return log


MetricLog = SetLog | IncLog | SampleLog

_LOG_TYPES: dict[str, type[SetLog] | type[IncLog] | type[SampleLog]] = {
    SetLog.type_name: SetLog,
    IncLog.type_name: IncLog,
    SampleLog.type_name: SampleLog,
}


def log_from_dict(data: Mapping[str, Any]) -> MetricLog:
    """Rebuild a metric log from its serialized form."""
    try:
        log_type = _LOG_TYPES[data["type"]]
    except KeyError as e:
        raise MetricError(f"Unknown metric log: {dict(data)!r}") from e
    try:
        return log_type.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise MetricError(f"Malformed {data['type']} log: {dict(data)!r}") from e


def _is_leaf(node: Mapping[str, Any]) -> bool:
    return isinstance(node.get("type"), str) and node["type"] in _LOG_TYPES


def tree_to_dict(tree: Mapping[str, Any]) -> dict[str, Any]:
    """Serialize a tree of logs into nested plain dicts."""
    result: dict[str, Any] = {}
    for key, node in tree.items():
        if isinstance(node, dict):
            result[key] = tree_to_dict(node)
        else:
            result[key] = node.to_dict()
    return result


def tree_from_dict(data: Mapping[str, Any]) -> dict[str, Any]:
    """Rebuild a tree of logs from nested plain dicts."""
    tree: dict[str, Any] = {}
    for key, node in data.items():
        if not isinstance(node, Mapping):
            raise MetricError(f"Malformed metric tree at {key!r}: {node!r}")
        tree[key] = log_from_dict(node) if _is_leaf(node) else tree_from_dict(node)
    return tree


def carry_over_tree(tree: Mapping[str, Any], persist: bool) -> dict[str, Any]:
    """Return the tree that seeds the next window.

    Without ``persist`` the next window starts empty. With it, set values and
    counter totals are kept and sample summaries are dropped. Empty branches
    are pruned.
    """
    if not persist:
        return {}
    kept: dict[str, Any] = {}
    for key, node in tree.items():
        if isinstance(node, dict):
            child = carry_over_tree(node, persist)
            if child:
                kept[key] = child
        else:
            carried = node.carry_over()
            if carried is not None:
                kept[key] = carried
    return kept


def _merge_into(target: dict[str, Any], source: Mapping[str, Any], trail: tuple[str, ...]) -> None:
    for key, node in source.items():
        existing = target.get(key)
        if existing is None:
            target[key] = _copy_node(node)
        elif isinstance(existing, dict) and isinstance(node, dict):
            _merge_into(existing, node, (*trail, key))
        elif type(existing) is type(node) and not isinstance(node, dict):
            target[key] = existing.merge(node)
        else:
            raise MetricError(f"Cannot merge conflicting metrics at {'/'.join((*trail, key))}")


def _copy_node(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: _copy_node(child) for key, child in node.items()}
    return log_from_dict(node.to_dict())


def merge_trees(trees: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    """Merge several log trees into one (set: latest wins, inc: sum, sample: pooled).

    Raises:
        MetricError: If the same slot holds different metric kinds
    """
    merged: dict[str, Any] = {}
    for tree in trees:
        _merge_into(merged, tree, ())
    return merged
