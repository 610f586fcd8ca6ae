from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, cast

from core.config import Config
from panopticon.contracts import IntervalSnapshot


class InMemoryBus:
    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(asyncio.Queue)
        self.published: dict[str, list[dict[str, Any]]] = defaultdict(list)

    async def publish_json(self, topic: str, payload: dict[str, Any]) -> None:
        self.published[topic].append(payload)
        await self._queues[topic].put(payload)

    def subscribe(self, topic: str) -> AsyncIterator[dict[str, Any]]:
        queue = self._queues[topic]

        async def generator() -> AsyncIterator[dict[str, Any]]:
            while True:
                item = await queue.get()
                yield item

        return generator()


class FailingBus(InMemoryBus):
    async def publish_json(self, topic: str, payload: dict[str, Any]) -> None:
        raise ConnectionError("bus down")


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now_ms: float) -> None:
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


class RecordingSink:
    def __init__(self) -> None:
        self.snapshots: list[IntervalSnapshot] = []

    def __call__(self, snapshot: IntervalSnapshot) -> None:
        self.snapshots.append(snapshot)


def build_test_config(root: Path) -> Config:
    cfg_dict = {
        "app": {"name": "test", "env": "test"},
        "logging": {"level": "INFO", "log_dir": str(root / "logs")},
        "redis": {"url": "redis://localhost:6379/0", "topic": "test.panopticon"},
        "panopticon": {"name": "testSet", "interval_ms": 100, "scale_factor": 1, "persist": True},
        "collector": {"grace_period_ms": 0, "flush_interval_seconds": 0.01},
        "paths": {"journal_dir": str(root / "journal")},
    }
    return cast(Config, Config.model_validate(cfg_dict))
