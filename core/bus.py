from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Protocol, cast

import redis
from redis.asyncio import Redis


class BusProto(Protocol):
    """Pub/sub interface shared by reporters and the master collector.

    Reporters and collectors depend on this protocol so tests can swap in an
    in-memory bus without a Redis server.
    """

    async def publish_json(self, topic: str, payload: dict[str, Any]) -> None:
        """Publish JSON payload to topic.

        Args:
            topic: Redis pub/sub channel
            payload: JSON-serializable dictionary
        """
        ...

    def subscribe(self, topic: str) -> AsyncIterator[dict[str, Any]]:
        """Subscribe to topic, yield decoded messages.

        Note:
            This is a SYNC method returning AsyncIterator (not async def):
            ``async for msg in bus.subscribe(topic)``
        """
        ...


def _encode(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


class Bus:
    """Async publish/subscribe helper backed by Redis."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Redis | None = None

    async def _get_client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self._url, encoding="utf-8", decode_responses=True)
        return self._client

    async def publish_json(self, topic: str, payload: dict[str, Any]) -> None:
        client = await self._get_client()
        await client.publish(topic, _encode(payload))

    def subscribe(self, topic: str) -> AsyncIterator[dict[str, Any]]:
        async def stream() -> AsyncIterator[dict[str, Any]]:
            client = await self._get_client()
            pubsub = cast(Any, client.pubsub())
            await pubsub.subscribe(topic)
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    data = message.get("data")
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    yield json.loads(data)
            finally:
                await pubsub.unsubscribe(topic)
                await pubsub.aclose()

        return stream()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SyncBus:
    """Blocking publisher for short-lived synchronous workers."""

    def __init__(self, url: str, topic: str) -> None:
        self._client = redis.Redis.from_url(url, encoding="utf-8", decode_responses=True)
        self.topic = topic

    def publish_json(self, payload: dict[str, Any]) -> None:
        self._client.publish(self.topic, _encode(payload))

    def __call__(self, snapshot: Any) -> None:
        # Usable directly as a Panopticon sink.
        self.publish_json(snapshot.to_dict())

    def close(self) -> None:
        self._client.close()
