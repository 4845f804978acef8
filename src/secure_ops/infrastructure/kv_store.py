"""Key-value store implementations of the persistence boundary.

Both stores hold JSON strings. The in-memory store backs tests and the
simulated deployment; the Redis store backs everything else.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import redis.asyncio as aioredis


class InMemoryKeyValueStore:
    """Process-local store."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class RedisKeyValueStore:
    """Store backed by redis.asyncio with decode_responses=True."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def keys(self, prefix: str) -> list[str]:
        found = [key async for key in self._client.scan_iter(match=f"{prefix}*")]
        return sorted(found)
