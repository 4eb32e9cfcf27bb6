"""
Key-value storage with change notification.

Two backends share one contract:
  - RedisStorage: values in Redis, every write published on a pub/sub channel
    so another process sees it without polling.
  - MemoryStorage: a dict plus one asyncio.Queue per watcher; surfaces living
    in the same process share one instance.

A change event names the key and the writer; it never carries the value, so
readers always go back to storage for the current copy.
"""
import asyncio
import json
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from hme.observability.logging import log
from hme.settings import settings
from hme.store.redis_conn import get_redis
from hme.utils.time import now_ms


@dataclass(frozen=True)
class StorageEvent:
    key: str
    writer: str
    writtenAt: int


class KeyValueStorage:
    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, writer: str) -> None:
        raise NotImplementedError

    async def delete(self, key: str, writer: str) -> None:
        raise NotImplementedError

    def watch(self) -> AsyncIterator[StorageEvent]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class MemoryStorage(KeyValueStorage):
    def __init__(self):
        self._values: Dict[str, str] = {}
        self._watchers: List[asyncio.Queue] = []

    def _notify(self, key: str, writer: str) -> None:
        event = StorageEvent(key=key, writer=writer, writtenAt=now_ms())
        for q in list(self._watchers):
            q.put_nowait(event)

    async def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def set(self, key: str, value: str, writer: str) -> None:
        self._values[key] = value
        self._notify(key, writer)

    async def delete(self, key: str, writer: str) -> None:
        if self._values.pop(key, None) is not None:
            self._notify(key, writer)

    async def watch(self) -> AsyncIterator[StorageEvent]:
        q: asyncio.Queue = asyncio.Queue()
        self._watchers.append(q)
        try:
            while True:
                yield await q.get()
        finally:
            self._watchers.remove(q)


class RedisStorage(KeyValueStorage):
    def __init__(self, redis=None, channel: Optional[str] = None):
        self.redis = redis if redis is not None else get_redis()
        self.channel = channel or settings.STORAGE_CHANGES_CHANNEL

    def _event(self, key: str, writer: str) -> str:
        return json.dumps({"key": key, "writer": writer, "writtenAt": now_ms()})

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def set(self, key: str, value: str, writer: str) -> None:
        # Value and its change event land together or not at all
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(key, value)
            pipe.publish(self.channel, self._event(key, writer))
            await pipe.execute()

    async def delete(self, key: str, writer: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.publish(self.channel, self._event(key, writer))
            await pipe.execute()

    async def watch(self) -> AsyncIterator[StorageEvent]:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    raw = json.loads(message.get("data") or "{}")
                    yield StorageEvent(
                        key=str(raw["key"]),
                        writer=str(raw.get("writer") or ""),
                        writtenAt=int(raw.get("writtenAt") or 0),
                    )
                except (ValueError, KeyError, TypeError) as e:
                    log(event="storage_event_malformed", channel=self.channel, errorType=type(e).__name__)
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

    async def aclose(self) -> None:
        await self.redis.aclose()


def build_storage() -> KeyValueStorage:
    backend = settings.STORAGE_BACKEND
    if backend == "memory":
        return MemoryStorage()
    if backend == "redis":
        return RedisStorage()
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend!r}")
