import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from hme.settings import settings
from hme.store.storage import MemoryStorage, RedisStorage, StorageEvent, build_storage


def test_memory_storage_get_set_delete():
    storage = MemoryStorage()

    async def run():
        assert await storage.get("k") is None
        await storage.set("k", "v", "w1")
        assert await storage.get("k") == "v"
        await storage.delete("k", "w1")
        return await storage.get("k")

    assert asyncio.run(run()) is None


def test_memory_storage_notifies_watchers_without_the_value():
    storage = MemoryStorage()

    async def run():
        gen = storage.watch()

        async def first():
            return await gen.__anext__()

        task = asyncio.create_task(first())
        await asyncio.sleep(0)  # let the watcher register
        await storage.set("hme:popupState", '{"value": "SignedIn"}', "surface-b")
        event = await task
        await gen.aclose()
        return event

    event = asyncio.run(run())
    assert isinstance(event, StorageEvent)
    assert event.key == "hme:popupState"
    assert event.writer == "surface-b"
    assert event.writtenAt > 0
    assert not hasattr(event, "value")
    assert storage._watchers == []


def _redis_with_pipeline():
    redis = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, 1])
    redis.pipeline.return_value.__aenter__.return_value = pipe
    return redis, pipe


def test_redis_set_and_publish_share_one_transaction():
    redis, pipe = _redis_with_pipeline()
    storage = RedisStorage(redis=redis, channel="changes")

    asyncio.run(storage.set("hme:popupState", "payload", "surface-a"))

    redis.pipeline.assert_called_once_with(transaction=True)
    pipe.set.assert_called_once_with("hme:popupState", "payload")
    channel, raw_event = pipe.publish.call_args.args
    assert channel == "changes"
    assert json.loads(raw_event)["key"] == "hme:popupState"
    assert json.loads(raw_event)["writer"] == "surface-a"
    pipe.execute.assert_awaited_once()


def test_redis_delete_publishes_change():
    redis, pipe = _redis_with_pipeline()
    storage = RedisStorage(redis=redis, channel="changes")

    asyncio.run(storage.delete("hme:iCloudHmeClientSession", "surface-a"))

    pipe.delete.assert_called_once_with("hme:iCloudHmeClientSession")
    assert pipe.publish.call_args.args[0] == "changes"


def test_redis_watch_skips_malformed_messages_and_unsubscribes():
    messages = [
        {"type": "subscribe", "data": 1},
        {"type": "message", "data": "not json"},
        {"type": "message", "data": json.dumps({"writer": "x"})},
        {"type": "message", "data": json.dumps({"key": "hme:popupState", "writer": "surface-b", "writtenAt": 5})},
    ]

    async def listen():
        for m in messages:
            yield m

    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.listen = listen
    redis = MagicMock()
    redis.pubsub.return_value = pubsub
    storage = RedisStorage(redis=redis, channel="changes")

    async def run():
        gen = storage.watch()
        event = await gen.__anext__()
        await gen.aclose()
        return event

    event = asyncio.run(run())

    assert event == StorageEvent(key="hme:popupState", writer="surface-b", writtenAt=5)
    pubsub.subscribe.assert_awaited_once_with("changes")
    pubsub.unsubscribe.assert_awaited_once_with("changes")
    pubsub.aclose.assert_awaited_once()


def test_build_storage_by_backend():
    with patch.object(settings, "STORAGE_BACKEND", "memory"):
        assert isinstance(build_storage(), MemoryStorage)

    with patch.object(settings, "STORAGE_BACKEND", "redis"), patch("hme.store.storage.get_redis") as mock_get_redis:
        storage = build_storage()
        assert isinstance(storage, RedisStorage)
        assert storage.redis is mock_get_redis.return_value

    with patch.object(settings, "STORAGE_BACKEND", "sqlite"):
        with pytest.raises(ValueError, match="sqlite"):
            build_storage()
