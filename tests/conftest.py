from __future__ import annotations

import asyncio
import fnmatch

import pytest

from download_entitlements.policy import HOUR_MS
from download_entitlements.store import EntitlementStore

# 2024-01-01T00:00:00Z
T0 = 1_704_067_200_000


class _FakePubSub:
    def __init__(self, redis):
        self._redis = redis
        self.channels = set()
        self.messages = []
        self.closed = False

    def subscribe(self, channel):
        self.channels.add(channel)
        self._redis.subscribers.append(self)

    def get_message(self, timeout=0.0):
        if self.messages:
            return self.messages.pop(0)
        return None

    def close(self):
        self.closed = True
        if self in self._redis.subscribers:
            self._redis.subscribers.remove(self)


class _FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.subscribers = []
        self.published = []

    def ping(self):
        return True

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value):
        self.store[key] = value

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def scan_iter(self, match="*"):
        return [key for key in list(self.store) if fnmatch.fnmatchcase(key, match)]

    def publish(self, channel, message):
        self.published.append((channel, message))
        receivers = 0
        for sub in self.subscribers:
            if channel in sub.channels:
                sub.messages.append({"type": "message", "channel": channel, "data": message})
                receivers += 1
        return receivers

    def pubsub(self, ignore_subscribe_messages=False):
        return _FakePubSub(self)


class FakeClock:
    """Epoch-ms clock advanced by hand."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now

    def advance_hours(self, hours: float) -> int:
        return self.advance(int(hours * HOUR_MS))


async def drain(iterations: int = 25) -> None:
    """Let scheduled tasks run a few steps."""
    for _ in range(iterations):
        await asyncio.sleep(0)


async def instant_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return _FakeRedis()


@pytest.fixture
def memory_store():
    return EntitlementStore(redis_url="")


@pytest.fixture
def redis_store(fake_redis):
    store = EntitlementStore(redis_url="")
    store._redis = fake_redis
    return store
