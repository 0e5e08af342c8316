from __future__ import annotations

import asyncio

import pytest

from conftest import T0, FakeClock, drain, instant_sleep

from download_entitlements.broadcast import ResetBroadcaster
from download_entitlements.errors import PartialResetError, ValidationError
from download_entitlements.keys import CatalogAliasResolver
from download_entitlements.models import EntitlementRecord
from download_entitlements.policy import evaluate
from download_entitlements.remote_store import RemoteDeleteError
from download_entitlements.reset import OwnedProductsCache, ResetCoordinator
from download_entitlements.scheduler import SchedulerRegistry

CATALOG = [{"id": "cat-1", "productId": "prod_abc", "stripeId": "price_123"}]


class _RemoteStore:
    def __init__(self, failing=(), hang=()):
        self.deleted = []
        self._failing = set(failing)
        self._hang = set(hang)

    async def delete_purchase(self, product_key):
        if product_key in self._hang:
            await asyncio.sleep(10)
        if product_key in self._failing:
            raise RemoteDeleteError(product_key, "HTTP 500", status_code=500)
        self.deleted.append(product_key)


class _BrokenCache:
    name = "recent_purchases"

    def discard(self, product_key):
        raise RuntimeError("cache offline")


def _coordinator(store, *, remote_store=None, caches=None, audit_sink=None, clock=None):
    clock = clock or FakeClock()
    registry = SchedulerRegistry(
        lambda key: evaluate(store.get(key), clock()),
        tick_interval=0,
        discovery_delay=0,
        sleep=instant_sleep,
    )
    broadcaster = ResetBroadcaster(store)
    coordinator = ResetCoordinator(
        store=store,
        registry=registry,
        broadcaster=broadcaster,
        alias_resolver=CatalogAliasResolver(CATALOG),
        clock=clock,
        remote_store=remote_store,
        caches=caches,
        remote_timeout_seconds=0.05,
        audit_sink=audit_sink,
    )
    return coordinator, registry, broadcaster


@pytest.mark.asyncio
async def test_reset_clears_every_alias_and_stops_schedulers(memory_store):
    memory_store.put(EntitlementRecord(product_key="cat-1", purchase_timestamp=T0, download_count=2))
    memory_store.put(EntitlementRecord(product_key="price_123", purchase_timestamp=T0, download_count=1))
    memory_store.set_cooldown("cat-1", T0)
    remote = _RemoteStore()
    owned = OwnedProductsCache(keys=["cat-1", "price_123", "other"])
    coordinator, registry, broadcaster = _coordinator(memory_store, remote_store=remote, caches=[owned])
    registry.register_target("cat-1", lambda snapshot: None)
    registry.start("cat-1")
    await drain(3)
    received = []
    broadcaster.add_listener(received.append)

    result = await coordinator.reset("price_123")

    assert result.alias_keys == ("cat-1", "prod_abc", "price_123")
    assert result.local_reset_complete is True
    assert result.schedulers_stopped == ["cat-1"]
    assert sorted(remote.deleted) == ["cat-1", "price_123", "prod_abc"]
    assert result.partial is False
    assert memory_store.get("cat-1") is None
    assert memory_store.get("price_123") is None
    assert memory_store.get_cooldown("cat-1") is None
    assert owned.keys() == {"other"}
    assert received[0].keys == ("cat-1", "prod_abc", "price_123")
    assert result.broadcast_delivered is True
    assert not registry.is_running("cat-1")


@pytest.mark.asyncio
async def test_second_reset_is_a_successful_no_op(memory_store):
    memory_store.put(EntitlementRecord(product_key="cat-1", purchase_timestamp=T0, download_count=2))
    coordinator, _, _ = _coordinator(memory_store, remote_store=_RemoteStore())

    first = await coordinator.reset("cat-1")
    second = await coordinator.reset("cat-1")

    assert first.local_reset_complete and second.local_reset_complete
    assert second.partial is False
    assert evaluate(memory_store.get("cat-1"), T0).state.value == "NO_ENTITLEMENT"


@pytest.mark.asyncio
async def test_remote_failure_marks_result_partial_but_local_reset_completes(memory_store):
    memory_store.create("cat-1", T0)
    coordinator, _, _ = _coordinator(memory_store, remote_store=_RemoteStore(failing={"prod_abc"}, hang={"price_123"}))

    result = await coordinator.reset("cat-1")

    assert result.local_reset_complete is True
    assert memory_store.get("cat-1") is None
    assert result.remote_deleted == ["cat-1"]
    assert result.remote_failures["price_123"] == "timeout"
    assert "HTTP 500" in result.remote_failures["prod_abc"]
    assert result.partial is True

    with pytest.raises(PartialResetError) as exc:
        result.raise_for_partial()
    assert set(exc.value.to_dict()["remote_failures"]) == {"prod_abc", "price_123"}


@pytest.mark.asyncio
async def test_without_remote_store_remote_step_skipped(memory_store):
    memory_store.create("cat-1", T0)
    coordinator, _, _ = _coordinator(memory_store)

    result = await coordinator.reset("cat-1")

    assert result.remote_skipped is True
    assert result.partial is False


@pytest.mark.asyncio
async def test_cache_failure_recorded_and_audit_emitted(memory_store):
    events = []
    coordinator, _, _ = _coordinator(
        memory_store,
        caches=[_BrokenCache()],
        audit_sink=lambda event, payload: events.append((event, payload)),
    )

    result = await coordinator.reset("cat-1")

    assert "recent_purchases" in result.cache_failures
    assert events[0][0] == "download.entitlement_reset"
    assert events[0][1]["product_key"] == "cat-1"


@pytest.mark.asyncio
async def test_blank_key_rejected(memory_store):
    coordinator, _, _ = _coordinator(memory_store)

    with pytest.raises(ValidationError):
        await coordinator.reset("  ")


def test_owned_products_cache():
    cache = OwnedProductsCache()
    cache.add(" cat-1 ")

    assert "cat-1" in cache
    assert len(cache) == 1
    cache.discard("cat-1")
    cache.discard("cat-1")
    assert len(cache) == 0
