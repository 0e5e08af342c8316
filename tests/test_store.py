from __future__ import annotations

import json

import pytest

from conftest import T0

from download_entitlements.errors import ValidationError
from download_entitlements.keys import (
    CallableAliasResolver,
    CatalogAliasResolver,
    IdentityAliasResolver,
    KeyEncoder,
)
from download_entitlements.models import EligibilityState, EntitlementRecord
from download_entitlements.policy import DEFAULT_POLICY, evaluate
from download_entitlements.store import EntitlementStore


class _BrokenRedis:
    def get(self, key):
        raise ConnectionError("redis down")

    def set(self, key, value):
        raise ConnectionError("redis down")

    def delete(self, *keys):
        raise ConnectionError("redis down")

    def scan_iter(self, match="*"):
        raise ConnectionError("redis down")


def test_record_wire_format_uses_camel_case(redis_store, fake_redis):
    redis_store.put(EntitlementRecord(product_key="prod-1", purchase_timestamp=T0, download_count=1, last_download_timestamp=T0 + 5))

    raw = json.loads(fake_redis.store["entitlement:prod-1"])
    assert raw == {"purchaseTimestamp": T0, "downloadCount": 1, "lastDownloadTimestamp": T0 + 5}


def test_record_round_trips_through_redis(redis_store):
    redis_store.create("prod-1", T0)

    record = redis_store.get("prod-1")
    assert record.purchase_timestamp == T0
    assert record.download_count == 0
    assert record.last_download_timestamp is None


def test_corrupt_record_reads_as_missing(redis_store, fake_redis):
    fake_redis.store["entitlement:prod-1"] = "{not json"
    assert redis_store.get("prod-1") is None

    fake_redis.store["entitlement:prod-1"] = json.dumps({"downloadCount": 1})
    assert redis_store.get("prod-1") is None


def test_stored_count_above_limit_reads_as_limit_reached(redis_store, fake_redis):
    fake_redis.store["entitlement:prod-1"] = json.dumps({"purchaseTimestamp": T0, "downloadCount": 9})

    record = redis_store.get("prod-1")

    assert record.download_count == 3
    assert evaluate(record, T0, DEFAULT_POLICY).state is EligibilityState.LIMIT_REACHED


def test_put_rejects_count_above_limit(memory_store):
    with pytest.raises(ValidationError) as exc:
        memory_store.put(EntitlementRecord(product_key="prod-1", purchase_timestamp=T0, download_count=4))
    assert exc.value.field == "download_count"
    assert memory_store.get("prod-1") is None

    wide = EntitlementStore(redis_url="", max_downloads=5)
    assert wide.put(EntitlementRecord(product_key="prod-1", purchase_timestamp=T0, download_count=4)) is True
    assert wide.get("prod-1").download_count == 4


def test_delete_is_idempotent_and_clears_cooldown(memory_store):
    memory_store.create("prod-1", T0)
    memory_store.set_cooldown("prod-1", T0)

    assert memory_store.delete("prod-1") is True
    assert memory_store.delete("prod-1") is True
    assert memory_store.get("prod-1") is None
    assert memory_store.get_cooldown("prod-1") is None


def test_redis_failures_degrade_to_no_data():
    store = EntitlementStore(redis_url="")
    store._redis = _BrokenRedis()

    assert store.get("prod-1") is None
    assert store.put(EntitlementRecord(product_key="prod-1", purchase_timestamp=T0)) is False
    assert store.delete("prod-1") is False
    assert list(store.iter_product_keys()) == []


def test_iter_product_keys_skips_non_record_keys(redis_store):
    redis_store.create("prod-1", T0)
    redis_store.create("prod/2", T0)
    redis_store.set_cooldown("prod-1", T0)

    assert sorted(redis_store.iter_product_keys()) == ["prod-1", "prod/2"]


def test_reset_marker_expires_in_memory(memory_store, monkeypatch):
    import download_entitlements.store as store_module

    now = [1000.0]
    monkeypatch.setattr(store_module.time, "time", lambda: now[0])
    memory_store.set_reset_marker({"productKey": "prod-1", "keys": ["prod-1"], "ts": T0}, ttl_seconds=300)

    assert memory_store.get_reset_marker()["productKey"] == "prod-1"
    now[0] += 301
    assert memory_store.get_reset_marker() is None


def test_key_encoder_prevents_collisions():
    encoder = KeyEncoder()

    assert encoder.record_key("prod-1") == "entitlement:prod-1"
    assert encoder.record_key("a:b") == "entitlement:a%3Ab"
    assert encoder.record_key("a%3Ab") == "entitlement:a%253Ab"
    assert encoder.record_key("a b") == "entitlement:a%20b"
    assert encoder.product_key_from_record_key(encoder.record_key("x/y:z")) == "x/y:z"
    assert encoder.product_key_from_record_key("cooldown:x") is None


def test_key_encoder_namespace():
    encoder = KeyEncoder(namespace="shop1:")

    assert encoder.record_key("p") == "shop1:entitlement:p"
    assert encoder.cooldown_key("p") == "shop1:cooldown:p"
    assert encoder.reset_marker_key() == "shop1:admin-reset:last"


def test_catalog_alias_resolver_finds_entry_by_any_key():
    resolver = CatalogAliasResolver(
        [{"id": "cat-1", "productId": "prod_abc", "stripeId": "price_123", "stripeProductId": "prod_abc"}]
    )

    assert resolver.resolve("price_123") == ("cat-1", "prod_abc", "price_123")
    assert resolver.resolve(" cat-1 ") == ("cat-1", "prod_abc", "price_123")
    assert resolver.resolve("unknown") == ("unknown",)


def test_catalog_alias_resolver_add_entry():
    resolver = CatalogAliasResolver()
    resolver.add({"id": "cat-2", "productId": "prod_x"})

    assert resolver.resolve("prod_x") == ("cat-2", "prod_x")


def test_identity_and_callable_resolvers():
    assert IdentityAliasResolver().resolve(" p ") == ("p",)

    resolver = CallableAliasResolver(lambda key: ["canon", key])
    assert resolver.resolve("alias") == ("canon", "alias")

    failing = CallableAliasResolver(lambda key: (_ for _ in ()).throw(RuntimeError("boom")))
    assert failing.resolve("alias") == ("alias",)
