"""
Tests for the entitlement cache.

Tests cover:
- In-memory tier: TTL expiry on an injected clock, replacement, eviction
- Redis tier: SETEX storage, corrupt payload handling
- Two-tier facade: promotion, invalidation of both tiers, pub/sub messages
- Invalidation listener lifecycle
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, Mock

import redis

from menuqr.entitlements.cache import (
    CACHE_KEY_PREFIX,
    INVALIDATION_CHANNEL,
    EntitlementCache,
    InMemoryEntitlementCache,
    InvalidationListener,
    RedisEntitlementCache,
    get_entitlement_cache,
    invalidate_tenant_entitlements,
    set_entitlement_cache,
)
from menuqr.entitlements.models import ResolvedEntitlement


def _entitlement(tenant_id="tenant_123", plan_slug="starter", features=("orders",)):
    return ResolvedEntitlement(
        tenant_id=tenant_id,
        plan_id=f"plan_{plan_slug}",
        plan_slug=plan_slug,
        plan_name=plan_slug.capitalize(),
        tier=plan_slug,
        status="active",
        is_valid=True,
        features=frozenset(features),
        limits={"dishes": 50},
        resolved_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )


def _redis_client(store=None):
    """Mock RedisClient backed by a dict."""
    store = {} if store is None else store
    client = Mock()
    client.available = True
    client.get.side_effect = lambda key: store.get(key)

    def _set(key, value, ttl_seconds):
        store[key] = value
        return True

    def _delete(*keys):
        return sum(1 for key in keys if store.pop(key, None) is not None)

    client.set.side_effect = _set
    client.delete.side_effect = _delete
    client.publish.return_value = 1
    return client


class TestInMemoryEntitlementCache:
    """Tests for the process-local tier."""

    def test_put_and_get(self, frozen_clock):
        cache = InMemoryEntitlementCache(clock=frozen_clock, default_ttl_seconds=300)

        cache.put("tenant_123", _entitlement())
        entry = cache.get("tenant_123")

        assert entry is not None
        assert entry.entitlement.plan_slug == "starter"
        assert entry.expires_at == frozen_clock() + timedelta(seconds=300)

    def test_miss(self, frozen_clock):
        cache = InMemoryEntitlementCache(clock=frozen_clock, default_ttl_seconds=300)

        assert cache.get("unknown") is None

    def test_entry_expires_after_ttl(self, frozen_clock):
        cache = InMemoryEntitlementCache(clock=frozen_clock, default_ttl_seconds=300)
        cache.put("tenant_123", _entitlement())

        frozen_clock.advance(seconds=299)
        assert cache.get("tenant_123") is not None

        frozen_clock.advance(seconds=1)
        assert cache.get("tenant_123") is None
        assert len(cache) == 0

    def test_put_replaces_whole_entry(self, frozen_clock):
        cache = InMemoryEntitlementCache(clock=frozen_clock, default_ttl_seconds=300)
        cache.put("tenant_123", _entitlement(plan_slug="starter"))

        cache.put("tenant_123", _entitlement(plan_slug="business"))

        assert cache.get("tenant_123").entitlement.plan_slug == "business"

    def test_invalidate(self, frozen_clock):
        cache = InMemoryEntitlementCache(clock=frozen_clock, default_ttl_seconds=300)
        cache.put("tenant_123", _entitlement())

        assert cache.invalidate("tenant_123") is True
        assert cache.get("tenant_123") is None
        assert cache.invalidate("tenant_123") is False

    def test_eviction_at_max_size(self, frozen_clock):
        cache = InMemoryEntitlementCache(clock=frozen_clock, default_ttl_seconds=300, max_size=2)
        cache.put("tenant_a", _entitlement("tenant_a"), ttl_seconds=10)
        cache.put("tenant_b", _entitlement("tenant_b"), ttl_seconds=100)

        cache.put("tenant_c", _entitlement("tenant_c"))

        assert cache.get("tenant_a") is None
        assert cache.get("tenant_b") is not None
        assert cache.get("tenant_c") is not None

    def test_zero_ttl_is_immediately_stale(self, frozen_clock):
        cache = InMemoryEntitlementCache(clock=frozen_clock, default_ttl_seconds=0)
        cache.put("tenant_123", _entitlement())

        assert cache.get("tenant_123") is None


class TestRedisEntitlementCache:
    """Tests for the shared tier."""

    def test_put_uses_setex_with_ttl(self, frozen_clock):
        client = _redis_client()
        cache = RedisEntitlementCache(client, clock=frozen_clock, default_ttl_seconds=120)

        cache.put("tenant_123", _entitlement())

        key, payload, ttl = client.set.call_args[0]
        assert key == f"{CACHE_KEY_PREFIX}tenant_123"
        assert ttl == 120
        assert json.loads(payload)["tenant_id"] == "tenant_123"

    def test_get_round_trip(self, frozen_clock):
        cache = RedisEntitlementCache(_redis_client(), clock=frozen_clock, default_ttl_seconds=120)
        cache.put("tenant_123", _entitlement(features=("orders", "kds")))

        entry = cache.get("tenant_123")

        assert entry.entitlement.features == frozenset({"orders", "kds"})

    def test_corrupt_payload_is_dropped(self, frozen_clock):
        store = {f"{CACHE_KEY_PREFIX}tenant_123": "{not json"}
        client = _redis_client(store)
        cache = RedisEntitlementCache(client, clock=frozen_clock, default_ttl_seconds=120)

        assert cache.get("tenant_123") is None
        assert f"{CACHE_KEY_PREFIX}tenant_123" not in store

    def test_expired_payload_is_a_miss(self, frozen_clock):
        cache = RedisEntitlementCache(_redis_client(), clock=frozen_clock, default_ttl_seconds=60)
        cache.put("tenant_123", _entitlement())

        frozen_clock.advance(seconds=61)

        assert cache.get("tenant_123") is None


class TestEntitlementCache:
    """Tests for the two-tier facade."""

    def test_local_only_when_redis_unavailable(self, frozen_clock, unavailable_redis):
        cache = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=unavailable_redis)

        cache.put("tenant_123", _entitlement())

        assert cache.get("tenant_123") is not None
        assert cache.invalidate("tenant_123", reason="plan_change") is True
        assert cache.get("tenant_123") is None
        unavailable_redis.publish.assert_not_called()

    def test_shared_hit_promotes_to_local(self, frozen_clock):
        store = {}
        writer = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=_redis_client(store))
        reader = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=_redis_client(store))

        writer.put("tenant_123", _entitlement())
        entry = reader.get("tenant_123")

        assert entry is not None
        assert reader.local.get("tenant_123") is not None

    def test_invalidate_clears_both_tiers_and_publishes(self, frozen_clock):
        store = {}
        client = _redis_client(store)
        cache = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=client)
        cache.put("tenant_123", _entitlement())

        cache.invalidate("tenant_123", reason="plan_change")

        assert cache.get("tenant_123") is None
        assert store == {}
        channel, message = client.publish.call_args[0]
        assert channel == INVALIDATION_CHANNEL
        payload = json.loads(message)
        assert payload["tenant_id"] == "tenant_123"
        assert payload["reason"] == "plan_change"
        assert payload["origin"] == cache.instance_id

    def test_invalidation_message_from_other_process(self, frozen_clock, unavailable_redis):
        cache = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=unavailable_redis)
        cache.put("tenant_123", _entitlement())

        applied = cache.handle_invalidation_message(json.dumps({
            "tenant_id": "tenant_123",
            "origin": "another-instance",
        }))

        assert applied is True
        assert cache.get("tenant_123") is None

    def test_own_invalidation_message_ignored(self, frozen_clock, unavailable_redis):
        cache = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=unavailable_redis)

        applied = cache.handle_invalidation_message(json.dumps({
            "tenant_id": "tenant_123",
            "origin": cache.instance_id,
        }))

        assert applied is False

    def test_wildcard_invalidation_message(self, frozen_clock, unavailable_redis):
        cache = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=unavailable_redis)
        cache.put("tenant_a", _entitlement("tenant_a"))
        cache.put("tenant_b", _entitlement("tenant_b"))

        cache.handle_invalidation_message(json.dumps({"tenant_id": "*", "origin": "other"}))

        assert len(cache.local) == 0

    def test_malformed_invalidation_message(self, frozen_clock, unavailable_redis):
        cache = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=unavailable_redis)

        assert cache.handle_invalidation_message("not json") is False
        assert cache.handle_invalidation_message(json.dumps({"origin": "other"})) is False

    def test_invalidate_all_publishes_wildcard(self, frozen_clock):
        client = _redis_client()
        cache = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=client)
        cache.put("tenant_123", _entitlement())

        cache.invalidate_all(reason="catalog_reload")

        assert len(cache.local) == 0
        client.delete_pattern.assert_called_once_with(f"{CACHE_KEY_PREFIX}*")
        payload = json.loads(client.publish.call_args[0][1])
        assert payload["tenant_id"] == "*"


class TestCacheSingleton:
    """Tests for the module-level singleton."""

    def test_set_and_get(self, entitlement_cache):
        assert get_entitlement_cache() is entitlement_cache

    def test_invalidate_tenant_entitlements_uses_singleton(self, entitlement_cache):
        entitlement_cache.put("tenant_123", _entitlement())

        assert invalidate_tenant_entitlements("tenant_123", reason="test") is True
        assert entitlement_cache.get("tenant_123") is None


class TestInvalidationListener:
    """Tests for the pub/sub listener."""

    def test_does_not_start_without_redis(self, entitlement_cache, unavailable_redis):
        listener = InvalidationListener(entitlement_cache, redis_client=unavailable_redis)

        assert listener.start() is False
        listener.stop()

    def test_subscribes_and_stops(self, entitlement_cache):
        pubsub = MagicMock()
        pubsub.get_message.return_value = None
        client = Mock()
        client.available = True
        client.raw.pubsub.return_value = pubsub

        listener = InvalidationListener(entitlement_cache, redis_client=client)
        assert listener.start() is True
        assert listener.start() is False

        listener.stop()

        pubsub.subscribe.assert_called_once_with(INVALIDATION_CHANNEL)
        pubsub.close.assert_called_once()

    def test_applies_messages_until_connection_lost(self, entitlement_cache):
        entitlement_cache.put("tenant_123", _entitlement())
        pubsub = MagicMock()
        pubsub.get_message.side_effect = [
            {"type": "message", "data": json.dumps({"tenant_id": "tenant_123", "origin": "other"})},
            redis.ConnectionError("gone"),
        ]
        client = Mock()
        client.available = True
        client.raw.pubsub.return_value = pubsub

        listener = InvalidationListener(entitlement_cache, redis_client=client)
        listener.start()
        listener._thread.join(timeout=5.0)
        listener.stop()

        assert entitlement_cache.get("tenant_123") is None
