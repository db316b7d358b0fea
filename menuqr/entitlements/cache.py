"""
Entitlement Cache - tenant-keyed, TTL-bounded cache with explicit invalidation.

Provides:
- EntitlementCacheBackend: get/put/invalidate interface
- InMemoryEntitlementCache: process-local tier with an injectable clock
- RedisEntitlementCache: shared tier stored with SETEX
- EntitlementCache: two-tier facade that publishes invalidations
- InvalidationListener: drops local entries when another process invalidates

CRITICAL: Every path that mutates a Subscription or its Plan binding MUST
call invalidate(tenant_id) synchronously before returning success.
"""

import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, Optional

import redis

from menuqr.entitlements.models import EntitlementCacheEntry, ResolvedEntitlement
from menuqr.models.base import utc_now

logger = logging.getLogger(__name__)

# Cache configuration
DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_CACHE_MAX_SIZE = 10000
INVALIDATION_CHANNEL = "entitlements:invalidations"
CACHE_KEY_PREFIX = "entitlement:"

Clock = Callable[[], datetime]


def _configured_ttl() -> int:
    return int(os.getenv("ENTITLEMENT_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS))


class EntitlementCacheBackend(ABC):
    """Storage interface the Enforcement Layer depends on."""

    @abstractmethod
    def get(self, tenant_id: str) -> Optional[EntitlementCacheEntry]:
        """Return the live entry for the tenant, or None on miss/expiry."""

    @abstractmethod
    def put(
        self,
        tenant_id: str,
        entitlement: ResolvedEntitlement,
        ttl_seconds: Optional[int] = None,
    ) -> EntitlementCacheEntry:
        """Store a snapshot, replacing any previous entry atomically."""

    @abstractmethod
    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> bool:
        """Drop the tenant's entry. The next get() is a miss."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every entry."""


class InMemoryEntitlementCache(EntitlementCacheBackend):
    """
    Process-local cache.

    Thread-safe: entries are immutable and swapped under a lock, so a
    reader sees either the old entry or the new one, never a mix.
    """

    def __init__(
        self,
        clock: Clock = utc_now,
        default_ttl_seconds: Optional[int] = None,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
    ):
        self._clock = clock
        self._default_ttl = default_ttl_seconds if default_ttl_seconds is not None else _configured_ttl()
        self._max_size = max_size
        self._entries: Dict[str, EntitlementCacheEntry] = {}
        self._lock = Lock()

    @property
    def default_ttl_seconds(self) -> int:
        return self._default_ttl

    def get(self, tenant_id: str) -> Optional[EntitlementCacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[tenant_id]
                return None
            return entry

    def put(
        self,
        tenant_id: str,
        entitlement: ResolvedEntitlement,
        ttl_seconds: Optional[int] = None,
    ) -> EntitlementCacheEntry:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        entry = EntitlementCacheEntry(
            tenant_id=tenant_id,
            entitlement=entitlement,
            expires_at=self._clock() + timedelta(seconds=ttl),
        )
        self.store(entry)
        return entry

    def store(self, entry: EntitlementCacheEntry) -> None:
        """Insert a pre-built entry (used when promoting from the shared tier)."""
        with self._lock:
            if entry.tenant_id not in self._entries and len(self._entries) >= self._max_size:
                # Evict the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
                del self._entries[oldest]
            self._entries[entry.tenant_id] = entry

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> bool:
        with self._lock:
            return self._entries.pop(tenant_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisClient:
    """
    Redis client wrapper with graceful degradation.

    When REDIS_URL is unset or the server is unreachable every operation
    becomes a no-op and the cache runs process-local only.
    """

    _instance: Optional['RedisClient'] = None
    _lock = Lock()

    def __new__(cls):
        """Singleton pattern."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._redis = None
        self._available = False
        self._connect()
        self._initialized = True

    def _connect(self) -> None:
        """Connect to Redis if configured."""
        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            logger.info("REDIS_URL not configured - entitlement cache is process-local")
            return

        try:
            self._redis = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            self._redis.ping()
            self._available = True
            logger.info("Redis connection established for entitlement cache")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e} - shared cache tier disabled")

    @property
    def available(self) -> bool:
        return self._available and self._redis is not None

    @property
    def raw(self):
        """Underlying redis.Redis (None when unavailable)."""
        return self._redis

    def get(self, key: str) -> Optional[str]:
        if not self.available:
            return None
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed: {e}")
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        if not self.available:
            return False
        try:
            self._redis.setex(key, ttl_seconds, value)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis SET failed: {e}")
            return False

    def delete(self, *keys: str) -> int:
        if not self.available or not keys:
            return 0
        try:
            return self._redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE failed: {e}")
            return 0

    def delete_pattern(self, pattern: str) -> int:
        if not self.available:
            return 0
        try:
            keys = list(self._redis.scan_iter(pattern))
            if keys:
                return self._redis.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE pattern failed: {e}")
            return 0

    def publish(self, channel: str, message: str) -> int:
        if not self.available:
            return 0
        try:
            return self._redis.publish(channel, message)
        except redis.RedisError as e:
            logger.warning(f"Redis PUBLISH failed: {e}")
            return 0


class RedisEntitlementCache(EntitlementCacheBackend):
    """Shared tier. Entries expire server-side via SETEX and client-side via expires_at."""

    def __init__(
        self,
        client: RedisClient,
        clock: Clock = utc_now,
        default_ttl_seconds: Optional[int] = None,
    ):
        self._client = client
        self._clock = clock
        self._default_ttl = default_ttl_seconds if default_ttl_seconds is not None else _configured_ttl()

    @property
    def available(self) -> bool:
        return self._client.available

    def _key(self, tenant_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}{tenant_id}"

    def get(self, tenant_id: str) -> Optional[EntitlementCacheEntry]:
        data = self._client.get(self._key(tenant_id))
        if not data:
            return None
        try:
            entry = EntitlementCacheEntry.from_json(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to deserialize cached entitlement: {e}")
            self._client.delete(self._key(tenant_id))
            return None
        if entry.is_expired(self._clock()):
            return None
        return entry

    def put(
        self,
        tenant_id: str,
        entitlement: ResolvedEntitlement,
        ttl_seconds: Optional[int] = None,
    ) -> EntitlementCacheEntry:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        entry = EntitlementCacheEntry(
            tenant_id=tenant_id,
            entitlement=entitlement,
            expires_at=self._clock() + timedelta(seconds=ttl),
        )
        # SETEX replaces the whole value in one command
        self._client.set(self._key(tenant_id), entry.to_json(), max(ttl, 1))
        return entry

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> bool:
        return self._client.delete(self._key(tenant_id)) > 0

    def clear(self) -> None:
        self._client.delete_pattern(f"{CACHE_KEY_PREFIX}*")


class EntitlementCache(EntitlementCacheBackend):
    """
    Two-tier entitlement cache.

    Reads hit the process-local tier first, then the shared Redis tier.
    Invalidation clears both tiers and publishes on INVALIDATION_CHANNEL so
    every other process drops its local copy.

    Usage:
        cache = get_entitlement_cache()

        entry = cache.get(tenant_id)
        if entry is None:
            entry = cache.put(tenant_id, resolve(subscription, plan))

        # After any subscription or plan-binding change
        cache.invalidate(tenant_id, reason="plan_change")
    """

    def __init__(
        self,
        clock: Clock = utc_now,
        ttl_seconds: Optional[int] = None,
        redis_client: Optional[RedisClient] = None,
        max_size: Optional[int] = None,
    ):
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else _configured_ttl()
        if max_size is None:
            max_size = int(os.getenv("ENTITLEMENT_CACHE_MAX_SIZE", DEFAULT_CACHE_MAX_SIZE))
        self.local = InMemoryEntitlementCache(
            clock=clock,
            default_ttl_seconds=self._ttl_seconds,
            max_size=max_size,
        )
        self._redis_client = redis_client if redis_client is not None else RedisClient()
        self.shared = RedisEntitlementCache(
            self._redis_client,
            clock=clock,
            default_ttl_seconds=self._ttl_seconds,
        )
        # Identifies this process on the invalidation channel
        self.instance_id = str(uuid.uuid4())

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def get(self, tenant_id: str) -> Optional[EntitlementCacheEntry]:
        entry = self.local.get(tenant_id)
        if entry is not None:
            logger.debug(f"Cache hit (memory) for tenant {tenant_id}")
            return entry

        if self.shared.available:
            entry = self.shared.get(tenant_id)
            if entry is not None:
                logger.debug(f"Cache hit (Redis) for tenant {tenant_id}")
                self.local.store(entry)
                return entry

        logger.debug(f"Cache miss for tenant {tenant_id}")
        return None

    def put(
        self,
        tenant_id: str,
        entitlement: ResolvedEntitlement,
        ttl_seconds: Optional[int] = None,
    ) -> EntitlementCacheEntry:
        entry = self.local.put(tenant_id, entitlement, ttl_seconds)
        if self.shared.available:
            self.shared.put(tenant_id, entitlement, ttl_seconds)
        return entry

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> bool:
        """
        Invalidate the tenant's cached entitlement in every process.

        CRITICAL: Must be called whenever a subscription or its plan changes.
        """
        deleted = self.local.invalidate(tenant_id)

        if self.shared.available:
            if self.shared.invalidate(tenant_id):
                deleted = True
            self._redis_client.publish(
                INVALIDATION_CHANNEL,
                json.dumps({
                    "tenant_id": tenant_id,
                    "reason": reason,
                    "origin": self.instance_id,
                    "timestamp": utc_now().isoformat(),
                })
            )

        logger.info(
            "Invalidated entitlement cache",
            extra={"tenant_id": tenant_id, "reason": reason, "had_entry": deleted}
        )
        return deleted

    def invalidate_local(self, tenant_id: str) -> bool:
        """Drop only this process's copy (invalidation channel handler)."""
        return self.local.invalidate(tenant_id)

    def clear(self) -> None:
        self.invalidate_all(reason="clear")

    def invalidate_all(self, reason: Optional[str] = None) -> None:
        """
        Invalidate all cached entitlements.

        Use with caution - only for catalog reloads or emergencies.
        """
        self.local.clear()
        if self.shared.available:
            self.shared.clear()
            self._redis_client.publish(
                INVALIDATION_CHANNEL,
                json.dumps({
                    "tenant_id": "*",
                    "reason": reason or "mass_invalidation",
                    "origin": self.instance_id,
                    "timestamp": utc_now().isoformat(),
                })
            )
        logger.warning("Mass invalidation of entitlement cache", extra={"reason": reason})

    def handle_invalidation_message(self, raw: str) -> bool:
        """
        Apply an invalidation published by another process.

        Returns:
            True if the message was applied
        """
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed invalidation message", extra={"payload": raw})
            return False

        if message.get("origin") == self.instance_id:
            return False

        tenant_id = message.get("tenant_id")
        if tenant_id == "*":
            self.local.clear()
            return True
        if tenant_id:
            self.invalidate_local(tenant_id)
            return True
        return False


class InvalidationListener:
    """
    Background subscriber on INVALIDATION_CHANNEL.

    Started from the application lifespan when Redis is available.
    """

    def __init__(self, cache: EntitlementCache, redis_client: Optional[RedisClient] = None):
        self._cache = cache
        self._client = redis_client or RedisClient()
        self._pubsub = None
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._lock = Lock()

    def start(self) -> bool:
        with self._lock:
            if self._running or not self._client.available:
                return False
            self._pubsub = self._client.raw.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(INVALIDATION_CHANNEL)
            self._running = True
            self._thread = threading.Thread(
                target=self._run,
                name="entitlement-invalidation-listener",
                daemon=True,
            )
            self._thread.start()
        logger.info("Entitlement invalidation listener started")
        return True

    def _run(self) -> None:
        while self._running:
            try:
                message = self._pubsub.get_message(timeout=1.0)
            except redis.RedisError as e:
                logger.error(
                    "Invalidation listener lost Redis connection",
                    extra={"error": str(e), "alert_type": "entitlement_invalidation_channel"},
                )
                self._running = False
                break
            if message and message.get("type") == "message":
                self._cache.handle_invalidation_message(message.get("data"))

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._thread:
                self._thread.join(timeout=5.0)
                self._thread = None
            if self._pubsub is not None:
                self._pubsub.close()
                self._pubsub = None


# Module-level singleton
_cache_instance: Optional[EntitlementCache] = None
_cache_lock = Lock()


def get_entitlement_cache() -> EntitlementCache:
    """Get the singleton EntitlementCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = EntitlementCache()
    return _cache_instance


def set_entitlement_cache(cache: Optional[EntitlementCache]) -> None:
    """Replace the singleton (tests, or app startup with a custom clock)."""
    global _cache_instance
    with _cache_lock:
        _cache_instance = cache


def invalidate_tenant_entitlements(tenant_id: str, reason: Optional[str] = None) -> bool:
    """
    Convenience function to invalidate tenant entitlements.

    Call this whenever a subscription or its plan binding changes.
    """
    return get_entitlement_cache().invalidate(tenant_id, reason)
