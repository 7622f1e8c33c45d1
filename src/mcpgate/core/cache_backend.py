"""
Unified Cache Backend Interface for mcpgate.

This module defines the CacheBackend protocol shared by the result cache, the
billing ledger, the validation record store and the rate limiter. It supports
two interchangeable implementations:
- RedisCacheBackend: For multi-node deployments sharing cache and ledger state
- InMemoryCacheBackend: For single-node/development deployments

Backend selection is automatic based on the MCPGATE_REDIS_URL configuration.

Example usage:
    from mcpgate.core.cache_backend import get_cache_backend

    backend = await get_cache_backend()
    await backend.set("my_key", "my_value", ttl_seconds=300)
    created = await backend.set_if_absent("ledger:abc", "{...}")
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Global cache backend instance (singleton)
_cache_backend: "CacheBackend | None" = None

# Global Redis client instance (internal use only)
_redis_client: Any | None = None


class CacheError(Exception):
    """Base exception for cache operations.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class CacheConnectionError(CacheError):
    """Raised when the cache backend is unreachable (Redis down, network timeout)."""


class CacheKeyError(CacheError):
    """Raised when the provided key is invalid (e.g. empty)."""


class CacheTypeError(CacheError):
    """Raised when an operation is attempted on a key with an incompatible value type."""


@runtime_checkable
class CacheBackend(Protocol):
    """Protocol defining the cache backend interface.

    Keys and values are strings; consumers serialise complex objects (JSON)
    before storing and namespace their keys (``mcpgate:cache:...``,
    ``mcpgate:ledger:...``).
    """

    async def get(self, key: str) -> str | None:
        """Return the value for ``key``, or None when missing or expired."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Store ``value``. A non-positive TTL deletes the key."""
        ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Atomically store ``value`` only if ``key`` does not exist.

        Returns:
            True if this call created the key, False if it already existed.
        """
        ...

    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True if it existed."""
        ...

    async def exists(self, key: str) -> bool:
        """Check if ``key`` exists and is not expired."""
        ...

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set or update the TTL of an existing key."""
        ...

    async def incr(self, key: str, amount: int = 1) -> int:
        """Increment a numeric value, treating a missing key as 0."""
        ...


class InMemoryCacheBackend:
    """In-memory cache implementation with TTL support.

    Thread-safe implementation suitable for single-process deployments. Uses
    threading.RLock for thread safety and supports TTL expiration with lazy
    cleanup on access plus periodic cleanup.

    When ``max_entries`` is positive the store is bounded: writing a new key
    while full evicts the least-recently-written entry that has a TTL. Keys
    without a TTL (ledger entries) are never evicted. Reads do not refresh an
    entry's position.

    Limitations:
        - Data is not shared across processes
        - Data is lost on process restart
    """

    def __init__(self, cleanup_interval_seconds: int = 60, max_entries: int = 0):
        """Initialize the in-memory cache.

        Args:
            cleanup_interval_seconds: Interval for periodic cleanup of expired
                entries. Set to 0 to disable periodic cleanup.
            max_entries: Upper bound on stored keys, 0 for unbounded.
        """
        # Storage: key -> (value, expiry_timestamp or None for no expiry), in write order
        self._data: OrderedDict[str, tuple[str, float | None]] = OrderedDict()
        self._lock = threading.RLock()
        self._cleanup_interval = cleanup_interval_seconds
        self._last_cleanup = time.time()
        self._max_entries = max(0, int(max_entries))

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _is_expired(self, expiry: float | None) -> bool:
        if expiry is None:
            return False
        return time.time() > expiry

    def _maybe_cleanup(self) -> None:
        """Perform periodic cleanup of expired entries. Call while holding the lock."""
        if self._cleanup_interval <= 0:
            return

        current_time = time.time()
        if current_time - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = current_time
        expired_keys = [key for key, (_, expiry) in self._data.items() if self._is_expired(expiry)]
        for key in expired_keys:
            del self._data[key]

    def _live_entry(self, key: str) -> tuple[str, float | None] | None:
        """Return the entry for ``key`` if present and unexpired. Call while holding the lock."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if self._is_expired(entry[1]):
            del self._data[key]
            return None
        return entry

    def _write(self, key: str, value: str, expiry: float | None) -> None:
        """Store an entry as the most recently written. Call while holding the lock."""
        if key in self._data:
            del self._data[key]
        elif self._max_entries and len(self._data) >= self._max_entries:
            # Prefer dropping expired entries before live ones
            for stale in [k for k, (_, exp) in self._data.items() if self._is_expired(exp)]:
                del self._data[stale]
            if len(self._data) >= self._max_entries:
                # Only keys with a TTL are evictable, like Redis volatile-* policies
                evicted = next((k for k, (_, exp) in self._data.items() if exp is not None), None)
                if evicted is not None:
                    del self._data[evicted]
                    logger.debug("Evicted least recently written cache entry", extra={"cache_key": evicted})
        self._data[key] = (value, expiry)

    @staticmethod
    def _check_key(key: str) -> None:
        if not key:
            raise CacheKeyError("Cache key cannot be empty")

    async def get(self, key: str) -> str | None:
        self._check_key(key)
        with self._lock:
            self._maybe_cleanup()
            entry = self._live_entry(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        self._check_key(key)
        with self._lock:
            self._maybe_cleanup()

            # Handle immediate deletion for non-positive TTL
            if ttl_seconds is not None and ttl_seconds <= 0:
                self._data.pop(key, None)
                return True

            expiry = time.time() + ttl_seconds if ttl_seconds is not None else None
            self._write(key, value, expiry)
            return True

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        self._check_key(key)
        with self._lock:
            self._maybe_cleanup()
            if self._live_entry(key) is not None:
                return False
            if ttl_seconds is not None and ttl_seconds <= 0:
                return False
            expiry = time.time() + ttl_seconds if ttl_seconds is not None else None
            self._write(key, value, expiry)
            return True

    async def delete(self, key: str) -> bool:
        self._check_key(key)
        with self._lock:
            self._maybe_cleanup()
            if self._live_entry(key) is None:
                return False
            del self._data[key]
            return True

    async def exists(self, key: str) -> bool:
        self._check_key(key)
        with self._lock:
            self._maybe_cleanup()
            return self._live_entry(key) is not None

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        self._check_key(key)
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        with self._lock:
            self._maybe_cleanup()
            entry = self._live_entry(key)
            if entry is None:
                return False
            # Updating a TTL is not a write for eviction purposes
            self._data[key] = (entry[0], time.time() + ttl_seconds)
            return True

    async def incr(self, key: str, amount: int = 1) -> int:
        self._check_key(key)
        with self._lock:
            self._maybe_cleanup()

            current_value = 0
            current_expiry: float | None = None
            entry = self._live_entry(key)
            if entry is not None:
                value_str, current_expiry = entry
                try:
                    current_value = int(value_str)
                except ValueError as e:
                    raise CacheTypeError(f"Value for key '{key}' is not a valid integer: {value_str!r}") from e

            new_value = current_value + amount
            self._write(key, str(new_value), current_expiry)
            return new_value


class RedisCacheBackend:
    """Redis-backed cache implementation.

    Uses the Redis client configured via MCPGATE_REDIS_URL. Suitable for
    multi-node deployments where the cache, ledger and rate limit counters
    must be shared. ``set_if_absent`` maps to ``SET NX``, which is atomic
    across every node talking to the same Redis.

    Use ``get_cache_backend()`` to obtain a configured instance rather than
    constructing this class directly.
    """

    def __init__(self, redis_client: Any):
        self._client = redis_client

    @property
    def client(self) -> Any:
        """The underlying async Redis client (used for Lua scripts)."""
        return self._client

    @staticmethod
    def _check_key(key: str) -> None:
        if not key:
            raise CacheKeyError("Cache key cannot be empty")

    async def _call(self, op: str, key: str, action: Callable[[], Awaitable[Any]], **context: Any) -> Any:
        """Run one Redis command, wrapping client failures as ``CacheConnectionError``."""
        self._check_key(key)
        try:
            return await action()
        except Exception as e:
            text = str(e).lower()
            if op == "INCR" and ("not an integer" in text or "wrongtype" in text):
                raise CacheTypeError(f"Value for key '{key}' is not a valid integer", details={"key": key}) from e
            logger.error("Redis %s failed for key '%s': %s", op, key, e)
            raise CacheConnectionError(
                f"Redis {op} failed for key '{key}'", details={"key": key, "error": str(e), **context}
            ) from e

    async def get(self, key: str) -> str | None:
        return await self._call("GET", key, lambda: self._client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        if ttl_seconds is not None and ttl_seconds <= 0:
            await self._call("DEL", key, lambda: self._client.delete(key))
        elif ttl_seconds is not None:
            await self._call("SETEX", key, lambda: self._client.setex(key, ttl_seconds, value))
        else:
            await self._call("SET", key, lambda: self._client.set(key, value))
        return True

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        self._check_key(key)
        if ttl_seconds is not None and ttl_seconds <= 0:
            return False
        # SET NX answers None when the key already exists
        result = await self._call("SET NX", key, lambda: self._client.set(key, value, nx=True, ex=ttl_seconds))
        return bool(result)

    async def delete(self, key: str) -> bool:
        return await self._call("DEL", key, lambda: self._client.delete(key)) > 0

    async def exists(self, key: str) -> bool:
        return await self._call("EXISTS", key, lambda: self._client.exists(key)) > 0

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        self._check_key(key)
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        result = await self._call(
            "EXPIRE", key, lambda: self._client.expire(key, ttl_seconds), ttl_seconds=ttl_seconds
        )
        return bool(result)

    async def incr(self, key: str, amount: int = 1) -> int:
        if amount == 1:
            result = await self._call("INCR", key, lambda: self._client.incr(key))
        else:
            result = await self._call("INCR", key, lambda: self._client.incrby(key, amount), amount=amount)
        return int(result)


# =============================================================================
# Redis Client Management (Internal)
# =============================================================================


async def _create_redis_client() -> Any:
    """Create and test a Redis client connection.

    Raises:
        CacheConnectionError: If Redis connection fails.
    """
    from .config import get_settings_instance

    settings = get_settings_instance()

    try:
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_connection_timeout,
        )
        await client.ping()
        logger.info(
            "Redis client initialized successfully",
            extra={
                "connection_timeout": settings.redis_connection_timeout,
                "socket_timeout": settings.redis_socket_timeout,
            },
        )
        return client
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}")
        raise CacheConnectionError(f"Redis connection failed: {e}", details={"error": str(e)}) from e


async def _get_redis_client() -> Any:
    global _redis_client  # noqa: PLW0603

    if _redis_client is None:
        _redis_client = await _create_redis_client()
    return _redis_client


# =============================================================================
# Cache Backend Factory
# =============================================================================


async def get_cache_backend() -> CacheBackend:
    """Get the configured cache backend (singleton).

    Selection logic:
    1. MCPGATE_REDIS_URL set and Redis reachable -> RedisCacheBackend
    2. MCPGATE_REDIS_URL set, unreachable, fallback enabled -> InMemoryCacheBackend (with warning)
    3. MCPGATE_REDIS_URL not set -> InMemoryCacheBackend

    Raises:
        CacheConnectionError: If Redis is required but unavailable.
    """
    global _cache_backend  # noqa: PLW0603

    if _cache_backend is not None:
        return _cache_backend

    from .config import get_settings_instance

    settings = get_settings_instance()

    if not settings.redis_enabled and not settings.redis_required:
        logger.info("No Redis URL configured, using InMemoryCacheBackend")
        _cache_backend = InMemoryCacheBackend(max_entries=settings.cache_max_entries)
        return _cache_backend

    try:
        redis_client = await _get_redis_client()
        _cache_backend = RedisCacheBackend(redis_client)
        logger.info("Using RedisCacheBackend")
        return _cache_backend
    except CacheConnectionError as e:
        if settings.redis_required:
            logger.error("Redis is required but connection failed", extra={"error": str(e)})
            raise CacheConnectionError(f"Redis is required but connection failed: {e}") from e

        if not settings.redis_fallback_enabled:
            logger.error("Redis fallback is disabled and Redis connection failed", extra={"error": str(e)})
            raise CacheConnectionError(f"Redis connection failed and fallback is disabled: {e}") from e

        logger.warning(
            "Redis connection failed, falling back to InMemoryCacheBackend", extra={"error": str(e)}
        )
        _cache_backend = InMemoryCacheBackend(max_entries=settings.cache_max_entries)
        return _cache_backend


async def initialize_cache_backend() -> CacheBackend:
    """Initialize the cache backend during application startup."""
    return await get_cache_backend()


async def close_cache_backend() -> None:
    """Close the shared Redis client, if any, and drop the singleton."""
    global _cache_backend, _redis_client  # noqa: PLW0603
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.warning(f"Error closing Redis client: {e}")
    _cache_backend = None
    _redis_client = None


def reset_cache_backend() -> None:
    """Reset the cache backend singleton (for testing only)."""
    global _cache_backend, _redis_client  # noqa: PLW0603
    _cache_backend = None
    _redis_client = None
