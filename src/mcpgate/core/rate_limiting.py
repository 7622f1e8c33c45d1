"""
Rate limiting for the operation router.

Two buckets exist: deployments are limited per hosting-credential fingerprint,
every other operation per anonymous client IP class (/24 for IPv4, /48 for
IPv6). Both use a rolling hour.

Both backends run the same token bucket: an atomic Lua script on Redis, and
a lock-guarded JSON document on the cache backend otherwise. The bucket refills
continuously, so no window boundary ever admits more than the capacity.
"""
from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from .cache_backend import CacheBackend, CacheError, get_cache_backend

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600


def _in_networks(address: str, networks: Sequence[Any]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def get_client_ip(headers: Any, client_host: str | None = None, trusted_proxies: Sequence[Any] = ()) -> str:
    """Extract the client IP.

    ``X-Forwarded-For`` is honoured only when the peer is a trusted proxy. The
    hops are then walked from the right, skipping trusted proxies, and the
    first untrusted hop is the client.
    """
    peer = client_host or "unknown"
    if not trusted_proxies or not _in_networks(peer, trusted_proxies):
        return peer
    forwarded = headers.get("X-Forwarded-For") if hasattr(headers, "get") else None
    hops = [hop.strip() for hop in (forwarded or "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _in_networks(hop, trusted_proxies):
            return hop
    return hops[0] if hops else peer


def ip_class(address: str) -> str:
    """Collapse an address to its network class (/24 IPv4, /48 IPv6).

    Unparseable input is returned unchanged so it still gets its own bucket.
    """
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return address
    prefix = 24 if ip.version == 4 else 48
    return str(ipaddress.ip_network(f"{ip}/{prefix}", strict=False))


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    retry_after_seconds: int = 0
    remaining: int = 0
    limit: int = 0
    reset_seconds: int = 0

    def to_headers(self) -> dict[str, str]:
        """Generate standard rate limit response headers."""
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(max(0, self.remaining)),
            "RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


# Lua script for token bucket: refill then try to consume tokens.
# KEYS[1]=bucket_key, ARGV[1]=now_ms, ARGV[2]=capacity, ARGV[3]=refill_tokens_per_ms, ARGV[4]=cost
TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local rate = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil then
  tokens = capacity
  ts = now
else
  local delta = math.max(0, now - ts)
  tokens = math.min(capacity, tokens + (delta * rate))
  ts = now
end
local allowed = 0
local retry_ms = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  if rate > 0 then
    retry_ms = math.ceil((cost - tokens) / rate)
  else
    retry_ms = 1000
  end
end
redis.call('HSET', key, 'tokens', tokens, 'ts', ts)
-- Keep bucket state beyond one full refill so waiting out the key gains nothing
redis.call('PEXPIRE', key, 7200000)
return {allowed, math.ceil(tokens), retry_ms, capacity}
"""


class TokenBucketRateLimiter:
    """Token bucket rate limiter over the shared cache backend.

    Uses an atomic Lua script when the backend exposes a Redis ``client``,
    and a locally locked bucket document otherwise.
    """

    def __init__(
        self,
        namespace: str,
        capacity: int,
        window_seconds: int = WINDOW_SECONDS,
        backend: CacheBackend | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.namespace = namespace
        self._clock = clock
        self._lock = asyncio.Lock()
        self.capacity = max(1, int(capacity))
        self.window_seconds = max(1, int(window_seconds))
        self.refill_per_second = self.capacity / float(self.window_seconds)
        self._backend = backend

    async def _get_backend(self) -> CacheBackend:
        if self._backend is None:
            self._backend = await get_cache_backend()
        return self._backend

    def _key(self, bucket: str) -> str:
        return f"{self.namespace}:{bucket}"

    async def check(self, key: str, cost: int = 1) -> RateLimitResult:
        """Check if a request is allowed and consume quota if so."""
        backend = await self._get_backend()
        bucket_key = self._key(key)
        redis_client = getattr(backend, "client", None)
        if redis_client is None:
            return await self._check_local_bucket(backend, bucket_key, cost)
        return await self._check_redis(backend, redis_client, bucket_key, cost)

    async def _check_local_bucket(self, backend: CacheBackend, bucket_key: str, cost: int) -> RateLimitResult:
        """Token bucket kept as a JSON document on the backend, same arithmetic as the Lua script."""
        state_key = f"{bucket_key}:tb"
        rate = self.refill_per_second
        async with self._lock:
            now = self._clock()
            try:
                raw = await backend.get(state_key)
                tokens = float(self.capacity)
                if raw is not None:
                    state = json.loads(raw)
                    delta = max(0.0, now - float(state["ts"]))
                    tokens = min(float(self.capacity), float(state["tokens"]) + delta * rate)
                allowed = tokens >= cost
                if allowed:
                    tokens -= cost
                # Kept beyond one full refill so waiting out the key gains nothing
                await backend.set(
                    state_key, json.dumps({"tokens": tokens, "ts": now}), ttl_seconds=2 * self.window_seconds
                )
            except (CacheError, ValueError, KeyError) as e:
                logger.exception("Local rate limiter failure; allowing request: %s", e)
                return RateLimitResult(allowed=True, remaining=self.capacity, limit=self.capacity)

        logger.debug("Local rate limit check: key=%s, tokens=%.3f, capacity=%d", state_key, tokens, self.capacity)

        reset_seconds = max(1, math.ceil((self.capacity - tokens) / rate))
        if allowed:
            return RateLimitResult(
                allowed=True,
                remaining=int(tokens),
                limit=self.capacity,
                reset_seconds=reset_seconds,
            )
        return RateLimitResult(
            allowed=False,
            retry_after_seconds=max(1, math.ceil((cost - tokens) / rate)),
            remaining=0,
            limit=self.capacity,
            reset_seconds=reset_seconds,
        )

    async def _check_redis(
        self, backend: CacheBackend, redis_client: Any, bucket_key: str, cost: int
    ) -> RateLimitResult:
        now_ms = int(self._clock() * 1000)
        rate_per_ms = self.refill_per_second / 1000.0
        try:
            res = await redis_client.eval(TOKEN_BUCKET_LUA, 1, bucket_key, now_ms, self.capacity, rate_per_ms, cost)
            allowed = int(res[0]) == 1
            tokens_left, retry_ms = int(res[1]), int(res[2])

            tokens_needed = self.capacity - tokens_left
            reset_ms = int(tokens_needed / rate_per_ms) if rate_per_ms > 0 else self.window_seconds * 1000

            return RateLimitResult(
                allowed=allowed,
                retry_after_seconds=max(1, int((retry_ms + 999) // 1000)) if not allowed else 0,
                remaining=max(0, tokens_left),
                limit=self.capacity,
                reset_seconds=max(1, int((reset_ms + 999) // 1000)),
            )
        except Exception as e:
            logger.warning("Rate limiter Lua failed (%s); falling back to the local bucket", e)
            return await self._check_local_bucket(backend, bucket_key, cost)


class RateLimitService:
    """Router-facing rate limiting: deploy limits per credential, the rest per IP class."""

    def __init__(self, settings: Any | None = None, backend: CacheBackend | None = None):
        if settings is None:
            from .config import get_settings_instance

            settings = get_settings_instance()

        self._settings = settings
        self._backend = backend
        self._enabled = getattr(settings, "enable_rate_limiting", True)
        self._deploy_limiter: TokenBucketRateLimiter | None = None
        self._anonymous_limiter: TokenBucketRateLimiter | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _get_deploy_limiter(self) -> TokenBucketRateLimiter:
        if self._deploy_limiter is None:
            self._deploy_limiter = TokenBucketRateLimiter(
                namespace="mcpgate:rl:deploy",
                capacity=self._settings.deploy_rate_limit_per_hour,
                backend=self._backend,
            )
        return self._deploy_limiter

    def _get_anonymous_limiter(self) -> TokenBucketRateLimiter:
        if self._anonymous_limiter is None:
            self._anonymous_limiter = TokenBucketRateLimiter(
                namespace="mcpgate:rl:anon",
                capacity=self._settings.anonymous_rate_limit_per_hour,
                backend=self._backend,
            )
        return self._anonymous_limiter

    async def check_deploy_limit(self, credential_fingerprint: str) -> RateLimitResult:
        """Deployments allowed per hosting credential per rolling hour."""
        if not self._enabled:
            return RateLimitResult(allowed=True, remaining=999, limit=999)
        return await self._get_deploy_limiter().check(key=credential_fingerprint)

    async def check_anonymous_limit(self, client_ip: str) -> RateLimitResult:
        """Non-deploy operations allowed per client IP class per rolling hour."""
        if not self._enabled:
            return RateLimitResult(allowed=True, remaining=999, limit=999)
        return await self._get_anonymous_limiter().check(key=ip_class(client_ip))
