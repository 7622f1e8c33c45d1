"""Result cache for search, config and validate operations.

Reads never raise: a backend failure is logged and treated as a miss. Writes
are best effort. Deployments are never cached.
"""

import hashlib
import json
from typing import Any

from pydantic import ValidationError

from ..core.cache_backend import CacheBackend, CacheError, get_cache_backend
from ..core.config import Settings, get_settings_instance
from ..core.logging import get_logger
from ..schemas.operation import OperationEvent
from ..schemas.plugin import CacheEntry

logger = get_logger(__name__)

CACHE_KEY_PREFIX = "mcpgate:cache:"


def _normalize(value: Any, key: str | None = None) -> Any:
    if isinstance(value, dict):
        return {k: _normalize(v, k) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, str):
        value = value.strip()
        return value.lower() if key == "slug" else value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def normalize_params(params: dict[str, Any]) -> dict[str, Any]:
    """Canonical form of operation parameters.

    Strings are stripped, the slug is lower-cased, ``None`` values are dropped
    and integral floats collapse to ints, so equivalent requests share a key.
    """
    return _normalize(params)


def cache_key(event: OperationEvent | str, params: dict[str, Any]) -> str:
    op = event.value if isinstance(event, OperationEvent) else event
    canonical = json.dumps(
        {"op": op, "params": normalize_params(params)},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return CACHE_KEY_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResultCache:
    """Operation-level cache over the shared cache backend."""

    def __init__(self, backend: CacheBackend | None = None, settings: Settings | None = None):
        self._backend = backend
        self.settings = settings or get_settings_instance()

    async def _get_backend(self) -> CacheBackend:
        if self._backend is None:
            self._backend = await get_cache_backend()
        return self._backend

    def ttl_for(self, event: OperationEvent) -> int | None:
        """TTL in seconds, or None when ``event`` is not cacheable."""
        match event:
            case OperationEvent.SEARCH:
                return self.settings.cache_ttl_search
            case OperationEvent.CONFIG:
                return self.settings.cache_ttl_config
            case OperationEvent.VALIDATE:
                return self.settings.cache_ttl_validate
            case OperationEvent.DEPLOY:
                return None

    async def get(self, event: OperationEvent, params: dict[str, Any]) -> Any | None:
        """Return the cached payload, or None on a miss or any backend failure."""
        if self.ttl_for(event) is None:
            return None
        key = cache_key(event, params)
        try:
            backend = await self._get_backend()
            raw = await backend.get(key)
        except CacheError as e:
            logger.warning("Cache read failed; treating as miss", extra={"event": event.value, "error": e.message})
            return None
        except Exception as e:
            logger.warning(
                "Unexpected cache read failure; treating as miss",
                extra={"event": event.value, "error": type(e).__name__},
            )
            return None

        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable cache entry", extra={"event": event.value})
            return None
        if entry.key != key or entry.is_expired():
            return None
        return entry.payload

    async def set(self, event: OperationEvent, params: dict[str, Any], payload: Any) -> bool:
        """Store ``payload``. Returns False when not cached (deploy, or backend failure)."""
        ttl = self.ttl_for(event)
        if ttl is None or ttl <= 0:
            return False
        key = cache_key(event, params)
        entry = CacheEntry(key=key, payload=payload, ttl_ms=ttl * 1000)
        try:
            backend = await self._get_backend()
            await backend.set(key, entry.model_dump_json(by_alias=True), ttl_seconds=ttl)
            return True
        except CacheError as e:
            logger.warning("Cache write failed", extra={"event": event.value, "error": e.message})
        except Exception as e:
            logger.warning("Unexpected cache write failure", extra={"event": event.value, "error": type(e).__name__})
        return False
