"""Health check endpoint."""

import time
import uuid

import psutil
from fastapi import APIRouter, status

from ..core.cache_backend import get_cache_backend
from ..core.config import get_settings_instance
from ..core.logging import get_logger
from ..core.response import GatewayResponse

logger = get_logger(__name__)
router = APIRouter(prefix="/health", tags=["health"])

HEALTH_KEY_PREFIX = "mcpgate:health:"


async def _check_cache() -> dict:
    backend = await get_cache_backend()
    key = HEALTH_KEY_PREFIX + uuid.uuid4().hex
    started = time.monotonic()
    await backend.set(key, "ok", ttl_seconds=30)
    value = await backend.get(key)
    await backend.delete(key)
    if value != "ok":
        return {"status": "unhealthy", "backend": type(backend).__name__, "error": "read-back mismatch"}
    return {
        "status": "healthy",
        "backend": type(backend).__name__,
        "response_time_ms": int((time.monotonic() - started) * 1000),
    }


@router.get("", summary="Health check", description="Process memory and cache backend status.")
async def health_check():
    settings = get_settings_instance()
    health = {
        "status": "healthy",
        "timestamp": time.time(),
        "version": settings.version,
        "environment": settings.environment,
        "checks": {},
    }

    try:
        health["checks"]["cache"] = await _check_cache()
    except Exception as e:
        logger.error("Cache health check failed", extra={"error": type(e).__name__})
        health["checks"]["cache"] = {"status": "unhealthy", "error": type(e).__name__}
    if health["checks"]["cache"]["status"] != "healthy":
        health["status"] = "unhealthy"

    try:
        memory = psutil.virtual_memory()
        process = psutil.Process()
        health["checks"]["memory"] = {
            "status": "healthy" if memory.percent < 90 else "warning",
            "system_percent": memory.percent,
            "available_mb": round(memory.available / 1024 / 1024, 1),
            "process_rss_mb": round(process.memory_info().rss / 1024 / 1024, 1),
        }
        if memory.percent >= 90 and health["status"] == "healthy":
            health["status"] = "degraded"
    except Exception as e:
        logger.warning("Memory health check failed", extra={"error": type(e).__name__})
        health["checks"]["memory"] = {"status": "unknown", "error": type(e).__name__}

    code = status.HTTP_200_OK if health["status"] != "unhealthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return GatewayResponse.success(health, status_code=code)
