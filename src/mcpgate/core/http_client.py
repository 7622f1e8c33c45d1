"""Outbound HTTP clients.

Two kinds of client exist:

- one pooled client shared by registry lookups and reachability probes,
  created lazily and closed on shutdown;
- short-lived credentialed clients, one per deployment, that carry a
  caller's hosting token and are never pooled with anything else.
"""

import asyncio

import httpx

from .config import Settings, get_settings_instance
from .logging import get_logger

logger = get_logger(__name__)

_POOL_LIMITS = httpx.Limits(max_keepalive_connections=20, max_connections=100, keepalive_expiry=30.0)

_shared_client: httpx.AsyncClient | None = None
_shared_lock = asyncio.Lock()


def _user_agent(settings: Settings) -> str:
    return f"mcpgate/{settings.version}"


async def get_http_client() -> httpx.AsyncClient:
    """Return the shared pooled client, creating it on first use."""
    global _shared_client
    if _shared_client is not None:
        return _shared_client
    async with _shared_lock:
        if _shared_client is None:
            settings = get_settings_instance()
            logger.debug("Opening shared HTTP pool (timeout=%ss)", settings.registry_timeout)
            _shared_client = httpx.AsyncClient(
                limits=_POOL_LIMITS,
                timeout=httpx.Timeout(settings.registry_timeout),
                follow_redirects=True,
                headers={"User-Agent": _user_agent(settings)},
            )
    return _shared_client


async def close_http_client() -> None:
    global _shared_client
    client, _shared_client = _shared_client, None
    if client is not None:
        logger.debug("Closing shared HTTP pool")
        await client.aclose()


def credentialed_client(
    base_url: str,
    token: str,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build a dedicated client that sends ``token`` as a bearer credential.

    The caller owns the client and must ``aclose()`` it.
    """
    return httpx.AsyncClient(
        base_url=base_url.rstrip("/"),
        headers={
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": _user_agent(settings),
        },
        timeout=settings.hosting_request_timeout,
        transport=transport,
    )
