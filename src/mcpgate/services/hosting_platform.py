"""Hosting platform contract and the Apify implementation.

The orchestrator only talks to ``HostingPlatform``; everything Apify-specific
(actor versions, standby mode, build states) stays in this module.
"""

import json
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import HostingPlatformError
from ..core.http_client import credentialed_client
from ..core.logging import get_logger
from ..schemas.plugin import ArtifactKind, PluginDescriptor

logger = get_logger(__name__)

ACTOR_VERSION = "0.0"
ACTOR_LIST_LIMIT = 1000
DEPLOYABLE_KINDS = frozenset({ArtifactKind.NPM})


class RemoteBuildStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ResolvedInstance:
    instance_id: str
    created: bool


class HostingPlatform(Protocol):
    """What the deployment orchestrator needs from a hosting platform."""

    async def resolve_or_create(self, name: str, source: PluginDescriptor) -> ResolvedInstance: ...

    async def trigger_build(self, instance_id: str) -> str: ...

    async def get_build_status(self, build_id: str) -> RemoteBuildStatus: ...

    async def get_endpoint(self, instance_id: str) -> str: ...

    async def aclose(self) -> None: ...


_APIFY_BUILD_STATES = {
    "READY": RemoteBuildStatus.PENDING,
    "RUNNING": RemoteBuildStatus.PENDING,
    "SUCCEEDED": RemoteBuildStatus.SUCCEEDED,
    "FAILED": RemoteBuildStatus.FAILED,
    "ABORTING": RemoteBuildStatus.FAILED,
    "ABORTED": RemoteBuildStatus.FAILED,
    "TIMING-OUT": RemoteBuildStatus.FAILED,
    "TIMED-OUT": RemoteBuildStatus.FAILED,
}


def _require_id(data: dict[str, Any]) -> str:
    value = data.get("id")
    if not isinstance(value, str) or not value:
        raise HostingPlatformError("Hosting platform response has no id")
    return value


def build_dockerfile(source: PluginDescriptor, stdio_bridge: str) -> str:
    """Dockerfile that serves the plugin's stdio interface over HTTP via the bridge.

    Only npm plugins can be built this way; the bridge needs a node runtime.
    """
    if source.artifact.kind not in DEPLOYABLE_KINDS:
        raise HostingPlatformError(f"'{source.artifact.kind.value}' plugins cannot be built on this platform")
    plugin_command = f"npx -y {shlex.quote(source.artifact.reference)}"
    cmd = json.dumps(["sh", "-c", f"{stdio_bridge} {shlex.quote(plugin_command)}"])
    return f"FROM apify/actor-node:20\nENV NODE_ENV=production\nCMD {cmd}\n"


def actor_source_files(name: str, source: PluginDescriptor, stdio_bridge: str) -> list[dict[str, str]]:
    actor_json = {
        "actorSpecification": 1,
        "name": name,
        "title": source.display_name,
        "version": ACTOR_VERSION,
        "usesStandbyMode": True,
        "dockerfile": "../Dockerfile",
    }
    return [
        {"name": "Dockerfile", "format": "TEXT", "content": build_dockerfile(source, stdio_bridge)},
        {"name": ".actor/actor.json", "format": "TEXT", "content": json.dumps(actor_json, indent=2)},
    ]


class ApifyHostingPlatform:
    """``HostingPlatform`` over the Apify v2 REST API.

    Holds its own ``httpx.AsyncClient`` carrying the caller's token, so the
    credential never touches the shared pooled client. Close it with
    ``aclose()`` once the deployment finishes.
    """

    def __init__(self, token: str, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings_instance()
        self._client = credentialed_client(self.settings.hosting_api_base_url, token, self.settings, transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise HostingPlatformError(f"Hosting platform request failed ({type(e).__name__})") from e

        if response.status_code >= 400:
            logger.warning("Hosting platform error response", extra={"method": method, "status": response.status_code})
            raise HostingPlatformError(
                f"Hosting platform answered {method} with HTTP {response.status_code}", response.status_code
            )
        try:
            body = response.json()
        except ValueError as e:
            raise HostingPlatformError("Hosting platform returned a non-JSON body", response.status_code) from e
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise HostingPlatformError("Hosting platform response has no data object", response.status_code)
        return data

    async def _find_actor(self, name: str) -> dict[str, Any] | None:
        """Page through the caller's actors until ``name`` turns up or the list is exhausted."""
        offset = 0
        while True:
            data = await self._request(
                "GET", "/acts", params={"my": 1, "offset": offset, "limit": ACTOR_LIST_LIMIT}
            )
            items = [actor for actor in data.get("items") or [] if isinstance(actor, dict)]
            for actor in items:
                if actor.get("name") == name:
                    return actor
            offset += len(items)
            total = data.get("total")
            exhausted = offset >= total if isinstance(total, int) else len(items) < ACTOR_LIST_LIMIT
            if not items or exhausted:
                return None

    def _version_payload(self, name: str, source: PluginDescriptor) -> dict[str, Any]:
        return {
            "versionNumber": ACTOR_VERSION,
            "sourceType": "SOURCE_FILES",
            "buildTag": "latest",
            "sourceFiles": actor_source_files(name, source, self.settings.hosting_stdio_bridge),
        }

    async def resolve_or_create(self, name: str, source: PluginDescriptor) -> ResolvedInstance:
        """Look ``name`` up first; update its source if it exists, create it otherwise."""
        existing = await self._find_actor(name)
        if existing is not None:
            actor_id = _require_id(existing)
            await self._request(
                "PUT", f"/acts/{actor_id}/versions/{ACTOR_VERSION}", json=self._version_payload(name, source)
            )
            logger.info("Reusing existing actor", extra={"actor_name": name, "actor_id": actor_id})
            return ResolvedInstance(instance_id=actor_id, created=False)

        payload = {
            "name": name,
            "title": source.display_name,
            "description": (source.description or "")[:200],
            "isPublic": False,
            "versions": [self._version_payload(name, source)],
            "actorStandby": {"isEnabled": True},
        }
        data = await self._request("POST", "/acts", json=payload)
        logger.info("Created actor", extra={"actor_name": name, "actor_id": data.get("id")})
        return ResolvedInstance(instance_id=_require_id(data), created=True)

    async def trigger_build(self, instance_id: str) -> str:
        data = await self._request(
            "POST", f"/acts/{instance_id}/builds", params={"version": ACTOR_VERSION, "waitForFinish": 0}
        )
        return _require_id(data)

    async def get_build_status(self, build_id: str) -> RemoteBuildStatus:
        data = await self._request("GET", f"/actor-builds/{build_id}")
        state = str(data.get("status", "")).upper()
        status = _APIFY_BUILD_STATES.get(state)
        if status is None:
            raise HostingPlatformError(f"Unknown build status '{state}'")
        return status

    async def get_endpoint(self, instance_id: str) -> str:
        data = await self._request("GET", f"/acts/{instance_id}")
        username, name = data.get("username"), data.get("name")
        if not username or not name:
            raise HostingPlatformError("Actor record has no username or name")
        return f"https://{username}--{name}.apify.actor{self.settings.hosting_endpoint_path}"
