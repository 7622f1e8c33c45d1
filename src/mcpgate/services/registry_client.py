"""Client for the plugin registry API.

The registry owns plugin metadata and search ranking; the gateway only reads
from it. Records are mapped into read-only ``PluginDescriptor`` objects.
"""

from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import InputError, NotFoundError, RegistryUnavailableError
from ..core.http_client import get_http_client
from ..core.logging import get_logger
from ..schemas.plugin import ArtifactKind, ArtifactRef, PluginDescriptor

logger = get_logger(__name__)


def _artifact_from_record(record: dict[str, Any]) -> ArtifactRef | None:
    packages = record.get("packages") or {}
    installation = record.get("installation") or {}

    npm = packages.get("npm")
    if isinstance(npm, dict):
        npm = npm.get("name")
    npm = npm or installation.get("npm")
    if isinstance(npm, str) and npm.strip():
        return ArtifactRef(kind=ArtifactKind.NPM, reference=npm.strip())

    docker = packages.get("docker")
    if isinstance(docker, dict):
        docker = docker.get("image")
    docker = docker or installation.get("docker")
    if isinstance(docker, str) and docker.strip():
        return ArtifactRef(kind=ArtifactKind.DOCKER, reference=docker.strip())
    return None


def to_descriptor(record: dict[str, Any]) -> PluginDescriptor:
    """Map a registry server record to a ``PluginDescriptor``.

    Raises:
        InputError: The record has no npm or docker artifact.
    """
    slug = record.get("slug") or ""
    artifact = _artifact_from_record(record)
    if artifact is None:
        raise InputError(f"plugin '{slug}' has no npm or docker artifact")

    repository = record.get("repository")
    repository_url = repository.get("url") if isinstance(repository, dict) else repository
    tools = record.get("tools") or record.get("declaredTools") or []

    return PluginDescriptor(
        slug=slug,
        display_name=record.get("name") or slug,
        artifact=artifact,
        repository_url=repository_url or None,
        description=record.get("description"),
        category=record.get("category"),
        declared_tools=tuple(t.get("name", "") if isinstance(t, dict) else str(t) for t in tools),
    )


def _summary(record: dict[str, Any]) -> dict[str, Any]:
    artifact = _artifact_from_record(record)
    return {
        "slug": record.get("slug"),
        "name": record.get("name"),
        "description": record.get("description"),
        "category": record.get("category"),
        "installMethod": artifact.kind.value if artifact else "manual",
    }


class RegistryClient:
    """Reads plugin metadata from the registry over HTTP."""

    def __init__(self, http_client: httpx.AsyncClient | None = None, settings: Settings | None = None):
        self._http_client = http_client
        self.settings = settings or get_settings_instance()
        self.base_url = self.settings.registry_api_url.rstrip("/")

    async def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = await get_http_client()
        return self._http_client

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        client = await self._client()
        try:
            return await client.get(f"{self.base_url}{path}", params=params, timeout=self.settings.registry_timeout)
        except httpx.HTTPError as e:
            logger.warning("Registry request failed", extra={"path": path, "error": type(e).__name__})
            raise RegistryUnavailableError(type(e).__name__) from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError as e:
            raise RegistryUnavailableError("registry returned a non-JSON body") from e
        # Accept both bare and enveloped ({"data": ...}) bodies
        if isinstance(body, dict) and "data" in body and isinstance(body["data"], (dict, list)):
            return body["data"]
        return body

    async def search(self, query: str | None = None, category: str | None = None, limit: int = 10) -> list[dict[str, Any]]:
        """Search passthrough. Ranking is the registry's."""
        limit = max(1, min(limit, self.settings.search_max_limit))
        params = {"limit": limit}
        if query:
            params["q"] = query
        if category:
            params["category"] = category

        response = await self._get("/servers", params=params)
        if response.status_code >= 400:
            raise RegistryUnavailableError(f"search returned HTTP {response.status_code}")

        body = self._json(response)
        servers = body.get("servers", []) if isinstance(body, dict) else body
        if not isinstance(servers, list):
            raise RegistryUnavailableError("search response has no server list")
        return [_summary(s) for s in servers[:limit] if isinstance(s, dict)]

    async def get_plugin(self, slug: str) -> PluginDescriptor:
        """Resolve ``slug`` to its descriptor.

        Raises:
            NotFoundError: The registry does not know the slug.
            RegistryUnavailableError: The registry could not be reached.
        """
        response = await self._get(f"/servers/{quote(slug, safe='@')}")
        if response.status_code == 404:
            raise NotFoundError(slug)
        if response.status_code >= 400:
            raise RegistryUnavailableError(f"lookup returned HTTP {response.status_code}")

        body = self._json(response)
        record = body.get("server", body) if isinstance(body, dict) else None
        if not isinstance(record, dict) or not record.get("slug"):
            raise RegistryUnavailableError("lookup response has no server record")
        try:
            return to_descriptor(record)
        except ValidationError as e:
            raise RegistryUnavailableError("registry returned an invalid server record") from e
