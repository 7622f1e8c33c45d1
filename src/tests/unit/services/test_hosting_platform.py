"""
Tests for the Apify hosting platform client, served by httpx.MockTransport.
"""

import json

import httpx
import pytest

from mcpgate.core.exceptions import HostingPlatformError
from mcpgate.schemas.plugin import ArtifactKind, ArtifactRef, BuildStatus
from mcpgate.services.deployer import DeploymentOrchestrator
from mcpgate.services.hosting_platform import (
    ApifyHostingPlatform,
    RemoteBuildStatus,
    ResolvedInstance,
    actor_source_files,
    build_dockerfile,
)


class FakeApify:
    """In-memory slice of the Apify v2 API."""

    def __init__(self, actors=None, build_status="SUCCEEDED", page_size=1000):
        self.actors = list(actors or [])
        self.page_size = page_size
        self.build_status = build_status
        self.requests: list[httpx.Request] = []
        self.created: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v2")
        method = request.method

        if method == "GET" and path == "/acts":
            offset = int(request.url.params.get("offset", 0))
            limit = min(int(request.url.params.get("limit", 1000)), self.page_size)
            page = self.actors[offset : offset + limit]
            return httpx.Response(
                200, json={"data": {"total": len(self.actors), "offset": offset, "count": len(page), "items": page}}
            )
        if method == "POST" and path == "/acts":
            body = json.loads(request.content)
            actor_id = f"act-new-{len(self.created)}" if self.created else "act-new"
            actor = {"id": actor_id, "name": body["name"], "username": "acme"}
            self.created.append(actor)
            self.actors.append(actor)
            return httpx.Response(201, json={"data": actor})
        if method == "PUT" and path.startswith("/acts/") and "/versions/" in path:
            return httpx.Response(200, json={"data": {"versionNumber": "0.0"}})
        if method == "POST" and path.endswith("/builds"):
            return httpx.Response(201, json={"data": {"id": "build-1", "status": "READY"}})
        if method == "GET" and path.startswith("/actor-builds/"):
            return httpx.Response(200, json={"data": {"id": "build-1", "status": self.build_status}})
        if method == "GET" and path.startswith("/acts/"):
            actor_id = path.rsplit("/", 1)[-1]
            for actor in self.actors:
                if actor["id"] == actor_id:
                    return httpx.Response(200, json={"data": actor})
            return httpx.Response(404, json={"error": {"type": "record-not-found"}})
        return httpx.Response(400, json={"error": {"type": "unexpected"}})


def _platform(fake, test_settings, credential) -> ApifyHostingPlatform:
    return ApifyHostingPlatform(credential, test_settings, transport=httpx.MockTransport(fake))


class TestSourceFiles:
    def test_dockerfile_wraps_the_package_in_the_bridge(self, npm_descriptor):
        dockerfile = build_dockerfile(npm_descriptor, "npx -y supergateway --stdio")

        assert dockerfile.startswith("FROM apify/actor-node:20\n")
        assert "npx -y @acme/weather-mcp" in dockerfile
        assert "supergateway --stdio" in dockerfile

    def test_container_plugins_cannot_be_built(self, npm_descriptor):
        descriptor = npm_descriptor.model_copy(
            update={"artifact": ArtifactRef(kind=ArtifactKind.DOCKER, reference="acme/weather")}
        )

        with pytest.raises(HostingPlatformError, match="cannot be built"):
            build_dockerfile(descriptor, "bridge")

    def test_actor_manifest_uses_instance_name(self, npm_descriptor):
        files = {f["name"]: f["content"] for f in actor_source_files("mcp-weather-tools", npm_descriptor, "bridge")}

        manifest = json.loads(files[".actor/actor.json"])
        assert manifest["name"] == "mcp-weather-tools"
        assert manifest["usesStandbyMode"] is True
        assert "Dockerfile" in files


class TestApifyHostingPlatform:
    @pytest.mark.asyncio
    async def test_creates_missing_actor(self, test_settings, credential, npm_descriptor):
        fake = FakeApify()
        platform = _platform(fake, test_settings, credential)

        resolved = await platform.resolve_or_create("mcp-weather-tools", npm_descriptor)
        await platform.aclose()

        assert resolved.instance_id == "act-new"
        assert resolved.created is True
        create = fake.requests[-1]
        assert create.method == "POST"
        assert create.headers["Authorization"] == f"Bearer {credential}"
        assert json.loads(create.content)["isPublic"] is False

    @pytest.mark.asyncio
    async def test_reuses_existing_actor(self, test_settings, credential, npm_descriptor):
        fake = FakeApify(actors=[{"id": "act-1", "name": "mcp-weather-tools", "username": "acme"}])
        platform = _platform(fake, test_settings, credential)

        resolved = await platform.resolve_or_create("mcp-weather-tools", npm_descriptor)
        await platform.aclose()

        assert resolved.instance_id == "act-1"
        assert resolved.created is False
        assert [r.method for r in fake.requests] == ["GET", "PUT"]

    @pytest.mark.asyncio
    async def test_finds_actor_beyond_the_first_page(self, test_settings, credential, npm_descriptor):
        others = [{"id": f"act-{i}", "name": f"mcp-other-{i}", "username": "acme"} for i in range(5)]
        target = {"id": "act-target", "name": "mcp-weather-tools", "username": "acme"}
        fake = FakeApify(actors=[*others, target], page_size=2)
        platform = _platform(fake, test_settings, credential)

        resolved = await platform.resolve_or_create("mcp-weather-tools", npm_descriptor)
        await platform.aclose()

        assert resolved == ResolvedInstance(instance_id="act-target", created=False)
        assert [r.url.params["offset"] for r in fake.requests if r.method == "GET"] == ["0", "2", "4"]
        assert fake.created == []

    @pytest.mark.asyncio
    async def test_lookup_stops_when_the_list_is_exhausted(self, test_settings, credential, npm_descriptor):
        others = [{"id": f"act-{i}", "name": f"mcp-other-{i}", "username": "acme"} for i in range(3)]
        fake = FakeApify(actors=others, page_size=2)
        platform = _platform(fake, test_settings, credential)

        resolved = await platform.resolve_or_create("mcp-weather-tools", npm_descriptor)
        await platform.aclose()

        assert resolved.created is True
        assert [r.method for r in fake.requests] == ["GET", "GET", "POST"]

    @pytest.mark.parametrize(
        ("remote", "expected"),
        [
            ("RUNNING", RemoteBuildStatus.PENDING),
            ("SUCCEEDED", RemoteBuildStatus.SUCCEEDED),
            ("TIMED-OUT", RemoteBuildStatus.FAILED),
            ("aborted", RemoteBuildStatus.FAILED),
        ],
    )
    @pytest.mark.asyncio
    async def test_build_status_mapping(self, test_settings, credential, remote, expected):
        platform = _platform(FakeApify(build_status=remote), test_settings, credential)

        assert await platform.get_build_status("build-1") == expected
        await platform.aclose()

    @pytest.mark.asyncio
    async def test_unknown_build_status(self, test_settings, credential):
        platform = _platform(FakeApify(build_status="MYSTERY"), test_settings, credential)

        with pytest.raises(HostingPlatformError, match="Unknown build status"):
            await platform.get_build_status("build-1")
        await platform.aclose()

    @pytest.mark.asyncio
    async def test_trigger_and_endpoint(self, test_settings, credential):
        fake = FakeApify(actors=[{"id": "act-1", "name": "mcp-weather-tools", "username": "acme"}])
        platform = _platform(fake, test_settings, credential)

        build_id = await platform.trigger_build("act-1")
        endpoint = await platform.get_endpoint("act-1")
        await platform.aclose()

        assert build_id == "build-1"
        assert endpoint == "https://acme--mcp-weather-tools.apify.actor/sse"

    @pytest.mark.asyncio
    async def test_error_status_is_kept_without_echoing_the_token(self, test_settings, credential):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": f"token {credential} is invalid"}})

        platform = _platform(handler, test_settings, credential)

        with pytest.raises(HostingPlatformError) as exc_info:
            await platform.trigger_build("act-1")
        await platform.aclose()

        assert exc_info.value.http_status == 401
        assert credential not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_failure(self, test_settings, credential):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        platform = _platform(handler, test_settings, credential)

        with pytest.raises(HostingPlatformError, match="ConnectError") as exc_info:
            await platform.get_endpoint("act-1")
        await platform.aclose()

        assert exc_info.value.http_status is None


class TestRepeatedDeployment:
    @pytest.mark.asyncio
    async def test_second_deploy_reuses_the_created_actor(self, test_settings, credential, npm_descriptor):
        fake = FakeApify()

        async def no_sleep(seconds):
            return None

        orchestrator = DeploymentOrchestrator(
            lambda token: _platform(fake, test_settings, token), test_settings, sleep=no_sleep
        )

        first = await orchestrator.deploy(npm_descriptor, credential)
        second = await orchestrator.deploy(npm_descriptor, credential)

        assert first.build_status == second.build_status == BuildStatus.SUCCEEDED
        assert first.remote_instance_id == second.remote_instance_id == "act-new"
        assert first.instance_created is True
        assert second.instance_created is False
        assert [(r.method, r.url.path) for r in fake.requests].count(("POST", "/v2/acts")) == 1
        assert len(fake.created) == 1
