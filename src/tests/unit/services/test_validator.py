"""
Tests for the protocol validator.

The end-to-end cases install fixture packages through the fake npm and talk to
fake_plugin.py over real pipes; reachability is served by httpx.MockTransport.
"""

import asyncio
import time

import httpx
import psutil
import pytest

from mcpgate.core.exceptions import InstallError, RepositoryUnreachableError
from mcpgate.plugins.installer import WORKDIR_PREFIX
from mcpgate.schemas.plugin import ArtifactKind, ArtifactRef, ValidationStatus
from mcpgate.services.validator import INTERNAL_ERROR_MESSAGE, ProtocolValidator, artifact_index_url


def _reachable(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200)


def _http(handler=_reachable) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _with_package(descriptor, reference):
    return descriptor.model_copy(update={"artifact": ArtifactRef(kind=ArtifactKind.NPM, reference=reference)})


def _attempt_dirs(settings):
    return [p for p in settings.resolved_work_root.iterdir() if p.name.startswith(WORKDIR_PREFIX)]


def _process_gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


class RecordingInstaller:
    """Installer stub that records calls and fails or raises on demand."""

    def __init__(self, error: BaseException | None = None):
        self.error = error
        self.calls = 0

    async def install(self, artifact):
        self.calls += 1
        raise self.error

    async def cleanup(self, installed):
        raise AssertionError("nothing was installed")


class TestArtifactIndexUrl:
    @pytest.mark.parametrize(
        ("artifact", "url", "probe"),
        [
            (ArtifactRef(kind=ArtifactKind.NPM, reference="@acme/weather-mcp@1.2.0"), "https://registry.npmjs.org/@acme%2Fweather-mcp", False),
            (ArtifactRef(kind=ArtifactKind.DOCKER, reference="redis:7"), "https://hub.docker.com/v2/repositories/library/redis/", False),
            (ArtifactRef(kind=ArtifactKind.DOCKER, reference="acme/weather:1.0"), "https://hub.docker.com/v2/repositories/acme/weather/", False),
            (ArtifactRef(kind=ArtifactKind.DOCKER, reference="ghcr.io/acme/weather:1.0"), "https://ghcr.io/v2/", True),
        ],
    )
    def test_index_urls(self, artifact, url, probe):
        assert artifact_index_url(artifact) == (url, probe)


class TestReachability:
    @pytest.mark.asyncio
    async def test_head_not_allowed_falls_back_to_get(self, test_settings, npm_descriptor):
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(405 if request.method == "HEAD" else 200)

        validator = ProtocolValidator(installer=RecordingInstaller(), http_client=_http(handler), settings=test_settings)
        await validator.check_reachable(npm_descriptor)

        assert methods == ["HEAD", "GET"]

    @pytest.mark.asyncio
    async def test_registry_probe_accepts_unauthorized(self, test_settings, npm_descriptor):
        descriptor = npm_descriptor.model_copy(
            update={
                "repository_url": None,
                "artifact": ArtifactRef(kind=ArtifactKind.DOCKER, reference="ghcr.io/acme/weather:1.0"),
            }
        )
        validator = ProtocolValidator(
            installer=RecordingInstaller(), http_client=_http(lambda r: httpx.Response(401)), settings=test_settings
        )

        await validator.check_reachable(descriptor)

    @pytest.mark.asyncio
    async def test_non_http_scheme_is_rejected(self, test_settings, npm_descriptor):
        descriptor = npm_descriptor.model_copy(update={"repository_url": "file:///etc/passwd"})
        validator = ProtocolValidator(installer=RecordingInstaller(), http_client=_http(), settings=test_settings)

        with pytest.raises(RepositoryUnreachableError, match="http or https"):
            await validator.check_reachable(descriptor)

    @pytest.mark.asyncio
    async def test_git_prefix_is_stripped(self, test_settings, npm_descriptor):
        urls = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200)

        descriptor = npm_descriptor.model_copy(update={"repository_url": "git+https://github.com/acme/weather-mcp.git"})
        validator = ProtocolValidator(installer=RecordingInstaller(), http_client=_http(handler), settings=test_settings)

        await validator.check_reachable(descriptor)

        assert urls == ["https://github.com/acme/weather-mcp.git"]


class TestValidateFailFast:
    @pytest.mark.asyncio
    async def test_unreachable_repository_stops_the_pipeline(self, test_settings, npm_descriptor):
        installer = RecordingInstaller(InstallError("should not run"))
        validator = ProtocolValidator(
            installer=installer, http_client=_http(lambda r: httpx.Response(404)), settings=test_settings
        )

        result = await validator.validate(npm_descriptor)

        assert result.status == ValidationStatus.FAILED
        assert result.checks.repo_reachable is False
        assert result.checks.installable is None
        assert result.checks.protocol_compliant is None
        assert result.checks.tools_enumerated is None
        assert result.failure_kind == "repo_unreachable"
        assert "404" in result.error_message
        assert installer.calls == 0

    @pytest.mark.asyncio
    async def test_transport_error_is_unreachable(self, test_settings, npm_descriptor):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        validator = ProtocolValidator(installer=RecordingInstaller(), http_client=_http(handler), settings=test_settings)

        result = await validator.validate(npm_descriptor)

        assert result.checks.repo_reachable is False
        assert "ConnectTimeout" in result.error_message

    @pytest.mark.asyncio
    async def test_install_failure_marks_installable(self, test_settings, npm_descriptor):
        validator = ProtocolValidator(
            installer=RecordingInstaller(InstallError("npm exploded")), http_client=_http(), settings=test_settings
        )

        result = await validator.validate(npm_descriptor)

        assert result.checks.repo_reachable is True
        assert result.checks.installable is False
        assert result.checks.protocol_compliant is None
        assert result.failure_kind == "install_error"
        assert result.tools == ()

    @pytest.mark.asyncio
    async def test_unexpected_fault_is_an_error_result(self, test_settings, npm_descriptor):
        validator = ProtocolValidator(
            installer=RecordingInstaller(RuntimeError("disk on fire")), http_client=_http(), settings=test_settings
        )

        result = await validator.validate(npm_descriptor)

        assert result.status == ValidationStatus.ERROR
        assert result.failure_kind == "system_error"
        assert result.error_message == INTERNAL_ERROR_MESSAGE
        assert "disk on fire" not in result.error_message
        assert result.checks.installable is None


@pytest.mark.slow
class TestValidateEndToEnd:
    @pytest.mark.asyncio
    async def test_verified_plugin_lists_its_tools(self, install_settings, npm_descriptor):
        validator = ProtocolValidator(http_client=_http(), settings=install_settings)

        result = await validator.validate(npm_descriptor)

        assert result.status == ValidationStatus.VERIFIED
        assert result.checks.all_passed()
        assert [t.name for t in result.tools] == ["get_forecast", "get_alerts"]
        assert result.execution_time_ms >= 0
        assert _attempt_dirs(install_settings) == []

    @pytest.mark.asyncio
    async def test_zero_tools_fails_enumeration(self, install_settings, npm_descriptor):
        validator = ProtocolValidator(http_client=_http(), settings=install_settings)

        result = await validator.validate(_with_package(npm_descriptor, "@acme/zero_tools"))

        assert result.status == ValidationStatus.FAILED
        assert result.checks.protocol_compliant is True
        assert result.checks.tools_enumerated is False
        assert result.failure_kind == "no_tools"

    @pytest.mark.asyncio
    async def test_zero_tools_allowed_when_not_required(self, install_settings, npm_descriptor):
        settings = install_settings.model_copy(update={"require_tools": False})
        validator = ProtocolValidator(http_client=_http(), settings=settings)

        result = await validator.validate(_with_package(npm_descriptor, "@acme/zero_tools"))

        assert result.status == ValidationStatus.VERIFIED
        assert result.tools == ()
        assert result.tools_required is False

    @pytest.mark.asyncio
    async def test_silent_plugin_is_killed_within_the_handshake_window(
        self, install_settings, npm_descriptor, plugin_pid_dir
    ):
        settings = install_settings.model_copy(update={"handshake_timeout_seconds": 1.0})
        validator = ProtocolValidator(http_client=_http(), settings=settings)

        result = await validator.validate(_with_package(npm_descriptor, "@acme/silent"))
        finished = time.time()

        assert result.checks.installable is True
        assert result.checks.protocol_compliant is False
        assert result.failure_kind == "protocol_timeout"
        assert _attempt_dirs(settings) == []
        pid_file = plugin_pid_dir / "silent.pid"
        assert _process_gone(int(pid_file.read_text()))
        # The plugin wrote its pid on startup, just before the handshake began
        budget = settings.handshake_timeout_seconds + settings.process_kill_grace_seconds + 1.0
        assert finished - pid_file.stat().st_mtime < budget

    @pytest.mark.parametrize("package", ["@acme/exit", "@acme/error", "@acme/wrong_version"])
    @pytest.mark.asyncio
    async def test_misbehaving_plugin_is_not_compliant(self, install_settings, npm_descriptor, package):
        validator = ProtocolValidator(http_client=_http(), settings=install_settings)

        result = await validator.validate(_with_package(npm_descriptor, package))

        assert result.status == ValidationStatus.FAILED
        assert result.checks.protocol_compliant is False
        assert result.failure_kind == "protocol_compliance"
        assert result.tools == ()

    @pytest.mark.asyncio
    async def test_missing_package_is_not_installable(self, install_settings, npm_descriptor):
        validator = ProtocolValidator(http_client=_http(), settings=install_settings)

        result = await validator.validate(_with_package(npm_descriptor, "@acme/missing"))

        assert result.checks.installable is False
        assert "404" in result.error_message
        assert _attempt_dirs(install_settings) == []

    @pytest.mark.asyncio
    async def test_cancellation_kills_the_plugin_and_cleans_up(self, install_settings, npm_descriptor, plugin_pid_dir):
        settings = install_settings.model_copy(update={"handshake_timeout_seconds": 30.0})
        validator = ProtocolValidator(http_client=_http(), settings=settings)
        pid_file = plugin_pid_dir / "silent.pid"

        task = asyncio.create_task(validator.validate(_with_package(npm_descriptor, "@acme/silent")))
        deadline = time.monotonic() + 10
        while not (pid_file.exists() and pid_file.read_text()):
            assert time.monotonic() < deadline, "plugin never started"
            await asyncio.sleep(0.05)
        pid = int(pid_file.read_text())
        assert psutil.pid_exists(pid)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert _attempt_dirs(settings) == []
        assert _process_gone(pid)
