"""Protocol validator.

Runs a plugin through a linear pipeline and stops at the first failure:

1. ``repoReachable``: the declared source location answers over HTTP
2. ``installable``: the artifact materialises in a fresh attempt directory
3. ``protocolCompliant``: the plugin answers one ``tools/list`` request
4. ``toolsEnumerated``: it reports at least one tool

Checks that were never attempted stay ``None``. The process tree and the
attempt directory are removed on every path, including cancellation.
"""

import time
from collections.abc import Callable
from urllib.parse import quote, urlsplit

import httpx

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import (
    NoToolsError,
    ProtocolComplianceError,
    RepositoryUnreachableError,
    ValidationStepError,
)
from ..core.http_client import get_http_client
from ..core.logging import get_logger
from ..plugins.installer import InstalledPlugin, PluginInstaller, npm_package_name
from ..plugins.process import PluginProcess, run_uncancellable
from ..plugins.protocol import request_tools
from ..schemas.plugin import (
    ArtifactKind,
    ArtifactRef,
    PluginDescriptor,
    ToolInfo,
    ValidationChecks,
    ValidationResult,
    ValidationStatus,
)

logger = get_logger(__name__)

NPM_REGISTRY_URL = "https://registry.npmjs.org"
DOCKER_HUB_URL = "https://hub.docker.com/v2/repositories"
INTERNAL_ERROR_MESSAGE = "Validation could not be completed because of an internal error"


def _docker_index_url(image: str) -> tuple[str, bool]:
    """Public index URL for an image, and whether it is a registry ``/v2/`` probe."""
    name = image.split("@", 1)[0]
    head, _, last = name.rpartition("/")
    last = last.split(":", 1)[0]
    name = f"{head}/{last}" if head else last
    parts = name.split("/")
    if len(parts) > 1 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        return f"https://{parts[0]}/v2/", True
    if len(parts) == 1:
        parts = ["library", parts[0]]
    return f"{DOCKER_HUB_URL}/{'/'.join(parts)}/", False


def artifact_index_url(artifact: ArtifactRef) -> tuple[str, bool]:
    match artifact.kind:
        case ArtifactKind.NPM:
            return f"{NPM_REGISTRY_URL}/{quote(npm_package_name(artifact.reference), safe='@')}", False
        case ArtifactKind.DOCKER:
            return _docker_index_url(artifact.reference.strip())


def _normalise_repository_url(url: str) -> str:
    url = url.strip()
    if url.startswith("git+"):
        url = url[4:]
    return url


class ProtocolValidator:
    """Validates that a plugin actually implements the stdio tool protocol."""

    def __init__(
        self,
        installer: PluginInstaller | None = None,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings_instance()
        self.installer = installer or PluginInstaller(self.settings)
        self._http_client = http_client
        self._clock = clock

    async def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = await get_http_client()
        return self._http_client

    async def validate(self, descriptor: PluginDescriptor) -> ValidationResult:
        """Run the pipeline. Never raises for plugin misbehaviour or internal faults.

        Cancellation propagates after cleanup.
        """
        started = self._clock()
        checks: dict[str, bool | None] = {}
        tools: list[ToolInfo] = []
        installed: InstalledPlugin | None = None
        current = "repo_reachable"
        status = ValidationStatus.FAILED
        error_message: str | None = None
        failure_kind: str | None = None

        logger.info("Validation started", extra={"slug": descriptor.slug})
        try:
            await self.check_reachable(descriptor)
            checks[current] = True

            current = "installable"
            installed = await self.installer.install(descriptor.artifact)
            checks[current] = True

            current = "protocol_compliant"
            tools = await self.handshake(descriptor, installed)
            checks[current] = True

            current = "tools_enumerated"
            if not tools and self.settings.require_tools:
                raise NoToolsError()
            checks[current] = True
            status = ValidationStatus.VERIFIED
        except ValidationStepError as e:
            checks[current] = False
            error_message = e.message
            failure_kind = e.kind
        except Exception:
            logger.exception("Validation failed unexpectedly", extra={"slug": descriptor.slug, "step": current})
            status = ValidationStatus.ERROR
            error_message = INTERNAL_ERROR_MESSAGE
            failure_kind = "system_error"
        finally:
            if installed is not None:
                await run_uncancellable(lambda: self.installer.cleanup(installed))

        result = ValidationResult(
            slug=descriptor.slug,
            status=status,
            checks=ValidationChecks(**checks),
            tools=tuple(tools) if status == ValidationStatus.VERIFIED else (),
            execution_time_ms=int((self._clock() - started) * 1000),
            error_message=error_message,
            failure_kind=failure_kind,
            tools_required=self.settings.require_tools,
        )
        logger.info(
            "Validation finished",
            extra={
                "slug": descriptor.slug,
                "status": result.status.value,
                "failure_kind": failure_kind,
                "tool_count": len(result.tools),
                "execution_time_ms": result.execution_time_ms,
            },
        )
        return result

    async def check_reachable(self, descriptor: PluginDescriptor) -> None:
        """Probe the repository URL, or the artifact's public index when none is declared.

        Raises:
            RepositoryUnreachableError: The location did not answer successfully.
        """
        if descriptor.repository_url:
            url, registry_probe = _normalise_repository_url(descriptor.repository_url), False
        else:
            url, registry_probe = artifact_index_url(descriptor.artifact)

        if urlsplit(url).scheme not in ("http", "https"):
            raise RepositoryUnreachableError("Repository URL must use http or https")

        client = await self._client()
        timeout = self.settings.reachability_timeout_seconds
        try:
            response = await client.head(url, timeout=timeout, follow_redirects=True)
            if response.status_code in (405, 501):
                response = await client.get(url, timeout=timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            raise RepositoryUnreachableError(f"Repository could not be reached ({type(e).__name__})") from e

        # Container registries answer /v2/ with 401 when they are up
        if response.status_code < 400 or (registry_probe and response.status_code == 401):
            return
        raise RepositoryUnreachableError(f"Repository answered with HTTP {response.status_code}")

    async def handshake(self, descriptor: PluginDescriptor, installed: InstalledPlugin) -> list[ToolInfo]:
        """Spawn the plugin and exchange one ``tools/list`` request.

        Raises:
            ProtocolTimeoutError: No answer within the handshake timeout.
            ProtocolComplianceError: Premature exit, error response or malformed result.
        """
        process = PluginProcess(
            installed.argv,
            cwd=installed.workdir,
            env=installed.env,
            kill_grace_seconds=self.settings.process_kill_grace_seconds,
            name=descriptor.slug,
        )
        try:
            await process.start()
        except OSError as e:
            raise ProtocolComplianceError(f"Plugin could not be started ({type(e).__name__})") from e

        try:
            return await request_tools(
                process.stdin,
                process.stdout,
                timeout=self.settings.handshake_timeout_seconds,
                max_frame_bytes=self.settings.max_frame_bytes,
                max_stdout_bytes=self.settings.max_stdout_bytes,
            )
        except ValidationStepError as e:
            stderr = process.stderr_tail()
            if stderr:
                logger.info(
                    "Plugin stderr before handshake failure",
                    extra={"slug": descriptor.slug, "failure_kind": e.kind, "stderr_tail": stderr[-500:]},
                )
            raise
        finally:
            await run_uncancellable(process.terminate)

