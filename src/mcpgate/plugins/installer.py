"""Plugin installer: materialise an artifact into a fresh attempt directory.

npm packages are installed with ``npm install --prefix <workdir>`` and launched
through the binary their ``package.json`` declares. Container images are
pulled and launched with ``docker run --rm -i`` plus the configured
hardening flags; the container is force-removed on cleanup.

Every attempt gets its own ``mkdtemp`` directory, never reused.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import InstallError
from ..core.logging import get_logger
from ..schemas.plugin import ArtifactKind, ArtifactRef
from .process import build_plugin_env, run_command, run_uncancellable

logger = get_logger(__name__)

WORKDIR_PREFIX = "mcpgate_attempt_"
# Registry/proxy settings npm and docker need to reach the network
INSTALL_ENV_KEYS = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "no_proxy",
    "npm_config_registry",
    "DOCKER_HOST",
    "DOCKER_CONFIG",
    "DOCKER_CERT_PATH",
    "DOCKER_TLS_VERIFY",
)
DOCKER_RM_TIMEOUT_SECONDS = 15.0


def npm_package_name(spec: str) -> str:
    """Strip the version from an npm package spec (``@scope/pkg@1.2.0`` -> ``@scope/pkg``)."""
    spec = spec.strip()
    if spec.startswith("@"):
        name, _, _ = spec[1:].partition("@")
        return "@" + name
    return spec.partition("@")[0]


def resolve_npm_bin(package_json: dict[str, Any], package_name: str) -> str:
    """Pick the executable name a package exposes under ``node_modules/.bin``."""
    unscoped = package_name.rsplit("/", 1)[-1]
    bin_field = package_json.get("bin")
    if isinstance(bin_field, str) and bin_field:
        return unscoped
    if isinstance(bin_field, dict) and bin_field:
        if unscoped in bin_field:
            return unscoped
        if len(bin_field) == 1:
            return next(iter(bin_field))
        raise InstallError(
            f"Package '{package_name}' declares several executables and none matches its name",
            {"bins": sorted(bin_field)},
        )
    raise InstallError(f"Package '{package_name}' does not declare an executable")


@dataclass
class InstalledPlugin:
    """A materialised plugin ready to be launched."""

    artifact: ArtifactRef
    attempt_id: str
    workdir: Path
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    container_name: str | None = None


class PluginInstaller:
    """Installs plugin artifacts into attempt-scoped working directories."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings_instance()

    def _new_workdir(self) -> Path:
        root = self.settings.resolved_work_root
        return Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX, dir=str(root) if root else None))

    async def install(self, artifact: ArtifactRef) -> InstalledPlugin:
        """Materialise ``artifact``.

        Raises:
            InstallError: The artifact could not be installed within the timeout.
        """
        attempt_id = uuid.uuid4().hex[:12]
        workdir = self._new_workdir()
        logger.info(
            "Installing plugin artifact",
            extra={"artifact_kind": artifact.kind.value, "artifact": artifact.reference, "attempt_id": attempt_id},
        )
        try:
            match artifact.kind:
                case ArtifactKind.NPM:
                    return await self._install_npm(artifact, attempt_id, workdir)
                case ArtifactKind.DOCKER:
                    return await self._install_docker(artifact, attempt_id, workdir)
                case _:
                    raise InstallError(f"Unsupported artifact kind '{artifact.kind}'")
        except BaseException:
            await run_uncancellable(lambda: asyncio.to_thread(shutil.rmtree, workdir, True))
            raise

    async def _run(self, argv: list[str], workdir: Path, what: str) -> None:
        env = build_plugin_env(workdir, INSTALL_ENV_KEYS)
        timeout = self.settings.install_timeout_seconds
        try:
            result = await run_command(
                argv,
                cwd=workdir,
                env=env,
                timeout=timeout,
                kill_grace_seconds=self.settings.process_kill_grace_seconds,
                name=what,
            )
        except asyncio.TimeoutError:
            raise InstallError(f"{what} did not finish within {timeout:g}s", {"timeout_seconds": timeout}) from None
        except FileNotFoundError as e:
            raise InstallError(f"{what} failed: executable '{argv[0]}' not found") from e
        except OSError as e:
            raise InstallError(f"{what} failed to start: {e.strerror or type(e).__name__}") from e

        if not result.ok:
            last_line = result.output.strip().splitlines()[-1] if result.output.strip() else ""
            raise InstallError(
                f"{what} exited with status {result.returncode}" + (f": {last_line[:200]}" if last_line else ""),
                {"returncode": result.returncode},
            )

    async def _install_npm(self, artifact: ArtifactRef, attempt_id: str, workdir: Path) -> InstalledPlugin:
        package_name = npm_package_name(artifact.reference)
        if not package_name or package_name == "@" or package_name.startswith("-"):
            raise InstallError(f"Invalid npm package spec '{artifact.reference}'")

        await self._run(
            [
                self.settings.npm_executable,
                "install",
                "--prefix",
                str(workdir),
                "--no-audit",
                "--no-fund",
                "--loglevel=error",
                artifact.reference,
            ],
            workdir,
            "npm install",
        )

        package_json_path = workdir / "node_modules" / package_name / "package.json"
        try:
            package_json = json.loads(package_json_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise InstallError(f"Installed package '{package_name}' has no readable package.json") from e

        bin_name = resolve_npm_bin(package_json, package_name)
        launcher = workdir / "node_modules" / ".bin" / bin_name
        if not launcher.exists():
            raise InstallError(f"Executable '{bin_name}' was not linked by npm")

        return InstalledPlugin(
            artifact=artifact,
            attempt_id=attempt_id,
            workdir=workdir,
            argv=[str(launcher)],
            env=build_plugin_env(workdir),
        )

    async def _install_docker(self, artifact: ArtifactRef, attempt_id: str, workdir: Path) -> InstalledPlugin:
        image = artifact.reference.strip()
        if not image or image.startswith("-") or any(ch.isspace() for ch in image):
            raise InstallError(f"Invalid image reference '{artifact.reference}'")

        docker = self.settings.docker_executable
        await self._run([docker, "pull", image], workdir, "docker pull")

        container_name = f"mcpgate-{attempt_id}"
        argv = [docker, "run", "--rm", "-i", "--name", container_name, *self.settings.docker_run_flag_list, image]
        return InstalledPlugin(
            artifact=artifact,
            attempt_id=attempt_id,
            workdir=workdir,
            argv=argv,
            env=build_plugin_env(workdir, INSTALL_ENV_KEYS),
            container_name=container_name,
        )

    async def cleanup(self, installed: InstalledPlugin) -> None:
        """Remove the container (if any) and the attempt directory. Never raises."""
        if installed.container_name:
            try:
                await run_command(
                    [self.settings.docker_executable, "rm", "-f", installed.container_name],
                    cwd=installed.workdir,
                    env=installed.env,
                    timeout=DOCKER_RM_TIMEOUT_SECONDS,
                    kill_grace_seconds=self.settings.process_kill_grace_seconds,
                    name="docker rm",
                )
            except (asyncio.TimeoutError, OSError) as e:
                logger.warning(
                    "Failed to remove plugin container",
                    extra={"container": installed.container_name, "error": type(e).__name__},
                )
        await asyncio.to_thread(shutil.rmtree, installed.workdir, True)
        logger.debug("Removed attempt directory", extra={"attempt_id": installed.attempt_id})
