"""Deployment orchestrator.

Drives one deployment through ``requested -> actorResolved -> buildTriggered
-> building -> succeeded | failed`` against a ``HostingPlatform`` opened with
the caller's own credential. Failed deployments are left in place remotely.
"""

import asyncio
import hashlib
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import (
    DeploymentError,
    DeploymentFailedError,
    DeploymentTimeoutError,
    HostingPlatformError,
    InputError,
)
from ..core.logging import get_logger
from ..plugins.process import run_uncancellable
from ..schemas.plugin import BuildStatus, DeploymentRecord, PluginDescriptor, utcnow
from .credentials import fingerprint, registered_secret, scrub
from .hosting_platform import DEPLOYABLE_KINDS, ApifyHostingPlatform, HostingPlatform, RemoteBuildStatus

logger = get_logger(__name__)

INSTANCE_PREFIX = "mcp-"
MAX_INSTANCE_NAME = 63

PlatformFactory = Callable[[str], HostingPlatform]


def slugify(slug: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]+", "-", slug.lower()).strip("-")
    return cleaned or "plugin"


def instance_name(slug: str) -> str:
    """Deterministic remote instance name for a plugin slug."""
    name = INSTANCE_PREFIX + slugify(slug)
    if len(name) <= MAX_INSTANCE_NAME:
        return name
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    return f"{name[: MAX_INSTANCE_NAME - 9].rstrip('-')}-{digest}"


def advance(record: DeploymentRecord, **updates: Any) -> DeploymentRecord:
    """Return ``record`` moved to a new state. Terminal records are returned unchanged."""
    if record.build_status.is_terminal:
        logger.debug("Ignoring transition of terminal deployment", extra={"slug": record.slug})
        return record
    return DeploymentRecord.model_validate(record.model_dump() | updates)


class DeploymentOrchestrator:
    def __init__(
        self,
        platform_factory: PlatformFactory | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings_instance()
        self._platform_factory = platform_factory or (lambda token: ApifyHostingPlatform(token, self.settings))
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def check_deployable(descriptor: PluginDescriptor) -> None:
        """Raises InputError for plugins the hosting platform cannot build."""
        if descriptor.artifact.kind not in DEPLOYABLE_KINDS:
            raise InputError(
                f"'{descriptor.artifact.kind.value}' plugins cannot be deployed",
                {"slug": descriptor.slug, "artifact_kind": descriptor.artifact.kind.value},
            )

    async def deploy(self, descriptor: PluginDescriptor, credential: str) -> DeploymentRecord:
        """Deploy ``descriptor`` under the account that owns ``credential``.

        Hosting failures and budget exhaustion come back as a ``failed`` record.
        Anything else propagates.
        """
        record = DeploymentRecord(slug=descriptor.slug, owner_credential_fingerprint=fingerprint(credential))
        name = instance_name(descriptor.slug)
        logger.info("Deployment requested", extra={"slug": descriptor.slug, "instance_name": name})

        with registered_secret(credential):
            platform = self._platform_factory(credential)
            try:
                record = await self._run(platform, name, descriptor, record)
            except (DeploymentError, HostingPlatformError) as e:
                failure_kind = e.kind if isinstance(e, DeploymentError) else DeploymentFailedError.kind
                record = advance(
                    record,
                    build_status=BuildStatus.FAILED,
                    error_message=scrub(e.message, credential),
                    failure_kind=failure_kind,
                )
            finally:
                await run_uncancellable(platform.aclose)

        logger.info(
            "Deployment finished",
            extra={
                "slug": record.slug,
                "build_status": record.build_status.value,
                "failure_kind": record.failure_kind,
                "instance_created": record.instance_created,
            },
        )
        return record

    async def _run(
        self, platform: HostingPlatform, name: str, descriptor: PluginDescriptor, record: DeploymentRecord
    ) -> DeploymentRecord:
        resolved = await platform.resolve_or_create(name, descriptor)
        record = advance(
            record,
            build_status=BuildStatus.ACTOR_RESOLVED,
            remote_instance_id=resolved.instance_id,
            instance_created=resolved.created,
        )

        build_id = await platform.trigger_build(resolved.instance_id)
        record = advance(record, build_status=BuildStatus.BUILD_TRIGGERED, build_id=build_id)

        return await self._poll(platform, record)

    async def _poll(self, platform: HostingPlatform, record: DeploymentRecord) -> DeploymentRecord:
        budget = self.settings.deploy_poll_budget_seconds
        interval = self.settings.deploy_poll_interval_seconds
        deadline = self._clock() + budget
        record = advance(record, build_status=BuildStatus.BUILDING)

        while True:
            try:
                status = await platform.get_build_status(record.build_id)
            except HostingPlatformError as e:
                # Server-side and transport errors are retried until the budget runs out
                if e.http_status is not None and e.http_status < 500:
                    raise
                logger.warning("Build status poll failed", extra={"slug": record.slug, "http_status": e.http_status})
                status = RemoteBuildStatus.PENDING
            record = advance(record, last_polled_at=utcnow())

            match status:
                case RemoteBuildStatus.SUCCEEDED:
                    try:
                        endpoint = await platform.get_endpoint(record.remote_instance_id)
                    except HostingPlatformError as e:
                        raise DeploymentFailedError(f"Build succeeded but no endpoint is available: {e.message}") from e
                    return advance(record, build_status=BuildStatus.SUCCEEDED, connection_endpoint=endpoint)
                case RemoteBuildStatus.FAILED:
                    raise DeploymentFailedError("Build failed on the hosting platform", {"build_id": record.build_id})
                case RemoteBuildStatus.PENDING:
                    pass

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise DeploymentTimeoutError(budget)
            await self._sleep(min(interval, remaining))
