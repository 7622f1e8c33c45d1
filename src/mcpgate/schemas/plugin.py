"""
Plugin, validation, deployment and billing schemas for mcpgate.

All models serialise with camelCase aliases and accept either spelling on
input.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Base model with camelCase wire names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Enums
# ============================================================================


class ArtifactKind(str, Enum):
    """How a plugin is distributed."""

    NPM = "npm"
    DOCKER = "docker"


class ValidationStatus(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    ERROR = "error"


class BuildStatus(str, Enum):
    """Deployment state machine. ``succeeded`` and ``failed`` are terminal."""

    REQUESTED = "requested"
    ACTOR_RESOLVED = "actorResolved"
    BUILD_TRIGGERED = "buildTriggered"
    BUILDING = "building"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildStatus.SUCCEEDED, BuildStatus.FAILED)


class BillingEventName(str, Enum):
    BASIC_QUERY = "basic_query"
    DETAIL_LOOKUP = "detail_lookup"
    VALIDATION = "validation"
    DEPLOYMENT = "deployment"

    @property
    def refundable_on_fault(self) -> bool:
        """Query charges are voided when a system fault stops the work; compute charges stand."""
        return self in (BillingEventName.BASIC_QUERY, BillingEventName.DETAIL_LOOKUP)


# ============================================================================
# Plugin metadata
# ============================================================================


class ArtifactRef(CamelModel):
    """Install artifact: an npm package spec or a container image reference."""

    model_config = ConfigDict(frozen=True)

    kind: ArtifactKind
    reference: str = Field(..., min_length=1)


class PluginDescriptor(CamelModel):
    """Registry metadata for one plugin. Read-only; ``declared_tools`` is advisory."""

    model_config = ConfigDict(frozen=True)

    slug: str = Field(..., min_length=1)
    display_name: str
    artifact: ArtifactRef
    repository_url: str | None = None
    description: str | None = None
    category: str | None = None
    declared_tools: tuple[str, ...] = ()


class ToolInfo(CamelModel):
    """A tool as reported by the plugin itself."""

    name: str = Field(..., min_length=1)
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})


# ============================================================================
# Validation
# ============================================================================


class ValidationChecks(CamelModel):
    """Ordered check outcomes. ``None`` means the check was never attempted."""

    repo_reachable: bool | None = None
    installable: bool | None = None
    protocol_compliant: bool | None = None
    tools_enumerated: bool | None = None

    def all_passed(self) -> bool:
        return all(value is True for value in self.model_dump().values())


class ValidationResult(CamelModel):
    """Outcome of one validation run. Immutable; re-validation creates a new one."""

    model_config = ConfigDict(frozen=True)

    slug: str
    status: ValidationStatus
    checks: ValidationChecks = Field(default_factory=ValidationChecks)
    tools: tuple[ToolInfo, ...] = ()
    execution_time_ms: int = 0
    error_message: str | None = None
    failure_kind: str | None = None
    tools_required: bool = True
    validated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_status_matches_checks(self) -> "ValidationResult":
        passed = self.checks.all_passed() and (bool(self.tools) or not self.tools_required)
        if (self.status == ValidationStatus.VERIFIED) != passed:
            raise ValueError("status must be 'verified' exactly when every check passed and tools were enumerated")
        return self

    @property
    def is_verified(self) -> bool:
        return self.status == ValidationStatus.VERIFIED


# ============================================================================
# Deployment
# ============================================================================


class DeploymentRecord(CamelModel):
    """One deployment attempt of a plugin under a caller's hosting account."""

    slug: str
    build_status: BuildStatus = BuildStatus.REQUESTED
    remote_instance_id: str | None = None
    instance_created: bool = False
    build_id: str | None = None
    connection_endpoint: str | None = None
    owner_credential_fingerprint: str
    created_at: datetime = Field(default_factory=utcnow)
    last_polled_at: datetime | None = None
    error_message: str | None = None
    failure_kind: str | None = None

    @model_validator(mode="after")
    def check_endpoint_iff_succeeded(self) -> "DeploymentRecord":
        succeeded = self.build_status == BuildStatus.SUCCEEDED
        if succeeded != bool(self.connection_endpoint):
            raise ValueError("connectionEndpoint must be set exactly when buildStatus is 'succeeded'")
        return self


# ============================================================================
# Billing and cache
# ============================================================================


class BillingEvent(CamelModel):
    """A committed charge. At most one exists per idempotency key."""

    event_name: BillingEventName
    event_value: Decimal
    idempotency_key: str
    charged_at: datetime = Field(default_factory=utcnow)
    voided_at: datetime | None = None


class CacheEntry(CamelModel):
    """A cached operation result. Reads after ``written_at + ttl_ms`` are misses."""

    key: str
    payload: Any
    written_at: datetime = Field(default_factory=utcnow)
    ttl_ms: int

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (now - self.written_at).total_seconds() * 1000 >= self.ttl_ms
