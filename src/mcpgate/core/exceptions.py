"""Custom exceptions for the mcpgate gateway.

Every exception carries a ``kind`` (stable, client-facing identifier), whether
the failure is ``billable`` (a paid-for outcome; the router voids query
charges for faults that are not) and whether the caller may simply ``retry``.
"""

from typing import Any


class MCPGateException(Exception):
    """Base exception class for mcpgate."""

    kind: str = "system_error"
    billable: bool = False
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_error(self) -> dict[str, Any]:
        """Client-facing error body. Never includes ``details``."""
        return {"message": self.message, "kind": self.kind, "retryable": self.retryable}


# Request Exceptions (never billed)
class InputError(MCPGateException):
    """Raised when an operation request is malformed."""

    kind = "input_error"

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Invalid request: {reason}",
            error_code="INPUT_ERROR",
            status_code=400,
            details=details or {"reason": reason},
        )


class CredentialError(InputError):
    """Raised when a hosting credential is missing or syntactically invalid."""

    kind = "credential_error"

    def __init__(self, reason: str = "hosting credential is missing or malformed"):
        MCPGateException.__init__(
            self,
            message=f"Invalid credential: {reason}",
            error_code="CREDENTIAL_ERROR",
            status_code=400,
            details={"reason": reason},
        )


class PluginNotVerifiedError(InputError):
    """Raised when a deployment is requested for a plugin without a verified validation."""

    kind = "not_verified"

    def __init__(self, slug: str):
        MCPGateException.__init__(
            self,
            message=f"Plugin '{slug}' has no verified validation result; validate it before deploying",
            error_code="PLUGIN_NOT_VERIFIED",
            status_code=409,
            details={"slug": slug},
        )


class NotFoundError(MCPGateException):
    """Raised when a plugin slug is unknown to the registry."""

    kind = "not_found"

    def __init__(self, slug: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Plugin '{slug}' not found",
            error_code="PLUGIN_NOT_FOUND",
            status_code=404,
            details=details or {"slug": slug},
        )


class RateLimitError(MCPGateException):
    """Raised when the caller exceeded its request allowance."""

    kind = "rate_limited"
    retryable = True

    def __init__(self, limit: int, retry_after_seconds: int, details: dict[str, Any] | None = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message=f"Rate limit of {limit} requests exceeded; retry in {retry_after_seconds}s",
            error_code="RATE_LIMITED",
            status_code=429,
            details=details or {"limit": limit, "retry_after_seconds": retry_after_seconds},
        )


class DuplicateInProgressError(MCPGateException):
    """Raised when a duplicate idempotency key arrives before the first request finished."""

    kind = "duplicate_in_progress"
    retryable = True

    def __init__(self):
        super().__init__(
            message="A request with this idempotency key is still being processed",
            error_code="DUPLICATE_IN_PROGRESS",
            status_code=409,
        )


# Validation Exceptions (billed as validation)
class ValidationStepError(MCPGateException):
    """Base for failures of a plugin under validation."""

    billable = True

    def __init__(self, reason: str, error_code: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=reason,
            error_code=error_code,
            status_code=200,
            details=details or {"reason": reason},
        )


class RepositoryUnreachableError(ValidationStepError):
    """Raised when the plugin's declared source location does not answer."""

    kind = "repo_unreachable"

    def __init__(self, reason: str):
        super().__init__(reason, "REPOSITORY_UNREACHABLE")


class InstallError(ValidationStepError):
    """Raised when the plugin artifact cannot be materialised."""

    kind = "install_error"

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(reason, "INSTALL_ERROR", details)


class ProtocolTimeoutError(ValidationStepError):
    """Raised when the plugin does not answer the handshake in time."""

    kind = "protocol_timeout"

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"No protocol response within {timeout_seconds:g}s",
            "PROTOCOL_TIMEOUT",
            {"timeout_seconds": timeout_seconds},
        )


class ProtocolComplianceError(ValidationStepError):
    """Raised when the plugin answers, or exits, in a way the protocol does not allow."""

    kind = "protocol_compliance"

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(reason, "PROTOCOL_COMPLIANCE", details)


class NoToolsError(ValidationStepError):
    """Raised when a compliant plugin reports zero tools."""

    kind = "no_tools"

    def __init__(self):
        super().__init__("Plugin reported no tools", "NO_TOOLS")


# Deployment Exceptions (billed as deployment)
class DeploymentError(MCPGateException):
    """Base for failures of a deployment attempt."""

    billable = True

    def __init__(self, reason: str, error_code: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=reason,
            error_code=error_code,
            status_code=200,
            details=details or {"reason": reason},
        )


class DeploymentFailedError(DeploymentError):
    """Raised when the hosting platform rejects or fails a deployment."""

    kind = "deployment_failed"

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(reason, "DEPLOYMENT_FAILED", details)


class DeploymentTimeoutError(DeploymentError):
    """Raised when the build did not reach a terminal state within the polling budget."""

    kind = "deployment_timeout"

    def __init__(self, budget_seconds: float):
        super().__init__(
            f"Build did not finish within {budget_seconds:g}s",
            "DEPLOYMENT_TIMEOUT",
            {"budget_seconds": budget_seconds},
        )


class HostingPlatformError(MCPGateException):
    """Raised by hosting platform clients for non-2xx answers or transport failures."""

    kind = "hosting_platform_error"

    def __init__(self, reason: str, status_code: int | None = None):
        self.http_status = status_code
        super().__init__(
            message=reason,
            error_code="HOSTING_PLATFORM_ERROR",
            status_code=502,
            details={"http_status": status_code},
        )


# System Exceptions
class RegistryUnavailableError(MCPGateException):
    """Raised when the plugin registry cannot be reached."""

    kind = "system_error"
    retryable = True

    def __init__(self, reason: str):
        super().__init__(
            message="The plugin registry is temporarily unavailable",
            error_code="REGISTRY_UNAVAILABLE",
            status_code=503,
            details={"reason": reason},
        )


class SystemFaultError(MCPGateException):
    """Raised for unexpected faults that prevented an operation from completing."""

    kind = "system_error"
    retryable = True

    def __init__(self, reason: str = "The system could not complete your request. Please retry."):
        super().__init__(
            message=reason,
            error_code="SYSTEM_FAULT",
            status_code=503,
        )
