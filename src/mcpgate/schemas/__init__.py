"""
Pydantic schemas for mcpgate.

Request/response models and the domain records produced by the validator,
deployer and billing ledger.
"""

from .operation import (
    ConfigRequest,
    DeployRequest,
    ErrorInfo,
    OperationEvent,
    OperationRequest,
    OperationResponse,
    ResponseMeta,
    SearchRequest,
    ValidateRequest,
    operation_request_adapter,
)
from .plugin import (
    ArtifactKind,
    ArtifactRef,
    BillingEvent,
    BillingEventName,
    BuildStatus,
    CacheEntry,
    DeploymentRecord,
    PluginDescriptor,
    ToolInfo,
    ValidationChecks,
    ValidationResult,
    ValidationStatus,
)

__all__ = [
    "ArtifactKind",
    "ArtifactRef",
    "BillingEvent",
    "BillingEventName",
    "BuildStatus",
    "CacheEntry",
    "ConfigRequest",
    "DeployRequest",
    "DeploymentRecord",
    "ErrorInfo",
    "OperationEvent",
    "OperationRequest",
    "OperationResponse",
    "PluginDescriptor",
    "ResponseMeta",
    "SearchRequest",
    "ToolInfo",
    "ValidateRequest",
    "ValidationChecks",
    "ValidationResult",
    "ValidationStatus",
    "operation_request_adapter",
]
