"""
Operation request and response schemas.

Requests are a discriminated union on ``event``. The hosting credential is a
``SecretStr`` so it never appears in reprs, logs or serialised models.
"""

from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import Field, SecretStr, TypeAdapter, field_serializer

from .plugin import BillingEventName, CamelModel

SLUG_PATTERN = r"^[A-Za-z0-9@][A-Za-z0-9@/._-]*$"


class OperationEvent(str, Enum):
    SEARCH = "search"
    CONFIG = "config"
    VALIDATE = "validate"
    DEPLOY = "deploy"

    @property
    def billing_event(self) -> BillingEventName:
        return _BILLING_EVENTS[self]

    @property
    def cacheable(self) -> bool:
        return self != OperationEvent.DEPLOY


_BILLING_EVENTS = {
    OperationEvent.SEARCH: BillingEventName.BASIC_QUERY,
    OperationEvent.CONFIG: BillingEventName.DETAIL_LOOKUP,
    OperationEvent.VALIDATE: BillingEventName.VALIDATION,
    OperationEvent.DEPLOY: BillingEventName.DEPLOYMENT,
}


class BaseOperationRequest(CamelModel):
    idempotency_key: str | None = Field(None, min_length=1, max_length=200)

    def cache_params(self) -> dict[str, Any]:
        """Parameters that identify the result, excluding billing and secrets."""
        return self.model_dump(exclude={"event", "idempotency_key", "credential"})


class SearchRequest(BaseOperationRequest):
    event: Literal["search"]
    query: str | None = Field(None, max_length=200)
    category: str | None = Field(None, max_length=100)
    limit: int = Field(10, ge=1, le=50)


class ConfigRequest(BaseOperationRequest):
    event: Literal["config"]
    slug: str = Field(..., min_length=1, max_length=214, pattern=SLUG_PATTERN)


class ValidateRequest(BaseOperationRequest):
    event: Literal["validate"]
    slug: str = Field(..., min_length=1, max_length=214, pattern=SLUG_PATTERN)


class DeployRequest(BaseOperationRequest):
    event: Literal["deploy"]
    slug: str = Field(..., min_length=1, max_length=214, pattern=SLUG_PATTERN)
    # Syntax is checked by the router against the configured pattern
    credential: SecretStr | None = None


OperationRequest = Annotated[
    SearchRequest | ConfigRequest | ValidateRequest | DeployRequest,
    Field(discriminator="event"),
]

operation_request_adapter: TypeAdapter[OperationRequest] = TypeAdapter(OperationRequest)


class ErrorInfo(CamelModel):
    message: str
    kind: str
    retryable: bool = False


class ResponseMeta(CamelModel):
    execution_time_ms: int = 0
    cached: bool = False
    replayed: bool = False
    request_id: str | None = None


class OperationResponse(CamelModel):
    """Uniform result of every operation, successful or not."""

    success: bool
    event: str
    cost: Decimal = Decimal("0")
    data: Any = None
    meta: ResponseMeta = Field(default_factory=ResponseMeta)
    error: ErrorInfo | None = None

    @field_serializer("cost")
    def serialize_cost(self, cost: Decimal) -> float:
        return float(cost)
