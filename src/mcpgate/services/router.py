"""Operation router.

Single entry point for every operation. Steps run in a fixed order:

1. request shape (and credential syntax for ``deploy``)
2. rate limiting
3. cache lookup for cacheable events
4. slug resolution and the deploy precondition
5. billing charge
6. dispatch
7. cache write

Anything rejected before the charge costs nothing. Validation and deployment
charges stand whatever happens afterwards; a search or config charge is voided
when a non-billable fault stops the work, so a retry with the same key runs
again.
"""

import time
import uuid
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, assert_never

from pydantic import ValidationError

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import (
    DuplicateInProgressError,
    InputError,
    MCPGateException,
    PluginNotVerifiedError,
    RateLimitError,
    SystemFaultError,
)
from ..core.logging import get_logger
from ..core.rate_limiting import RateLimitService, ip_class
from ..core.response import describe_validation_errors, sanitize_validation_errors
from ..schemas.operation import (
    ConfigRequest,
    DeployRequest,
    ErrorInfo,
    OperationEvent,
    OperationResponse,
    ResponseMeta,
    SearchRequest,
    ValidateRequest,
    operation_request_adapter,
)
from ..schemas.plugin import BillingEventName, PluginDescriptor, ValidationStatus
from .billing import BillingLedger
from .client_config import build_client_config
from .credentials import check_credential, fingerprint, registered_secret
from .deployer import DeploymentOrchestrator
from .registry_client import RegistryClient
from .result_cache import ResultCache
from .validation_store import ValidationRecordStore
from .validator import ProtocolValidator

logger = get_logger(__name__)

# Shorter strings are not treated as secrets by the log redactor
MIN_REGISTERED_SECRET_LENGTH = 8


@dataclass
class RoutedResponse:
    response: OperationResponse
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class _Attempt:
    """Per-request bookkeeping shared by the success and failure paths."""

    event: str
    started: float
    request_id: str | None
    cost: Decimal = Decimal("0")
    billing_event: BillingEventName | None = None
    idempotency_key: str | None = None
    scope: str = ""
    headers: dict[str, str] = field(default_factory=dict)


def _event_label(payload: Any) -> str:
    raw = payload.get("event") if isinstance(payload, dict) else None
    try:
        return OperationEvent(raw).value
    except ValueError:
        return "unknown"


def _raw_credential(payload: Any) -> str | None:
    raw = payload.get("credential") if isinstance(payload, dict) else None
    if isinstance(raw, str) and len(raw.strip()) >= MIN_REGISTERED_SECRET_LENGTH:
        return raw.strip()
    return None


class OperationRouter:
    """Validates, limits, caches, bills and dispatches operations."""

    def __init__(
        self,
        registry: RegistryClient | None = None,
        validator: ProtocolValidator | None = None,
        deployer: DeploymentOrchestrator | None = None,
        ledger: BillingLedger | None = None,
        cache: ResultCache | None = None,
        validation_store: ValidationRecordStore | None = None,
        rate_limiter: RateLimitService | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings_instance()
        self.registry = registry or RegistryClient(settings=self.settings)
        self.validator = validator or ProtocolValidator(settings=self.settings)
        self.deployer = deployer or DeploymentOrchestrator(settings=self.settings)
        self.ledger = ledger or BillingLedger(settings=self.settings)
        self.cache = cache or ResultCache(settings=self.settings)
        self.validation_store = validation_store or ValidationRecordStore(settings=self.settings)
        self.rate_limiter = rate_limiter or RateLimitService(self.settings)
        self._clock = clock

    async def handle(self, payload: Any, client_ip: str = "unknown", request_id: str | None = None) -> RoutedResponse:
        """Run one operation. Never raises; failures become ``success: false`` responses."""
        attempt = _Attempt(event=_event_label(payload), started=self._clock(), request_id=request_id)
        raw_credential = _raw_credential(payload)

        with registered_secret(raw_credential) if raw_credential else nullcontext():
            try:
                return await self._route(payload, client_ip, attempt)
            except MCPGateException as e:
                if e.status_code >= 500:
                    logger.warning(
                        "Operation failed", extra={"event": attempt.event, "kind": e.kind, "request_id": request_id}
                    )
                else:
                    logger.info(
                        "Operation rejected", extra={"event": attempt.event, "kind": e.kind, "request_id": request_id}
                    )
                return await self._failure(attempt, e)
            except Exception:
                logger.exception("Unexpected operation fault", extra={"event": attempt.event, "request_id": request_id})
                return await self._failure(attempt, SystemFaultError())

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _route(self, payload: Any, client_ip: str, attempt: _Attempt) -> RoutedResponse:
        try:
            request = operation_request_adapter.validate_python(payload)
        except ValidationError as e:
            errors = e.errors(include_input=False, include_url=False)
            raise InputError(describe_validation_errors(errors), {"errors": sanitize_validation_errors(errors)}) from None

        event = OperationEvent(request.event)
        credential: str | None = None
        if isinstance(request, DeployRequest):
            credential = check_credential(request.credential, self.settings.hosting_credential_pattern)

        # Rate limiting
        if credential is not None:
            attempt.scope = fingerprint(credential)
            limit = await self.rate_limiter.check_deploy_limit(attempt.scope)
        else:
            attempt.scope = ip_class(client_ip)
            limit = await self.rate_limiter.check_anonymous_limit(client_ip)
        attempt.headers.update(limit.to_headers())
        if not limit.allowed:
            raise RateLimitError(limit.limit, limit.retry_after_seconds)

        # Cache lookup
        params = request.cache_params()
        cached = await self.cache.get(event, params) if event.cacheable else None
        if cached is not None and not self.settings.bill_cached_results:
            return self._success(attempt, cached, cached=True)

        # Resolution and preconditions
        descriptor: PluginDescriptor | None = None
        if cached is None and not isinstance(request, SearchRequest):
            descriptor = await self.registry.get_plugin(request.slug)
            if isinstance(request, DeployRequest):
                self.deployer.check_deployable(descriptor)
                latest = await self.validation_store.latest(request.slug)
                if latest is None or not latest.is_verified:
                    raise PluginNotVerifiedError(request.slug)

        # Billing
        attempt.idempotency_key = request.idempotency_key or uuid.uuid4().hex
        charge = await self.ledger.charge(event.billing_event, attempt.idempotency_key, scope=attempt.scope)
        if not charge.committed:
            return await self._replay(attempt, event)
        attempt.cost = charge.event.event_value
        attempt.billing_event = event.billing_event

        if cached is not None:
            routed = self._success(attempt, cached, cached=True)
            await self._record(attempt, routed.response)
            return routed

        # Dispatch
        match request:
            case SearchRequest():
                results = await self.registry.search(request.query, request.category, request.limit)
                data: Any = {"results": results, "count": len(results)}
            case ConfigRequest():
                data = build_client_config(descriptor)
            case ValidateRequest():
                result = await self.validator.validate(descriptor)
                await self._save_validation(result)
                data = result.model_dump(by_alias=True, mode="json")
            case DeployRequest():
                record = await self.deployer.deploy(descriptor, credential)
                data = record.model_dump(by_alias=True, mode="json")
            case _:
                assert_never(request)

        # Cache write
        if event.cacheable and not (event == OperationEvent.VALIDATE and data["status"] == ValidationStatus.ERROR.value):
            await self.cache.set(event, params, data)

        routed = self._success(attempt, data)
        await self._record(attempt, routed.response)
        return routed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _meta(self, attempt: _Attempt, cached: bool = False, replayed: bool = False) -> ResponseMeta:
        return ResponseMeta(
            execution_time_ms=int((self._clock() - attempt.started) * 1000),
            cached=cached,
            replayed=replayed,
            request_id=attempt.request_id,
        )

    def _success(self, attempt: _Attempt, data: Any, cached: bool = False) -> RoutedResponse:
        response = OperationResponse(
            success=True,
            event=attempt.event,
            cost=attempt.cost,
            data=data,
            meta=self._meta(attempt, cached=cached),
        )
        logger.info(
            "Operation completed",
            extra={
                "event": attempt.event,
                "cost": str(attempt.cost),
                "cached": cached,
                "request_id": attempt.request_id,
            },
        )
        return RoutedResponse(response, 200, attempt.headers)

    async def _failure(self, attempt: _Attempt, exc: MCPGateException) -> RoutedResponse:
        if attempt.billing_event is not None and not exc.billable and attempt.billing_event.refundable_on_fault:
            await self._void(attempt)
        response = OperationResponse(
            success=False,
            event=attempt.event,
            cost=attempt.cost,
            meta=self._meta(attempt),
            error=ErrorInfo(**exc.to_error()),
        )
        headers = dict(attempt.headers)
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(exc.retry_after_seconds)
        # A charged request keeps its answer so duplicates see the same outcome
        if attempt.billing_event is not None:
            await self._record(attempt, response)
        return RoutedResponse(response, exc.status_code, headers)

    async def _void(self, attempt: _Attempt) -> None:
        try:
            await self.ledger.void(attempt.idempotency_key, scope=attempt.scope)
        except Exception as e:
            logger.error(
                "Could not void charge after fault",
                extra={"event": attempt.event, "error": type(e).__name__, "request_id": attempt.request_id},
            )
            return
        attempt.cost = Decimal("0")
        attempt.billing_event = None

    async def _replay(self, attempt: _Attempt, event: OperationEvent) -> RoutedResponse:
        existing = await self.ledger.get_event(attempt.idempotency_key, scope=attempt.scope)
        if existing is not None and existing.event_name != event.billing_event:
            raise InputError("idempotency key was already used for a different operation")

        stored = await self.ledger.get_outcome(attempt.idempotency_key, scope=attempt.scope)
        if stored is None:
            raise DuplicateInProgressError()

        original = OperationResponse.model_validate_json(stored)
        meta = self._meta(attempt, cached=original.meta.cached, replayed=True)
        response = original.model_copy(update={"cost": Decimal("0"), "meta": meta})
        logger.info("Replaying stored outcome", extra={"event": attempt.event, "request_id": attempt.request_id})
        status_code = 200 if response.success else 503
        return RoutedResponse(response, status_code, attempt.headers)

    async def _record(self, attempt: _Attempt, response: OperationResponse) -> None:
        try:
            await self.ledger.record_outcome(
                attempt.idempotency_key, response.model_dump_json(by_alias=True), scope=attempt.scope
            )
        except Exception as e:
            logger.warning(
                "Could not store outcome for replay",
                extra={"event": attempt.event, "error": type(e).__name__, "request_id": attempt.request_id},
            )

    async def _save_validation(self, result) -> None:
        try:
            await self.validation_store.save(result)
        except Exception as e:
            logger.error(
                "Could not store validation result",
                extra={"slug": result.slug, "status": result.status.value, "error": type(e).__name__},
            )
