"""JSON responses for the gateway API.

Every operation answers with the same envelope, successful or not:
``{success, event, cost, data, meta, error?}``.
"""

from collections.abc import Iterable
from decimal import Decimal
from typing import Any

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..schemas.operation import ErrorInfo, OperationResponse, ResponseMeta
from .exceptions import MCPGateException
from .logging import get_logger

logger = get_logger(__name__)

MAX_REPORTED_ERRORS = 5


def sanitize_validation_errors(errors: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Strip input values from pydantic errors so submitted secrets are never echoed."""
    cleaned = []
    for error in errors:
        cleaned.append(
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": str(error.get("msg", "")),
                "type": str(error.get("type", "")),
            }
        )
    return cleaned


def describe_validation_errors(errors: Iterable[dict[str, Any]]) -> str:
    parts = []
    for error in sanitize_validation_errors(errors)[:MAX_REPORTED_ERRORS]:
        location = ".".join(part for part in error["loc"] if part not in ("body",))
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts) or "request body is invalid"


class GatewayResponse:
    """Builds ``JSONResponse`` objects from operation results."""

    @staticmethod
    def success(
        data: Any, status_code: int = status.HTTP_200_OK, headers: dict[str, str] | None = None
    ) -> JSONResponse:
        """Plain ``{"data": ...}`` envelope for non-operation endpoints such as health."""
        return JSONResponse(content=jsonable_encoder({"data": data}), status_code=status_code, headers=headers)

    @staticmethod
    def operation(
        result: OperationResponse, status_code: int = status.HTTP_200_OK, headers: dict[str, str] | None = None
    ) -> JSONResponse:
        content = jsonable_encoder(result.model_dump(by_alias=True, mode="json", exclude_none=False))
        if result.error is None:
            content.pop("error", None)

        logger.debug(
            "Creating operation response",
            extra={"status_code": status_code, "event": result.event, "success": result.success},
        )
        return JSONResponse(content=content, status_code=status_code, headers=headers)

    @staticmethod
    def error(
        message: str,
        kind: str,
        event: str = "unknown",
        retryable: bool = False,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        request_id: str | None = None,
        cost: Decimal = Decimal("0"),
        headers: dict[str, str] | None = None,
    ) -> JSONResponse:
        result = OperationResponse(
            success=False,
            event=event,
            cost=cost,
            meta=ResponseMeta(request_id=request_id),
            error=ErrorInfo(message=message, kind=kind, retryable=retryable),
        )
        logger.debug("Creating error response", extra={"status_code": status_code, "kind": kind})
        return GatewayResponse.operation(result, status_code=status_code, headers=headers)

    @staticmethod
    def from_exception(
        exc: MCPGateException, event: str = "unknown", request_id: str | None = None, **kwargs: Any
    ) -> JSONResponse:
        return GatewayResponse.error(
            exc.message,
            exc.kind,
            event=event,
            retryable=exc.retryable,
            status_code=exc.status_code,
            request_id=request_id,
            **kwargs,
        )
