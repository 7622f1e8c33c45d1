"""Operation endpoint: one POST for search, config, validate and deploy."""

import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..core.config import Settings
from ..core.exceptions import InputError
from ..core.logging import get_logger
from ..core.rate_limiting import get_client_ip
from ..core.response import GatewayResponse
from ..services.router import OperationRouter
from .dependencies import get_operation_router, get_settings

logger = get_logger(__name__)
router = APIRouter(prefix="/operations", tags=["operations"])


@router.post(
    "",
    summary="Run an operation",
    description="Runs a search, config, validate or deploy operation and returns a uniform result envelope.",
)
async def run_operation(
    request: Request,
    operation_router: OperationRouter = Depends(get_operation_router),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    raw = await request.body()
    try:
        payload: Any = json.loads(raw) if raw else None
    except (ValueError, UnicodeDecodeError):
        return GatewayResponse.from_exception(InputError("request body is not valid JSON"), request_id=request_id)

    client_ip = get_client_ip(
        request.headers, request.client.host if request.client else None, settings.trusted_proxy_networks
    )
    routed = await operation_router.handle(payload, client_ip=client_ip, request_id=request_id)
    return GatewayResponse.operation(routed.response, status_code=routed.status_code, headers=routed.headers)
