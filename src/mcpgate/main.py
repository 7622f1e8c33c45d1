"""mcpgate - FastAPI Application

Creates and configures the HTTP transport for the gateway.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.health import router as health_router
from .api.operations import router as operations_router
from .core.cache_backend import close_cache_backend, initialize_cache_backend
from .core.config import get_settings_instance
from .core.exceptions import MCPGateException, SystemFaultError
from .core.http_client import close_http_client
from .core.logging import get_logger, setup_logging
from .core.middleware import RequestContextMiddleware
from .core.response import GatewayResponse, describe_validation_errors
from .services.router import OperationRouter

logger = get_logger(__name__)


def generate_error_id() -> str:
    return f"ERR-{uuid.uuid4().hex[:8].upper()}"


def get_request_context(request: Request) -> dict[str, Any]:
    """Request fields safe to log. Bodies and auth headers are never included."""
    return {
        "method": request.method,
        "path": request.url.path,
        "user_agent": request.headers.get("user-agent"),
        "client_host": request.client.host if request.client else None,
        "request_id": getattr(request.state, "request_id", None),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings_instance()

    logger.info("Starting mcpgate...")
    logger.info(f"Version: {settings.version}")
    logger.info(f"Environment: {settings.environment}")

    backend = await initialize_cache_backend()
    logger.info("Cache backend initialized", extra={"backend": type(backend).__name__})

    if getattr(app.state, "operation_router", None) is None:
        app.state.operation_router = OperationRouter(settings=settings)

    logger.info("mcpgate startup complete")

    yield

    logger.info("Shutting down mcpgate...")

    try:
        await close_http_client()
        logger.info("HTTP client connections closed")
    except Exception as e:
        logger.error(f"Error closing HTTP client connections: {e}")

    try:
        await close_cache_backend()
        logger.info("Cache backend closed")
    except Exception as e:
        logger.error(f"Error closing cache backend: {e}")

    logger.info("mcpgate shutdown complete")


def create_app(operation_router: OperationRouter | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings_instance()
    app = FastAPI(
        title=settings.app_name,
        description="Plugin discovery, validation and deployment gateway",
        version=settings.version,
        debug=settings.debug,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    if operation_router is not None:
        app.state.operation_router = operation_router

    setup_middleware(app)
    setup_exception_handlers(app)
    setup_routes(app)

    logger.info("mcpgate FastAPI application created")
    return app


def setup_middleware(app: FastAPI) -> None:
    # Added last runs first: request IDs exist before timing logs them
    app.add_middleware(RequestContextMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    """Every error leaves the API in the operation envelope. Input values are never echoed."""

    @app.exception_handler(MCPGateException)
    async def mcpgate_exception_handler(request: Request, exc: MCPGateException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "mcpgate server error",
                extra={"error_code": exc.error_code, "request_context": get_request_context(request)},
            )
        return GatewayResponse.from_exception(exc, request_id=getattr(request.state, "request_id", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Request validation failed", extra={"request_context": get_request_context(request)})
        return GatewayResponse.error(
            f"Invalid request: {describe_validation_errors(exc.errors())}",
            "input_error",
            request_id=getattr(request.state, "request_id", None),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        kind = "not_found" if exc.status_code == 404 else "http_error"
        return GatewayResponse.error(
            str(exc.detail),
            kind,
            status_code=exc.status_code,
            request_id=getattr(request.state, "request_id", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        error_id = generate_error_id()
        logger.error(
            "Unhandled exception",
            extra={
                "error_id": error_id,
                "exception_type": type(exc).__name__,
                "request_context": get_request_context(request),
            },
            exc_info=True,
        )
        return GatewayResponse.from_exception(SystemFaultError(), request_id=getattr(request.state, "request_id", None))


def setup_routes(app: FastAPI) -> None:
    settings = get_settings_instance()
    app.include_router(operations_router, prefix=settings.api_v1_prefix)
    app.include_router(health_router, prefix=settings.api_v1_prefix)


def main() -> None:
    import uvicorn

    settings = get_settings_instance()
    uvicorn.run("mcpgate.main:create_app", factory=True, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
