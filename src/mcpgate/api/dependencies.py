"""Shared FastAPI dependencies."""

from fastapi import Request

from ..core.config import Settings, get_settings_instance
from ..services.router import OperationRouter


def get_settings() -> Settings:
    return get_settings_instance()


def get_operation_router(request: Request) -> OperationRouter:
    router = getattr(request.app.state, "operation_router", None)
    if router is None:
        router = OperationRouter()
        request.app.state.operation_router = router
    return router
