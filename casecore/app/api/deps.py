"""
Dependency injection module for API routes.

Services are created once by the application factory and stored on
``app.state``. These functions hand them to route handlers, together with
the per-request effect context and database session.
"""

from typing import Any, Optional

from fastapi import Request

from ..core.effect_queue import EffectQueue
from ..core.effect_recorder import RequestEffectContext, RequestEffectRecorder
from ..services.metrics_service import MetricsService
from ..services.soft_delete_service import SoftDeleteService
from ..utils.logging import get_logger

logger = get_logger(__name__)


def _app_component(request: Request, name: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise RuntimeError(f"{name} has not been initialized")
    return component


async def get_effect_queue(request: Request) -> EffectQueue:
    """
    Get the process-wide effect queue (FastAPI dependency).

    Raises:
        RuntimeError: If the application factory did not create it
    """
    return _app_component(request, "effect_queue")


async def get_metrics_service(request: Request) -> MetricsService:
    return _app_component(request, "metrics_service")


async def get_soft_delete_service(request: Request) -> SoftDeleteService:
    return _app_component(request, "soft_delete_service")


async def get_request_effects(request: Request) -> RequestEffectContext:
    """
    Get the effect context of the current request.

    Usage:
        @router.delete("/clients/{client_id}")
        async def delete_client(
            client_id: str,
            effects: RequestEffectContext = Depends(get_request_effects),
            session = Depends(get_db_session),
            service: SoftDeleteService = Depends(get_soft_delete_service)
        ):
            ...
    """
    recorder: RequestEffectRecorder = _app_component(request, "effect_recorder")
    return recorder.attach(request.state, request_id=getattr(request.state, "correlation_id", None))


async def get_db_session(request: Request) -> Optional[Any]:
    """Session opened by TransactionMiddleware, or None on safe methods."""
    return getattr(request.state, "db_session", None)
