"""
FastAPI application entry point for casecore.

This module assembles the transactional side-effect and soft delete core
into an ASGI application:
- Deferred effect queue, per-request recorder and lifecycle observer
- Transaction middleware opening a session for mutating requests
- Soft delete service over the default entity registry
- Audit store and in-memory metrics sink fed by deferred effects
- Admin diagnostics routes and structured error responses
- Graceful shutdown that drains pending effects
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from casecore.app.api.middleware.lifecycle import RequestLifecycleMiddleware
from casecore.app.api.middleware.transaction import TransactionMiddleware
from casecore.app.api.routes import admin
from casecore.app.core.database import MongoDBManager
from casecore.app.core.effect_queue import EffectQueue
from casecore.app.core.effect_recorder import RequestEffectRecorder
from casecore.app.core.exceptions import (
    BaseCustomException,
    ConfigurationError,
    ErrorCode,
    get_exception_response_data,
)
from casecore.app.core.request_lifecycle import RequestLifecycleObserver
from casecore.app.services.audit_service import AUDIT_COLLECTION, AuditStore
from casecore.app.services.metrics_service import MetricsService
from casecore.app.services.soft_delete_service import SoftDeleteService, build_default_registry
from casecore.app.utils.logging import get_logger, initialize_logging_from_settings
from casecore.config.settings import Settings, get_settings

logger = get_logger(__name__)


SessionFactory = Callable[[], Awaitable[Any]]


def bind_database(app: FastAPI, database: Any) -> None:
    """Attach the audit store and soft delete registry to a database."""
    settings: Settings = app.state.settings
    app.state.database = database
    app.state.audit_store = AuditStore(database[AUDIT_COLLECTION])
    app.state.soft_delete_service = SoftDeleteService(
        recorder=app.state.effect_recorder,
        audit_store=app.state.audit_store,
        registry=build_default_registry(database),
        settings=settings.soft_delete
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup and shutdown procedures.

    Connects to MongoDB when no database was supplied to the factory, and
    on shutdown gives queued effects a bounded time to finish.
    """
    settings: Settings = app.state.settings
    manager: Optional[MongoDBManager] = None

    logger.info("=== casecore starting up ===", environment=settings.environment)

    try:
        if app.state.database is None:
            manager = MongoDBManager(settings.database)
            await manager.connect()
            database = manager.get_database()
            bind_database(app, database)
            await manager.create_soft_delete_indexes(
                registration.repository.collection_name
                for registration in app.state.soft_delete_service.registry.values()
            )
            app.state.database_manager = manager

        yield

    finally:
        logger.info("=== casecore shutting down ===")

        queue: EffectQueue = app.state.effect_queue
        try:
            await queue.wait_until_idle(timeout=settings.effects.shutdown_drain_timeout_seconds)
            logger.info("Effect queue drained")
        except asyncio.TimeoutError:
            logger.warning(
                "Effect queue not drained before shutdown",
                queue_depth=queue.get_queue_depth(),
                timeout_seconds=settings.effects.shutdown_drain_timeout_seconds
            )

        if manager is not None:
            try:
                await manager.disconnect()
            except Exception as e:
                logger.error(f"Error closing database connection: {e}")

        logger.info("=== casecore shutdown complete ===")


def create_application(
    settings: Optional[Settings] = None,
    database: Any = None,
    session_factory: Optional[SessionFactory] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Application settings, defaults to ``get_settings()``
        database: Database exposing collections by name; when omitted the
            lifespan connects to MongoDB
        session_factory: Coroutine returning a store session for mutating
            requests; defaults to the MongoDB client's ``start_session``

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    initialize_logging_from_settings(settings)

    errors = settings.validate_configuration()
    if errors:
        section = next(iter(errors))
        raise ConfigurationError(
            f"Invalid configuration: {'; '.join(errors[section])}",
            config_section=section
        )

    app = FastAPI(
        title="casecore",
        description="Transactional side effects and soft deletion for case management",
        version=settings.app_version,
        lifespan=lifespan
    )

    queue = EffectQueue.from_settings(settings.effects)
    recorder = RequestEffectRecorder(queue)
    metrics = MetricsService()

    app.state.settings = settings
    app.state.effect_queue = queue
    app.state.effect_recorder = recorder
    app.state.metrics_service = metrics
    app.state.database = None
    app.state.database_manager = None
    app.state.audit_store = AuditStore()
    app.state.soft_delete_service = SoftDeleteService(
        recorder=recorder,
        audit_store=app.state.audit_store,
        settings=settings.soft_delete
    )

    if database is not None:
        bind_database(app, database)

    observer = RequestLifecycleObserver(
        recorder=recorder,
        metrics=metrics,
        logger=get_logger("request_lifecycle"),
        slow_request_threshold_ms=settings.logging.slow_request_threshold_ms
    )

    configure_middleware(app, observer, session_factory or _default_session_factory(app))
    configure_routes(app)
    configure_exception_handlers(app)

    return app


def _default_session_factory(app: FastAPI) -> SessionFactory:
    async def open_session() -> Any:
        manager: Optional[MongoDBManager] = app.state.database_manager
        if manager is not None:
            return await manager.start_session()
        database = app.state.database
        client = getattr(database, "client", None)
        if client is None:
            return None
        return await client.start_session()

    return open_session


def configure_middleware(
    app: FastAPI,
    observer: RequestLifecycleObserver,
    session_factory: SessionFactory
) -> None:
    """
    Install the transaction and lifecycle middleware.

    Starlette wraps later additions around earlier ones, so the lifecycle
    middleware added last is outermost and its flush sees the transaction
    outcome.
    """
    settings: Settings = app.state.settings

    app.add_middleware(
        TransactionMiddleware,
        session_factory=session_factory,
        recorder=app.state.effect_recorder
    )

    app.add_middleware(
        RequestLifecycleMiddleware,
        observer=observer,
        config=settings.lifecycle
    )

    logger.debug("Middleware configuration completed")


def configure_routes(app: FastAPI) -> None:
    """Configure application routes and API endpoints."""

    @app.get("/health", tags=["system"], include_in_schema=False)
    async def health_check():
        """System health check endpoint."""
        manager: Optional[MongoDBManager] = app.state.database_manager
        database = await manager.health_check() if manager else {"status": "external"}
        return {
            "status": "healthy" if database["status"] in ("healthy", "external") else "degraded",
            "database": database,
            "effect_queue_depth": app.state.effect_queue.get_queue_depth(),
        }

    app.include_router(
        admin.router,
        prefix="/admin",
        tags=["admin"]
    )

    logger.debug("Routes configuration completed")


def configure_exception_handlers(app: FastAPI) -> None:
    """Configure global exception handlers."""

    @app.exception_handler(BaseCustomException)
    async def custom_exception_handler(request: Request, exc: BaseCustomException):
        """Handle custom application exceptions."""
        if exc.correlation_id is None:
            exc.correlation_id = getattr(request.state, "correlation_id", None)

        logger.error(
            f"Custom exception: {exc.error_code.value}",
            error_code=exc.error_code.value,
            message=exc.message,
            path=request.url.path,
            method=request.method,
            correlation_id=exc.correlation_id
        )

        return JSONResponse(
            status_code=exc.http_status_code,
            content=get_exception_response_data(exc)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors."""
        logger.warning(
            "Request validation failed",
            path=request.url.path,
            method=request.method,
            errors=exc.errors()
        )

        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": ErrorCode.CONFIG_INVALID_VALUE.value,
                    "message": "Request validation failed",
                    "details": jsonable_errors(exc),
                    "correlation_id": getattr(request.state, "correlation_id", None),
                }
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle FastAPI HTTP exceptions."""
        logger.warning(
            f"HTTP exception: {exc.status_code}",
            path=request.url.path,
            method=request.method,
            detail=exc.detail
        )

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": f"HTTP_{exc.status_code}",
                    "message": exc.detail,
                    "details": {},
                    "correlation_id": getattr(request.state, "correlation_id", None),
                }
            }
        )

    logger.debug("Exception handlers configuration completed")


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


# Development server entry point
if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "casecore.main:create_application",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level=settings.logging.level.lower()
    )
