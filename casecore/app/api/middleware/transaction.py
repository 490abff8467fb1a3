"""
ASGI middleware opening a database session for mutating requests.

POST, PUT, PATCH and DELETE requests get a store session on
``request.state.db_session`` and their RequestEffectContext is marked
``transaction_active``. Handlers run their writes through
``execute_write``, which sets ``transaction_committed`` once the commit
returns. Safe methods pass through untouched.
"""

from typing import Any, Awaitable, Callable, MutableMapping

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from casecore.app.core.effect_recorder import RequestEffectRecorder
from casecore.app.core.exceptions import ErrorCode, TransactionError, get_exception_response_data
from casecore.app.utils.logging import get_logger

logger = get_logger(__name__)


MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

SessionFactory = Callable[[], Awaitable[Any]]


class TransactionMiddleware:
    """Starts and ends one session per mutating request."""

    def __init__(
        self,
        app: ASGIApp,
        session_factory: SessionFactory,
        recorder: RequestEffectRecorder
    ):
        self.app = app
        self.session_factory = session_factory
        self.recorder = recorder

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] not in MUTATING_METHODS:
            await self.app(scope, receive, send)
            return

        state: MutableMapping[str, Any] = scope.setdefault("state", {})

        try:
            session = await self.session_factory()
        except Exception as exc:
            logger.warning(
                "Unable to start database session",
                method=scope["method"],
                path=scope.get("path"),
                error=str(exc)
            )
            session = None

        if session is None:
            state["transaction_start_failed"] = True
            error = TransactionError(
                "Unable to start a transaction for a mutating request",
                error_code=ErrorCode.TRANSACTION_UNAVAILABLE,
                request_id=state.get("correlation_id"),
                correlation_id=state.get("correlation_id")
            )
            response = JSONResponse(get_exception_response_data(error), status_code=error.http_status_code)
            await response(scope, receive, send)
            return

        effects = self.recorder.attach(state, request_id=state.get("correlation_id"))
        effects.transaction_active = True
        effects.transaction_committed = False
        state["db_session"] = session

        try:
            await self.app(scope, receive, send)
        finally:
            await self._end_session(session)

    async def _end_session(self, session: Any) -> None:
        try:
            await session.end_session()
        except Exception as exc:
            logger.warning("Failed to end database session", error=str(exc))
