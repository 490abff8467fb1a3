"""
ASGI middleware binding RequestLifecycleObserver to HTTP requests.

Key Features:
- Correlation ID assigned per request (reused from the inbound header
  when allowed) and returned in the response header
- RequestEffectContext attached to ``request.state.effects``
- Completion on the final response body chunk, or on client disconnect
  or cancellation when the response never finished
- Unhandled handler errors answered with a 500 that carries the
  correlation header
- Actor and tenant identities read from ``request.state`` when an
  authentication layer has set them

This middleware must be installed outermost so the flush it triggers sees
the transaction flags written by inner layers.
"""

import traceback
from typing import Any, MutableMapping, Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from casecore.app.core.request_lifecycle import (
    LIFECYCLE_END_CLOSE,
    LIFECYCLE_END_FINISH,
    RequestLifecycle,
    RequestLifecycleObserver,
)
from casecore.app.utils.logging import clear_correlation_id, get_logger, set_correlation_id
from casecore.config.settings import LifecycleSettings

logger = get_logger(__name__)


ACTOR_STATE_KEYS = ("actor_id", "user_id")
TENANT_STATE_KEYS = ("tenant_id", "firm_id")


class RequestLifecycleMiddleware:
    """Pure ASGI middleware observing each HTTP request exactly once."""

    def __init__(
        self,
        app: ASGIApp,
        observer: RequestLifecycleObserver,
        config: Optional[LifecycleSettings] = None
    ):
        """
        Initialize lifecycle middleware.

        Args:
            app: Wrapped ASGI application
            observer: Observer that completes each request
            config: Correlation header settings
        """
        self.app = app
        self.observer = observer
        self.config = config or LifecycleSettings()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state: MutableMapping[str, Any] = scope.setdefault("state", {})
        inbound_id = None
        if self.config.accept_inbound_correlation_id:
            inbound_id = Headers(scope=scope).get(self.config.correlation_header)

        lifecycle = self.observer.begin(
            method=scope["method"],
            route=scope.get("path", ""),
            request_state=state,
            correlation_id=inbound_id
        )
        state["correlation_id"] = lifecycle.correlation_id
        set_correlation_id(lifecycle.correlation_id)

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                lifecycle.status_code = message["status"]
                headers = MutableHeaders(scope=message)
                headers[self.config.correlation_header] = lifecycle.correlation_id

            await send(message)

            if message["type"] == "http.response.body" and not message.get("more_body", False):
                self._finalize(lifecycle, state, LIFECYCLE_END_FINISH)

        async def receive_wrapper() -> Message:
            message = await receive()
            if message["type"] == "http.disconnect":
                self._finalize(lifecycle, state, LIFECYCLE_END_CLOSE)
            return message

        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        except Exception as exc:
            if lifecycle.status_code is not None:
                raise
            logger.error(
                "Unexpected exception occurred",
                path=scope.get("path", ""),
                method=scope["method"],
                error=str(exc),
                traceback=traceback.format_exc()
            )
            response = JSONResponse(
                status_code=500,
                content={
                    "error": {
                        "code": "INTERNAL_SERVER_ERROR",
                        "message": "Internal server error",
                        "details": {},
                        "correlation_id": lifecycle.correlation_id,
                    }
                }
            )
            await response(scope, receive_wrapper, send_wrapper)
        finally:
            self._finalize(lifecycle, state, LIFECYCLE_END_CLOSE)
            clear_correlation_id()

    def _finalize(
        self,
        lifecycle: RequestLifecycle,
        state: MutableMapping[str, Any],
        reason: str
    ) -> None:
        if lifecycle.logged:
            return
        lifecycle.actor = _first_present(state, ACTOR_STATE_KEYS)
        lifecycle.tenant = _first_present(state, TENANT_STATE_KEYS)
        lifecycle.finalize(reason)


def _first_present(state: MutableMapping[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = state.get(key)
        if value is not None:
            return str(value)
    return None
