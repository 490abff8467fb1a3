"""
Unit tests for request lifecycle observation.

Test Coverage:
- Exactly-once completion across finish and close paths
- Latency effect buffering, logging and flush ordering
- Correlation ID assignment and response header
- Completion on client disconnect and on handler errors
"""

from itertools import count
from unittest.mock import Mock

import pytest

from casecore.app.api.middleware.lifecycle import RequestLifecycleMiddleware
from casecore.app.core.effect_queue import EffectQueue
from casecore.app.core.effect_recorder import REQUEST_STATE_KEY, RequestEffectRecorder
from casecore.app.core.request_lifecycle import (
    LIFECYCLE_END_CLOSE,
    LIFECYCLE_END_FINISH,
    METRICS_LATENCY,
    RequestLifecycleObserver,
)
from casecore.app.services.metrics_service import MetricsService
from casecore.config.settings import LifecycleSettings


class HeldQueue(EffectQueue):
    """Queue that keeps enqueued effects for inspection instead of draining."""

    def _schedule_drain(self) -> None:
        return None


def make_clock(*values):
    iterator = iter(values)
    return lambda: next(iterator)


class TestRequestLifecycleObserver:
    """Test suite for RequestLifecycleObserver."""

    def setup_method(self):
        self.queue = HeldQueue()
        self.recorder = RequestEffectRecorder(self.queue)
        self.metrics = MetricsService()
        self.logger = Mock()
        ids = count(1)
        self.observer = RequestLifecycleObserver(
            recorder=self.recorder,
            metrics=self.metrics,
            logger=self.logger,
            clock=make_clock(10.0, 10.25),
            id_factory=lambda: f"corr-{next(ids)}"
        )

    def test_begin_assigns_correlation_id_and_attaches_context(self):
        state = {}

        lifecycle = self.observer.begin("GET", "/cases", state)

        assert lifecycle.correlation_id == "corr-1"
        assert state[REQUEST_STATE_KEY] is lifecycle.effects
        assert lifecycle.effects.request_id == "corr-1"

    def test_begin_keeps_supplied_correlation_id(self):
        lifecycle = self.observer.begin("GET", "/cases", {}, correlation_id="from-client")
        assert lifecycle.correlation_id == "from-client"

    def test_finalize_runs_once(self):
        lifecycle = self.observer.begin("POST", "/cases", {})
        lifecycle.status_code = 201

        assert lifecycle.finalize(LIFECYCLE_END_FINISH) is True
        assert lifecycle.finalize(LIFECYCLE_END_CLOSE) is False

        self.logger.info.assert_called_once()
        event, fields = self.logger.info.call_args.args[0], self.logger.info.call_args.kwargs
        assert event == "REQUEST_LIFECYCLE"
        assert fields["lifecycle_end"] == LIFECYCLE_END_FINISH
        assert fields["duration_ms"] == 250.0
        assert fields["status"] == 201
        assert fields["method"] == "POST"
        assert fields["route"] == "/cases"
        assert fields["transaction_committed"] is False

    def test_close_first_wins(self):
        lifecycle = self.observer.begin("GET", "/cases", {})

        lifecycle.finalize(LIFECYCLE_END_CLOSE)
        lifecycle.finalize(LIFECYCLE_END_FINISH)

        assert lifecycle.lifecycle_end == LIFECYCLE_END_CLOSE
        assert self.logger.info.call_count == 1

    def test_latency_effect_released_without_transaction(self):
        lifecycle = self.observer.begin("GET", "/cases?page=2", {})
        lifecycle.finalize(LIFECYCLE_END_FINISH)

        assert self.queue.get_queue_depth() == 1
        effect = self.queue._queue[0]
        assert effect.kind == METRICS_LATENCY
        assert effect.payload == {"route": "/cases?page=2", "duration_ms": 250.0}
        assert lifecycle.effects.effects == []

    def test_latency_effect_discarded_after_rollback(self):
        lifecycle = self.observer.begin("DELETE", "/cases/1", {})
        lifecycle.effects.transaction_active = True

        lifecycle.finalize(LIFECYCLE_END_FINISH)

        assert self.queue.get_queue_depth() == 0

    @pytest.mark.asyncio
    async def test_latency_effect_feeds_metrics(self):
        lifecycle = self.observer.begin("GET", "/cases?page=2", {})
        lifecycle.status_code = 500
        lifecycle.finalize(LIFECYCLE_END_FINISH)

        await self.queue.drain()

        snapshot = self.metrics.get_snapshot()
        assert snapshot["requests"] == {"/cases": 1}
        assert snapshot["errors"] == {"500": 1}
        assert self.metrics.get_latency_percentiles("/cases")["p50"] == 250.0

    def test_slow_request_logged_as_warning(self):
        self.observer.slow_request_threshold_ms = 100
        lifecycle = self.observer.begin("GET", "/reports", {})

        lifecycle.finalize(LIFECYCLE_END_FINISH)

        self.logger.info.assert_not_called()
        self.logger.warning.assert_called_once()
        assert self.logger.warning.call_args.kwargs["slow_request"] is True


class TestRequestLifecycleMiddleware:
    """Test suite for the ASGI binding, driven without a server."""

    def setup_method(self):
        self.queue = HeldQueue()
        self.logger = Mock()
        self.observer = RequestLifecycleObserver(
            recorder=RequestEffectRecorder(self.queue),
            metrics=MetricsService(),
            logger=self.logger,
            id_factory=lambda: "generated-id"
        )
        self.sent = []

    def scope(self, headers=None, state=None):
        return {
            "type": "http",
            "method": "GET",
            "path": "/cases",
            "headers": headers or [],
            "state": state if state is not None else {},
        }

    async def send(self, message):
        self.sent.append(message)

    @pytest.mark.asyncio
    async def test_response_header_and_single_log_when_disconnect_follows(self):
        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await send({"type": "http.response.body", "body": b"ok"})
            await receive()

        async def receive():
            return {"type": "http.disconnect"}

        middleware = RequestLifecycleMiddleware(app, self.observer)
        await middleware(self.scope(), receive, self.send)

        start = self.sent[0]
        assert (b"x-request-id", b"generated-id") in start["headers"]
        assert self.logger.info.call_count == 1
        assert self.logger.info.call_args.kwargs["lifecycle_end"] == LIFECYCLE_END_FINISH

    @pytest.mark.asyncio
    async def test_disconnect_before_response_completes_with_close(self):
        async def app(scope, receive, send):
            await receive()
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await send({"type": "http.response.body", "body": b"late"})

        async def receive():
            return {"type": "http.disconnect"}

        middleware = RequestLifecycleMiddleware(app, self.observer)
        await middleware(self.scope(), receive, self.send)

        assert self.logger.info.call_count == 1
        assert self.logger.info.call_args.kwargs["lifecycle_end"] == LIFECYCLE_END_CLOSE

    @pytest.mark.asyncio
    async def test_handler_error_answers_500_with_correlation_header(self):
        async def app(scope, receive, send):
            raise RuntimeError("handler crashed")

        async def receive():
            return {"type": "http.request", "body": b""}

        middleware = RequestLifecycleMiddleware(app, self.observer)
        await middleware(self.scope(), receive, self.send)

        start = self.sent[0]
        assert start["status"] == 500
        assert (b"x-request-id", b"generated-id") in start["headers"]
        assert b'"correlation_id":"generated-id"' in self.sent[1]["body"]

        assert self.logger.info.call_count == 1
        fields = self.logger.info.call_args.kwargs
        assert fields["lifecycle_end"] == LIFECYCLE_END_FINISH
        assert fields["status"] == 500

    @pytest.mark.asyncio
    async def test_error_after_response_started_propagates(self):
        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            raise RuntimeError("stream broke")

        async def receive():
            return {"type": "http.request", "body": b""}

        middleware = RequestLifecycleMiddleware(app, self.observer)
        with pytest.raises(RuntimeError):
            await middleware(self.scope(), receive, self.send)

        assert self.logger.info.call_count == 1
        fields = self.logger.info.call_args.kwargs
        assert fields["lifecycle_end"] == LIFECYCLE_END_CLOSE
        assert fields["status"] == 200

    @pytest.mark.asyncio
    async def test_inbound_correlation_id_and_identities(self):
        async def app(scope, receive, send):
            scope["state"]["user_id"] = "user-42"
            scope["state"]["firm_id"] = "firm-7"
            await send({"type": "http.response.start", "status": 204, "headers": []})
            await send({"type": "http.response.body", "body": b""})

        async def receive():
            return {"type": "http.request", "body": b""}

        state = {}
        middleware = RequestLifecycleMiddleware(app, self.observer)
        await middleware(self.scope(headers=[(b"x-request-id", b"client-id")], state=state), receive, self.send)

        fields = self.logger.info.call_args.kwargs
        assert fields["correlation_id"] == "client-id"
        assert fields["actor"] == "user-42"
        assert fields["tenant"] == "firm-7"
        assert state["correlation_id"] == "client-id"

    @pytest.mark.asyncio
    async def test_inbound_correlation_id_ignored_when_disabled(self):
        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await send({"type": "http.response.body", "body": b""})

        async def receive():
            return {"type": "http.request", "body": b""}

        middleware = RequestLifecycleMiddleware(
            app,
            self.observer,
            LifecycleSettings(accept_inbound_correlation_id=False)
        )
        await middleware(self.scope(headers=[(b"x-request-id", b"client-id")]), receive, self.send)

        assert self.logger.info.call_args.kwargs["correlation_id"] == "generated-id"
