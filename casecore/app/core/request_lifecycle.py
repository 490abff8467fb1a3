"""
Exactly-once completion handling for observed requests.

A request can end through normal completion or through its connection
closing early, and both paths may fire. The first one to arrive records
the latency effect, writes the REQUEST_LIFECYCLE line and flushes the
request's buffered effects; later calls are ignored.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from casecore.app.core.effect_queue import DeferredEffect
from casecore.app.core.effect_recorder import RequestEffectContext, RequestEffectRecorder
from casecore.app.services.metrics_service import MetricsService
from casecore.app.utils.logging import generate_correlation_id, get_logger, log_request_lifecycle


METRICS_LATENCY = "METRICS_LATENCY"

LIFECYCLE_END_FINISH = "finish"
LIFECYCLE_END_CLOSE = "close"


class RequestLifecycle:
    """State of one in-flight request."""

    def __init__(
        self,
        observer: "RequestLifecycleObserver",
        method: str,
        route: str,
        correlation_id: str,
        effects: RequestEffectContext,
        started_at: datetime,
        started_clock: float
    ):
        self.observer = observer
        self.method = method
        self.route = route
        self.correlation_id = correlation_id
        self.effects = effects
        self.started_at = started_at
        self.started_clock = started_clock
        self.status_code: Optional[int] = None
        self.actor: Optional[str] = None
        self.tenant: Optional[str] = None
        self.logged = False
        self.lifecycle_end: Optional[str] = None
        self.duration_ms: Optional[float] = None

    def finalize(self, reason: str, status_code: Optional[int] = None) -> bool:
        """
        Complete the request once.

        Returns:
            True if this call performed the completion, False if an earlier
            call already had
        """
        if self.logged:
            return False
        self.logged = True
        self.lifecycle_end = reason
        if status_code is not None:
            self.status_code = status_code

        self.observer._complete(self)
        return True


class RequestLifecycleObserver:
    """
    Starts and completes request lifecycles.

    Completion buffers a METRICS_LATENCY effect, logs synchronously and
    then flushes the recorder, in that order.
    """

    def __init__(
        self,
        recorder: RequestEffectRecorder,
        metrics: MetricsService,
        logger: Any = None,
        slow_request_threshold_ms: Optional[float] = None,
        clock: Callable[[], float] = time.perf_counter,
        id_factory: Callable[[], str] = generate_correlation_id
    ):
        self.recorder = recorder
        self.metrics = metrics
        self.logger = logger or get_logger("request_lifecycle")
        self.slow_request_threshold_ms = slow_request_threshold_ms
        self.clock = clock
        self.id_factory = id_factory

    def begin(
        self,
        method: str,
        route: str,
        request_state: Any,
        correlation_id: Optional[str] = None
    ) -> RequestLifecycle:
        """
        Start observing a request.

        Assigns a correlation ID when none is supplied and attaches the
        recorder context to ``request_state``.
        """
        correlation_id = correlation_id or self.id_factory()
        effects = self.recorder.attach(request_state, request_id=correlation_id)
        return RequestLifecycle(
            observer=self,
            method=method,
            route=route,
            correlation_id=correlation_id,
            effects=effects,
            started_at=datetime.now(timezone.utc),
            started_clock=self.clock()
        )

    def _complete(self, lifecycle: RequestLifecycle) -> None:
        duration_ms = round((self.clock() - lifecycle.started_clock) * 1000, 3)
        lifecycle.duration_ms = duration_ms

        self.recorder.enqueue_after_commit(
            lifecycle.effects,
            self._latency_effect(lifecycle.route, duration_ms, lifecycle.status_code)
        )

        log_request_lifecycle(
            self.logger,
            correlation_id=lifecycle.correlation_id,
            method=lifecycle.method,
            route=lifecycle.route,
            actor=lifecycle.actor,
            tenant=lifecycle.tenant,
            start_time=lifecycle.started_at,
            duration_ms=duration_ms,
            status_code=lifecycle.status_code,
            lifecycle_end=lifecycle.lifecycle_end,
            transaction_committed=lifecycle.effects.transaction_committed,
            slow_request_threshold_ms=self.slow_request_threshold_ms
        )

        self.recorder.flush(lifecycle.effects)

    def _latency_effect(
        self,
        route: str,
        duration_ms: float,
        status_code: Optional[int]
    ) -> DeferredEffect:
        metrics = self.metrics

        async def record() -> None:
            metrics.record_request(route)
            metrics.record_latency(route, duration_ms)
            if status_code is not None and status_code >= 400:
                metrics.record_error(status_code)

        return DeferredEffect(
            kind=METRICS_LATENCY,
            payload={"route": route, "duration_ms": duration_ms},
            action=record
        )
