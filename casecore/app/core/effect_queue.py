"""
In-process deferred side-effect queue for casecore.

The queue runs best-effort work (audit rows, latency metrics, notification
emails) after the originating request has responded:
- FIFO execution with a single-flight drain loop per queue instance
- Bounded retries, with a failed effect re-queued at the tail
- A bounded, newest-first history of failed effects for diagnostics

State lives in memory only. A process restart loses both pending effects
and failure history; nothing here is replayed.
"""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Set, Union

from casecore.config.settings import EffectQueueSettings
from casecore.app.utils.logging import clear_correlation_id, get_logger

logger = get_logger(__name__)


DEFAULT_EFFECT_KIND = "SIDE_EFFECT"
DEFAULT_MAX_RETRIES = 2
DEFAULT_FAILURE_HISTORY_SIZE = 10

EffectAction = Callable[[], Awaitable[Any]]


async def _noop_action() -> None:
    return None


@dataclass
class DeferredEffect:
    """
    A unit of work scheduled to run after the request that produced it.

    ``action`` must be safe to invoke more than once; the queue retries it
    on failure and never deduplicates. ``max_retries`` left as None takes
    the queue's default when the effect is normalized.
    """

    kind: str = DEFAULT_EFFECT_KIND
    payload: Dict[str, Any] = field(default_factory=dict)
    action: EffectAction = _noop_action
    max_retries: Optional[int] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0

    def describe(self) -> Dict[str, Any]:
        """Loggable view of the effect without its callable."""
        return {
            "effect_id": self.id,
            "kind": self.kind,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
        }


EffectInput = Union[DeferredEffect, Mapping[str, Any], None]


@dataclass
class FailureRecord:
    """Diagnostic entry for an effect whose action raised."""

    id: str
    kind: str
    payload: Dict[str, Any]
    error: str
    occurred_at: datetime
    attempts: int = 1
    exhausted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": dict(self.payload),
            "error": self.error,
            "occurred_at": self.occurred_at.isoformat(),
            "attempts": self.attempts,
            "exhausted": self.exhausted,
        }


class EffectQueue:
    """
    FIFO queue of deferred effects with one active drain at a time.

    All mutation of the pending deque, the failure ring and the drain guard
    happens synchronously between awaits, so concurrent producers on the
    same event loop need no lock.
    """

    def __init__(
        self,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        failure_history_size: int = DEFAULT_FAILURE_HISTORY_SIZE,
        action_timeout_seconds: Optional[float] = None
    ):
        """
        Initialize the queue.

        Args:
            default_max_retries: Retry budget for effects that declare none
            failure_history_size: Capacity of the failure ring buffer
            action_timeout_seconds: Optional deadline per action invocation;
                a timeout counts as an ordinary failure
        """
        self.default_max_retries = default_max_retries
        self.failure_history_size = failure_history_size
        self.action_timeout_seconds = action_timeout_seconds

        self._queue: Deque[DeferredEffect] = deque()
        self._failed: Deque[FailureRecord] = deque(maxlen=failure_history_size)
        self._draining = False
        self._drain_scheduled = False
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()

        self._processed = 0
        self._succeeded = 0
        self._failures = 0
        self._dropped = 0

    @classmethod
    def from_settings(cls, settings: EffectQueueSettings) -> "EffectQueue":
        """Build a queue from the ``effects`` settings section."""
        return cls(
            default_max_retries=settings.default_max_retries,
            failure_history_size=settings.failure_history_size,
            action_timeout_seconds=settings.action_timeout_seconds
        )

    def normalize(self, effect: EffectInput) -> DeferredEffect:
        """
        Coerce an effect description into a DeferredEffect with defaults.

        Accepts a DeferredEffect, a mapping with any of ``id``, ``kind``,
        ``payload``, ``action``, ``attempts`` and ``max_retries``, or None.
        """
        if isinstance(effect, DeferredEffect):
            if effect.max_retries is None:
                effect.max_retries = self.default_max_retries
            return effect

        data = dict(effect or {})
        max_retries = data.get("max_retries")
        return DeferredEffect(
            id=data.get("id") or str(uuid.uuid4()),
            kind=data.get("kind") or DEFAULT_EFFECT_KIND,
            payload=data.get("payload") or {},
            action=data.get("action") or _noop_action,
            attempts=data.get("attempts") or 0,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
        )

    def enqueue(self, effect: EffectInput) -> str:
        """
        Append an effect to the tail and schedule a drain.

        Returns immediately with the effect ID; execution happens later on
        the running event loop.
        """
        normalized = self.normalize(effect)
        self._queue.append(normalized)
        self._schedule_drain()
        return normalized.id

    def _schedule_drain(self) -> None:
        if self._draining or self._drain_scheduled:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: the next enqueue or an explicit drain() picks it up
            logger.debug("No running event loop, drain deferred", queue_depth=len(self._queue))
            return

        self._drain_scheduled = True
        task = loop.create_task(self._drain_detached())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drain_detached(self) -> None:
        # The task inherits the scheduling request's context
        clear_correlation_id()
        await self.drain()

    async def drain(self) -> None:
        """
        Run queued effects until the queue is empty.

        Returns immediately if another drain is already in flight.
        """
        self._drain_scheduled = False
        if self._draining:
            return

        self._draining = True
        generation = self._generation
        try:
            while self._queue and generation == self._generation:
                effect = self._queue.popleft()
                self._processed += 1
                try:
                    await self._run_action(effect)
                except Exception as exc:
                    if generation == self._generation:
                        self._handle_failure(effect, exc)
                else:
                    self._succeeded += 1
        finally:
            if generation == self._generation:
                self._draining = False

    async def _run_action(self, effect: DeferredEffect) -> None:
        if self.action_timeout_seconds is None:
            await effect.action()
        else:
            await asyncio.wait_for(effect.action(), timeout=self.action_timeout_seconds)

    def _handle_failure(self, effect: DeferredEffect, exc: Exception) -> None:
        effect.attempts += 1
        self._failures += 1
        exhausted = effect.attempts > effect.max_retries
        error = str(exc) or type(exc).__name__

        self._record_failure(effect, error, exhausted)

        logger.warning(
            "SIDE_EFFECT_FAILED",
            error=error,
            error_type=type(exc).__name__,
            **effect.describe()
        )

        if not exhausted:
            self._queue.append(effect)
            return

        self._dropped += 1
        logger.error("SIDE_EFFECT_DROPPED", **effect.describe())

    def _record_failure(self, effect: DeferredEffect, error: str, exhausted: bool) -> None:
        """
        Put a failure record at the head of the history.

        The history keeps one entry per effect: a later failure of the same
        effect replaces the earlier one, so a retried effect shows its latest
        attempt count and whether its budget is exhausted.
        """
        for record in list(self._failed):
            if record.id == effect.id:
                self._failed.remove(record)
                break

        self._failed.appendleft(FailureRecord(
            id=effect.id,
            kind=effect.kind,
            payload=dict(effect.payload),
            error=error,
            occurred_at=datetime.now(timezone.utc),
            attempts=effect.attempts,
            exhausted=exhausted,
        ))

    def get_queue_depth(self) -> int:
        """Number of effects waiting to run."""
        return len(self._queue)

    def get_failed_effects(self) -> List[Dict[str, Any]]:
        """Snapshot of the failure history, newest first."""
        return [record.to_dict() for record in self._failed]

    @property
    def is_draining(self) -> bool:
        return self._draining

    def get_stats(self) -> Dict[str, Any]:
        """Counters for the diagnostics endpoint."""
        return {
            "queue_depth": len(self._queue),
            "draining": self._draining,
            "processed": self._processed,
            "succeeded": self._succeeded,
            "failures": self._failures,
            "dropped": self._dropped,
            "failed_history_size": len(self._failed),
        }

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """
        Wait until nothing is queued and no drain is running.

        Raises:
            asyncio.TimeoutError: If the queue is still busy after ``timeout``
        """
        async def _wait() -> None:
            while self._queue or self._draining or self._drain_scheduled:
                if self._queue and not self._draining and not self._drain_scheduled:
                    await self.drain()
                    continue
                await asyncio.sleep(0)

        await asyncio.wait_for(_wait(), timeout=timeout)

    def reset(self) -> None:
        """
        Clear pending effects, failure history and the drain guard.

        A drain still awaiting an action stops after that action returns.
        """
        self._generation += 1
        self._queue.clear()
        self._failed.clear()
        self._draining = False
        self._drain_scheduled = False
        self._processed = 0
        self._succeeded = 0
        self._failures = 0
        self._dropped = 0
