"""
Commit-gated buffering of deferred effects per request.

Effects recorded during a request are held back until the request
finishes. They reach the EffectQueue only if no transaction was opened or
the transaction committed; after a rollback they are discarded, so work
that follows from a database write is never observed unless the write
persisted.
"""

from dataclasses import dataclass, field
from typing import Any, List, MutableMapping, Optional

from casecore.app.core.effect_queue import DeferredEffect, EffectInput, EffectQueue
from casecore.app.utils.logging import get_logger

logger = get_logger(__name__)


REQUEST_STATE_KEY = "effects"


@dataclass
class RequestEffectContext:
    """
    Effects buffered for one request plus the transaction outcome flags.

    ``transaction_active`` and ``transaction_committed`` are written by the
    transaction layer only.
    """

    request_id: Optional[str] = None
    effects: List[DeferredEffect] = field(default_factory=list)
    transaction_active: bool = False
    transaction_committed: bool = False

    @property
    def should_release(self) -> bool:
        return not self.transaction_active or self.transaction_committed

    @property
    def pending_count(self) -> int:
        return len(self.effects)


class RequestEffectRecorder:
    """Buffers effects per request and releases them on flush."""

    def __init__(self, queue: EffectQueue):
        self.queue = queue

    def attach(self, request_state: Any, request_id: Optional[str] = None) -> RequestEffectContext:
        """
        Ensure a RequestEffectContext exists on a request-scoped holder.

        Accepts an object with attributes (``request.state``) or a mutable
        mapping (the ASGI ``scope["state"]`` dict). Calling it again returns
        the existing context.
        """
        if isinstance(request_state, MutableMapping):
            context = request_state.get(REQUEST_STATE_KEY)
            if context is None:
                context = RequestEffectContext(request_id=request_id)
                request_state[REQUEST_STATE_KEY] = context
        else:
            context = getattr(request_state, REQUEST_STATE_KEY, None)
            if context is None:
                context = RequestEffectContext(request_id=request_id)
                setattr(request_state, REQUEST_STATE_KEY, context)

        if context.request_id is None and request_id is not None:
            context.request_id = request_id
        return context

    def enqueue_after_commit(
        self,
        context: Optional[RequestEffectContext],
        effect: EffectInput
    ) -> str:
        """
        Buffer an effect until the request's transaction outcome is known.

        Without a request context (background work) the effect goes straight
        to the queue.

        Returns:
            The effect ID
        """
        if context is None:
            return self.queue.enqueue(effect)

        normalized = self.queue.normalize(effect)
        context.effects.append(normalized)
        return normalized.id

    def flush(self, context: Optional[RequestEffectContext]) -> int:
        """
        Release or discard the buffered effects of a finished request.

        Returns:
            Number of effects handed to the queue
        """
        if context is None or not context.effects:
            return 0

        if not context.should_release:
            discarded = len(context.effects)
            context.effects.clear()
            logger.warning(
                "SIDE_EFFECT_SKIPPED_ROLLBACK",
                request_id=context.request_id,
                count=discarded
            )
            return 0

        effects = list(context.effects)
        context.effects.clear()
        for effect in effects:
            self.queue.enqueue(effect)
        return len(effects)
