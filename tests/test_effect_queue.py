"""
Unit tests for the deferred effect queue.

Test Coverage:
- Effect normalization and defaults
- FIFO execution and tail re-queue on retry
- Retry budget and the failure history ring
- Isolation of failing effects
- Single-flight draining, reset and per-action deadlines
"""

import asyncio

import pytest

from casecore.app.core.effect_queue import (
    DEFAULT_EFFECT_KIND,
    DeferredEffect,
    EffectQueue,
)
from casecore.app.utils.logging import clear_correlation_id, get_correlation_id, set_correlation_id
from casecore.config.settings import EffectQueueSettings


class TestEffectNormalization:
    """Test suite for turning effect descriptions into DeferredEffect."""

    def setup_method(self):
        self.queue = EffectQueue(default_max_retries=2)

    def test_none_gets_all_defaults(self):
        effect = self.queue.normalize(None)

        assert effect.id
        assert effect.kind == DEFAULT_EFFECT_KIND
        assert effect.payload == {}
        assert effect.attempts == 0
        assert effect.max_retries == 2

    def test_mapping_keeps_supplied_fields(self):
        async def action():
            return None

        effect = self.queue.normalize({
            "id": "effect-1",
            "kind": "AUDIT_WRITE",
            "payload": {"target": "abc"},
            "action": action,
            "max_retries": 0,
        })

        assert effect.id == "effect-1"
        assert effect.kind == "AUDIT_WRITE"
        assert effect.payload == {"target": "abc"}
        assert effect.action is action
        assert effect.max_retries == 0

    def test_deferred_effect_without_budget_takes_default(self):
        effect = self.queue.normalize(DeferredEffect(kind="METRICS_LATENCY"))
        assert effect.max_retries == 2

    def test_enqueue_without_running_loop_returns_id(self):
        effect_id = self.queue.enqueue({"id": "queued"})

        assert effect_id == "queued"
        assert self.queue.get_queue_depth() == 1

    def test_from_settings(self):
        queue = EffectQueue.from_settings(EffectQueueSettings(
            default_max_retries=5,
            failure_history_size=3,
            action_timeout_seconds=1.5
        ))

        assert queue.default_max_retries == 5
        assert queue.failure_history_size == 3
        assert queue.action_timeout_seconds == 1.5


class TestEffectQueueDrain:
    """Test suite for drain behavior."""

    @pytest.mark.asyncio
    async def test_second_effect_failing_with_one_retry(self):
        queue = EffectQueue()
        calls = []

        async def first():
            calls.append(1)

        async def second():
            calls.append(2)
            raise RuntimeError("smtp unavailable")

        async def third():
            calls.append(3)

        queue.enqueue(DeferredEffect(action=first))
        failing_id = queue.enqueue(DeferredEffect(action=second, max_retries=1))
        queue.enqueue(DeferredEffect(action=third))

        await queue.wait_until_idle(timeout=1)

        assert calls == [1, 2, 3, 2]
        failed = queue.get_failed_effects()
        assert len(failed) == 1
        assert failed[0]["id"] == failing_id
        assert failed[0]["error"] == "smtp unavailable"
        assert failed[0]["attempts"] == 2
        assert failed[0]["exhausted"] is True
        assert queue.get_queue_depth() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [0, 1, 3])
    async def test_action_invoked_at_most_retries_plus_one(self, max_retries):
        queue = EffectQueue()
        attempts = 0

        async def always_fails():
            nonlocal attempts
            attempts += 1
            raise ValueError("nope")

        queue.enqueue(DeferredEffect(action=always_fails, max_retries=max_retries))
        await queue.wait_until_idle(timeout=1)

        assert attempts == max_retries + 1
        assert queue.get_stats()["dropped"] == 1

    @pytest.mark.asyncio
    async def test_effect_recovering_on_retry_is_not_dropped(self):
        queue = EffectQueue()
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ConnectionError("transient")

        queue.enqueue(DeferredEffect(action=flaky, max_retries=2))
        await queue.wait_until_idle(timeout=1)

        stats = queue.get_stats()
        assert attempts == 2
        assert stats["succeeded"] == 1
        assert stats["dropped"] == 0
        assert queue.get_failed_effects()[0]["exhausted"] is False

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        queue = EffectQueue()
        order = []

        def make(label):
            async def action():
                order.append(label)
            return action

        for label in "abcde":
            queue.enqueue(DeferredEffect(action=make(label)))

        await queue.wait_until_idle(timeout=1)
        assert order == list("abcde")

    @pytest.mark.asyncio
    async def test_failure_history_is_bounded_and_newest_first(self):
        queue = EffectQueue(failure_history_size=10)

        async def fails():
            raise RuntimeError("down")

        ids = [queue.enqueue(DeferredEffect(action=fails, max_retries=0)) for _ in range(12)]
        await queue.wait_until_idle(timeout=1)

        failed = queue.get_failed_effects()
        assert len(failed) == 10
        assert [record["id"] for record in failed] == list(reversed(ids))[:10]

    @pytest.mark.asyncio
    async def test_failed_effects_returns_a_copy(self):
        queue = EffectQueue()

        async def fails():
            raise RuntimeError("down")

        queue.enqueue(DeferredEffect(action=fails, max_retries=0, payload={"a": 1}))
        await queue.wait_until_idle(timeout=1)

        snapshot = queue.get_failed_effects()
        snapshot[0]["payload"]["a"] = 2
        snapshot.clear()

        assert queue.get_failed_effects()[0]["payload"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_concurrent_drains_run_each_effect_once(self):
        queue = EffectQueue()
        runs = []

        async def action():
            runs.append(1)
            await asyncio.sleep(0)

        for _ in range(5):
            queue.enqueue(DeferredEffect(action=action))

        await asyncio.gather(queue.drain(), queue.drain(), queue.drain())
        await queue.wait_until_idle(timeout=1)

        assert len(runs) == 5

    @pytest.mark.asyncio
    async def test_action_timeout_counts_as_failure(self):
        queue = EffectQueue(action_timeout_seconds=0.01)

        async def slow():
            await asyncio.sleep(1)

        queue.enqueue(DeferredEffect(kind="EMAIL", action=slow, max_retries=0))
        await queue.wait_until_idle(timeout=1)

        failed = queue.get_failed_effects()
        assert len(failed) == 1
        assert failed[0]["kind"] == "EMAIL"
        assert failed[0]["error"] == "TimeoutError"

    @pytest.mark.asyncio
    async def test_drain_task_does_not_carry_request_correlation_id(self):
        queue = EffectQueue()
        seen = []

        async def action():
            seen.append(get_correlation_id())

        set_correlation_id("req-1")
        try:
            queue.enqueue(DeferredEffect(action=action))
            await queue.wait_until_idle(timeout=1)

            assert seen == [None]
            assert get_correlation_id() == "req-1"
        finally:
            clear_correlation_id()


class TestEffectQueueReset:
    """Test suite for reset."""

    def test_reset_clears_pending_and_counters(self):
        queue = EffectQueue()
        for _ in range(3):
            queue.enqueue(None)

        queue.reset()

        assert queue.get_queue_depth() == 0
        assert queue.get_failed_effects() == []
        assert queue.is_draining is False
        assert queue.get_stats()["processed"] == 0

    @pytest.mark.asyncio
    async def test_reset_during_drain_stops_the_old_drain(self):
        queue = EffectQueue()
        release = asyncio.Event()
        ran = []

        async def blocking():
            await release.wait()
            ran.append("blocking")

        async def later():
            ran.append("later")

        queue.enqueue(DeferredEffect(action=blocking))
        queue.enqueue(DeferredEffect(action=later))
        await asyncio.sleep(0)
        assert queue.is_draining is True

        queue.reset()
        assert queue.is_draining is False
        assert queue.get_queue_depth() == 0

        release.set()
        for _ in range(3):
            await asyncio.sleep(0)
        await queue.wait_until_idle(timeout=1)

        assert ran == ["blocking"]
