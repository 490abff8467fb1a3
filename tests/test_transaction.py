"""
Unit tests for the transaction layer.

Test Coverage:
- execute_write commit and rollback flag handling
- Rejection of writes outside an active transaction
- TransactionMiddleware session lifecycle per HTTP method
"""

import pytest

from casecore.app.api.middleware.transaction import TransactionMiddleware
from casecore.app.core.database import MongoDBManager, execute_write
from casecore.app.core.effect_queue import EffectQueue
from casecore.app.core.effect_recorder import REQUEST_STATE_KEY, RequestEffectContext, RequestEffectRecorder
from casecore.app.core.exceptions import DatabaseError, ErrorCode, TransactionError
from casecore.config.settings import DatabaseSettings

from tests.fakes import FakeSession, RetryingSession


class TestExecuteWrite:
    """Test suite for execute_write."""

    @pytest.mark.asyncio
    async def test_commit_sets_flag_after_callback(self):
        effects = RequestEffectContext(transaction_active=True)
        session = FakeSession()
        observed = []

        async def write(txn):
            observed.append(effects.transaction_committed)
            return "result"

        result = await execute_write(effects, session, write)

        assert result == "result"
        assert observed == [False]
        assert effects.transaction_committed is True
        assert session.committed == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_flag_unset(self):
        effects = RequestEffectContext(transaction_active=True)
        session = FakeSession()

        async def write(txn):
            raise ValueError("constraint violated")

        with pytest.raises(ValueError):
            await execute_write(effects, session, write)

        assert effects.transaction_committed is False
        assert session.aborted == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("effects, session", [
        (None, FakeSession()),
        (RequestEffectContext(transaction_active=False), FakeSession()),
        (RequestEffectContext(transaction_active=True), None),
    ])
    async def test_write_without_transaction_is_rejected(self, effects, session):
        async def write(txn):
            return None

        with pytest.raises(TransactionError) as exc_info:
            await execute_write(effects, session, write)

        assert exc_info.value.error_code == ErrorCode.TRANSACTION_REQUIRED

    @pytest.mark.asyncio
    async def test_retried_attempt_discards_its_buffered_effects(self):
        recorder = RequestEffectRecorder(EffectQueue())
        effects = RequestEffectContext(transaction_active=True)
        recorder.enqueue_after_commit(effects, {"kind": "EARLIER", "payload": {}})
        session = RetryingSession()

        async def write(txn):
            recorder.enqueue_after_commit(effects, {"kind": "AUDIT_WRITE", "payload": {"attempt": txn.attempts}})
            if txn.attempts == 1:
                raise ConnectionError("transient transaction error")
            return "ok"

        result = await execute_write(effects, session, write)

        assert result == "ok"
        assert session.attempts == 2
        assert effects.transaction_committed is True
        assert [effect.kind for effect in effects.effects] == ["EARLIER", "AUDIT_WRITE"]
        assert effects.effects[1].payload == {"attempt": 2}


class TestTransactionMiddleware:
    """Test suite for TransactionMiddleware."""

    def setup_method(self):
        self.recorder = RequestEffectRecorder(EffectQueue())
        self.sent = []
        self.seen_state = None

    async def app(self, scope, receive, send):
        self.seen_state = dict(scope["state"])
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b""})

    async def receive(self):
        return {"type": "http.request", "body": b""}

    async def send(self, message):
        self.sent.append(message)

    def scope(self, method):
        return {"type": "http", "method": method, "path": "/cases", "headers": [], "state": {}}

    @pytest.mark.asyncio
    async def test_mutating_request_gets_session_and_active_transaction(self):
        session = FakeSession()

        async def factory():
            return session

        middleware = TransactionMiddleware(self.app, factory, self.recorder)
        await middleware(self.scope("POST"), self.receive, self.send)

        effects = self.seen_state[REQUEST_STATE_KEY]
        assert self.seen_state["db_session"] is session
        assert effects.transaction_active is True
        assert effects.transaction_committed is False
        assert session.ended is True

    @pytest.mark.asyncio
    async def test_safe_request_passes_through(self):
        async def factory():
            raise AssertionError("no session expected")

        middleware = TransactionMiddleware(self.app, factory, self.recorder)
        await middleware(self.scope("GET"), self.receive, self.send)

        assert "db_session" not in self.seen_state
        assert self.sent[0]["status"] == 200

    @pytest.mark.asyncio
    async def test_session_start_failure_returns_503(self):
        async def factory():
            raise ConnectionError("replica set unavailable")

        scope = self.scope("DELETE")
        middleware = TransactionMiddleware(self.app, factory, self.recorder)
        await middleware(scope, self.receive, self.send)

        assert self.seen_state is None
        assert self.sent[0]["status"] == 503
        assert b'"code":"3002"' in self.sent[1]["body"]
        assert scope["state"]["transaction_start_failed"] is True

    @pytest.mark.asyncio
    async def test_session_ended_when_handler_raises(self):
        session = FakeSession()

        async def factory():
            return session

        async def failing_app(scope, receive, send):
            raise RuntimeError("boom")

        middleware = TransactionMiddleware(failing_app, factory, self.recorder)
        with pytest.raises(RuntimeError):
            await middleware(self.scope("PATCH"), self.receive, self.send)

        assert session.ended is True


class TestMongoDBManager:
    """Test suite for MongoDBManager without a server."""

    def setup_method(self):
        self.manager = MongoDBManager(DatabaseSettings())

    @pytest.mark.asyncio
    async def test_no_session_when_disconnected(self):
        assert await self.manager.start_session() is None

    @pytest.mark.asyncio
    async def test_health_check_when_disconnected(self):
        health = await self.manager.health_check()
        assert health["status"] == "disconnected"

    def test_get_database_when_disconnected_raises(self):
        with pytest.raises(DatabaseError):
            self.manager.get_database()
