"""
Shared fixtures for casecore tests.
"""

import pytest

from casecore.app.core.effect_queue import EffectQueue
from casecore.app.core.effect_recorder import RequestEffectRecorder

from tests.fakes import FakeDatabase, FakeSession


@pytest.fixture
def fake_database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def effect_queue() -> EffectQueue:
    return EffectQueue(default_max_retries=2, failure_history_size=10)


@pytest.fixture
def recorder(effect_queue: EffectQueue) -> RequestEffectRecorder:
    return RequestEffectRecorder(effect_queue)
