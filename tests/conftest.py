from __future__ import annotations

import pytest

from intent_interview.agent.interview.state import State, initial_state
from intent_interview.config import ElicitationConfig


@pytest.fixture
def config() -> ElicitationConfig:
    return ElicitationConfig()


@pytest.fixture
def base_state() -> State:
    return initial_state(
        session_id="session-1",
        raw_intent="Users should be able to reset their password",
        max_rounds=3,
    )
