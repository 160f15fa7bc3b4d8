"""
Pytest configuration and shared fixtures for testing.
Provides fast settings, in-memory persistence and collaborator fakes.
"""
import asyncio
import os
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

# Keep a developer's environment out of the settings under test
for _key in [k for k in os.environ if k.startswith("TICKETSYNC_")]:
    del os.environ[_key]

from ticketsync.collaborators import AgentAssignmentService, BotInferenceService
from ticketsync.config import SyncSettings
from ticketsync.models import AssignmentResult, InferenceResult
from ticketsync.persistence import InMemoryPersistence
from ticketsync.store import TicketStore


# ===========================
# Settings Fixtures
# ===========================

@pytest.fixture
def test_settings() -> SyncSettings:
    """
    Settings with short windows so timer-driven behaviour runs in
    milliseconds. The feed watchdog is off unless a test turns it on.
    """
    return SyncSettings(
        _env_file=None,
        typing_window=0.05,
        poll_interval=0.02,
        feed_silence_timeout=None,
        heartbeat_interval=None,
        max_reconnect_attempts=3,
        reconnect_backoff_base=0.01,
        reconnect_backoff_max=0.04,
        write_timeout=1.0,
        pending_window=5.0,
        collaborator_timeout=1.0,
        bot_max_attempts=1,
    )


@pytest.fixture
def settings_override(test_settings: SyncSettings):
    """
    Override settings for individual tests.
    Usage: settings_override({"typing_window": 0.1})
    """
    def _override(overrides: Dict[str, Any]) -> SyncSettings:
        for key, value in overrides.items():
            setattr(test_settings, key, value)
        return test_settings

    return _override


# ===========================
# Persistence Fixtures
# ===========================

@pytest.fixture
def persistence() -> InMemoryPersistence:
    """Fresh in-memory backend without heartbeats."""
    return InMemoryPersistence()


@pytest_asyncio.fixture
async def ticket_store(persistence: InMemoryPersistence, test_settings: SyncSettings) -> TicketStore:
    """Store for a newly created ticket (welcome message seeded)."""
    return await TicketStore.open_or_create(persistence, "user-1", settings=test_settings)


# ===========================
# Collaborator Fakes
# ===========================

class FakeBot(BotInferenceService):
    """Scripted bot-inference collaborator."""

    def __init__(self, reply: str = "Bot reply", suggests_live_agent: bool = False):
        self.reply = reply
        self.suggests_live_agent = suggests_live_agent
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[Dict[str, str]] = []

    async def infer(self, ticket_id: str, message: str) -> InferenceResult:
        self.calls.append({"ticket_id": ticket_id, "message": message})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return InferenceResult(reply=self.reply, suggests_live_agent=self.suggests_live_agent)


class FakeAssignment(AgentAssignmentService):
    """Scripted agent-assignment collaborator."""

    def __init__(self, assigned: bool = True, agent_name: str = "Dana", agent_id: str = "agent-7"):
        self.assigned = assigned
        self.agent_name = agent_name
        self.agent_id = agent_id
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[str] = []

    async def assign(self, ticket_id: str) -> AssignmentResult:
        self.calls.append(ticket_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if not self.assigned:
            return AssignmentResult(assigned=False)
        return AssignmentResult(assigned=True, agent_name=self.agent_name, agent_id=self.agent_id)


@pytest.fixture
def fake_bot() -> FakeBot:
    return FakeBot()


@pytest.fixture
def fake_assignment() -> FakeAssignment:
    return FakeAssignment()


# ===========================
# Utility Fixtures
# ===========================

@pytest.fixture
def eventually():
    """
    Poll a predicate until it holds.
    Usage: await eventually(lambda: store.ticket.user_typing)
    """
    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(interval)

    return _eventually


@pytest.fixture
def sample_wire_message() -> Dict[str, Any]:
    """A message row as the change feed delivers it."""
    return {
        "id": "s1",
        "ticket_id": "t-1",
        "sender_type": "user",
        "message": "Hello",
        "created_at": "2024-05-01T10:00:00+00:00",
        "is_read": False,
    }


# ===========================
# Pytest Configuration
# ===========================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
