"""Shared fixtures: test configuration, database and recording collaborators."""

from typing import Any, Optional

import pytest
import pytest_asyncio

import config
import database
from config import AccessConfig
from models import AuditEvent, AuthorizationResult
from services.state_store import StateStore
from services.tasks import TaskDispatcher


@pytest.fixture(autouse=True)
def access_config():
    """Install a fresh configuration for every test."""
    cfg = AccessConfig.model_validate({
        "authorizer": {
            "url": "https://auth.example.test/check",
            "token": "secret-token",
            "retry_delay_ms": 0,
            "timeout_seconds": 2,
        },
    })
    previous = config._config
    config._config = cfg
    yield cfg
    config._config = previous


@pytest_asyncio.fixture
async def db(tmp_path):
    """Initialized SQLite database in a temp directory."""
    conn = await database.init_db(str(tmp_path / "access.db"))
    yield conn
    await database.close_db()


@pytest.fixture
def store() -> StateStore:
    return StateStore()


@pytest_asyncio.fixture
async def dispatcher():
    d = TaskDispatcher()
    yield d
    await d.cancel_all()


class FakeOutputs:
    """Output controller that records every switch command."""

    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.calls: list[tuple[int, bool]] = []

    async def set_output(self, channel: int, on: bool) -> bool:
        self.calls.append((channel, on))
        return self.ok


class RecordingAudit:
    """Audit sink keeping events in memory."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.events]


class FakeAuthorizer:
    """Authorizer returning queued results; exceptions in the queue are raised."""

    def __init__(self, results: Optional[list[Any]] = None) -> None:
        self.results = list(results or [])
        self.codes: list[str] = []

    async def check(self, code: str) -> AuthorizationResult:
        self.codes.append(code)
        result = self.results.pop(0) if self.results else AuthorizationResult(granted=True)
        if isinstance(result, Exception):
            raise result
        return result


class FakeDoorOpener:
    def __init__(self) -> None:
        self.opened = 0

    def open(self) -> None:
        self.opened += 1


@pytest.fixture
def outputs() -> FakeOutputs:
    return FakeOutputs()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def authorizer() -> FakeAuthorizer:
    return FakeAuthorizer()


@pytest.fixture
def door_opener() -> FakeDoorOpener:
    return FakeDoorOpener()
