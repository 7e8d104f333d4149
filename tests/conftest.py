from __future__ import annotations

import itertools
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from telescope_collector.config import StorageSettings
from telescope_collector.services.models import ExceptionEntry, LogEntry, RequestDraft, RequestEntry
from telescope_collector.services.telescope import Telescope
from telescope_collector.storage.factory import create_storage
from telescope_collector.storage.memory import InMemoryStorage
from telescope_collector.storage.sql import SqlStorage

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock that advances only when told to."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_draft() -> Callable[..., RequestDraft]:
    def _make(**overrides: Any) -> RequestDraft:
        fields: dict[str, Any] = {
            "method": "GET",
            "path": "/api/users",
            "url": "http://localhost/api/users",
            "status": 200,
            "duration": 12.5,
            "headers": {"content-type": "application/json"},
            "query": {},
            "response_headers": {"content-type": "application/json"},
        }
        fields.update(overrides)
        return RequestDraft(**fields)

    return _make


@pytest.fixture
def make_request() -> Callable[..., RequestEntry]:
    counter = itertools.count()

    def _make(timestamp: datetime = BASE_TIME, **overrides: Any) -> RequestEntry:
        fields: dict[str, Any] = {
            "id": f"req-{next(counter)}",
            "method": "GET",
            "path": "/api/users",
            "url": "http://localhost/api/users",
            "status": 200,
            "duration": 10.0,
            "timestamp": timestamp,
            "headers": {},
            "query": {},
            "response_headers": {},
        }
        fields.update(overrides)
        return RequestEntry(**fields)

    return _make


@pytest.fixture
def make_exception() -> Callable[..., ExceptionEntry]:
    counter = itertools.count()

    def _make(timestamp: datetime = BASE_TIME, **overrides: Any) -> ExceptionEntry:
        fields: dict[str, Any] = {
            "id": f"exc-{next(counter)}",
            "name": "ValueError",
            "message": "bad value",
            "timestamp": timestamp,
        }
        fields.update(overrides)
        return ExceptionEntry(**fields)

    return _make


@pytest.fixture
def make_log() -> Callable[..., LogEntry]:
    counter = itertools.count()

    def _make(timestamp: datetime = BASE_TIME, **overrides: Any) -> LogEntry:
        fields: dict[str, Any] = {
            "id": f"log-{next(counter)}",
            "level": "info",
            "message": "hello",
            "timestamp": timestamp,
        }
        fields.update(overrides)
        return LogEntry(**fields)

    return _make


@pytest.fixture
def memory_storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def sql_storage(tmp_path) -> Iterator[SqlStorage]:
    storage = create_storage(StorageSettings(backend="sql", database_url=f"sqlite:///{tmp_path / 'telescope.db'}"))
    assert isinstance(storage, SqlStorage)
    yield storage
    storage.dispose()


@pytest.fixture(params=["memory", "sql"])
def storage(request: pytest.FixtureRequest, tmp_path) -> Iterator[InMemoryStorage | SqlStorage]:
    """Every storage backend; contract tests run once per backend."""

    if request.param == "memory":
        yield InMemoryStorage()
        return
    backend = create_storage(StorageSettings(backend="sql", database_url=f"sqlite:///{tmp_path / 'contract.db'}"))
    assert isinstance(backend, SqlStorage)
    yield backend
    backend.dispose()


@pytest.fixture
def telescope(memory_storage: InMemoryStorage) -> Iterator[Telescope]:
    instance = Telescope(memory_storage)
    yield instance
    instance.destroy()
