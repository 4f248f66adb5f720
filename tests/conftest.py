"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from scaffolder.tasks.broker import StoreRetryPolicy, TaskBroker
from scaffolder.tasks.database_store import DatabaseTaskStore
from scaffolder.tasks.models import TaskSpec
from scaffolder.tasks.store import InMemoryTaskStore


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_spec(steps, *, values=None, output=None, base_url=None) -> TaskSpec:
    payload = {"steps": steps, "values": values or {}, "output": output or {}}
    if base_url is not None:
        payload["baseUrl"] = base_url
    return TaskSpec.from_dict(payload)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture(params=["memory", "database"])
def store(request, tmp_path: Path, clock: ManualClock):
    """Both ``TaskStore`` implementations driven by the manual clock."""

    if request.param == "memory":
        yield InMemoryTaskStore(clock=clock)
        return
    database_store = DatabaseTaskStore(tmp_path / "tasks.db", clock=clock)
    database_store.init_schema()
    try:
        yield database_store
    finally:
        database_store.close()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def broker(sleeps: list[float]) -> TaskBroker:
    return TaskBroker(
        InMemoryTaskStore(),
        worker_id="worker-test",
        poll_interval_seconds=0.01,
        retry_policy=StoreRetryPolicy(attempts=3, base_seconds=0.01, max_seconds=0.05),
        sleep=sleeps.append,
    )
