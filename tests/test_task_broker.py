from __future__ import annotations

import hashlib
from datetime import UTC, datetime

import allure
import pytest
from conftest import ManualClock, make_spec
from tenacity import Retrying

from scaffolder.errors import StoreUnavailableError
from scaffolder.tasks.broker import StoreRetryPolicy, TaskBroker, TaskHandle
from scaffolder.tasks.models import TaskEventType, TaskStatus, TaskView
from scaffolder.tasks.store import InMemoryTaskStore

pytestmark = [
    allure.epic("Task Broker"),
    allure.feature("Dispatch & Claim"),
]

SPEC = make_spec([{"id": "log", "action": "debug:log", "input": {"message": "hi"}}])


class FlakyStore:
    """Delegates to an in-memory store after failing selected calls a few times."""

    def __init__(self, **failures: int) -> None:
        self.inner = InMemoryTaskStore()
        self.failures = dict(failures)

    def __getattr__(self, name: str):
        target = getattr(self.inner, name)

        def _call(*args, **kwargs):
            if self.failures.get(name, 0) > 0:
                self.failures[name] -= 1
                raise StoreUnavailableError(f"{name} unavailable")
            return target(*args, **kwargs)

        return _call


def _broker(store, sleeps: list[float]) -> TaskBroker:
    return TaskBroker(
        store,
        worker_id="worker-test",
        poll_interval_seconds=0.01,
        retry_policy=StoreRetryPolicy(attempts=3, base_seconds=0.01, max_seconds=0.05),
        sleep=sleeps.append,
    )


def test_dispatch_creates_open_task(broker: TaskBroker) -> None:
    result = broker.dispatch(SPEC, secrets={"token": "abc"})

    details = broker.get(result.task_id)

    assert details is not None
    assert details.task.status == TaskStatus.OPEN
    assert details.task.secrets == {"token": "abc"}
    assert details.events == []
    assert details.completion is None
    assert broker.get("missing") is None


def test_claim_returns_handle_for_open_task(broker: TaskBroker) -> None:
    task_id = broker.dispatch(SPEC).task_id

    handle = broker.claim(timeout=0)

    assert handle is not None
    assert handle.task_id == task_id
    assert handle.spec == SPEC
    assert handle.secrets == {}
    assert broker.store.get_task(task_id).worker_id == "worker-test"


def test_claim_times_out_when_queue_is_empty(broker: TaskBroker, sleeps: list[float]) -> None:
    assert broker.claim(timeout=0) is None
    assert sleeps == []

    assert broker.claim(timeout=0.02) is None
    assert sleeps
    assert all(0 < value <= 0.01 for value in sleeps)


def test_claim_retries_unavailable_store() -> None:
    sleeps: list[float] = []
    store = FlakyStore(claim_task=2)
    broker = _broker(store, sleeps)
    task_id = broker.dispatch(SPEC).task_id

    handle = broker.claim()

    assert handle is not None and handle.task_id == task_id
    assert len(sleeps) == 2


def test_claim_gives_up_at_deadline_while_store_is_down() -> None:
    store = FlakyStore(claim_task=1_000_000)
    broker = _broker(store, [])
    broker.dispatch(SPEC)

    assert broker.claim(timeout=0) is None
    assert broker.claim(timeout=0.05) is None
    assert store.failures["claim_task"] > 0


def test_default_worker_id_is_unique_per_broker() -> None:
    store = InMemoryTaskStore()

    first, second = TaskBroker(store), TaskBroker(store)

    assert first.worker_id and second.worker_id
    assert first.worker_id != second.worker_id


def test_superseded_handle_cannot_heartbeat_or_complete() -> None:
    clock = ManualClock()
    store = InMemoryTaskStore(clock=clock)
    first = TaskBroker(store, worker_id="worker-a", sleep=lambda _: None)
    second = TaskBroker(store, worker_id="worker-b", sleep=lambda _: None)
    task_id = first.dispatch(SPEC).task_id
    stale_handle = first.claim(timeout=0)

    clock.advance(500)
    current_handle = second.claim(timeout=0)

    assert current_handle is not None and current_handle.task_id == task_id
    assert stale_handle.heartbeat() is False
    assert stale_handle.complete(TaskStatus.FAILED, {"error": {"name": "Stale"}}) is False
    assert current_handle.heartbeat() is True
    assert current_handle.complete(TaskStatus.COMPLETED, {"output": {}}) is True
    assert store.get_task(task_id).status == TaskStatus.COMPLETED


def test_complete_retries_then_gives_up() -> None:
    sleeps: list[float] = []
    store = FlakyStore(complete_task=2)
    broker = _broker(store, sleeps)
    broker.dispatch(SPEC)
    handle = broker.claim(timeout=0)

    assert handle.complete(TaskStatus.COMPLETED, {"output": {}}) is True
    assert len(sleeps) == 2

    other_id = broker.dispatch(SPEC).task_id
    other = broker.claim(timeout=0)
    store.failures["complete_task"] = 5
    with pytest.raises(StoreUnavailableError):
        other.complete(TaskStatus.COMPLETED, {"output": {}})
    assert broker.store.get_task(other_id).status == TaskStatus.PROCESSING


def test_handle_best_effort_calls_swallow_store_outages() -> None:
    store = FlakyStore(emit_log=1, heartbeat=1, get_task=1)
    broker = _broker(store, [])
    task_id = broker.dispatch(SPEC).task_id
    handle = broker.claim(timeout=0)

    handle.emit_log("dropped")
    handle.emit_log("kept")

    assert handle.heartbeat() is False
    assert handle.heartbeat() is True
    assert handle.is_cancelled() is False
    assert [event.body["message"] for event in broker.list_events(task_id)] == ["kept"]


def test_handle_reports_cancellation(broker: TaskBroker) -> None:
    task_id = broker.dispatch(SPEC).task_id
    handle = broker.claim(timeout=0)

    assert handle.is_cancelled() is False
    broker.cancel(task_id)

    assert handle.is_cancelled() is True
    assert handle.complete(TaskStatus.COMPLETED, {"output": {}}) is False


@pytest.mark.parametrize(
    ("task_id", "expected"),
    [
        ("2f1c7a4e-3d7b-4f1e-9a43-2f0e3a9d1b10", "2f1c7a4e-3d7b-4f1e-9a43-2f0e3a9d1b10"),
        ("../etc/passwd", hashlib.sha256(b"../etc/passwd").hexdigest()),
        ("has space", hashlib.sha256(b"has space").hexdigest()),
    ],
)
def test_workspace_name_is_filesystem_safe(task_id: str, expected: str) -> None:
    handle = TaskHandle(
        task=TaskView(
            task_id=task_id,
            spec=SPEC,
            status=TaskStatus.PROCESSING,
            created_at=datetime(2026, 1, 1, tzinfo=UTC),
            last_heartbeat_at=None,
        ),
        store=InMemoryTaskStore(),
        completion_retrying=Retrying(),
    )

    assert handle.get_workspace_name() == expected


def test_follow_events_stops_after_completion(broker: TaskBroker) -> None:
    task_id = broker.dispatch(SPEC).task_id
    handle = broker.claim(timeout=0)
    handle.emit_log("working")
    handle.complete(TaskStatus.COMPLETED, {"output": {"ok": True}})
    broker.store.emit_log(task_id, "after completion")

    events = list(broker.follow_events(task_id))

    assert [event.event_type for event in events] == [
        TaskEventType.LOG,
        TaskEventType.COMPLETION,
    ]
    assert events[-1].body == {"output": {"ok": True}}


def test_follow_events_stops_after_cancellation(broker: TaskBroker) -> None:
    task_id = broker.dispatch(SPEC).task_id
    broker.cancel(task_id)

    events = list(broker.follow_events(task_id))

    assert [event.event_type for event in events] == [TaskEventType.CANCELLED]


def test_follow_events_honours_timeout_and_cursor(broker: TaskBroker) -> None:
    task_id = broker.dispatch(SPEC).task_id
    broker.store.emit_log(task_id, "first")
    broker.store.emit_log(task_id, "second")
    first_id = next(iter(broker.list_events(task_id))).event_id

    events = list(broker.follow_events(task_id, first_id, timeout=0))

    assert [event.body["message"] for event in events] == ["second"]
