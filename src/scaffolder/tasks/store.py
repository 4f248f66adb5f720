"""Task store contract and an in-process implementation of it."""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

from scaffolder.errors import NotFoundError, TaskStateError
from scaffolder.storage.common import utc_now
from scaffolder.tasks.models import (
    COMPLETION_STATUSES,
    JsonObject,
    TaskEventType,
    TaskEventView,
    TaskSpec,
    TaskStatus,
    TaskView,
)

DEFAULT_HEARTBEAT_STALE_AFTER = timedelta(seconds=120)
EVENT_PAGE_SIZE = 200


class TaskStore(Protocol):
    """Durable task rows plus their append-only event log.

    Every method must be safe under concurrent callers. ``claim_task`` is the
    only way a task becomes ``processing`` and ``complete_task`` the only way
    it reaches ``completed`` or ``failed``.
    """

    def create_task(self, spec: TaskSpec, *, secrets: JsonObject | None = None) -> str:
        """Insert an open task and return its server-generated id."""

    def claim_task(self, *, worker_id: str | None = None) -> TaskView | None:
        """Atomically claim the oldest open task or one with a stale heartbeat."""

    def heartbeat(self, task_id: str, *, worker_id: str | None = None) -> bool:
        """Refresh the heartbeat of a processing task still owned by ``worker_id``."""

    def complete_task(
        self,
        task_id: str,
        status: TaskStatus,
        body: JsonObject,
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Append the completion event and set terminal status, at most once.

        When ``worker_id`` is given, only the current owner may complete the task.
        """

    def emit_log(self, task_id: str, message: str, metadata: JsonObject | None = None) -> None:
        """Append a log event."""

    def list_events(
        self,
        task_id: str,
        after_event_id: int | None = None,
    ) -> Iterator[TaskEventView]:
        """Yield events in insertion order, starting after the given cursor."""

    def get_task(self, task_id: str) -> TaskView | None:
        """Return one task or ``None``."""

    def cancel_task(self, task_id: str) -> TaskView:
        """Mark an open or processing task as cancelled."""

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        """List recent tasks, newest first."""


def log_event_body(message: str, metadata: JsonObject | None) -> JsonObject:
    body: JsonObject = {"message": message}
    if metadata:
        body["metadata"] = metadata
    return body


def ensure_completion_status(status: TaskStatus) -> None:
    if status not in COMPLETION_STATUSES:
        raise ValueError(f"Unsupported completion status: {status}")


def _is_owned_by(task: TaskView, worker_id: str | None) -> bool:
    if task.status != TaskStatus.PROCESSING:
        return False
    return worker_id is None or task.worker_id == worker_id


@dataclass(slots=True)
class _TaskRow:
    task: TaskView
    sequence: int


class InMemoryTaskStore:
    """Thread-safe ``TaskStore`` kept in process memory."""

    def __init__(
        self,
        *,
        heartbeat_stale_after: timedelta = DEFAULT_HEARTBEAT_STALE_AFTER,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.heartbeat_stale_after = heartbeat_stale_after
        self._clock = clock
        self._lock = threading.Lock()
        self._tasks: dict[str, _TaskRow] = {}
        self._events: list[TaskEventView] = []
        self._next_event_id = 1
        self._next_sequence = 0

    def create_task(self, spec: TaskSpec, *, secrets: JsonObject | None = None) -> str:
        task_id = str(uuid4())
        with self._lock:
            self._tasks[task_id] = _TaskRow(
                task=TaskView(
                    task_id=task_id,
                    spec=spec,
                    status=TaskStatus.OPEN,
                    created_at=self._clock(),
                    last_heartbeat_at=None,
                    secrets=copy.deepcopy(secrets) if secrets is not None else None,
                ),
                sequence=self._next_sequence,
            )
            self._next_sequence += 1
        return task_id

    def claim_task(self, *, worker_id: str | None = None) -> TaskView | None:
        with self._lock:
            now = self._clock()
            stale_cutoff = now - self.heartbeat_stale_after
            candidates = [
                row
                for row in self._tasks.values()
                if row.task.status == TaskStatus.OPEN
                or (
                    row.task.status == TaskStatus.PROCESSING
                    and row.task.last_heartbeat_at is not None
                    and row.task.last_heartbeat_at < stale_cutoff
                )
            ]
            if not candidates:
                return None
            row = min(candidates, key=lambda item: (item.task.created_at, item.sequence))
            row.task.status = TaskStatus.PROCESSING
            row.task.last_heartbeat_at = now
            row.task.worker_id = worker_id
            return replace(row.task)

    def heartbeat(self, task_id: str, *, worker_id: str | None = None) -> bool:
        with self._lock:
            row = self._tasks.get(task_id)
            if row is None or not _is_owned_by(row.task, worker_id):
                return False
            row.task.last_heartbeat_at = self._clock()
            return True

    def complete_task(
        self,
        task_id: str,
        status: TaskStatus,
        body: JsonObject,
        *,
        worker_id: str | None = None,
    ) -> bool:
        ensure_completion_status(status)
        with self._lock:
            row = self._require(task_id)
            if not _is_owned_by(row.task, worker_id):
                return False
            row.task.status = status
            row.task.last_heartbeat_at = self._clock()
            self._append(task_id, TaskEventType.COMPLETION, copy.deepcopy(body))
            return True

    def emit_log(self, task_id: str, message: str, metadata: JsonObject | None = None) -> None:
        with self._lock:
            self._require(task_id)
            self._append(task_id, TaskEventType.LOG, log_event_body(message, metadata))

    def list_events(
        self,
        task_id: str,
        after_event_id: int | None = None,
    ) -> Iterator[TaskEventView]:
        cursor = after_event_id or 0
        while True:
            with self._lock:
                page = [
                    event
                    for event in self._events
                    if event.task_id == task_id and event.event_id > cursor
                ][:EVENT_PAGE_SIZE]
            yield from (replace(event, body=copy.deepcopy(event.body)) for event in page)
            if len(page) < EVENT_PAGE_SIZE:
                return
            cursor = page[-1].event_id

    def get_task(self, task_id: str) -> TaskView | None:
        with self._lock:
            row = self._tasks.get(task_id)
            return replace(row.task) if row is not None else None

    def cancel_task(self, task_id: str) -> TaskView:
        with self._lock:
            row = self._require(task_id)
            if row.task.status not in {TaskStatus.OPEN, TaskStatus.PROCESSING}:
                raise TaskStateError(
                    f"Task cannot be cancelled from status={row.task.status.value}",
                )
            row.task.status = TaskStatus.CANCELLED
            self._append(task_id, TaskEventType.CANCELLED, {"message": "Task was cancelled"})
            return replace(row.task)

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        with self._lock:
            rows = sorted(
                self._tasks.values(),
                key=lambda item: (item.task.created_at, item.sequence),
                reverse=True,
            )
            return [
                replace(row.task)
                for row in rows
                if status is None or row.task.status == status
            ][:limit]

    def _require(self, task_id: str) -> _TaskRow:
        row = self._tasks.get(task_id)
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _append(self, task_id: str, event_type: TaskEventType, body: JsonObject) -> None:
        self._events.append(
            TaskEventView(
                event_id=self._next_event_id,
                task_id=task_id,
                event_type=event_type,
                body=body,
                created_at=self._clock(),
            ),
        )
        self._next_event_id += 1
