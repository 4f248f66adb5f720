"""Broker facade over the task store for producers and workers."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from uuid import uuid4

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_exponential,
)
from tenacity.stop import stop_base

from scaffolder.errors import StoreUnavailableError
from scaffolder.tasks.models import (
    DispatchResult,
    JsonObject,
    TaskDetails,
    TaskEventType,
    TaskEventView,
    TaskSpec,
    TaskStatus,
    TaskView,
)
from scaffolder.tasks.store import TaskStore

logger = logging.getLogger(__name__)

_SAFE_WORKSPACE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")
_TERMINAL_EVENT_TYPES = frozenset({TaskEventType.COMPLETION, TaskEventType.CANCELLED})


@dataclass(slots=True)
class StoreRetryPolicy:
    """Exponential backoff for retryable store failures."""

    attempts: int = 5
    base_seconds: float = 0.5
    max_seconds: float = 10.0


class TaskHandle:
    """Narrow view of one claimed task handed to the worker."""

    def __init__(
        self,
        *,
        task: TaskView,
        store: TaskStore,
        completion_retrying: Retrying,
    ) -> None:
        self._task = task
        self._store = store
        self._completion_retrying = completion_retrying

    @property
    def task_id(self) -> str:
        return self._task.task_id

    @property
    def spec(self) -> TaskSpec:
        return self._task.spec

    @property
    def secrets(self) -> JsonObject:
        return dict(self._task.secrets or {})

    def get_workspace_name(self) -> str:
        """Directory name for this task's workspace, stable across re-claims."""

        if _SAFE_WORKSPACE_NAME_RE.match(self.task_id):
            return self.task_id
        return hashlib.sha256(self.task_id.encode("utf-8")).hexdigest()

    def emit_log(self, message: str, metadata: JsonObject | None = None) -> None:
        """Append a log event; a store failure is logged and the line dropped."""

        try:
            self._store.emit_log(self.task_id, message, metadata)
        except StoreUnavailableError as error:
            logger.warning("Dropped log line for task %s: %s", self.task_id, error)

    @property
    def worker_id(self) -> str | None:
        return self._task.worker_id

    def heartbeat(self) -> bool:
        """Refresh ownership; ``False`` once another worker has taken the task over."""

        try:
            return self._store.heartbeat(self.task_id, worker_id=self.worker_id)
        except StoreUnavailableError as error:
            logger.warning("Heartbeat failed for task %s: %s", self.task_id, error)
            return False

    def is_cancelled(self) -> bool:
        try:
            task = self._store.get_task(self.task_id)
        except StoreUnavailableError as error:
            logger.warning("Cancellation check failed for task %s: %s", self.task_id, error)
            return False
        return task is not None and task.status == TaskStatus.CANCELLED

    def complete(self, status: TaskStatus, body: JsonObject) -> bool:
        """Persist the terminal result, retrying store failures.

        Returns ``False`` when the task was already terminal or is now owned by
        another worker. Raises ``StoreUnavailableError`` once retries are
        exhausted.
        """

        return self._completion_retrying(
            self._store.complete_task,
            self.task_id,
            status,
            body,
            worker_id=self.worker_id,
        )


class TaskBroker:
    """Dispatch, claim and observation API layered on a ``TaskStore``."""

    def __init__(
        self,
        store: TaskStore,
        *,
        worker_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        retry_policy: StoreRetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.worker_id = worker_id or f"worker-{uuid4().hex[:12]}"
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_policy = retry_policy or StoreRetryPolicy()
        self._sleep = sleep

    def dispatch(self, spec: TaskSpec, *, secrets: JsonObject | None = None) -> DispatchResult:
        """Persist a new open task and return immediately."""

        task_id = self.store.create_task(spec, secrets=secrets)
        logger.info("Dispatched task %s with %d steps", task_id, len(spec.steps))
        return DispatchResult(task_id=task_id)

    def claim(self, *, timeout: float | None = None) -> TaskHandle | None:
        """Block until a task is claimed, or return ``None`` once ``timeout`` elapses."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                task = self._claim_retrying(deadline)(
                    self.store.claim_task,
                    worker_id=self.worker_id,
                )
            except StoreUnavailableError as error:
                logger.warning("Task store unavailable until claim deadline: %s", error)
                return None
            if task is not None:
                logger.info("Claimed task %s (worker=%s)", task.task_id, self.worker_id)
                return TaskHandle(
                    task=task,
                    store=self.store,
                    completion_retrying=self._retrying(
                        stop=stop_after_attempt(self.retry_policy.attempts),
                    ),
                )
            if deadline is None:
                self._sleep(self.poll_interval_seconds)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self._sleep(min(self.poll_interval_seconds, remaining))

    def get(self, task_id: str) -> TaskDetails | None:
        task = self.store.get_task(task_id)
        if task is None:
            return None
        return TaskDetails(task=task, events=list(self.store.list_events(task_id)))

    def list_events(
        self,
        task_id: str,
        after_event_id: int | None = None,
    ) -> Iterator[TaskEventView]:
        return self.store.list_events(task_id, after_event_id)

    def follow_events(
        self,
        task_id: str,
        after_event_id: int | None = None,
        *,
        poll_interval_seconds: float | None = None,
        timeout: float | None = None,
    ) -> Iterator[TaskEventView]:
        """Tail the event log until a completion or cancellation event is seen."""

        interval = poll_interval_seconds or self.poll_interval_seconds
        deadline = None if timeout is None else time.monotonic() + timeout
        cursor = after_event_id
        while True:
            for event in self.store.list_events(task_id, cursor):
                cursor = event.event_id
                yield event
                if event.event_type in _TERMINAL_EVENT_TYPES:
                    return
            if deadline is not None and time.monotonic() >= deadline:
                return
            self._sleep(interval)

    def cancel(self, task_id: str) -> TaskView:
        task = self.store.cancel_task(task_id)
        logger.info("Cancelled task %s", task_id)
        return task

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        return self.store.list_tasks(status=status, limit=limit)

    def _claim_retrying(self, deadline: float | None) -> Retrying:
        if deadline is None:
            return self._retrying(stop=stop_never)
        return self._retrying(stop=stop_after_delay(max(0.0, deadline - time.monotonic())))

    def _retrying(self, *, stop: stop_base) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(StoreUnavailableError),
            wait=wait_exponential(
                multiplier=self.retry_policy.base_seconds,
                max=self.retry_policy.max_seconds,
            ),
            stop=stop,
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
