"""Controllers for task broker and worker CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from scaffolder.actions.builtin import create_builtin_actions
from scaffolder.actions.registry import ActionRegistry, load_action_providers
from scaffolder.config import Settings
from scaffolder.errors import InputError, NotFoundError
from scaffolder.tasks.broker import StoreRetryPolicy, TaskBroker
from scaffolder.tasks.database_store import DatabaseTaskStore
from scaffolder.tasks.models import TaskEventType, TaskEventView, TaskSpec, TaskStatus
from scaffolder.tasks.worker import TaskWorker


@dataclass(slots=True)
class DispatchCommand:
    """CLI input for task dispatch."""

    db_path: Path | None
    spec_path: Path
    values_json: str | None = None
    secrets_path: Path | None = None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskCommand:
    """CLI input for single-task inspection and cancellation."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class EventsCommand:
    """CLI input for event log polling."""

    db_path: Path | None
    task_id: str
    after: int | None
    follow: bool
    timeout_seconds: float | None = None


class TaskCliController:
    """Coordinates dispatch, worker, and inspection CLI operations."""

    def dispatch(self, command: DispatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        spec = _load_spec(command.spec_path, command.values_json)
        secrets = _load_json_object(command.secrets_path) if command.secrets_path else None
        with _broker(settings) as broker:
            result = broker.dispatch(spec, secrets=secrets)
        return [f"Task dispatched: task_id={result.task_id} steps={len(spec.steps)}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        registry = build_action_registry(settings)
        with _broker(settings) as broker:
            worker = TaskWorker(
                broker=broker,
                action_registry=registry,
                working_directory=settings.worker.working_directory,
                heartbeat_interval_seconds=settings.worker.heartbeat_interval_seconds,
                step_log_level=settings.worker.step_log_level,
            )
            summary = (
                worker.run_once(timeout=settings.worker.poll_interval_seconds)
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"abandoned={summary.abandoned} idle_polls={summary.idle_polls}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status.lower()) if command.status else None
        with _broker(settings) as broker:
            tasks = broker.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            heartbeat = task.last_heartbeat_at.isoformat() if task.last_heartbeat_at else "-"
            lines.append(
                f"  {task.task_id} status={task.status.value} steps={len(task.spec.steps)} "
                f"created_at={task.created_at.isoformat()} heartbeat_at={heartbeat}",
            )
        return lines

    def inspect_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _broker(settings) as broker:
            details = broker.get(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        completion = details.completion
        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Worker: {task.worker_id or '-'}",
            f"Created: {task.created_at.isoformat()}",
            f"Steps: {', '.join(step.id for step in task.spec.steps) or '-'}",
            f"Events: {len(details.events)}",
        ]
        if completion is not None:
            if "error" in completion.body:
                error = completion.body["error"]
                lines.append(f"Error: {error.get('name')}: {error.get('message')}")
            if "output" in completion.body:
                lines.append(f"Output: {json.dumps(completion.body['output'], sort_keys=True)}")
        lines.extend(f"  {format_event(event)}" for event in details.events)
        return lines

    def events(self, command: EventsCommand) -> Iterator[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _broker(settings) as broker:
            if broker.store.get_task(command.task_id) is None:
                raise NotFoundError(f"Task not found: {command.task_id}")
            events = (
                broker.follow_events(
                    command.task_id,
                    command.after,
                    timeout=command.timeout_seconds,
                )
                if command.follow
                else broker.list_events(command.task_id, command.after)
            )
            for event in events:
                yield format_event(event)

    def cancel_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _broker(settings) as broker:
            broker.cancel(command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def list_actions(self) -> list[str]:
        settings = Settings.from_env()
        registry = build_action_registry(settings)
        lines = [f"Actions: {len(registry)}"]
        for action in registry:
            lines.append(f"  {action.id}  {action.description}".rstrip())
        return lines


def build_action_registry(settings: Settings) -> ActionRegistry:
    """Built-in actions plus any configured ``module:factory`` providers."""

    registry = ActionRegistry(create_builtin_actions())
    load_action_providers(registry, settings.worker.action_modules)
    return registry


def format_event(event: TaskEventView) -> str:
    prefix = f"[{event.event_id}] {event.created_at.isoformat()} {event.event_type.value}"
    if event.event_type == TaskEventType.LOG:
        step_id = (event.body.get("metadata") or {}).get("stepId")
        scope = f" ({step_id})" if step_id else ""
        return f"{prefix}{scope}: {event.body.get('message', '')}"
    return f"{prefix}: {json.dumps(event.body, sort_keys=True)}"


@contextmanager
def _broker(settings: Settings) -> Iterator[TaskBroker]:
    store = DatabaseTaskStore(
        settings.db_path,
        heartbeat_stale_after=timedelta(seconds=settings.store.heartbeat_stale_seconds),
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield TaskBroker(
            store,
            worker_id=settings.worker.worker_id,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            retry_policy=StoreRetryPolicy(
                attempts=settings.store.retry_attempts,
                base_seconds=settings.store.retry_base_seconds,
                max_seconds=settings.store.retry_max_seconds,
            ),
        )
    finally:
        store.close()


def _load_spec(spec_path: Path, values_json: str | None) -> TaskSpec:
    payload = _load_json_object(spec_path)
    if values_json:
        try:
            overrides = json.loads(values_json)
        except json.JSONDecodeError as error:
            raise InputError(f"Invalid --values JSON: {error}") from error
        if not isinstance(overrides, dict):
            raise InputError("--values must be a JSON object.")
        payload["values"] = {**payload.get("values", {}), **overrides}
    return TaskSpec.from_dict(payload)


def _load_json_object(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        raise InputError(f"Invalid JSON in {path}: {error}") from error
    if not isinstance(payload, dict):
        raise InputError(f"Expected a JSON object in {path}.")
    return payload
