"""Domain models for the task queue and its event log."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from scaffolder.errors import InputError

JsonValue = Any
JsonObject = dict[str, Any]


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    OPEN = "open"
    PROCESSING = "processing"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.FAILED, TaskStatus.COMPLETED, TaskStatus.CANCELLED}


class TaskEventType(str, Enum):
    """Kinds of rows in the append-only task event log."""

    LOG = "log"
    COMPLETION = "completion"
    CANCELLED = "cancelled"


COMPLETION_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


@dataclass(frozen=True, slots=True)
class TaskStep:
    """One named invocation of a registered action."""

    id: str
    name: str
    action: str
    input: JsonObject | None = None
    condition: bool | str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TaskStep:
        if not isinstance(payload, Mapping):
            raise InputError(f"Task step must be an object, got {type(payload).__name__}.")
        step_id = payload.get("id")
        action = payload.get("action")
        if not isinstance(step_id, str) or not step_id:
            raise InputError("Task step requires a non-empty string 'id'.")
        if not isinstance(action, str) or not action:
            raise InputError(f"Task step {step_id!r} requires a non-empty string 'action'.")
        name = payload.get("name", step_id)
        if not isinstance(name, str):
            raise InputError(f"Task step {step_id!r} has a non-string 'name'.")
        step_input = payload.get("input")
        if step_input is not None and not isinstance(step_input, Mapping):
            raise InputError(f"Task step {step_id!r} 'input' must be an object.")
        condition = payload.get("if")
        if condition is not None and not isinstance(condition, (bool, str)):
            raise InputError(f"Task step {step_id!r} 'if' must be a boolean or a string.")
        return cls(
            id=step_id,
            name=name,
            action=action,
            input=dict(step_input) if step_input is not None else None,
            condition=condition,
        )

    def to_dict(self) -> JsonObject:
        payload: JsonObject = {"id": self.id, "name": self.name, "action": self.action}
        if self.input is not None:
            payload["input"] = self.input
        if self.condition is not None:
            payload["if"] = self.condition
        return payload


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """Declarative input to dispatch: ordered steps, parameters and output mapping."""

    steps: tuple[TaskStep, ...]
    values: JsonObject = field(default_factory=dict)
    output: JsonObject = field(default_factory=dict)
    base_url: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TaskSpec:
        """Parse the JSON wire form (``steps``, ``values``, ``output``, ``baseUrl``)."""

        if not isinstance(payload, Mapping):
            raise InputError("Task spec must be a JSON object.")
        raw_steps = payload.get("steps")
        if not isinstance(raw_steps, list):
            raise InputError("Task spec requires a 'steps' array.")
        steps = tuple(TaskStep.from_dict(item) for item in raw_steps)
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise InputError(f"Duplicate step id {step.id!r} in task spec.")
            seen.add(step.id)

        values = payload.get("values", {})
        output = payload.get("output", {})
        base_url = payload.get("baseUrl")
        if not isinstance(values, Mapping):
            raise InputError("Task spec 'values' must be an object.")
        if not isinstance(output, Mapping):
            raise InputError("Task spec 'output' must be an object.")
        if base_url is not None and not isinstance(base_url, str):
            raise InputError("Task spec 'baseUrl' must be a string.")
        return cls(steps=steps, values=dict(values), output=dict(output), base_url=base_url)

    def to_dict(self) -> JsonObject:
        payload: JsonObject = {
            "steps": [step.to_dict() for step in self.steps],
            "values": self.values,
            "output": self.output,
        }
        if self.base_url is not None:
            payload["baseUrl"] = self.base_url
        return payload


@dataclass(slots=True)
class TaskView:
    """Readable task row for broker, worker and CLI logic."""

    task_id: str
    spec: TaskSpec
    status: TaskStatus
    created_at: datetime
    last_heartbeat_at: datetime | None
    worker_id: str | None = None
    secrets: JsonObject | None = None


@dataclass(slots=True)
class TaskEventView:
    """One row of the append-only task event log."""

    event_id: int
    task_id: str
    event_type: TaskEventType
    body: JsonObject
    created_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task row together with its event stream."""

    task: TaskView
    events: list[TaskEventView]

    @property
    def completion(self) -> TaskEventView | None:
        for event in reversed(self.events):
            if event.event_type == TaskEventType.COMPLETION:
                return event
        return None


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Handle returned to producers after a task is persisted."""

    task_id: str
