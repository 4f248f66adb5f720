"""Action contract and the registry the worker resolves step actions from."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TextIO

from jsonschema import ValidationError
from jsonschema.validators import validator_for

from scaffolder.errors import DuplicateActionError, InputError, NotFoundError
from scaffolder.tasks.models import JsonObject, JsonValue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ActionContext:
    """Everything a handler receives for one step invocation."""

    input: JsonObject
    logger: logging.Logger
    log_stream: TextIO
    workspace_path: Path
    output: Callable[[str, JsonValue], None]
    create_temporary_directory: Callable[[], Path]
    base_url: str | None = None
    secrets: JsonObject = field(default_factory=dict)


class ActionHandler(Protocol):
    """Callable implemented by template actions."""

    def __call__(self, ctx: ActionContext) -> None:
        """Run the action; register results via ``ctx.output``."""


@dataclass(frozen=True, slots=True)
class ActionSchema:
    """Optional JSON Schemas describing action input and output."""

    input: JsonObject | None = None
    output: JsonObject | None = None


@dataclass(frozen=True, slots=True)
class Action:
    """A registered handler identified by a stable string id."""

    id: str
    handler: ActionHandler
    schema: ActionSchema | None = None
    description: str = ""


class ActionRegistry:
    """Maps action ids to actions; populated at startup, read-only afterwards."""

    def __init__(self, actions: Iterable[Action] = ()) -> None:
        self._actions: dict[str, Action] = {}
        for action in actions:
            self.register(action)

    def register(self, action: Action) -> None:
        if action.id in self._actions:
            raise DuplicateActionError(
                f"Template action with ID '{action.id}' has already been registered",
            )
        self._actions[action.id] = action

    def get(self, action_id: str) -> Action:
        action = self._actions.get(action_id)
        if action is None:
            raise NotFoundError(f"Template action with ID '{action_id}' is not registered.")
        return action

    def list_actions(self) -> list[Action]:
        return [self._actions[action_id] for action_id in sorted(self._actions)]

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    def __iter__(self) -> Iterator[Action]:
        return iter(self.list_actions())

    def __len__(self) -> int:
        return len(self._actions)


def load_action_providers(registry: ActionRegistry, providers: Iterable[str]) -> int:
    """Register actions returned by ``module:factory`` provider callables.

    Returns the number of actions registered.
    """

    registered = 0
    for provider in providers:
        module_name, _, factory_name = provider.partition(":")
        if not module_name or not factory_name:
            raise ValueError(
                f"Invalid action provider {provider!r}. Expected format '<module>:<factory>'.",
            )
        module = importlib.import_module(module_name)
        factory = getattr(module, factory_name, None)
        if not callable(factory):
            raise ValueError(f"Action provider {provider!r} is not callable.")
        for action in factory():
            registry.register(action)
            registered += 1
        logger.info("Loaded actions from provider %s", provider)
    return registered


def validate_action_input(action: Action, value: JsonObject) -> None:
    """Validate rendered step input against the action's input schema."""

    schema = action.schema.input if action.schema is not None else None
    if not schema:
        return
    validator = validator_for(schema)(schema)
    errors = sorted(validator.iter_errors(value), key=lambda error: list(error.path))
    if errors:
        details = ", ".join(_describe_validation_error(error) for error in errors)
        raise InputError(f"Invalid input passed to action {action.id}, {details}")


def _describe_validation_error(error: ValidationError) -> str:
    path = "input"
    for part in error.path:
        path += f"[{part}]" if isinstance(part, int) else f".{part}"
    return f"{path} {error.message}"
