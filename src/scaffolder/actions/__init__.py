"""Template actions: contract, registry and built-in implementations."""

from scaffolder.actions.registry import (
    Action,
    ActionContext,
    ActionHandler,
    ActionRegistry,
    ActionSchema,
    load_action_providers,
    validate_action_input,
)

__all__ = [
    "Action",
    "ActionContext",
    "ActionHandler",
    "ActionRegistry",
    "ActionSchema",
    "load_action_providers",
    "validate_action_input",
]
