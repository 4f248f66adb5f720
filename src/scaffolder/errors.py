"""Error taxonomy shared by the broker, worker, and action registry."""

from __future__ import annotations


class ScaffolderError(Exception):
    """Base class for errors raised by the task execution core."""


class NotFoundError(ScaffolderError):
    """A referenced action or task does not exist."""


class InputError(ScaffolderError):
    """Input failed validation against a schema or document contract."""


class RenderError(ScaffolderError):
    """A template expression could not be evaluated against the context."""


class DuplicateActionError(ScaffolderError):
    """An action with the same id is already registered."""


class TaskStateError(ScaffolderError):
    """A task is not in a status that allows the requested transition."""


class StoreUnavailableError(ScaffolderError):
    """The task store could not be reached; the operation may be retried."""
