"""Bridge between an action's logger/stream and the task event log."""

from __future__ import annotations

import io
import logging
import threading
from collections.abc import Callable

from scaffolder.tasks.models import JsonObject

LogSink = Callable[[str, JsonObject | None], None]

STEP_LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"


class TaskLogStream(io.TextIOBase):
    """Text stream that forwards each complete, non-blank line to the sink."""

    def __init__(self, sink: LogSink, metadata: JsonObject | None = None) -> None:
        super().__init__()
        self._sink = sink
        self._metadata = metadata
        self._buffer = ""
        self._lock = threading.Lock()

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed log stream.")
        with self._lock:
            self._buffer += text
            *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._emit(line)
        return len(text)

    def flush(self) -> None:
        with self._lock:
            pending, self._buffer = self._buffer, ""
        self._emit(pending)

    def close(self) -> None:
        if not self.closed:
            self.flush()
        super().close()

    def _emit(self, line: str) -> None:
        message = line.strip()
        if message:
            self._sink(message, dict(self._metadata) if self._metadata else None)


def create_step_logger(name: str, stream: TaskLogStream, *, level: str = "INFO") -> logging.Logger:
    """Build a standalone logger that writes into ``stream`` only.

    The logger is not registered with the ``logging`` manager, so per-step
    instances are garbage collected with the run.
    """

    step_logger = logging.Logger(name, level=logging.getLevelName(level))
    step_logger.propagate = False
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(STEP_LOG_FORMAT))
    step_logger.addHandler(handler)
    return step_logger
