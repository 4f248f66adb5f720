"""Sequential step worker that executes claimed tasks."""

from __future__ import annotations

import logging
import signal
import threading
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from scaffolder.actions.registry import ActionContext, ActionRegistry, validate_action_input
from scaffolder.errors import StoreUnavailableError
from scaffolder.tasks.broker import TaskBroker, TaskHandle
from scaffolder.tasks.logstream import TaskLogStream, create_step_logger
from scaffolder.tasks.models import JsonObject, JsonValue, TaskStatus, TaskStep
from scaffolder.tasks.templating import is_truthy, render_value
from scaffolder.tasks.workdir import TaskWorkdirManager

logger = logging.getLogger(__name__)


class TaskRunOutcome(str, Enum):
    """How one ``run_one_task`` call ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    abandoned: int = 0
    idle_polls: int = 0

    def record(self, outcome: TaskRunOutcome) -> None:
        self.processed += 1
        if outcome == TaskRunOutcome.COMPLETED:
            self.completed += 1
        elif outcome == TaskRunOutcome.FAILED:
            self.failed += 1
        elif outcome == TaskRunOutcome.CANCELLED:
            self.cancelled += 1
        else:
            self.abandoned += 1

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.abandoned += other.abandoned
        self.idle_polls += other.idle_polls


class TaskWorker:
    """Claims tasks from the broker and runs their steps one after another."""

    def __init__(
        self,
        *,
        broker: TaskBroker,
        action_registry: ActionRegistry,
        working_directory: Path,
        heartbeat_interval_seconds: float = 10.0,
        step_log_level: str = "INFO",
    ) -> None:
        self.broker = broker
        self.action_registry = action_registry
        self.workdir = TaskWorkdirManager(working_directory)
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.step_log_level = step_log_level
        self._stop_requested = False

    def start(self) -> None:
        """Claim and run tasks until a stop signal arrives."""

        self.run_loop(max_tasks=None, max_idle_polls=None)

    def run_once(self, *, timeout: float | None = 0) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.broker.claim(timeout=timeout)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.record(self.run_one_task(task))
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = never exit on idle).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once(timeout=self.broker.poll_interval_seconds)
                aggregate.merge(summary)
                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    continue
                consecutive_idle = 0

    def run_one_task(self, task: TaskHandle) -> TaskRunOutcome:
        """Execute every step of a claimed task and record its terminal result."""

        with self._heartbeat(task):
            try:
                with self.workdir.workspace(task.get_workspace_name()) as workspace_path:
                    output = self._execute_steps(task, workspace_path)
            except Exception as error:  # noqa: BLE001
                logger.info("Task %s failed: %s: %s", task.task_id, type(error).__name__, error)
                return self._finalize(
                    task,
                    TaskStatus.FAILED,
                    {"error": {"name": type(error).__name__, "message": str(error)}},
                )
            if output is None:
                logger.info("Task %s was cancelled", task.task_id)
                return TaskRunOutcome.CANCELLED
            return self._finalize(task, TaskStatus.COMPLETED, {"output": output})

    def _execute_steps(self, task: TaskHandle, workspace_path: Path) -> JsonObject | None:
        steps = task.spec.steps
        task.emit_log(f"Starting up task with {len(steps)} steps")

        context: JsonObject = {"parameters": task.spec.values, "steps": {}}
        for index, step in enumerate(steps):
            if task.is_cancelled():
                task.emit_log(
                    f"Task was cancelled, skipping {len(steps) - index} remaining steps",
                    {"status": "cancelled"},
                )
                return None
            self._run_step(task, step, context, workspace_path)

        return render_value(task.spec.output, context)

    def _run_step(
        self,
        task: TaskHandle,
        step: TaskStep,
        context: JsonObject,
        workspace_path: Path,
    ) -> None:
        metadata: JsonObject = {"stepId": step.id}
        try:
            if step.condition is not None and not is_truthy(
                render_value(step.condition, context),
            ):
                task.emit_log(f"Skipping step {step.name}", {**metadata, "status": "skipped"})
                return

            task.emit_log(f"Beginning step {step.name}", {**metadata, "status": "processing"})
            action = self.action_registry.get(step.action)
            step_input = render_value(step.input, context) if step.input is not None else {}
            validate_action_input(action, step_input)

            step_outputs: dict[str, JsonValue] = {}

            def _output(name: str, value: JsonValue) -> None:
                step_outputs[name] = value

            stream = TaskLogStream(task.emit_log, metadata)
            step_logger = create_step_logger(
                f"scaffolder.task.{task.task_id}.{step.id}",
                stream,
                level=self.step_log_level,
            )
            try:
                with self.workdir.scratch_directories(workspace_path, step.id) as scratch:
                    action.handler(
                        ActionContext(
                            input=step_input,
                            logger=step_logger,
                            log_stream=stream,
                            workspace_path=workspace_path,
                            output=_output,
                            create_temporary_directory=scratch.create,
                            base_url=task.spec.base_url,
                            secrets=task.secrets,
                        ),
                    )
            finally:
                stream.close()

            context["steps"][step.id] = {"output": step_outputs}
            task.emit_log(f"Finished step {step.name}", {**metadata, "status": "completed"})
        except Exception:
            task.emit_log(traceback.format_exc(), {**metadata, "status": "failed"})
            raise

    def _finalize(self, task: TaskHandle, status: TaskStatus, body: JsonObject) -> TaskRunOutcome:
        try:
            completed = task.complete(status, body)
        except StoreUnavailableError:
            logger.exception(
                "Could not persist completion for task %s; leaving it for re-claim",
                task.task_id,
            )
            return TaskRunOutcome.ABANDONED
        if not completed:
            if task.is_cancelled():
                logger.info("Task %s was cancelled before completion was recorded", task.task_id)
                return TaskRunOutcome.CANCELLED
            logger.warning(
                "Task %s was finalized or taken over by another worker",
                task.task_id,
            )
            return TaskRunOutcome.ABANDONED
        return (
            TaskRunOutcome.COMPLETED if status == TaskStatus.COMPLETED else TaskRunOutcome.FAILED
        )

    @contextmanager
    def _heartbeat(self, task: TaskHandle) -> Iterator[None]:
        if self.heartbeat_interval_seconds <= 0:
            yield
            return

        stopped = threading.Event()

        def _beat() -> None:
            while not stopped.wait(self.heartbeat_interval_seconds):
                task.heartbeat()

        thread = threading.Thread(target=_beat, name=f"heartbeat-{task.task_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stopped.set()
            thread.join(timeout=self.heartbeat_interval_seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Stop after the current task; running steps are not interrupted."""

        if not self._stop_requested:
            logger.info("Worker stop requested (%s)", signal_name)
        self._stop_requested = True
