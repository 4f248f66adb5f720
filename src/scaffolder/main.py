"""CLI entrypoint for scaffolder."""

import logging
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

import rich_click as click

from scaffolder import __version__
from scaffolder.errors import ScaffolderError
from scaffolder.tasks.controllers import (
    DispatchCommand,
    EventsCommand,
    ListTasksCommand,
    TaskCliController,
    TaskCommand,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()


@click.group()
@click.version_option(version=__version__, prog_name="scaffolder")
@click.option("-v", "--verbose", is_flag=True, help="Log worker and broker diagnostics.")
def scaffolder(verbose: bool) -> None:
    """Scaffolder task broker and worker CLI."""

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@scaffolder.command("dispatch")
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--values",
    "values_json",
    default=None,
    help="JSON object merged over the task file's `values`.",
)
@click.option(
    "--secrets-file",
    "secrets_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file with secrets made available to actions.",
)
def dispatch(
    spec_path: Path,
    db_path: Path | None,
    values_json: str | None,
    secrets_path: Path | None,
) -> None:
    """Dispatch a task spec (JSON with `steps`, `values`, `output`)."""

    _emit_lines(
        _guard(
            lambda: TASK_CONTROLLER.dispatch(
                DispatchCommand(
                    db_path=db_path,
                    spec_path=spec_path,
                    values_json=values_json,
                    secrets_path=secrets_path,
                ),
            ),
        ),
    )


@scaffolder.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Consecutive empty polls before exiting loop mode (0 = never).",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Run the task worker."""

    _emit_lines(
        _guard(
            lambda: TASK_CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls or None,
                ),
            ),
        ),
    )


@scaffolder.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(
        ["open", "processing", "failed", "completed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum tasks to list.",
)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        TASK_CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@scaffolder.command("inspect")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def inspect(task_id: str, db_path: Path | None) -> None:
    """Show task status, result, and its event log."""

    _emit_lines(TASK_CONTROLLER.inspect_task(TaskCommand(db_path=db_path, task_id=task_id)))


@scaffolder.command("events")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--after",
    type=click.IntRange(min=0),
    default=None,
    help="Only show events with a larger id.",
)
@click.option("--follow", is_flag=True, help="Keep polling until the task finishes.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop following after this many seconds.",
)
def events(
    task_id: str,
    db_path: Path | None,
    after: int | None,
    follow: bool,
    timeout_seconds: float | None,
) -> None:
    """Print a task's event log."""

    _emit_lines(
        _guard(
            lambda: TASK_CONTROLLER.events(
                EventsCommand(
                    db_path=db_path,
                    task_id=task_id,
                    after=after,
                    follow=follow,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        ),
    )


@scaffolder.command("cancel")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cancel(task_id: str, db_path: Path | None) -> None:
    """Cancel an open or processing task."""

    _emit_lines(
        _guard(lambda: TASK_CONTROLLER.cancel_task(TaskCommand(db_path=db_path, task_id=task_id))),
    )


@scaffolder.command("actions")
def actions() -> None:
    """List registered template actions."""

    _emit_lines(_guard(TASK_CONTROLLER.list_actions))


def _guard(run: Callable[[], Iterable[str]]) -> Iterator[str]:
    try:
        yield from run()
    except (ScaffolderError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: Iterable[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    scaffolder()
