"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import ColumnElement, and_, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from scaffolder.errors import NotFoundError, StoreUnavailableError, TaskStateError
from scaffolder.storage.alembic_runner import upgrade_head
from scaffolder.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from scaffolder.storage.sqlmodel_models import ScaffolderTask, ScaffolderTaskEvent
from scaffolder.tasks.models import (
    JsonObject,
    TaskEventType,
    TaskEventView,
    TaskSpec,
    TaskStatus,
    TaskView,
)
from scaffolder.tasks.store import (
    DEFAULT_HEARTBEAT_STALE_AFTER,
    EVENT_PAGE_SIZE,
    ensure_completion_status,
    log_event_body,
)

logger = logging.getLogger(__name__)


class DatabaseTaskStore:
    """Task queue and event log persisted in SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        heartbeat_stale_after: timedelta = DEFAULT_HEARTBEAT_STALE_AFTER,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.heartbeat_stale_after = heartbeat_stale_after
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def create_task(self, spec: TaskSpec, *, secrets: JsonObject | None = None) -> str:
        task_id = str(uuid4())
        with self._session() as session:
            session.add(
                ScaffolderTask(
                    task_id=task_id,
                    spec_json=_dump(spec.to_dict()),
                    status=TaskStatus.OPEN.value,
                    created_at=to_db_datetime(self._clock()),
                    last_heartbeat_at=None,
                    secrets_json=_dump(secrets) if secrets is not None else None,
                ),
            )
            session.commit()
        return task_id

    def claim_task(self, *, worker_id: str | None = None) -> TaskView | None:
        """Atomically claim one open task, or one whose heartbeat went stale."""

        while True:
            now = self._clock()
            stale_cutoff = to_db_datetime(now - self.heartbeat_stale_after)
            with self._session() as session:
                candidate = session.exec(
                    select(ScaffolderTask)
                    .where(
                        or_(
                            col(ScaffolderTask.status) == TaskStatus.OPEN.value,
                            and_(
                                col(ScaffolderTask.status) == TaskStatus.PROCESSING.value,
                                col(ScaffolderTask.last_heartbeat_at) < stale_cutoff,
                            ),
                        ),
                    )
                    .order_by(
                        col(ScaffolderTask.created_at).asc(),
                        col(ScaffolderTask.task_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                previous_status = candidate.status
                previous_worker = candidate.worker_id
                heartbeat_guard = (
                    col(ScaffolderTask.last_heartbeat_at).is_(None)
                    if candidate.last_heartbeat_at is None
                    else col(ScaffolderTask.last_heartbeat_at) == candidate.last_heartbeat_at
                )
                result = session.exec(
                    sa_update(ScaffolderTask)
                    .where(
                        col(ScaffolderTask.task_id) == candidate.task_id,
                        col(ScaffolderTask.status) == previous_status,
                        heartbeat_guard,
                    )
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        last_heartbeat_at=to_db_datetime(now),
                        worker_id=worker_id,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(ScaffolderTask).where(ScaffolderTask.task_id == candidate.task_id),
                ).one()
                session.commit()
                if previous_status == TaskStatus.PROCESSING.value:
                    logger.warning(
                        "Reclaimed task %s after stale heartbeat (previous worker=%s)",
                        claimed.task_id,
                        previous_worker,
                    )
                return _to_task_view(claimed)

    def heartbeat(self, task_id: str, *, worker_id: str | None = None) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_update(ScaffolderTask)
                .where(*_owned_by(task_id, worker_id))
                .values(last_heartbeat_at=to_db_datetime(self._clock())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_task(
        self,
        task_id: str,
        status: TaskStatus,
        body: JsonObject,
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Mark a processing task terminal; later calls are no-ops."""

        ensure_completion_status(status)
        now = self._clock()
        with self._session() as session:
            self._require(session, task_id)
            result = session.exec(
                sa_update(ScaffolderTask)
                .where(*_owned_by(task_id, worker_id))
                .values(status=status.value, last_heartbeat_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=TaskEventType.COMPLETION,
                body=body,
                created_at=now,
            )
            session.commit()
            return True

    def emit_log(self, task_id: str, message: str, metadata: JsonObject | None = None) -> None:
        with self._session() as session:
            self._require(session, task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=TaskEventType.LOG,
                body=log_event_body(message, metadata),
                created_at=self._clock(),
            )
            session.commit()

    def list_events(
        self,
        task_id: str,
        after_event_id: int | None = None,
    ) -> Iterator[TaskEventView]:
        cursor = after_event_id or 0
        while True:
            with self._session() as session:
                rows = session.exec(
                    select(ScaffolderTaskEvent)
                    .where(
                        ScaffolderTaskEvent.task_id == task_id,
                        col(ScaffolderTaskEvent.id) > cursor,
                    )
                    .order_by(col(ScaffolderTaskEvent.id).asc())
                    .limit(EVENT_PAGE_SIZE),
                ).all()
                page = [_to_event_view(row) for row in rows]
            yield from page
            if len(page) < EVENT_PAGE_SIZE:
                return
            cursor = page[-1].event_id

    def get_task(self, task_id: str) -> TaskView | None:
        with self._session() as session:
            row = session.exec(
                select(ScaffolderTask).where(ScaffolderTask.task_id == task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def cancel_task(self, task_id: str) -> TaskView:
        """Cancel an open/processing task."""

        with self._session() as session:
            row = self._require(session, task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.OPEN, TaskStatus.PROCESSING}:
                raise TaskStateError(f"Task cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(ScaffolderTask)
                .where(
                    col(ScaffolderTask.task_id) == task_id,
                    col(ScaffolderTask.status) == previous.value,
                )
                .values(status=TaskStatus.CANCELLED.value),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=TaskEventType.CANCELLED,
                body={"message": "Task was cancelled"},
                created_at=self._clock(),
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with self._session() as session:
            statement = select(ScaffolderTask)
            if status is not None:
                statement = statement.where(ScaffolderTask.status == status.value)
            rows = session.exec(
                statement.order_by(
                    col(ScaffolderTask.created_at).desc(),
                    col(ScaffolderTask.task_id).desc(),
                ).limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StoreUnavailableError(f"Task store unavailable: {error.orig}") from error

    def _require(self, session: Session, task_id: str) -> ScaffolderTask:
        row = session.exec(
            select(ScaffolderTask).where(ScaffolderTask.task_id == task_id),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _add_event(
        self,
        *,
        session: Session,
        task_id: str,
        event_type: TaskEventType,
        body: JsonObject,
        created_at: datetime,
    ) -> None:
        session.add(
            ScaffolderTaskEvent(
                task_id=task_id,
                event_type=event_type.value,
                body_json=_dump(body),
                created_at=to_db_datetime(created_at),
            ),
        )


def _owned_by(task_id: str, worker_id: str | None) -> list[ColumnElement[bool]]:
    conditions = [
        col(ScaffolderTask.task_id) == task_id,
        col(ScaffolderTask.status) == TaskStatus.PROCESSING.value,
    ]
    if worker_id is not None:
        conditions.append(col(ScaffolderTask.worker_id) == worker_id)
    return conditions


def _dump(payload: object) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _to_task_view(row: ScaffolderTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        spec=TaskSpec.from_dict(json.loads(row.spec_json)),
        status=TaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        last_heartbeat_at=(
            to_utc_aware_datetime(row.last_heartbeat_at)
            if row.last_heartbeat_at is not None
            else None
        ),
        worker_id=row.worker_id,
        secrets=json.loads(row.secrets_json) if row.secrets_json else None,
    )


def _to_event_view(row: ScaffolderTaskEvent) -> TaskEventView:
    body = json.loads(row.body_json)
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=TaskEventType(row.event_type),
        body=body if isinstance(body, dict) else {"value": body},
        created_at=to_utc_aware_datetime(row.created_at),
    )
