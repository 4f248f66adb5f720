"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ScaffolderTask(SQLModel, table=True):
    __tablename__ = "scaffolder_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_scaffolder_tasks_queue", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    spec_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    secrets_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class ScaffolderTaskEvent(SQLModel, table=True):
    __tablename__ = "scaffolder_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_scaffolder_task_events_task_id", "task_id", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("scaffolder_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    body_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
