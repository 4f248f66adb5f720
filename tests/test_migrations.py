import sqlite3
from pathlib import Path

import allure

from scaffolder.tasks.database_store import DatabaseTaskStore

pytestmark = [
    allure.epic("Task Broker"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    store = DatabaseTaskStore(db_path)
    store.init_schema()
    store.init_schema()
    assert store.list_tasks() == []
    store.close()

    connection = sqlite3.connect(db_path)
    try:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchall()
        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table' AND name LIKE 'scaffolder_%'
            ORDER BY name
            """
        ).fetchall()
        journal_mode = connection.execute("PRAGMA journal_mode").fetchone()
    finally:
        connection.close()

    assert version == [("20261019_0001",)]
    assert [row[0] for row in tables] == ["scaffolder_task_events", "scaffolder_tasks"]
    assert journal_mode[0] == "wal"
