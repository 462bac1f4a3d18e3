from pathlib import Path

import allure
from sqlalchemy import text

from task_factory.scheduler.repository import SchedulerRepository

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Storage"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = SchedulerRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()

    assert version == "20261019_0001"
    assert tables == [
        "attempt_events",
        "attempt_log_lines",
        "attempts",
        "autopilot_sessions",
        "budget_ledger",
        "factory_runs",
        "planning_sessions",
        "projects",
        "tasks",
    ]
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = SchedulerRepository(db_path)
    first.init_schema()
    project = first.create_project(name="kept")
    first.close()

    second = SchedulerRepository(db_path)
    second.init_schema()

    assert [item.project_id for item in second.list_projects()] == [project.project_id]
    second.close()
