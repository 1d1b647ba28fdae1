from pathlib import Path

import allure
from sqlalchemy import inspect, text

from agent_fleet.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == "20261018_0001"

    inspector = inspect(repository.engine)
    tables = set(inspector.get_table_names())
    assert {"tasks", "workers", "system_events"} <= tables
    task_columns = {column["name"] for column in inspector.get_columns("tasks")}
    assert {"status", "depends_on_json", "retry_count", "max_retries", "assigned_worker_id"} <= (
        task_columns
    )
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    first = OrchestratorRepository(db_path)
    first.init_schema()
    first.close()

    second = OrchestratorRepository(db_path)
    second.init_schema()
    assert second.list_tasks() == []
    second.close()
