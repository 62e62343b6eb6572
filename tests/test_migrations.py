from pathlib import Path

import allure
from sqlalchemy import text

from bulk_research.runner.repository import BulkJobRepository

pytestmark = [
    allure.epic("Bulk Research Runner"),
    allure.feature("Job/Task Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = BulkJobRepository(tmp_path / "migrations.db")
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
                WHERE type = 'table'
                  AND name IN ('bulk_research_jobs', 'bulk_research_tasks', 'research_outputs')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        indexes = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'idx_%'"),
        ).scalars().all()

    assert version == "20261019_0001"
    assert tables == ["bulk_research_jobs", "bulk_research_tasks", "research_outputs"]
    assert "idx_bulk_research_tasks_job_status_order" in indexes
    repository.close()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = BulkJobRepository(db_path)
    first.init_schema()
    first.close()

    second = BulkJobRepository(db_path)
    second.init_schema()
    assert second.list_jobs() == []
    second.close()
