from pathlib import Path

import allure
from sqlalchemy import text

from internal_services.controller.repository import RequestRepository
from internal_services.storage.alembic_runner import current_revision
from internal_services.storage.common import build_sqlite_engine

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    assert current_revision(db_path) is None

    repository = RequestRepository(db_path)
    repository.init_schema()
    repository.init_schema()
    repository.close()

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=1_000)
    try:
        with engine.connect() as connection:
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
    finally:
        engine.dispose()

    assert current_revision(db_path) == "20261019_0001"
    assert tables == [
        "internal_request_events",
        "internal_requests",
        "pipeline_runs",
        "pipelines",
        "reconcile_triggers",
    ]
