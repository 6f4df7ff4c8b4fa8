import sqlite3
from pathlib import Path

import allure

from raptor.quantification.repository import QuantJobRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = QuantJobRepository(db_path)
    repository.init_schema()
    repository.init_schema()
    repository.close()

    connection = sqlite3.connect(db_path)
    try:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchall()
        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table'
              AND name IN ('quant_batches', 'quant_jobs', 'quant_job_events',
                           'dispatch_messages')
            ORDER BY name
            """,
        ).fetchall()
        job_columns = {row[1] for row in connection.execute("PRAGMA table_info(quant_jobs)")}
    finally:
        connection.close()

    assert version == [("20261019_0001",)]
    assert [row[0] for row in tables] == [
        "dispatch_messages",
        "quant_batches",
        "quant_job_events",
        "quant_jobs",
    ]
    assert {"job_id", "parent_job_id", "status", "output_key", "stats_json"} <= job_columns
