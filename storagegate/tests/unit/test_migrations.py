from __future__ import annotations

import importlib

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine

from storagegate.domain.models import Base

_REVISIONS = ["0001_init", "0002_live_path_uniqueness"]


def _upgrade_and_inspect(connection) -> tuple[dict[str, set[str]], dict[str, bool]]:
    context = MigrationContext.configure(connection)
    with Operations.context(context):
        for revision in _REVISIONS:
            importlib.import_module(f"storagegate.persistence.alembic.versions.{revision}").upgrade()
    inspector = inspect(connection)
    tables = {
        table: {column["name"] for column in inspector.get_columns(table)}
        for table in inspector.get_table_names()
    }
    file_indexes = {index["name"]: bool(index["unique"]) for index in inspector.get_indexes("files")}
    return tables, file_indexes


@pytest.mark.asyncio
async def test_migrations_match_models() -> None:
    # Separate in-memory database so the per-test schema fixture is untouched.
    engine = create_async_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        tables, file_indexes = await conn.run_sync(_upgrade_and_inspect)
    await engine.dispose()

    expected = {
        table.name: {column.name for column in table.columns}
        for table in Base.metadata.sorted_tables
    }
    assert tables == expected
    assert file_indexes["uq_files_tenant_live_path"] is True
    assert file_indexes["uq_files_tenant_live_storage_key"] is True
