from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before storagegate is imported.
_DB_DIR = tempfile.mkdtemp(prefix="storagegate-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'storagegate.db')}"

import pytest

from storagegate.core.config import get_settings
from storagegate.domain.models import Base
from storagegate.persistence.db import engine
from storagegate.services.object_storage import set_object_storage
from storagegate.services.usage_accounting import reset_usage_service
from storagegate.tests.utils.fake_storage import FakeObjectStorage


@pytest.fixture(autouse=True)
async def database_schema() -> None:
    # Every test starts from an empty schema.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_cached_services() -> None:
    yield
    get_settings.cache_clear()
    reset_usage_service()
    set_object_storage(None)


@pytest.fixture
def fake_storage() -> FakeObjectStorage:
    # Installed process-wide so API dependencies pick it up too.
    storage = FakeObjectStorage()
    set_object_storage(storage)
    reset_usage_service()
    return storage
