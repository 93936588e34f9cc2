"""
Tests for the embedded SQLite backend.
"""

import pytest

from konduit.config.schemas import Credentials, RuntimeSettings
from konduit.errors import DatastoreError
from konduit.runtime import Runtime
from konduit.store import EmbeddedBackend, EmbeddedDatabase

# =============================================================================
# Embedded backend
# =============================================================================


@pytest.fixture
def db_runtime(tmp_path):
    return Runtime(RuntimeSettings(base_path=str(tmp_path), database_path=str(tmp_path / "konduit.db")))


class TestEmbeddedBackend:
    @pytest.mark.asyncio
    async def test_set_get_count_delete(self, db_runtime):
        store = await db_runtime.store({"table": "notes"})

        assert isinstance(store.backend, EmbeddedBackend)
        await store.set({"key": "n1", "text": "a"})
        assert await store.count() == 1

        store.clear()
        assert await store.get("n1") == {"key": "n1", "text": "a"}

        await store.delete("n1")
        assert await store.count() == 0
        assert await store.get("n1") is None

    @pytest.mark.asyncio
    async def test_set_merges_with_stored_dataset(self, db_runtime):
        store = await db_runtime.store({"table": "notes"})
        await store.set({"key": "n1", "a": 1})
        store.clear()

        await store.set({"key": "n1", "b": 2})
        store.clear()

        assert await store.get("n1") == {"key": "n1", "a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_new_tables_bump_version(self, tmp_path):
        database = EmbeddedDatabase(str(tmp_path / "v.db"))

        assert await database.version() == 0
        await database.ensure_table("notes")
        await database.ensure_table("notes")
        await database.ensure_table("users")

        assert await database.version() == 2
        await database.close()

    @pytest.mark.asyncio
    async def test_data_survives_reopening(self, tmp_path):
        path = str(tmp_path / "persist.db")
        first = Runtime(RuntimeSettings(base_path=str(tmp_path), database_path=path))
        await first.set({"table": "notes"}, {"key": "n1", "text": "kept"})
        await first.aclose()

        async with Runtime(RuntimeSettings(base_path=str(tmp_path), database_path=path)) as second:
            assert await second.get({"table": "notes"}, "n1") == {"key": "n1", "text": "kept"}
            assert await second.database().version() == 1

    @pytest.mark.asyncio
    async def test_invalid_table_name(self, db_runtime):
        with pytest.raises(DatastoreError):
            await db_runtime.store({"table": "bad name; drop"})

    @pytest.mark.asyncio
    async def test_credentials_are_ignored_locally(self, db_runtime):
        store = await db_runtime.store({"table": "notes"})
        credentials = Credentials(user="john", token="secret")

        await store.set({"key": "n1"}, credentials=credentials)

        assert await store.get("n1", credentials=credentials) == {"key": "n1"}
