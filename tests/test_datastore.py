"""
Tests for datastores (local cache).

Tests for:
- DatastoreSettings shorthand and source identity
- DatastoreTable singleton behaviour
- get/set/delete/count on the local cache
- queries
- dependency tuples inside datasets
"""

import asyncio

import httpx
import pytest

from konduit.components import ComponentDefinition, Instance
from konduit.config.schemas import DatastoreSettings
from konduit.errors import InvalidKeyError
from konduit.helpers import ABSENT
from konduit.runtime import Runtime

# =============================================================================
# Settings
# =============================================================================


class TestDatastoreSettings:
    def test_none_is_local_only(self):
        settings = DatastoreSettings.coerce(None)
        assert settings.local is None
        assert not settings.uses_service
        assert not settings.uses_database

    def test_string_is_local_resource(self):
        assert DatastoreSettings.coerce("data/notes.json").local == "data/notes.json"

    def test_mapping_without_settings_fields_is_local_data(self):
        settings = DatastoreSettings.coerce({"n1": {"text": "a"}})
        assert settings.local == {"n1": {"text": "a"}}

    def test_backend_flags(self):
        assert DatastoreSettings(table="notes").uses_database
        assert DatastoreSettings(url="https://svc/db", table="notes").uses_service
        assert not DatastoreSettings(url="https://svc/db", table="notes").uses_database
        assert DatastoreSettings(url="wss://svc/db", table="notes").uses_channel
        assert DatastoreSettings(url="https://svc/db", table="notes", channel=True).uses_channel

    def test_source_ignores_key_order_and_credentials(self):
        first = DatastoreSettings.model_validate({"table": "notes", "db": "main"})
        second = DatastoreSettings.model_validate(
            {"db": "main", "table": "notes", "credentials": {"user": "john", "token": "secret"}}
        )
        assert first.source() == second.source()
        assert "secret" not in second.source()

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValueError):
            DatastoreSettings.model_validate({"table": "notes", "tabel": "typo"})


# =============================================================================
# DatastoreTable
# =============================================================================


class TestDatastoreTable:
    @pytest.mark.asyncio
    async def test_equal_settings_share_one_datastore(self, runtime):
        first = await runtime.store({"table": "notes", "local": {"a": {"x": 1}}})
        second = await runtime.store({"local": {"a": {"x": 1}}, "table": "notes"})

        assert first is second
        assert len(runtime.stores) == 1

    @pytest.mark.asyncio
    async def test_concurrent_opens_create_one_datastore(self, runtime, write_resource):
        write_resource("notes.json", {"n1": {"text": "a"}})

        stores = await asyncio.gather(*(runtime.store("notes.json") for _ in range(4)))

        assert all(store is stores[0] for store in stores)
        assert len(runtime.stores) == 1

    @pytest.mark.asyncio
    async def test_different_settings_are_isolated(self, runtime):
        first = await runtime.store({"local": {}})
        second = await runtime.store({"local": {"a": {}}})
        assert first is not second

    @pytest.mark.asyncio
    async def test_reset_while_opening_keeps_fresh_table_clean(self, settings):
        seen = asyncio.Event()
        release = asyncio.Event()

        async def handler(request):
            seen.set()
            await release.wait()
            return httpx.Response(200, json={"n1": {"text": "old"}})

        runtime = Runtime(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        opening = asyncio.ensure_future(runtime.store("https://cdn.example/notes.json"))
        await seen.wait()

        runtime.reset()
        fresh = await runtime.store({"local": {"n1": {"text": "new"}}})
        release.set()
        stale = await opening

        assert await stale.get("n1") == {"key": "n1", "text": "old"}
        assert "https://cdn.example/notes.json" not in runtime.stores
        assert not runtime.stores.is_opening("https://cdn.example/notes.json")
        assert len(runtime.stores) == 1
        assert await fresh.get("n1") == {"key": "n1", "text": "new"}


# =============================================================================
# Local cache operations
# =============================================================================


class TestLocalDatastore:
    @pytest.mark.asyncio
    async def test_set_get_count_delete_scenario(self, runtime):
        store = await runtime.store()

        created = await store.set({"value": "B"})
        key = created["key"]

        assert await store.get(key) == {"key": key, "value": "B"}
        assert await store.count() == 1

        await store.delete(key)

        assert await store.get(key) is None
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_set_merges_priority_data(self, runtime):
        store = await runtime.store({"local": {"n1": {"a": 1, "b": 2, "c": {"d": 1}}}})

        await store.set({"key": "n1", "b": 3, "c.e": 2, "a": ABSENT})

        assert await store.get("n1") == {"key": "n1", "b": 3, "c": {"d": 1, "e": 2}}

    @pytest.mark.asyncio
    async def test_returned_datasets_are_copies(self, runtime):
        store = await runtime.store({"local": {"n1": {"tags": ["a"]}}})

        dataset = await store.get("n1")
        dataset["tags"].append("b")

        assert (await store.get("n1"))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_query_returns_all_and_only_matches(self, runtime):
        store = await runtime.store(
            {
                "local": {
                    "d1": {"a": 1, "b": True},
                    "d2": {"a": 1, "b": False},
                    "d3": {"a": 2, "b": True},
                    "d4": {"a": 1, "b": True, "c": "x"},
                    "d5": {"a": 1, "b": 1},
                }
            }
        )

        matches = await store.get({"a": 1, "b": True})

        assert sorted(dataset["key"] for dataset in matches) == ["d1", "d4"]

    @pytest.mark.asyncio
    async def test_get_without_key_returns_everything(self, runtime):
        store = await runtime.store({"local": [{"key": "a"}, {"key": "b"}]})
        assert sorted(d["key"] for d in await store.get()) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_dotted_key_path(self, runtime):
        settings = {"local": {"n1": {"author": {"name": "Ada"}}}}
        assert await runtime.get(settings, "n1.author.name") == "Ada"

    @pytest.mark.asyncio
    async def test_invalid_keys_are_rejected(self, runtime):
        store = await runtime.store()

        with pytest.raises(InvalidKeyError):
            await store.set({"key": "has space"})
        with pytest.raises(InvalidKeyError):
            await store.get("bad/key")

    @pytest.mark.asyncio
    async def test_delete_without_key_clears_local_cache(self, runtime):
        store = await runtime.store({"local": {"a": {}, "b": {}}})

        await store.delete()

        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_initial_datasets_from_resource(self, runtime, write_resource):
        write_resource("notes.json", [{"key": "n1", "text": "hello"}])

        store = await runtime.store("notes.json")

        assert await store.get("n1") == {"key": "n1", "text": "hello"}

    @pytest.mark.asyncio
    async def test_runtime_set_and_delete_shortcuts(self, runtime):
        await runtime.set({"local": {}}, {"key": "x", "n": 1})
        assert await runtime.get({"local": {}}, "x") == {"key": "x", "n": 1}

        deleted = await runtime.delete({"local": {}}, "x")

        assert deleted == {"key": "x", "n": 1}
        assert await runtime.get({"local": {}}, "x") is None


# =============================================================================
# Dependencies inside datasets
# =============================================================================


class TestNestedDependencies:
    @pytest.mark.asyncio
    async def test_tuples_are_resolved_on_read(self, runtime, write_resource):
        write_resource("style.css", "p {}")
        store = await runtime.store(
            {
                "local": {
                    "page": {
                        "style": ["konduit.load", "style.css"],
                        "author": ["konduit.get", {"local": {"ada": {"name": "Ada"}}}, "ada"],
                    }
                }
            }
        )

        page = await store.get("page")

        assert page["style"] == "p {}"
        assert page["author"] == {"key": "ada", "name": "Ada"}
        assert store.local["page"]["style"] == ["konduit.load", "style.css"]

    @pytest.mark.asyncio
    async def test_nested_results_are_scanned_again(self, runtime, write_resource):
        write_resource("inner.json", {"css": ["konduit.load", "inner.css"]})
        write_resource("inner.css", "i {}")
        store = await runtime.store({"local": {"outer": {"inner": ["konduit.load", "inner.json"]}}})

        outer = await store.get("outer")

        assert outer["inner"] == {"css": "i {}"}
        assert await runtime.load("inner.json") == {"css": ["konduit.load", "inner.css"]}

    @pytest.mark.asyncio
    async def test_instance_tuple_in_dataset(self, runtime):
        widget = ComponentDefinition(name="widget", config={"size": 1})
        store = await runtime.store(
            {"local": {"w": {"widget": ["konduit.instantiate", widget, {"size": 3}]}}}
        )

        dataset = await store.get("w")

        assert isinstance(dataset["widget"], Instance)
        assert dataset["widget"].size == 3

    @pytest.mark.asyncio
    async def test_tuple_targeting_store_being_opened_waits_for_it(self, runtime, write_resource):
        write_resource("slow.json", {"x": {"value": 42}})
        store = await runtime.store({"local": {"ref": {"x": ["konduit.get", "slow.json", "x"]}}})

        opening = asyncio.ensure_future(runtime.store("slow.json"))
        await asyncio.sleep(0)
        assert runtime.stores.is_opening("slow.json")

        dataset = await store.get("ref")

        assert dataset["x"] == {"key": "x", "value": 42}
        assert await opening is await runtime.store("slow.json")

    @pytest.mark.asyncio
    async def test_set_and_delete_tuples(self, runtime):
        settings = {"local": {"n1": {"a": 1}}}

        stored = await runtime.solve(["konduit.set", settings, {"key": "n1", "b": 2}])
        assert stored == {"key": "n1", "a": 1, "b": 2}

        deleted = await runtime.solve(["konduit.delete", settings, "n1"])
        assert deleted["key"] == "n1"
        assert await runtime.solve(["konduit.get", settings, "n1"]) is None

    @pytest.mark.asyncio
    async def test_plain_word_lists_are_stored_unchanged(self, runtime):
        store = await runtime.store()

        await store.set({"key": "n1", "words": ["get", "ready"], "steps": ["load", "first"]})

        assert await store.get("n1") == {"key": "n1", "words": ["get", "ready"], "steps": ["load", "first"]}
