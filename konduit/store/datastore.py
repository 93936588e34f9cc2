"""
Datastore.

Uniform get/set/delete/count contract over three interchangeable backends.
The backend is chosen once, when the datastore is opened, in this order:

    1. remote data service   (settings.url)
    2. embedded database     (settings.table)
    3. local cache only

The in-memory local cache is always present. It is the first tier for
direct key lookups and the only tier consulted for queries.

Design Principle:
    Datasets leave the datastore as deep copies whose dependency tuples have
    been resolved. The cached originals keep their tuples, so every read
    sees the current state of whatever the tuples point to.

Usage:
    store = await runtime.store({"local": {"n1": {"text": "hello"}}})
    await store.set({"key": "n2", "text": "world"})
    note = await store.get("n2")
    matches = await store.get({"text": "hello"})
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from konduit.components.definition import Slot
from konduit.config.schemas import Credentials, DatastoreSettings
from konduit.dependencies import DATASET_TYPES, Dependency, parse_dependency
from konduit.errors import InvalidKeyError
from konduit.helpers import clone, deep_value, generate_key, integrate, is_key, is_subset, iter_slots
from konduit.sync import WaitGroup

if TYPE_CHECKING:
    from konduit.runtime.context import Runtime

logger = logging.getLogger(__name__)


class DatastoreBackend(Protocol):
    """Second tier behind the local cache."""

    merges_remotely: bool

    async def get(self, key: Any, credentials: Credentials | None = None) -> Any:
        ...

    async def put(self, dataset: dict[str, Any], credentials: Credentials | None = None) -> Any:
        ...

    async def delete(self, key: Any, credentials: Credentials | None = None) -> Any:
        ...

    async def count(self, credentials: Credentials | None = None) -> int:
        ...

    async def close(self) -> None:
        ...


class Datastore:
    """
    One datastore, shared by everybody who opens structurally equal settings.

    Attributes:
        settings: The settings the datastore was opened with
        local: Local cache, dataset key -> dataset
        backend: Remote or embedded backend, or None for local-only
        on_change: Called with the changed dataset (or the deleted key) when
            another client changes data on a duplex channel
    """

    def __init__(
        self,
        runtime: Runtime,
        settings: DatastoreSettings,
        backend: DatastoreBackend | None = None,
    ):
        self.settings = settings
        self.local: dict[Any, dict[str, Any]] = {}
        self.backend = backend
        self.on_change: Callable[[Any], Any] | None = None
        self._runtime = runtime

    def source(self) -> str:
        """Identity of this datastore's settings."""
        return self.settings.source()

    # -------------------------------------------------------------------------
    # Local datasets
    # -------------------------------------------------------------------------

    async def load_local(self, local: Any) -> None:
        """
        Fill the local cache with initial datasets.

        Args:
            local: Mapping key -> dataset, list of datasets, or a resource
                key of a JSON file holding either
        """
        if local is None:
            return
        if isinstance(local, str):
            local = await self._runtime.loader.load(local)
        if isinstance(local, Mapping):
            items = [(key, dataset) for key, dataset in local.items()]
        elif isinstance(local, list):
            items = [(dataset.get("key") if isinstance(dataset, Mapping) else None, dataset) for dataset in local]
        else:
            raise TypeError(f"Initial datasets must be a mapping or a list, got {type(local).__name__}")

        for key, dataset in items:
            if not isinstance(dataset, Mapping):
                logger.warning(f"[datastore] Skipping initial dataset that is not a mapping: {dataset!r}")
                continue
            if not is_key(key):
                raise InvalidKeyError(key)
            dataset = clone(dict(dataset))
            dataset["key"] = key
            self.local[key] = dataset
        logger.debug(f"[datastore] Loaded {len(items)} initial datasets")

    def clear(self) -> None:
        """Empty the local cache."""
        self.local.clear()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def get(self, key_or_query: Any = None, *, credentials: Credentials | None = None) -> Any:
        """
        Read datasets.

        Args:
            key_or_query: A dataset key, a dotted ``key.path`` into a dataset,
                a query mapping, or None for every local dataset
            credentials: Credentials for a remote service (settings default)

        Returns:
            The dataset (None if not found), the nested value for a dotted
            path, or the list of datasets matching a query

        Raises:
            InvalidKeyError: For keys with forbidden characters
        """
        if key_or_query is None or isinstance(key_or_query, Mapping):
            return await self._query(key_or_query)

        if isinstance(key_or_query, str) and "." in key_or_query:
            key, _, path = key_or_query.partition(".")
            dataset = await self.get(key, credentials=credentials)
            return None if dataset is None else deep_value(dataset, path)

        key = self._check_key(key_or_query)
        dataset = self.local.get(key)
        if dataset is None:
            if self.backend is None:
                return None
            dataset = await self.backend.get(key, credentials)
            if not isinstance(dataset, Mapping):
                return None
            dataset = dict(dataset)
            self.local[key] = dataset
            logger.debug(f"[datastore] Cached {key} from {self.backend!r}")
        return await self.resolve(clone(dataset))

    async def set(self, priority: Mapping[str, Any], *, credentials: Credentials | None = None) -> dict[str, Any]:
        """
        Create or update a dataset.

        Priority data is integrated over the existing dataset (later values
        win, ABSENT removes a field, dotted keys address nested fields). A
        dataset without key gets a generated one.

        Returns:
            The stored dataset, with dependency tuples resolved
        """
        if not isinstance(priority, Mapping):
            raise TypeError(f"Priority data must be a mapping, got {type(priority).__name__}")
        priority = clone(dict(priority))
        if priority.get("key") is None:
            priority["key"] = generate_key()
        key = self._check_key(priority["key"])

        existing = self.local.get(key)
        if existing is None and self.backend is not None and not self.backend.merges_remotely:
            existing = await self.backend.get(key, credentials)
        dataset = integrate(priority, clone(dict(existing)) if existing is not None else None)
        dataset["key"] = key

        if self.backend is not None:
            response = await self.backend.put(priority if self.backend.merges_remotely else dataset, credentials)
            if isinstance(response, Mapping):
                dataset = dict(response)

        self.local[key] = dataset
        logger.debug(f"[datastore] Stored {key}")
        return await self.resolve(clone(dataset))

    async def delete(self, key: Any = None, *, credentials: Credentials | None = None) -> Any:
        """
        Delete a dataset.

        Without a key only the local cache is emptied. With a key the
        dataset is removed from the backend first and then locally.

        Returns:
            The deleted local dataset, or None
        """
        if key is None:
            self.clear()
            return None
        key = self._check_key(key)
        if self.backend is not None:
            await self.backend.delete(key, credentials)
        return self.local.pop(key, None)

    async def count(self, *, credentials: Credentials | None = None) -> int:
        """Number of datasets (local cache when local-only, backend otherwise)."""
        if self.backend is None:
            return len(self.local)
        return await self.backend.count(credentials)

    async def close(self) -> None:
        if self.backend is not None:
            await self.backend.close()

    async def _query(self, query: Mapping[str, Any] | None) -> list[dict[str, Any]]:
        matches = [
            clone(dataset) for dataset in self.local.values() if query is None or is_subset(query, dataset)
        ]
        return list(await asyncio.gather(*(self.resolve(dataset) for dataset in matches)))

    # -------------------------------------------------------------------------
    # Change notifications
    # -------------------------------------------------------------------------

    async def apply_notification(self, message: Any) -> None:
        """
        Mirror a change made by another client.

        A mapping updates the local dataset, a key deletes it. ``on_change``
        is called with the updated dataset or the deleted key.
        """
        if isinstance(message, Mapping) and is_key(message.get("key")):
            key = message["key"]
            existing = self.local.get(key)
            dataset = integrate(dict(message), clone(existing) if existing is not None else None)
            self.local[key] = dataset
            changed: Any = clone(dataset)
        elif is_key(message):
            self.local.pop(message, None)
            changed = message
        else:
            logger.warning(f"[datastore] Ignoring unrecognised change notification: {message!r}")
            return

        logger.debug(f"[datastore] Change notification applied: {changed!r}")
        if self.on_change is not None:
            result = self.on_change(changed)
            if inspect.isawaitable(result):
                await result

    # -------------------------------------------------------------------------
    # Dependency resolution on read
    # -------------------------------------------------------------------------

    async def resolve(self, value: Any) -> Any:
        """
        Resolve every dependency tuple inside a (copied) dataset in place.

        Tuples that address a datastore still being opened wait for it to
        finish opening before they are solved.
        """
        if isinstance(value, list) and parse_dependency(value) is not None:
            holder = [value]
            await self._resolve_container(holder)
            return holder[0]
        await self._resolve_container(value)
        return value

    async def _resolve_container(self, root: Any) -> None:
        group = WaitGroup(f"dataset {self.settings.table or 'local'}")
        seen: set[int] = set()

        def search(container: Any) -> None:
            if id(container) in seen:
                return
            seen.add(id(container))
            for key, value in iter_slots(container):
                dep = parse_dependency(value)
                if dep is not None:
                    dispatch(Slot(container, key), dep)
                elif isinstance(value, (dict, list)):
                    search(value)

        def dispatch(slot: Slot, dep: Dependency) -> None:
            group.spawn(self._solve(dep), on_result=lambda value: settle(slot, value))

        def settle(slot: Slot, value: Any) -> None:
            if isinstance(value, (dict, list)):
                value = clone(value)
                slot.set(value)
                search(value)
            else:
                slot.set(value)

        search(root)
        await group.wait()

    async def _solve(self, dep: Dependency) -> Any:
        stores = self._runtime.stores
        if isinstance(dep, DATASET_TYPES) and stores.is_opening(dep.settings):
            logger.debug(f"[datastore] Parked {type(dep).__name__} until its datastore is open")
            await stores.open(dep.settings)
        return await self._runtime.solve(dep)

    def _check_key(self, key: Any) -> Any:
        if not is_key(key):
            raise InvalidKeyError(key)
        return key

    def __repr__(self) -> str:
        backend = type(self.backend).__name__ if self.backend is not None else "local"
        return f"<Datastore {backend} datasets={len(self.local)}>"

