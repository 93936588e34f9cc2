"""
Datastore Table.

Singleton table of the datastores of a runtime, keyed by the source
identity of their settings. Opening structurally equal settings twice
returns the identical Datastore object.

While a datastore is being opened (initial datasets loading, embedded
table being created, channel connecting) further requests for the same
settings park on the opening waitlist instead of creating a second one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from konduit.config.schemas import DatastoreSettings
from konduit.sync import Waitlist

from .datastore import Datastore, DatastoreBackend
from .embedded import EmbeddedBackend
from .remote import ChannelTransport, HttpTransport, RemoteBackend

if TYPE_CHECKING:
    from konduit.runtime.context import Runtime

logger = logging.getLogger(__name__)


class DatastoreTable:
    """Datastores of one runtime, one per settings source."""

    def __init__(self, runtime: Runtime):
        self._runtime = runtime
        self._stores: dict[str, Datastore] = {}
        self._opening = Waitlist[str]("datastore")
        self._generation = 0

    def is_opening(self, settings: Any) -> bool:
        """True while the datastore for these settings is being opened."""
        return self._opening.is_pending(DatastoreSettings.coerce(settings).source())

    async def open(self, settings: Any) -> Datastore:
        """
        Open (or reuse) the datastore for some settings.

        Args:
            settings: DatastoreSettings, a settings mapping or a shorthand
                (see DatastoreSettings.coerce)

        Returns:
            The datastore, identical for structurally equal settings
        """
        settings = DatastoreSettings.coerce(settings)
        source = settings.source()

        existing = self._stores.get(source)
        if existing is not None:
            return existing

        if self._opening.is_pending(source):
            logger.debug("[datastore] Waiting for datastore being opened")
            return await self._opening.wait(source)

        generation = self._generation
        self._opening.begin(source)
        try:
            store = await self._create(settings)
        except BaseException as e:
            if generation == self._generation:
                self._opening.fail(source, e)
            raise

        if generation != self._generation:
            # Table was cleared while opening; the caller keeps a detached store
            logger.debug(f"[datastore] Table cleared while opening {store!r}, not registering it")
            return store

        self._stores[source] = store
        self._opening.resolve(source, store)
        logger.info(f"[datastore] Opened {store!r}")
        return store

    async def _create(self, settings: DatastoreSettings) -> Datastore:
        store = Datastore(self._runtime, settings)
        await store.load_local(settings.local)
        store.backend = await self._backend(settings, store)
        return store

    async def _backend(self, settings: DatastoreSettings, store: Datastore) -> DatastoreBackend | None:
        runtime = self._runtime
        prefix = runtime.settings.error_prefix

        if settings.uses_service:
            if settings.uses_channel:
                channel = await runtime.connect_channel(settings.url)
                transport = ChannelTransport(
                    channel,
                    db=settings.db,
                    table=settings.table,
                    on_notification=store.apply_notification,
                )
                await transport.open()
                return RemoteBackend(settings, transport, error_prefix=prefix)

            http = HttpTransport(
                settings.url,
                method=settings.method,
                client=runtime.http_client,
                timeout=runtime.settings.http_timeout,
            )
            return RemoteBackend(settings, http, error_prefix=prefix)

        if settings.uses_database:
            backend = EmbeddedBackend(runtime.database(), settings.table)
            await backend.open()
            return backend

        return None

    def clear(self) -> None:
        """Forget every datastore without closing it."""
        self._generation += 1
        self._stores.clear()
        self._opening.clear()

    async def aclose(self) -> None:
        """Close every datastore and forget them."""
        stores = list(self._stores.values())
        self.clear()
        results = await asyncio.gather(*(store.close() for store in stores), return_exceptions=True)
        for store, result in zip(stores, results):
            if isinstance(result, Exception):
                logger.warning(f"[datastore] Failed to close {store!r}: {result}")

    def __len__(self) -> int:
        return len(self._stores)

    def __contains__(self, settings: Any) -> bool:
        return DatastoreSettings.coerce(settings).source() in self._stores

