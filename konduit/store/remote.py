"""
Remote Data Service Backend.

Datastores with a service URL forward direct key lookups, writes, deletes
and counts to a remote data service. Two transports present the same
request/response contract:

    HttpTransport     - every request is an independent HTTP exchange
    ChannelTransport  - requests share one duplex channel and are correlated
                        with answers by a per-connection sequence number

Request parameters:
    {"store": <table>, "db": <db>, "user": ..., "token": ...,
     "key": k | "dataset": {...} | "del": k | "count": true}

Responses are a dataset, a list of datasets, a count, ``true`` or an error
string starting with the runtime's error prefix. An error string
invalidates the caller's session (if one is attached) and aborts the
operation with AuthenticationError.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

import httpx

from konduit.config.schemas import Credentials, DatastoreSettings
from konduit.errors import AuthenticationError, ServiceError
from konduit.helpers import ABSENT, build_query

from .channel import Channel, ChannelClosed

logger = logging.getLogger(__name__)


# =============================================================================
# Transports
# =============================================================================


class Transport(Protocol):
    """Sends one request to a data service and returns the decoded answer."""

    async def request(self, params: dict[str, Any]) -> Any:
        ...

    async def close(self) -> None:
        ...


class HttpTransport:
    """
    Request/response transport over HTTP.

    The HTTP client can be injected (shared pools, tests with
    httpx.MockTransport); otherwise the transport creates and owns one.
    """

    def __init__(
        self,
        url: str,
        *,
        method: str = "POST",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self.method = method.upper()
        self.timeout = timeout
        self._client = client
        self._owned_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is not None:
            return self._client
        if self._owned_client is None or self._owned_client.is_closed:
            self._owned_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._owned_client

    async def close(self) -> None:
        """Close the HTTP client if the transport owns it."""
        if self._owned_client is not None and not self._owned_client.is_closed:
            await self._owned_client.aclose()
        self._owned_client = None

    async def request(self, params: dict[str, Any]) -> Any:
        """
        Send parameters to the service.

        Raises:
            ServiceError: For transport errors and non-2xx answers
        """
        client = await self._get_client()
        logger.debug(f"[remote] {self.method} {self.url} params={sorted(params)}")
        try:
            if self.method == "GET":
                response = await client.request("GET", self.url, params=build_query(params))
            else:
                response = await client.request(self.method, self.url, json=params)
        except httpx.TimeoutException as e:
            raise ServiceError(f"Request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise ServiceError(f"Network error: {e}") from e

        if not response.is_success:
            raise ServiceError(
                f"Data service answered {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )
        return _decode(response.text)

    def __repr__(self) -> str:
        return f"<HttpTransport {self.method} {self.url}>"


class ChannelTransport:
    """
    Request/response transport over a persistent duplex channel.

    Every request carries a ``callback`` sequence number which the service
    echoes as ``{"callback": n, "data": ...}``. Messages without one are
    change notifications from other clients and go to ``on_notification``.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        db: str | None,
        table: str | None,
        on_notification: Callable[[Any], Awaitable[None] | None] | None = None,
    ):
        self._channel = channel
        self._db = db
        self._table = table
        self._on_notification = on_notification
        self._sequence = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._reader: asyncio.Task | None = None

    async def open(self) -> None:
        """Send the handshake and start reading."""
        await self._channel.send(json.dumps({"db": self._db, "store": self._table}))
        self._reader = asyncio.ensure_future(self._read())
        logger.info(f"[remote] Channel open for {self._db}/{self._table}")

    async def request(self, params: dict[str, Any]) -> Any:
        if self._reader is None or self._reader.done():
            raise ServiceError("Channel is not open")
        sequence = next(self._sequence)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[sequence] = future
        try:
            await self._channel.send(json.dumps({**params, "callback": sequence}))
            return await future
        finally:
            self._pending.pop(sequence, None)

    async def _read(self) -> None:
        try:
            while True:
                raw = await self._channel.recv()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"[remote] Ignoring malformed channel message: {raw[:200]!r}")
                    continue
                await self._dispatch(message)
        except ChannelClosed as e:
            logger.info(f"[remote] Channel closed: {e}")
            self._fail_pending(ServiceError("Channel closed"))
        except asyncio.CancelledError:
            self._fail_pending(ServiceError("Channel closed"))
            raise
        except Exception as e:
            logger.error(f"[remote] Channel reader failed: {e!r}", exc_info=True)
            self._fail_pending(ServiceError(f"Channel failed: {e}"))

    async def _dispatch(self, message: Any) -> None:
        if isinstance(message, Mapping) and message.get("callback"):
            sequence = message["callback"]
            future = self._pending.get(sequence) if _is_sequence(sequence) else None
            if future is None:
                logger.warning(f"[remote] Answer for unknown request {sequence!r}")
            elif not future.done():
                future.set_result(message.get("data"))
            return

        if self._on_notification is None:
            return
        try:
            result = self._on_notification(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"[remote] Change notification handler failed: {e}", exc_info=True)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self._channel.close()

    def __repr__(self) -> str:
        return f"<ChannelTransport {self._db}/{self._table} pending={len(self._pending)}>"


# =============================================================================
# Backend
# =============================================================================


class RemoteBackend:
    """Datastore backend that talks to a remote data service."""

    # The service integrates priority data into its own copy
    merges_remotely = True

    def __init__(
        self,
        settings: DatastoreSettings,
        transport: Transport,
        *,
        error_prefix: str,
    ):
        self.settings = settings
        self.transport = transport
        self.error_prefix = error_prefix

    async def get(self, key: Any, credentials: Credentials | None = None) -> Any:
        response = await self._send({"key": key}, credentials)
        return response if isinstance(response, (Mapping, list)) else None

    async def put(self, priority: dict[str, Any], credentials: Credentials | None = None) -> Any:
        return await self._send({"dataset": _strip_absent(priority)}, credentials)

    async def delete(self, key: Any, credentials: Credentials | None = None) -> Any:
        return await self._send({"del": key}, credentials)

    async def count(self, credentials: Credentials | None = None) -> int:
        response = await self._send({"count": True}, credentials)
        if isinstance(response, bool) or not isinstance(response, int):
            raise ServiceError(f"Data service answered a count request with {response!r}")
        return response

    async def close(self) -> None:
        await self.transport.close()

    def _params(self, extra: dict[str, Any], credentials: Credentials | None) -> dict[str, Any]:
        params: dict[str, Any] = {"store": self.settings.table}
        if self.settings.db:
            params["db"] = self.settings.db
        credentials = credentials or self.settings.credentials
        if credentials is not None:
            params.update(credentials.to_params())
        params.update(extra)
        return params

    async def _send(self, extra: dict[str, Any], credentials: Credentials | None) -> Any:
        response = await self.transport.request(self._params(extra, credentials))
        self._check(response, credentials or self.settings.credentials)
        return response

    def _check(self, response: Any, credentials: Credentials | None) -> None:
        """
        Abort on the service's error sentinel.

        Raises:
            AuthenticationError: If the response is an error string
        """
        if not isinstance(response, str) or not response.startswith(self.error_prefix):
            return
        logger.warning(f"[remote] Data service rejected request: {response}")
        session = credentials.session if credentials is not None else None
        if session is not None and hasattr(session, "invalidate"):
            session.invalidate()
        raise AuthenticationError(response, response_body=response)

    def __repr__(self) -> str:
        return f"<RemoteBackend {self.settings.url} table={self.settings.table}>"


def _strip_absent(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _strip_absent(item) for key, item in value.items() if item is not ABSENT}
    if isinstance(value, list):
        return [_strip_absent(item) for item in value if item is not ABSENT]
    return value


def _decode(text: str) -> Any:
    text = text.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _is_sequence(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
