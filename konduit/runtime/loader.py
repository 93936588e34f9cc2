"""
Resource Loader.

Fetches named resources exactly once per runtime and memoizes them.

Design Principle:
    One fetch per key, any number of requesters.
    - absent   -> the first requester marks the key pending and fetches
    - pending  -> later requesters park on the key's waitlist
    - resolved -> the cached value is returned immediately

Resource kinds are chosen by suffix:

    .html/.htm              markup          -> str
    .css (or "/css?...")    stylesheet      -> str
    .png/.jpg/.gif/.svg     image           -> bytes
    .json                   structured data -> parsed JSON
    anything else           script          -> Python module / component
    params given            exchange        -> parsed JSON or text (never cached)

Keys starting with http:// or https:// are fetched with httpx; everything
else is read from the filesystem relative to ``RuntimeSettings.base_path``.

Usage:
    css, data = await runtime.load("style.css", "data.json")
    definition = await runtime.load("components/blank.py")
    answer = await runtime.load({"url": "https://api/x", "params": {"q": 1}})
"""

from __future__ import annotations

import asyncio
import importlib.abc
import importlib.util
import itertools
import json
import logging
import re
import sys
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from konduit.config.schemas import ResourceSpec
from konduit.errors import LoadError
from konduit.helpers import build_query, generate_key, get_index, looks_like_json
from konduit.sync import WaitGroup, Waitlist

if TYPE_CHECKING:
    from konduit.runtime.context import Runtime

logger = logging.getLogger(__name__)

_JSONP_PATTERN = re.compile(r"^\s*([A-Za-z_$][\w$.]*)\s*\(([\s\S]*)\)\s*;?\s*$")
_module_counter = itertools.count(1)


class ResourceKind(str, Enum):
    MARKUP = "markup"
    STYLESHEET = "stylesheet"
    IMAGE = "image"
    SCRIPT = "script"
    DATA = "data"
    EXCHANGE = "exchange"


_SUFFIX_KINDS = {
    "html": ResourceKind.MARKUP,
    "htm": ResourceKind.MARKUP,
    "css": ResourceKind.STYLESHEET,
    "jpg": ResourceKind.IMAGE,
    "jpeg": ResourceKind.IMAGE,
    "gif": ResourceKind.IMAGE,
    "png": ResourceKind.IMAGE,
    "svg": ResourceKind.IMAGE,
    "json": ResourceKind.DATA,
}


def resource_kind(spec: ResourceSpec) -> ResourceKind:
    """Select the fetch mode for a resource spec."""
    if spec.is_exchange:
        return ResourceKind.EXCHANGE
    if spec.kind:
        return ResourceKind(spec.kind)
    path = urlparse(spec.key).path or spec.key
    suffix = path.rsplit("/", 1)[-1].rsplit(".", 1)[-1].lower() if "." in path else ""
    if suffix in _SUFFIX_KINDS:
        return _SUFFIX_KINDS[suffix]
    if re.search(r"/css\?", spec.key):
        return ResourceKind.STYLESHEET
    return ResourceKind.SCRIPT


class ResourceCache:
    """
    Process-lifetime cache of loaded resources.

    Entries are absent, pending (in flight) or resolved. Resolved entries
    are never evicted; only reset() forgets them.

    Every clear() starts a new generation. Fetches begun in an earlier
    generation can no longer write into the cache.
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._inflight = Waitlist[str]("loader")
        self.generation = 0

    def is_resolved(self, key: str) -> bool:
        return key in self._values

    def is_pending(self, key: str) -> bool:
        return self._inflight.is_pending(key)

    def get(self, key: str) -> Any:
        return self._values[key]

    def mark_pending(self, key: str) -> int:
        """Mark a key as in flight and return the current generation."""
        self._inflight.begin(key)
        return self.generation

    def wait_for(self, key: str) -> asyncio.Future:
        return self._inflight.wait(key)

    def waiting(self, key: str) -> int:
        return self._inflight.waiting(key)

    def resolve(self, key: str, value: Any, generation: int | None = None) -> None:
        """Store the value, then wake everybody waiting for it."""
        if self._is_stale(key, generation):
            return
        self._values[key] = value
        woken = self._inflight.resolve(key, value)
        if woken:
            logger.debug(f"[loader] Resolved '{key}' for {woken} waiting requesters")

    def fail(self, key: str, error: BaseException, generation: int | None = None) -> None:
        """Drop the pending entry and pass the error to every waiter."""
        if self._is_stale(key, generation):
            return
        self._inflight.fail(key, error)

    def clear(self) -> None:
        self.generation += 1
        self._values.clear()
        self._inflight.clear()

    def _is_stale(self, key: str, generation: int | None) -> bool:
        if generation is None or generation == self.generation:
            return False
        logger.debug(f"[loader] Dropping '{key}' fetched before reset")
        return True

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values


class ResourceLoader:
    """
    Loads resources for a runtime with deduplication and wait-listing.

    The HTTP client can be injected (tests, shared connection pools);
    otherwise the loader creates and owns one.
    """

    def __init__(
        self,
        runtime: Runtime,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._runtime = runtime
        self._http_client = http_client
        self._owned_client: httpx.AsyncClient | None = None
        self.cache = ResourceCache()
        self.callbacks: dict[str, Callable[[Any], None]] = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def load(self, *specs: Any) -> Any:
        """
        Load one or more resources.

        Args:
            *specs: Resource keys, ResourceSpec objects/mappings, or lists
                (a list is loaded in order, a list nested in it in parallel)

        Returns:
            The single result when one spec was given, otherwise the list of
            results in the order of the specs

        Raises:
            LoadError: If any resource cannot be fetched
        """
        results: list[Any] = [None] * len(specs)
        group = WaitGroup("load")

        for position, spec in enumerate(specs):
            cached = self._cached(spec)
            if cached is not _MISS:
                results[position] = cached
                continue
            group.spawn(self._load_one(spec), on_result=_store_at(results, position))

        await group.wait()
        return results[0] if len(results) == 1 else results

    async def close(self) -> None:
        """Close the HTTP client if the loader owns it."""
        if self._owned_client is not None and not self._owned_client.is_closed:
            await self._owned_client.aclose()
        self._owned_client = None

    def reset(self) -> None:
        self.cache.clear()
        self.callbacks.clear()

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _cached(self, spec: Any) -> Any:
        if isinstance(spec, (list, tuple)):
            return _MISS
        spec = ResourceSpec.coerce(spec)
        if not spec.is_exchange and self.cache.is_resolved(spec.key):
            logger.debug(f"[loader] Cache hit: {spec.key}")
            return self.cache.get(spec.key)
        return _MISS

    async def _load_one(self, spec: Any) -> Any:
        if isinstance(spec, (list, tuple)):
            return await self._load_serial(list(spec))

        spec = ResourceSpec.coerce(spec)
        key = spec.key

        if spec.is_exchange:
            return await self._exchange(spec)

        if self.cache.is_resolved(key):
            return self.cache.get(key)

        if self.cache.is_pending(key):
            return await self.cache.wait_for(key)

        generation = self.cache.mark_pending(key)
        # The fetch outlives a cancelled requester; others may be waiting on it
        fetch = asyncio.ensure_future(self._fetch_into_cache(spec, key, generation))
        fetch.add_done_callback(_consume_error)
        return await asyncio.shield(fetch)

    async def _fetch_into_cache(self, spec: ResourceSpec, key: str, generation: int) -> Any:
        kind = resource_kind(spec)
        logger.info(f"[loader] Fetching {kind.value}: {spec.url}")
        try:
            value = await self._fetch(spec, kind)
        except BaseException as e:
            logger.error(f"[loader] Failed to load {spec.url}: {e!r}")
            error = e if isinstance(e, LoadError) else LoadError(key, f"Failed to load resource '{key}': {e}")
            self.cache.fail(key, error, generation)
            if error is e:
                raise
            raise error from e

        self.cache.resolve(key, value, generation)
        return value

    async def _load_serial(self, specs: list[Any]) -> list[Any]:
        results: list[Any] = []
        for spec in specs:
            if isinstance(spec, (list, tuple)):
                inner = await self.load(*spec)
                results.append(inner if len(spec) != 1 else [inner])
            else:
                results.append(await self.load(spec))
        return results

    async def _fetch(self, spec: ResourceSpec, kind: ResourceKind) -> Any:
        if kind is ResourceKind.IMAGE:
            return await self._read_bytes(spec)
        if kind is ResourceKind.SCRIPT:
            return await self._load_script(spec)

        text = await self._read_text(spec)
        if kind is ResourceKind.DATA:
            return json.loads(text)
        return text

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _is_remote(self, url: str) -> bool:
        return url.startswith(("http://", "https://"))

    def _local_path(self, url: str) -> Path:
        if url.startswith("file://"):
            return Path(urlparse(url).path)
        path = Path(url)
        if path.is_absolute():
            return path
        return Path(self._runtime.settings.base_path) / path

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is not None:
            return self._http_client
        if self._owned_client is None or self._owned_client.is_closed:
            self._owned_client = httpx.AsyncClient(timeout=self._runtime.settings.http_timeout)
        return self._owned_client

    async def _http(self, spec: ResourceSpec, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        auth = None
        if spec.username and spec.password is not None:
            auth = (spec.username, spec.password.get_secret_value())
        try:
            response = await client.request(kwargs.pop("method", "GET"), spec.url, auth=auth, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise LoadError(spec.key, f"Request to '{spec.url}' failed: {e}") from e
        return response

    async def _read_text(self, spec: ResourceSpec) -> str:
        if self._is_remote(spec.url):
            return (await self._http(spec)).text
        path = self._local_path(spec.url)
        return await asyncio.to_thread(path.read_text, encoding="utf-8")

    async def _read_bytes(self, spec: ResourceSpec) -> bytes:
        if self._is_remote(spec.url):
            return (await self._http(spec)).content
        path = self._local_path(spec.url)
        return await asyncio.to_thread(path.read_bytes)

    # -------------------------------------------------------------------------
    # Scripts
    # -------------------------------------------------------------------------

    async def _load_script(self, spec: ResourceSpec) -> Any:
        """
        Execute a Python script resource.

        A module-level ``component`` (mapping or ComponentDefinition) is
        registered and the definition becomes the result. Otherwise the
        module itself is the result.

        Scripts run with the full rights of the process, remote ones
        included. Only load scripts from origins you trust.
        """
        index = get_index(spec.key) or "script"
        module_name = f"konduit_resources.{index.replace('-', '_')}_{next(_module_counter)}"

        if self._is_remote(spec.url):
            source = (await self._http(spec)).text
            loader = _RemoteScriptLoader(spec.url, source)
            module_spec = importlib.util.spec_from_loader(module_name, loader, origin=spec.url)
            module = importlib.util.module_from_spec(module_spec)
            module.__file__ = spec.url
            sys.modules[module_name] = module
            try:
                loader.exec_module(module)
            except BaseException:
                sys.modules.pop(module_name, None)
                raise
        else:
            path = self._local_path(spec.url)
            module_spec = importlib.util.spec_from_file_location(module_name, path)
            if module_spec is None or module_spec.loader is None:
                raise LoadError(spec.key, f"Cannot import script '{path}'")
            module = importlib.util.module_from_spec(module_spec)
            sys.modules[module_name] = module
            try:
                module_spec.loader.exec_module(module)
            except FileNotFoundError as e:
                sys.modules.pop(module_name, None)
                raise LoadError(spec.key, f"Script not found: {path}") from e
            except BaseException:
                sys.modules.pop(module_name, None)
                raise

        component = getattr(module, "component", None)
        if component is None:
            return module

        definition = await self._runtime.registry.register(component)
        logger.info(f"[loader] Script {spec.url} provided component {definition.index}")
        return definition

    # -------------------------------------------------------------------------
    # Exchanges
    # -------------------------------------------------------------------------

    async def _exchange(self, spec: ResourceSpec) -> Any:
        """Send parameters to a remote endpoint and return its answer."""
        if spec.jsonp:
            return await self._exchange_jsonp(spec)

        params = build_query(spec.params or {})
        method = spec.method.upper()
        logger.debug(f"[loader] Exchange {method} {spec.url}")
        if method == "GET":
            response = await self._http(spec, method=method, params=params)
        else:
            response = await self._http(spec, method=method, data=dict(params))
        return _decode(response.text)

    async def _exchange_jsonp(self, spec: ResourceSpec) -> Any:
        """
        Callback-registration exchange.

        A one-shot callback is registered under a generated name, the name
        is sent as the ``callback`` parameter and the wrapped response
        ``name(payload);`` is dispatched to it.
        """
        name = f"callback{generate_key()}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def deliver(payload: Any) -> None:
            self.callbacks.pop(name, None)
            if not future.done():
                future.set_result(payload)

        self.callbacks[name] = deliver
        params = build_query({**(spec.params or {}), "callback": name})
        try:
            response = await self._http(spec, method="GET", params=params)
            match = _JSONP_PATTERN.match(response.text)
            if match is None:
                raise LoadError(spec.key, f"Response of '{spec.url}' is not a callback invocation")
            callback = self.callbacks.get(match.group(1))
            if callback is None:
                raise LoadError(spec.key, f"Unknown callback '{match.group(1)}' in response of '{spec.url}'")
            callback(_decode(match.group(2)))
            return await future
        finally:
            self.callbacks.pop(name, None)


class _RemoteScriptLoader(importlib.abc.SourceLoader):
    """Import loader for script source fetched over HTTP."""

    def __init__(self, url: str, source: str):
        self.url = url
        self.source = source

    def get_filename(self, fullname: str) -> str:
        return self.url

    def get_data(self, path: str) -> bytes:
        return self.source.encode("utf-8")

    def is_package(self, fullname: str) -> bool:
        return False


class _Miss:
    pass


_MISS = _Miss()


def _consume_error(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


def _store_at(results: list[Any], position: int) -> Callable[[Any], None]:
    def store(value: Any) -> None:
        results[position] = value

    return store


def _decode(text: str) -> Any:
    if looks_like_json(text):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text
