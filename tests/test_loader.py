"""
Tests for the resource loader.

Tests for:
- one fetch per key for concurrent requesters
- resource kinds (markup, stylesheet, image, data, script)
- serial/parallel loading and result shapes
- exchanges (GET/POST, bracket params, JSONP)
- failures
"""

import asyncio
import json
import sys

import httpx
import pytest

from konduit.components import ComponentDefinition
from konduit.config.schemas import ResourceSpec
from konduit.errors import LoadError
from konduit.runtime import ResourceKind, Runtime, resource_kind

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def requests():
    """Requests seen by the mock HTTP service."""
    return []


@pytest.fixture
def http_runtime(settings, requests):
    """Runtime whose HTTP client talks to an in-process mock service."""

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        await asyncio.sleep(0.01)
        path = request.url.path
        if path.endswith("data.json"):
            return httpx.Response(200, text=json.dumps({"loaded": True}))
        if path.endswith("missing.json"):
            return httpx.Response(404, text="not found")
        if path == "/api":
            if request.url.params.get("callback"):
                name = request.url.params["callback"]
                return httpx.Response(200, text=f'{name}({{"wrapped": true}});')
            if request.method == "POST":
                return httpx.Response(200, text=json.dumps({"form": request.content.decode()}))
            return httpx.Response(200, text=json.dumps({"query": dict(request.url.params)}))
        if path == "/plain":
            return httpx.Response(200, text="just text")
        if path == "/components/remote.py":
            return httpx.Response(200, text="component = {'name': 'remote'}\n")
        if path == "/components/broken.py":
            return httpx.Response(200, text="raise ValueError('bad script')\n")
        return httpx.Response(404)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Runtime(settings, http_client=client)


# =============================================================================
# Deduplication
# =============================================================================


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self, http_runtime, requests):
        results = await asyncio.gather(
            *(http_runtime.load("https://cdn.example/data.json") for _ in range(5))
        )

        assert len(requests) == 1
        assert all(result is results[0] for result in results)
        assert results[0] == {"loaded": True}

    @pytest.mark.asyncio
    async def test_resolved_resource_is_not_fetched_again(self, http_runtime, requests):
        first = await http_runtime.load("https://cdn.example/data.json")
        second = await http_runtime.load("https://cdn.example/data.json")

        assert first is second
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_minified_variant_shares_cache_key(self, runtime, write_resource):
        write_resource("lib/style.min.css", "body { margin: 0 }")

        minified = await runtime.load("lib/style.min.css")
        plain = await runtime.load("lib/style.css")

        assert plain == minified == "body { margin: 0 }"


# =============================================================================
# Resource kinds
# =============================================================================


class TestResourceKinds:
    def test_kind_by_suffix(self):
        assert resource_kind(ResourceSpec(url="a.html")) is ResourceKind.MARKUP
        assert resource_kind(ResourceSpec(url="a.css")) is ResourceKind.STYLESHEET
        assert resource_kind(ResourceSpec(url="a.PNG")) is ResourceKind.IMAGE
        assert resource_kind(ResourceSpec(url="a.json")) is ResourceKind.DATA
        assert resource_kind(ResourceSpec(url="comps/a.py")) is ResourceKind.SCRIPT
        assert resource_kind(ResourceSpec(url="x", params={})) is ResourceKind.EXCHANGE

    def test_font_stylesheet_url(self):
        spec = ResourceSpec(url="https://fonts.example.com/css?family=Roboto")
        assert resource_kind(spec) is ResourceKind.STYLESHEET

    @pytest.mark.asyncio
    async def test_local_resources(self, runtime, write_resource):
        write_resource("page.html", "<p>hi</p>")
        write_resource("logo.png", b"\x89PNG")
        write_resource("data.json", {"a": [1, 2]})

        markup, image, data = await runtime.load("page.html", "logo.png", "data.json")

        assert markup == "<p>hi</p>"
        assert image == b"\x89PNG"
        assert data == {"a": [1, 2]}

    @pytest.mark.asyncio
    async def test_single_spec_returns_single_value(self, runtime, write_resource):
        write_resource("a.css", "a {}")
        assert await runtime.load("a.css") == "a {}"

    @pytest.mark.asyncio
    async def test_serial_list_with_parallel_group(self, runtime, write_resource):
        write_resource("a.css", "a {}")
        write_resource("b.json", [1])
        write_resource("c.html", "<c/>")

        result = await runtime.load(["a.css", ["b.json", "c.html"]])

        assert result == ["a {}", [[1], "<c/>"]]


# =============================================================================
# Scripts
# =============================================================================


class TestScripts:
    @pytest.mark.asyncio
    async def test_script_with_component_registers_it(self, runtime, component_script):
        key = component_script("components/blank.py", config={"title": "default"})

        definition = await runtime.load(key)

        assert isinstance(definition, ComponentDefinition)
        assert definition.index == "blank"
        assert definition.config == {"title": "default"}
        assert runtime.registry.get("blank") is definition

    @pytest.mark.asyncio
    async def test_script_without_component_returns_module(self, runtime, write_resource):
        write_resource("lib/util.py", "VALUE = 42\n")

        module = await runtime.load("lib/util.py")

        assert module.VALUE == 42
        assert len(runtime.registry) == 0

    @pytest.mark.asyncio
    async def test_remote_script_is_imported(self, http_runtime):
        definition = await http_runtime.load("https://cdn.example/components/remote.py")

        assert definition.index == "remote"
        assert http_runtime.registry.get("remote") is definition

    @pytest.mark.asyncio
    async def test_failing_remote_script_is_not_left_in_sys_modules(self, http_runtime):
        before = set(sys.modules)

        with pytest.raises(LoadError, match="bad script"):
            await http_runtime.load("https://cdn.example/components/broken.py")

        assert not [name for name in set(sys.modules) - before if name.startswith("konduit_resources.")]


# =============================================================================
# Exchanges
# =============================================================================


class TestExchanges:
    @pytest.mark.asyncio
    async def test_get_exchange_flattens_params(self, http_runtime):
        result = await http_runtime.load({"url": "https://svc.example/api", "params": {"q": {"a": 1}}})
        assert result == {"query": {"q[a]": "1"}}

    @pytest.mark.asyncio
    async def test_post_exchange_sends_form(self, http_runtime):
        result = await http_runtime.load(
            {"url": "https://svc.example/api", "method": "POST", "params": {"name": "x"}}
        )
        assert result == {"form": "name=x"}

    @pytest.mark.asyncio
    async def test_exchanges_are_never_cached(self, http_runtime, requests):
        spec = {"url": "https://svc.example/api", "params": {"n": 1}}
        await http_runtime.load(spec)
        await http_runtime.load(spec)
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_text_answer_is_returned_as_text(self, http_runtime):
        assert await http_runtime.load({"url": "https://svc.example/plain", "params": {}}) == "just text"

    @pytest.mark.asyncio
    async def test_jsonp_exchange(self, http_runtime):
        result = await http_runtime.load({"url": "https://svc.example/api", "params": {"a": 1}, "jsonp": True})

        assert result == {"wrapped": True}
        assert http_runtime.loader.callbacks == {}


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_file_raises_load_error(self, runtime):
        with pytest.raises(LoadError) as exc_info:
            await runtime.load("missing.json")
        assert exc_info.value.key == "missing.json"

    @pytest.mark.asyncio
    async def test_every_waiter_receives_the_error(self, http_runtime, requests):
        results = await asyncio.gather(
            *(http_runtime.load("https://cdn.example/missing.json") for _ in range(3)),
            return_exceptions=True,
        )

        assert len(requests) == 1
        assert all(isinstance(result, LoadError) for result in results)

    @pytest.mark.asyncio
    async def test_failed_key_can_be_retried(self, runtime, write_resource):
        with pytest.raises(LoadError):
            await runtime.load("later.json")
        assert not runtime.loader.cache.is_pending("later.json")

        write_resource("later.json", {"ok": 1})

        assert await runtime.load("later.json") == {"ok": 1}


# =============================================================================
# Reset
# =============================================================================


class TestReset:
    @pytest.mark.asyncio
    async def test_fetch_started_before_reset_does_not_fill_fresh_cache(self, settings):
        seen = asyncio.Event()
        release = asyncio.Event()
        fetches = []

        async def handler(request: httpx.Request) -> httpx.Response:
            fetches.append(request)
            if len(fetches) == 1:
                seen.set()
                await release.wait()
                return httpx.Response(200, text="old")
            return httpx.Response(200, text="new")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        runtime = Runtime(settings, http_client=client)
        url = "https://cdn.example/page.html"

        first = asyncio.ensure_future(runtime.load(url))
        await seen.wait()
        runtime.reset()

        assert await runtime.load(url) == "new"

        release.set()
        assert await first == "old"
        assert await runtime.load(url) == "new"
        assert len(fetches) == 2

    @pytest.mark.asyncio
    async def test_failure_started_before_reset_does_not_fail_fresh_waiters(self, settings):
        release_old = asyncio.Event()
        release_new = asyncio.Event()
        arrived = asyncio.Queue()
        fetches = []

        async def handler(request: httpx.Request) -> httpx.Response:
            fetches.append(request)
            await arrived.put(request)
            if len(fetches) == 1:
                await release_old.wait()
                return httpx.Response(500)
            await release_new.wait()
            return httpx.Response(200, text="fresh")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        runtime = Runtime(settings, http_client=client)
        url = "https://cdn.example/page.html"

        old = asyncio.ensure_future(runtime.load(url))
        await arrived.get()
        runtime.reset()
        fresh = asyncio.ensure_future(runtime.load(url))
        await arrived.get()
        waiter = asyncio.ensure_future(runtime.load(url))
        await asyncio.sleep(0.01)
        assert runtime.loader.cache.waiting(url) == 1

        release_old.set()
        with pytest.raises(LoadError):
            await old
        assert not waiter.done()

        release_new.set()
        assert await fresh == "fresh"
        assert await waiter == "fresh"
