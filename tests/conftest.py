"""
Pytest configuration and fixtures for Konduit tests.
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add the repository root to path for imports
# This allows `from konduit.runtime import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from konduit.config.schemas import RuntimeSettings  # noqa: E402
from konduit.runtime import Runtime  # noqa: E402
from konduit.store.channel import ChannelClosed  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    """Runtime settings rooted at a temporary resource directory."""
    return RuntimeSettings(base_path=str(tmp_path))


@pytest.fixture
def runtime(settings):
    """A fresh runtime reading resources from tmp_path."""
    return Runtime(settings)


@pytest.fixture
def write_resource(tmp_path):
    """Write a resource file below tmp_path and return its relative key."""

    def write(name: str, content) -> str:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        elif isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_text(json.dumps(content), encoding="utf-8")
        return name

    return write


@pytest.fixture
def component_script(write_resource):
    """Write a component script defining a factory with init/ready hooks."""

    def write(name: str, body: str = "", config: dict | None = None) -> str:
        source = (
            "from konduit.components import Instance\n\n"
            "class Component(Instance):\n"
            "    events = None\n"
            f"{body or '    pass'}\n\n"
            f"component = {{'name': {name.split('/')[-1].split('.')[0].split('-')[0]!r}, "
            f"'factory': Component, 'config': {config or {}!r}}}\n"
        )
        return write_resource(name, source)

    return write


class FakeChannel:
    """
    In-memory duplex channel.

    Sent messages are recorded; ``answer`` decides what the fake service
    replies to each request (None means no reply).
    """

    def __init__(self, answer=None):
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._answer = answer

    async def send(self, message: str) -> None:
        data = json.loads(message)
        self.sent.append(data)
        if self._answer is not None and isinstance(data, dict) and "callback" in data:
            reply = self._answer(data)
            await self._incoming.put(json.dumps({"callback": data["callback"], "data": reply}))

    async def recv(self) -> str:
        message = await self._incoming.get()
        if message is None:
            raise ChannelClosed("closed by peer")
        return message

    async def push(self, message) -> None:
        """Deliver a message that did not answer a request."""
        await self._incoming.put(json.dumps(message))

    async def disconnect(self) -> None:
        await self._incoming.put(None)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_channel_class():
    return FakeChannel
