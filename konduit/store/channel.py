"""
Duplex Channel Protocol for Konduit.

Defines the interface of a persistent, bidirectional text channel to a data
service. Datastores whose settings designate a channel send every request
over one connection and receive both answers and change notifications from
other clients on it.

This abstraction keeps the datastore independent of a concrete socket
library; tests use an in-memory channel.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class ChannelClosed(Exception):
    """Raised by recv() once the peer has closed the channel."""


@runtime_checkable
class Channel(Protocol):
    """
    Bidirectional text message channel.

    Example implementations:
    - WebSocketChannel (websockets library)
    - In-memory channels in tests
    """

    async def send(self, message: str) -> None:
        """Send one text message."""
        ...

    async def recv(self) -> str:
        """
        Receive the next text message.

        Raises:
            ChannelClosed: When the channel was closed
        """
        ...

    async def close(self) -> None:
        """Close the channel."""
        ...


class WebSocketChannel:
    """Channel over a WebSocket connection."""

    def __init__(self, connection: Any):
        self._connection = connection

    @classmethod
    async def connect(cls, url: str, subprotocol: str = "konduit") -> WebSocketChannel:
        """
        Open a WebSocket connection.

        Requires the optional ``websockets`` dependency
        (``pip install konduit[channel]``).
        """
        try:
            from websockets.asyncio.client import connect
        except ImportError as e:
            raise RuntimeError(
                "Duplex channels need the 'websockets' package: pip install konduit[channel]"
            ) from e

        logger.info(f"[channel] Connecting to {url}")
        connection = await connect(url, subprotocols=[subprotocol])
        return cls(connection)

    async def send(self, message: str) -> None:
        await self._connection.send(message)

    async def recv(self) -> str:
        from websockets.exceptions import ConnectionClosed

        try:
            message = await self._connection.recv()
        except ConnectionClosed as e:
            raise ChannelClosed(str(e)) from e
        if isinstance(message, bytes):
            return message.decode("utf-8")
        return message

    async def close(self) -> None:
        await self._connection.close()
