"""Persistent channel transports for the connection manager."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import websockets
from websockets.exceptions import InvalidURI, WebSocketException

from ..errors import TransportError

logger = logging.getLogger(__name__)


class Transport(ABC):
    """A bidirectional JSON message channel.

    A transport can be connected again after it closes. ``receive`` raises
    :class:`TransportError` once the channel is closed from either side.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel. Raises TransportError on failure."""

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Send one message. Raises TransportError if the channel is closed."""

    @abstractmethod
    async def receive(self) -> dict[str, Any]:
        """Wait for the next message."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call when already closed."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the transport believes it is connected."""


class WebSocketTransport(Transport):
    """JSON-over-WebSocket transport built on the ``websockets`` client."""

    def __init__(self, url: str, open_timeout: float = 10.0):
        """Initialize the transport.

        Args:
            url: WebSocket URL (e.g., "ws://localhost:5050/ws").
            open_timeout: Handshake timeout in seconds.
        """
        self.url = url
        self.open_timeout = open_timeout
        self._ws: Any = None
        self._closed = True

    async def connect(self) -> None:
        await self.close()
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
        except InvalidURI as e:
            raise TransportError(f"Invalid URL {self.url}: {e}", retryable=False) from e
        except (OSError, TimeoutError, WebSocketException) as e:
            raise TransportError(f"Failed to connect to {self.url}: {e}") from e

        self._closed = False
        logger.info(f"WebSocket connected to {self.url}")

    async def send(self, message: dict[str, Any]) -> None:
        if self._ws is None or self._closed:
            raise TransportError("Cannot send: not connected")
        try:
            await self._ws.send(json.dumps(message))
        except WebSocketException as e:
            self._closed = True
            raise TransportError(f"Send failed: {e}") from e

    async def receive(self) -> dict[str, Any]:
        if self._ws is None or self._closed:
            raise TransportError("Cannot receive: not connected")

        while True:
            try:
                raw = await self._ws.recv()
            except WebSocketException as e:
                self._closed = True
                raise TransportError(f"Connection closed: {e}") from e

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring non-JSON frame: {str(raw)[:100]}")
                continue
            if isinstance(message, dict):
                return message
            logger.warning(f"Ignoring non-object message: {str(raw)[:100]}")

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        self._closed = True
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error while closing WebSocket: {e}")

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed
