"""Client socket abstraction used by relay sessions.

A relay session reads raw messages from, and writes encoded frames to, a
:class:`ClientChannel`. :class:`WebSocketChannel` adapts a Starlette /
FastAPI WebSocket to that interface and folds its disconnect signalling
into plain return values and :class:`RelayIOError`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from termrelay.domain.errors import RelayIOError

logger = logging.getLogger(__name__)


class ClientChannel(ABC):
    """One accepted client socket."""

    @abstractmethod
    async def recv(self) -> str | bytes | None:
        """Wait for the next message; ``None`` once the client has gone."""
        ...

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send one text message.

        Raises:
            RelayIOError: If the socket is closed or the write fails.
        """
        ...

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        """Close the socket. Safe to call multiple times."""
        ...

    @property
    @abstractmethod
    def writable(self) -> bool:
        ...


class WebSocketChannel(ClientChannel):
    """A :class:`ClientChannel` over an accepted FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._closed = False

    @property
    def writable(self) -> bool:
        return (
            not self._closed
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def recv(self) -> str | bytes | None:
        if self._closed:
            return None
        try:
            message = await self._ws.receive()
        except (RuntimeError, WebSocketDisconnect):
            self._closed = True
            return None
        if message["type"] == "websocket.disconnect":
            self._closed = True
            return None
        text = message.get("text")
        if text is not None:
            return text
        return message.get("bytes") or b""

    async def send(self, text: str) -> None:
        if not self.writable:
            raise RelayIOError("Client socket is closed")
        try:
            await self._ws.send_text(text)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            self._closed = True
            raise RelayIOError(f"Client write failed: {e}") from e

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ws.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._ws.close(code=code)
        except (RuntimeError, OSError) as e:
            logger.debug("Error closing client socket: %s", e)
