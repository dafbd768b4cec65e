"""Client half of the terminal transport.

:class:`TerminalClient` owns one WebSocket to the relay. Incoming frames
are decoded by a reader task and pushed, together with connect and
disconnect notifications, onto a single queue. One dispatch task drains
the queue and calls the subscribers in arrival order, so a display never
sees output, status and lifecycle events out of sequence.

Example usage::

    client = TerminalClient(
        "ws://localhost:8080", connection_id=5, token=token,
        on_output=screen.write, on_status=status_bar.show,
    )
    await client.connect()
    await client.send_resize(120, 40)
    await client.send_input("ls\\n")
    ...
    await client.disconnect()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from termrelay.domain.errors import DecodeError
from termrelay.domain.models import (
    ErrorFrame,
    InputFrame,
    OutputFrame,
    ResizeFrame,
    StatusFrame,
    TerminalGeometry,
)
from termrelay.protocol.codec import encode, try_decode

if TYPE_CHECKING:
    from termrelay.client.reconnect import Reconnector

logger = logging.getLogger(__name__)

Callback = Callable[..., Awaitable[None] | None]

CHANNELS = ("output", "status", "error", "connect", "disconnect")
# Channels whose subscribers take no argument
_LIFECYCLE = frozenset({"connect", "disconnect"})

CONNECTION_ERROR = "WebSocket connection error"


class TerminalClient:
    """Speaks the relay protocol for one stored connection."""

    def __init__(
        self,
        base_url: str,
        connection_id: int,
        token: str | None = None,
        user_id: int | None = None,
        client_id: str | None = None,
        on_output: Callback | None = None,
        on_status: Callback | None = None,
        on_error: Callback | None = None,
        on_connect: Callback | None = None,
        on_disconnect: Callback | None = None,
        open_timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._connection_id = connection_id
        self._token = token
        self._user_id = user_id
        self._client_id = client_id
        self._open_timeout = open_timeout

        self._subscribers: dict[str, list[Callback]] = {name: [] for name in CHANNELS}
        for name, callback in (
            ("output", on_output),
            ("status", on_status),
            ("error", on_error),
            ("connect", on_connect),
            ("disconnect", on_disconnect),
        ):
            if callback is not None:
                self.subscribe(name, callback)

        self._ws: ClientConnection | None = None
        self._connected = False
        self._connecting = False
        self._user_closed = False
        self._events: asyncio.Queue[tuple[str, Any] | None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._reconnector: Reconnector | None = None
        self._geometry: TerminalGeometry | None = None

    # -- observed state -----------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_connecting(self) -> bool:
        return self._connecting

    @property
    def user_closed(self) -> bool:
        """True once :meth:`disconnect` was called and not followed by a connect."""
        return self._user_closed

    @property
    def geometry(self) -> TerminalGeometry | None:
        """Last geometry passed to :meth:`send_resize`."""
        return self._geometry

    @property
    def url(self) -> str:
        params: dict[str, str] = {}
        if self._user_id is not None:
            params["user_id"] = str(self._user_id)
        if self._token:
            params["token"] = self._token
        if self._client_id:
            params["client_id"] = self._client_id
        query = f"?{urlencode(params)}" if params else ""
        return f"{self._base_url}/ws/ssh/{self._connection_id}{query}"

    def subscribe(self, channel: str, callback: Callback) -> None:
        """Add a subscriber to ``channel`` (output/status/error/connect/disconnect).

        Callbacks may be plain functions or coroutine functions.
        """
        if channel not in self._subscribers:
            raise ValueError(f"Unknown channel: {channel}")
        self._subscribers[channel].append(callback)

    def attach_reconnector(self, reconnector: Reconnector) -> None:
        self._reconnector = reconnector

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket unless already open, opening, or unauthenticated."""
        if self._connected or self._connecting:
            return
        if not self._token:
            logger.debug("connect() ignored: no token")
            return

        self._connecting = True
        self._user_closed = False
        try:
            ws = await ws_connect(self.url, open_timeout=self._open_timeout, max_size=None)
        except (OSError, InvalidURI, InvalidHandshake, asyncio.TimeoutError) as e:
            self._connecting = False
            logger.warning("Connection to %s failed: %s", self._base_url, e)
            await self._notify("error", CONNECTION_ERROR)
            await self._notify("disconnect", None)
            return

        if self._user_closed:
            # disconnect() was called while the handshake was in flight
            await ws.close()
            return

        self._ws = ws
        self._connected = True
        self._connecting = False
        self._events = asyncio.Queue()
        self._events.put_nowait(("connect", None))
        self._reader_task = asyncio.create_task(self._read_loop(ws, self._events))
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(self._events))
        logger.info("Connected to connection %d", self._connection_id)

        if self._geometry is not None:
            await self.send_resize(self._geometry.cols, self._geometry.rows)

    async def disconnect(self) -> None:
        """Close the socket and cancel any pending reconnect. Idempotent."""
        self._user_closed = True
        if self._reconnector is not None:
            self._reconnector.cancel()

        ws, self._ws = self._ws, None
        self._connected = False
        self._connecting = False
        if ws is not None:
            await ws.close()

        current = asyncio.current_task()
        for task in (self._reader_task, self._dispatch_task):
            if task is not None and task is not current and not task.done():
                await asyncio.wait({task})

    async def wait_closed(self) -> None:
        """Wait until the socket has closed and every event was dispatched."""
        for task in (self._reader_task, self._dispatch_task):
            if task is not None and not task.done():
                await asyncio.wait({task})

    async def __aenter__(self) -> TerminalClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.disconnect()

    # -- sending ------------------------------------------------------------

    async def send_input(self, data: str) -> None:
        """Send keystrokes. Dropped, not queued, while the socket is not open."""
        await self._send(InputFrame(data=data))

    async def send_resize(self, cols: int, rows: int) -> None:
        """Record and send a new geometry. Dropped while the socket is not open."""
        if cols <= 0 or rows <= 0:
            logger.debug("Ignoring invalid geometry %dx%d", cols, rows)
            return
        self._geometry = TerminalGeometry(cols=cols, rows=rows)
        await self._send(ResizeFrame(cols=cols, rows=rows))

    async def _send(self, frame: InputFrame | ResizeFrame) -> None:
        ws = self._ws
        if ws is None or not self._connected or ws.state is not State.OPEN:
            return
        try:
            await ws.send(encode(frame))
        except ConnectionClosed:
            logger.debug("Dropped %s frame: socket closed", frame.type)

    # -- receiving ----------------------------------------------------------

    async def _read_loop(self, ws: ClientConnection, events: asyncio.Queue) -> None:
        try:
            async for raw in ws:
                frame = try_decode(raw)
                if isinstance(frame, DecodeError):
                    logger.warning("Malformed frame from relay: %s", frame)
                    events.put_nowait(("error", f"Malformed frame: {frame}"))
                elif isinstance(frame, OutputFrame):
                    events.put_nowait(("output", frame.data))
                elif isinstance(frame, StatusFrame):
                    events.put_nowait(("status", frame.message))
                elif isinstance(frame, ErrorFrame):
                    events.put_nowait(("error", frame.message))
                else:
                    logger.debug("Ignoring %s frame from relay", frame.type)
        except ConnectionClosed as e:
            logger.info("Connection %d closed abnormally: %s", self._connection_id, e)
        finally:
            if self._ws is ws:
                self._ws = None
                self._connected = False
                self._connecting = False
            events.put_nowait(("disconnect", None))
            events.put_nowait(None)
            logger.info("Disconnected from connection %d", self._connection_id)

    async def _dispatch_loop(self, events: asyncio.Queue) -> None:
        while True:
            event = await events.get()
            if event is None:
                return
            await self._notify(*event)

    async def _notify(self, channel: str, payload: Any) -> None:
        for callback in list(self._subscribers[channel]):
            try:
                result = callback() if channel in _LIFECYCLE else callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber for %s raised", channel)
