"""Relay session: one client socket bridged to one remote shell.

Lifecycle::

    OPENING ──remote ok──> STREAMING ──either side ends──> CLOSING ──> CLOSED
       │                                                              ▲
       └──────────remote failure (one error frame)────────────────────┘

While streaming, two pumps run as separate tasks:

* outbound: remote bytes -> ``output`` frames -> client socket
* inbound: client socket -> decoded frames -> remote writes / resizes

Whichever pump stops first ends the session; the other is cancelled. The
client always receives a final ``status`` or ``error`` frame before the
socket is closed, as long as it is still there to receive it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from termrelay.domain.errors import (
    DecodeError,
    ProtocolMisuse,
    RelayIOError,
    RemoteAuthFailed,
    RemoteUnreachable,
)
from termrelay.domain.models import (
    ConnectionDescriptor,
    ErrorFrame,
    Frame,
    Identity,
    InputFrame,
    OutputFrame,
    ResizeFrame,
    SessionInfo,
    SessionKey,
    SessionState,
    StatusFrame,
    TerminalGeometry,
)
from termrelay.protocol.codec import OutputDecoder, encode, try_decode
from termrelay.relay.channel import ClientChannel
from termrelay.remote.base import RemoteConnector, RemoteDuplex

logger = logging.getLogger(__name__)

STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"


class RelaySession:
    """Bridges a client socket and a remote duplex for one stored connection."""

    def __init__(
        self,
        key: SessionKey,
        identity: Identity,
        descriptor: ConnectionDescriptor,
        channel: ClientChannel,
        connector: RemoteConnector,
        geometry: TerminalGeometry | None = None,
        connect_timeout: float = 10.0,
        on_closed: Callable[[SessionKey, RelaySession], None] | None = None,
    ) -> None:
        self._key = key
        self._identity = identity
        self._descriptor = descriptor
        self._channel = channel
        self._connector = connector
        self._geometry = geometry or TerminalGeometry()
        self._connect_timeout = connect_timeout
        self._on_closed = on_closed

        self._state = SessionState.OPENING
        self._duplex: RemoteDuplex | None = None
        self._pumps: list[asyncio.Task[None]] = []
        self._run_task: asyncio.Task | None = None
        self._closed_event = asyncio.Event()
        self._close_requested = False
        self._tearing_down = False
        self._final_sent = False
        self._opened_at: datetime | None = None
        self._last_activity = datetime.now()

    # -- properties ---------------------------------------------------------

    @property
    def key(self) -> SessionKey:
        return self._key

    @property
    def identity(self) -> Identity:
        return self._identity

    @property
    def descriptor(self) -> ConnectionDescriptor:
        return self._descriptor

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def geometry(self) -> TerminalGeometry:
        return self._geometry

    @property
    def opened_at(self) -> datetime | None:
        """When the session entered STREAMING, if it ever did."""
        return self._opened_at

    @property
    def last_activity(self) -> datetime:
        return self._last_activity

    def info(self) -> SessionInfo:
        return SessionInfo(
            connection_id=self._key.connection_id,
            client_id=self._key.client_id,
            user_id=self._identity.user_id,
            state=self._state,
            cols=self._geometry.cols,
            rows=self._geometry.rows,
        )

    # -- lifecycle ----------------------------------------------------------

    async def run(self) -> None:
        """Drive the session from OPENING to CLOSED.

        Returns once the session is closed, whether the client left, the
        remote shell exited, or :meth:`close` was called.
        """
        if self._state == SessionState.CLOSED:
            # Closed before it was ever started (superseded or shut down)
            return
        if self._state != SessionState.OPENING or self._run_task is not None:
            raise ProtocolMisuse(f"Session {self._key} has already been started")
        self._run_task = asyncio.current_task()
        try:
            if await self._open():
                await self._stream()
        except asyncio.CancelledError:
            if not self._close_requested:
                raise
            self._run_task.uncancel()
        except RelayIOError as e:
            logger.info("Session %s lost its client: %s", self._key, e)
        finally:
            await self._teardown()

    async def close(self, reason: str = "closed") -> None:
        """Tear the session down from outside (supersede, shutdown).

        Idempotent. Returns once the session has reached CLOSED.
        """
        if self._state == SessionState.CLOSED:
            return
        logger.info("Closing session %s (%s)", self._key, reason)
        self._close_requested = True
        task = self._run_task
        if task is None:
            # Never started: nothing is running that could tear it down
            await self._teardown()
            return
        if not self._tearing_down and not task.done() and task is not asyncio.current_task():
            task.cancel()
        await self._closed_event.wait()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def _open(self) -> bool:
        """Establish the remote duplex. Returns False if the session failed."""
        await self._send(StatusFrame(message=f"Connecting to {self._descriptor.address}..."))
        try:
            self._duplex = await asyncio.wait_for(
                self._connector.open(self._descriptor, self._geometry, self._connect_timeout),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError:
            return await self._fail(
                f"failed to connect to {self._descriptor.host}:{self._descriptor.port}: "
                f"timed out after {self._connect_timeout:g}s"
            )
        except (RemoteUnreachable, RemoteAuthFailed) as e:
            return await self._fail(str(e))

        self._state = SessionState.STREAMING
        self._opened_at = datetime.now()
        self._touch()
        logger.info(
            "Session %s streaming to %s for user %d",
            self._key, self._descriptor.address, self._identity.user_id,
        )
        await self._send(StatusFrame(message=STATUS_CONNECTED))
        return True

    async def _fail(self, reason: str) -> bool:
        logger.error("Session %s: connection to %s failed: %s", self._key, self._descriptor.address, reason)
        await self._send_final(ErrorFrame(message=f"Connection failed: {reason}"))
        return False

    async def _stream(self) -> None:
        self._pumps = [
            asyncio.create_task(self._pump_outbound(), name=f"relay-out-{self._key.connection_id}"),
            asyncio.create_task(self._pump_inbound(), name=f"relay-in-{self._key.connection_id}"),
        ]
        done, _ = await asyncio.wait(self._pumps, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Session %s pump %s crashed: %r",
                    self._key, task.get_name(), task.exception(),
                )

    async def _teardown(self) -> None:
        if self._tearing_down:
            await self._closed_event.wait()
            return
        self._tearing_down = True
        self._state = SessionState.CLOSING
        try:
            for task in self._pumps:
                task.cancel()
            if self._pumps:
                await asyncio.gather(*self._pumps, return_exceptions=True)

            if self._duplex is not None:
                await self._duplex.close()

            if not self._final_sent:
                await self._send_final(StatusFrame(message=STATUS_DISCONNECTED))
            await self._channel.close()
        finally:
            self._state = SessionState.CLOSED
            if self._on_closed is not None:
                self._on_closed(self._key, self)
            self._closed_event.set()
            logger.info("Session %s closed", self._key)

    # -- pumps --------------------------------------------------------------

    async def _pump_outbound(self) -> None:
        assert self._duplex is not None
        decoder = OutputDecoder()
        while True:
            try:
                chunk = await self._duplex.read()
            except RelayIOError as e:
                logger.info("Session %s remote read ended: %s", self._key, e)
                return
            if not chunk:
                tail = decoder.flush()
                if tail:
                    await self._send_quietly(OutputFrame(data=tail))
                logger.info("Session %s remote shell closed", self._key)
                return
            text = decoder.feed(chunk)
            if not text:
                continue
            self._touch()
            if not await self._send_quietly(OutputFrame(data=text)):
                return

    async def _pump_inbound(self) -> None:
        while True:
            raw = await self._channel.recv()
            if raw is None:
                logger.info("Session %s client disconnected", self._key)
                return
            frame = try_decode(raw)
            if isinstance(frame, DecodeError):
                logger.warning("Session %s dropped malformed frame: %s", self._key, frame)
                continue
            try:
                await self.handle_frame(frame)
            except RelayIOError as e:
                logger.info("Session %s remote write failed: %s", self._key, e)
                return

    async def handle_frame(self, frame: Frame) -> None:
        """Apply one client frame to the remote side.

        Raises:
            ProtocolMisuse: The session is not streaming.
            RelayIOError: The remote write failed.
        """
        if self._state != SessionState.STREAMING or self._duplex is None:
            raise ProtocolMisuse(f"Session {self._key} is {self._state.value}")
        self._touch()
        if isinstance(frame, InputFrame):
            await self._duplex.write(frame.data.encode("utf-8"))
        elif isinstance(frame, ResizeFrame):
            self._geometry = TerminalGeometry(cols=frame.cols, rows=frame.rows)
            applied = await self._duplex.resize(frame.cols, frame.rows)
            if not applied:
                logger.debug("Session %s: remote does not support resize", self._key)
        else:
            logger.warning("Session %s ignored %s frame from client", self._key, frame.type)

    # -- helpers ------------------------------------------------------------

    async def _send(self, frame: Frame) -> None:
        await self._channel.send(encode(frame))

    async def _send_quietly(self, frame: Frame) -> bool:
        try:
            await self._send(frame)
        except RelayIOError as e:
            logger.info("Session %s client write failed: %s", self._key, e)
            return False
        return True

    async def _send_final(self, frame: Frame) -> None:
        self._final_sent = True
        if self._channel.writable:
            await self._send_quietly(frame)

    def _touch(self) -> None:
        self._last_activity = datetime.now()

    def __repr__(self) -> str:
        return f"<RelaySession {self._key.connection_id}/{self._key.client_id} {self._state.value}>"
