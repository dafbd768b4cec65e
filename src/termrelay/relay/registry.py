"""Process-wide table of live relay sessions.

Every accepted socket passes through :meth:`SessionRegistry.accept`, which
authenticates the caller, resolves the stored connection and installs a
:class:`RelaySession` under its :class:`SessionKey`. A second accept for a
key that already has a live session closes the old session completely
before the new one is installed.

Accepts for the same key are serialized by a per-key lock; accepts for
different keys and all streaming I/O proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from termrelay.auth.tokens import TokenValidator
from termrelay.domain.errors import (
    AuthRejected,
    ConnectionNotFound,
    NotOwner,
    ProtocolMisuse,
    Rejected,
    RelayIOError,
)
from termrelay.domain.models import (
    ErrorFrame,
    Frame,
    RejectReason,
    SessionInfo,
    SessionKey,
    SessionState,
    TerminalGeometry,
)
from termrelay.protocol.codec import encode
from termrelay.relay.channel import ClientChannel
from termrelay.relay.session import RelaySession
from termrelay.remote.base import RemoteConnector
from termrelay.store.base import ConnectionStore

logger = logging.getLogger(__name__)

# Close code sent with a rejection
CLOSE_POLICY_VIOLATION = 1008


async def refuse(channel: ClientChannel, message: str) -> None:
    """Report ``message`` as an error frame and close with a policy violation.

    A client that has already gone away only misses the error frame.
    """
    try:
        await channel.send(encode(ErrorFrame(message=message)))
    except RelayIOError as e:
        logger.debug("Could not deliver rejection %r: %s", message, e)
    await channel.close(code=CLOSE_POLICY_VIOLATION)


class SessionRegistry:
    """Owns every live :class:`RelaySession` in the process."""

    def __init__(
        self,
        validator: TokenValidator,
        store: ConnectionStore,
        connector: RemoteConnector,
        connect_timeout: float = 10.0,
        default_geometry: TerminalGeometry | None = None,
    ) -> None:
        self._validator = validator
        self._store = store
        self._connector = connector
        self._connect_timeout = connect_timeout
        self._default_geometry = default_geometry or TerminalGeometry()
        self._sessions: dict[SessionKey, RelaySession] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}
        self._lock_users: dict[SessionKey, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def get(self, key: SessionKey) -> RelaySession | None:
        return self._sessions.get(key)

    def sessions(self) -> list[RelaySession]:
        return list(self._sessions.values())

    def sessions_for(self, user_id: int) -> list[SessionInfo]:
        return [s.info() for s in self._sessions.values() if s.identity.user_id == user_id]

    async def accept(
        self,
        connection_id: int,
        token: str | None,
        channel: ClientChannel,
        user_id: int | None = None,
        client_id: str | None = None,
    ) -> RelaySession:
        """Authorize a socket and install a session for it.

        The returned session has not been started; the caller drives it
        with :meth:`RelaySession.run`.

        Raises:
            Rejected: The caller may not open this connection. An error
                frame has already been sent and the socket closed.
        """
        if self._shutting_down:
            await self._reject(channel, connection_id, RejectReason.UNAVAILABLE, "Relay is shutting down")

        try:
            identity = self._validator.validate_token(token)
        except AuthRejected as e:
            await self._reject(channel, connection_id, RejectReason.UNAUTHENTICATED, str(e))
        if user_id is not None and user_id != identity.user_id:
            await self._reject(
                channel, connection_id, RejectReason.UNAUTHENTICATED, "Token does not match user",
            )

        try:
            descriptor = await self._store.get_connection_by_id(connection_id, identity)
        except ConnectionNotFound:
            await self._reject(channel, connection_id, RejectReason.NOT_FOUND, "Connection not found")
        except NotOwner:
            await self._reject(
                channel, connection_id, RejectReason.NOT_OWNER,
                f"Access denied to connection {connection_id}",
            )

        key = SessionKey(connection_id, client_id or uuid.uuid4().hex)
        async with self._key_lock(key):
            if self._shutting_down:
                await self._reject(channel, connection_id, RejectReason.UNAVAILABLE, "Relay is shutting down")
            prior = self._sessions.pop(key, None)
            if prior is not None:
                logger.info("Superseding session %s", key)
                await prior.close(reason="superseded")
            session = RelaySession(
                key=key,
                identity=identity,
                descriptor=descriptor,
                channel=channel,
                connector=self._connector,
                geometry=self._default_geometry,
                connect_timeout=self._connect_timeout,
                on_closed=self.deregister,
            )
            self._sessions[key] = session
        logger.info(
            "Accepted session %s for user %d (%d live)", key, identity.user_id, len(self._sessions),
        )
        return session

    def deregister(self, key: SessionKey, session: RelaySession) -> None:
        """Drop ``session`` from the table if it is still the one under ``key``."""
        if self._sessions.get(key) is session:
            del self._sessions[key]
            logger.debug("Deregistered session %s", key)
        self._discard_lock(key)

    async def route(self, key: SessionKey, frame: Frame) -> ErrorFrame | None:
        """Deliver a frame to the live session under ``key``.

        Returns None on success, or the error frame to report back when
        the key has no live session or the session refused the frame.
        """
        session = self._sessions.get(key)
        if session is None or session.state != SessionState.STREAMING:
            logger.warning("Frame %s addressed to inactive session %s", frame.type, key)
            return ErrorFrame(message=f"No active session for connection {key.connection_id}")
        try:
            await session.handle_frame(frame)
        except (ProtocolMisuse, RelayIOError) as e:
            logger.warning("Frame %s for session %s not delivered: %s", frame.type, key, e)
            return ErrorFrame(message=str(e))
        return None

    async def shutdown(self) -> None:
        """Close every session and refuse new ones."""
        self._shutting_down = True
        sessions = list(self._sessions.values())
        if sessions:
            logger.info("Shutting down %d sessions", len(sessions))
        results = await asyncio.gather(
            *(s.close(reason="shutdown") for s in sessions), return_exceptions=True,
        )
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                logger.error("Error closing session %s: %r", session.key, result)
        self._sessions.clear()

    async def _reject(
        self, channel: ClientChannel, connection_id: int, reason: RejectReason, message: str,
    ) -> None:
        logger.info("Rejected socket for connection %d: %s (%s)", connection_id, reason.value, message)
        await refuse(channel, message)
        raise Rejected(reason, message)

    @asynccontextmanager
    async def _key_lock(self, key: SessionKey) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            self._discard_lock(key)

    def _discard_lock(self, key: SessionKey) -> None:
        if self._lock_users.get(key, 0) == 0 and key not in self._sessions:
            self._locks.pop(key, None)
            self._lock_users.pop(key, None)
