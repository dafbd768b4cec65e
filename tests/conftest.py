"""Shared test fixtures for the termrelay test suite.

Provides in-memory stand-ins for both ends of a relay session: a fake
client socket, a fake remote shell and its connector, plus tokens, a
credential store and a registry wired to them.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest
from pydantic import SecretStr

from termrelay.auth.tokens import JwtTokenValidator, issue_token
from termrelay.domain.errors import RelayIOError
from termrelay.domain.models import (
    ConnectionDescriptor,
    Frame,
    Identity,
    TerminalGeometry,
)
from termrelay.protocol.codec import decode
from termrelay.relay.channel import ClientChannel
from termrelay.relay.registry import SessionRegistry
from termrelay.remote.base import RemoteConnector, RemoteDuplex
from termrelay.store.base import InMemoryConnectionStore

TEST_SECRET = "test-secret-0123456789abcdef0123456789"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeChannel(ClientChannel):
    """A client socket driven by the test.

    ``push`` queues a raw client message, ``hang_up`` simulates the client
    going away. Everything the relay sends is kept in ``sent``.
    """

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.gone = False
        self.close_code: int | None = None
        self._inbox: asyncio.Queue[str | bytes | None] = asyncio.Queue()

    def push(self, raw: str | bytes) -> None:
        self._inbox.put_nowait(raw)

    def hang_up(self) -> None:
        self.gone = True
        self._inbox.put_nowait(None)

    def frames(self) -> list[Frame]:
        return [decode(text) for text in self.sent]

    @property
    def writable(self) -> bool:
        return not self.closed and not self.gone

    async def recv(self) -> str | bytes | None:
        if self.closed or self.gone:
            return None
        return await self._inbox.get()

    async def send(self, text: str) -> None:
        if not self.writable:
            raise RelayIOError("Client socket is closed")
        self.sent.append(text)

    async def close(self, code: int = 1000) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self._inbox.put_nowait(None)


class FakeDuplex(RemoteDuplex):
    """A remote shell whose output is fed by the test.

    With ``echo=True`` every write is played back as output, like a
    terminal with local echo.
    """

    def __init__(self, echo: bool = False) -> None:
        self.written: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.closed = False
        self._echo = echo
        self._output: asyncio.Queue[bytes] = asyncio.Queue()

    def emit(self, data: bytes) -> None:
        self._output.put_nowait(data)

    def finish(self) -> None:
        self._output.put_nowait(b"")

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def read(self) -> bytes:
        if self.closed:
            return b""
        return await self._output.get()

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise RelayIOError("Remote channel is closed")
        self.written.append(data)
        if self._echo:
            self._output.put_nowait(data)

    async def resize(self, cols: int, rows: int) -> bool:
        if self.closed:
            return False
        self.resizes.append((cols, rows))
        return True

    async def close(self) -> None:
        self.closed = True


class FakeConnector(RemoteConnector):
    """Hands out a fresh :class:`FakeDuplex` per open, or raises ``error``."""

    def __init__(
        self,
        error: Exception | None = None,
        delay: float = 0.0,
        echo: bool = False,
        preload: bytes = b"",
    ) -> None:
        self.error = error
        self.delay = delay
        self.echo = echo
        self.preload = preload
        self.duplexes: list[FakeDuplex] = []
        self.opened: list[tuple[ConnectionDescriptor, TerminalGeometry]] = []

    @property
    def duplex(self) -> FakeDuplex:
        return self.duplexes[-1]

    async def open(
        self,
        descriptor: ConnectionDescriptor,
        geometry: TerminalGeometry,
        timeout: float,
    ) -> FakeDuplex:
        self.opened.append((descriptor, geometry))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        duplex = FakeDuplex(echo=self.echo)
        if self.preload:
            duplex.emit(self.preload)
        self.duplexes.append(duplex)
        return duplex


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Identity / Store Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def validator() -> JwtTokenValidator:
    return JwtTokenValidator(TEST_SECRET)


@pytest.fixture
def token() -> str:
    """A valid token for user 1."""
    return issue_token(1, TEST_SECRET, email="dev@example.com")


@pytest.fixture
def other_token() -> str:
    """A valid token for user 2."""
    return issue_token(2, TEST_SECRET)


@pytest.fixture
def identity() -> Identity:
    return Identity(user_id=1, email="dev@example.com")


@pytest.fixture
def descriptor() -> ConnectionDescriptor:
    """Connection 5, owned by user 1."""
    return ConnectionDescriptor(
        id=5,
        user_id=1,
        name="build box",
        host="build.internal",
        port=22,
        username="deploy",
        password=SecretStr("hunter2"),
    )


@pytest.fixture
def foreign_descriptor() -> ConnectionDescriptor:
    """Connection 6, owned by user 2."""
    return ConnectionDescriptor(
        id=6,
        user_id=2,
        host="db.internal",
        username="admin",
        password=SecretStr("secret"),
    )


@pytest.fixture
def store(
    descriptor: ConnectionDescriptor, foreign_descriptor: ConnectionDescriptor
) -> InMemoryConnectionStore:
    return InMemoryConnectionStore([descriptor, foreign_descriptor])


# ---------------------------------------------------------------------------
# Relay Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_channel() -> Callable[[], FakeChannel]:
    return FakeChannel


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def make_connector() -> type[FakeConnector]:
    return FakeConnector


@pytest.fixture
def eventually() -> Callable:
    """Async helper: ``await eventually(lambda: cond)``."""
    return _eventually


@pytest.fixture
def registry(
    validator: JwtTokenValidator, store: InMemoryConnectionStore, connector: FakeConnector
) -> SessionRegistry:
    return SessionRegistry(validator, store, connector, connect_timeout=1.0)
