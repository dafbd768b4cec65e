"""Abstract interfaces for the remote side of a terminal session.

A relay session never talks to SSH (or a local pty) directly. It asks a
:class:`RemoteConnector` for a :class:`RemoteDuplex` and then only reads,
writes, resizes and closes through that interface, so the transport can
be swapped without touching the relay.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod

from termrelay.domain.errors import RelayIOError
from termrelay.domain.models import ConnectionDescriptor, TerminalGeometry

logger = logging.getLogger(__name__)


class RemoteDuplex(ABC):
    """A bidirectional byte stream to an interactive remote shell.

    Example usage::

        duplex = await connector.open(descriptor, TerminalGeometry(), timeout=10)
        async with duplex:
            await duplex.write(b"ls\\n")
            chunk = await duplex.read()
            await duplex.resize(120, 40)
    """

    @abstractmethod
    async def read(self) -> bytes:
        """Wait for the next chunk of shell output.

        Returns an empty ``bytes`` object once the remote side has closed.
        Cancelling the awaiting task must not disturb the underlying
        channel; only :meth:`close` releases it.

        Raises:
            RelayIOError: If the channel failed.
        """
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Send raw input bytes to the shell.

        Raises:
            RelayIOError: If the channel is closed or the write fails.
        """
        ...

    @abstractmethod
    async def resize(self, cols: int, rows: int) -> bool:
        """Propagate a terminal size change.

        Returns:
            True if the transport applied the new size, False if it does
            not support resizing.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop reading and release the channel.

        Safe to call multiple times.
        """
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    async def __aenter__(self) -> RemoteDuplex:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.close()


class RemoteConnector(ABC):
    """Factory that establishes a :class:`RemoteDuplex` for a descriptor."""

    @abstractmethod
    async def open(
        self,
        descriptor: ConnectionDescriptor,
        geometry: TerminalGeometry,
        timeout: float,
    ) -> RemoteDuplex:
        """Connect, authenticate and start an interactive shell.

        Args:
            descriptor: Host, port, username and credentials.
            geometry: Initial pty size.
            timeout: Upper bound in seconds for the whole open sequence.

        Raises:
            RemoteUnreachable: Host unreachable, refused, or timed out.
            RemoteAuthFailed: The host rejected the credentials.
        """
        ...


class PollingDuplex(RemoteDuplex):
    """A duplex whose blocking reads run on a dedicated reader thread.

    The thread polls the channel with a short timeout so it notices the
    stop signal promptly, and hands chunks to the event loop through an
    ``asyncio.Queue``. :meth:`read` therefore awaits a queue, which any
    task can cancel safely; the channel itself is released only after
    the reader thread has exited.

    Subclasses implement the four blocking primitives below.
    """

    #: Exceptions raised by the blocking primitives that mean "channel broken".
    io_errors: tuple[type[BaseException], ...] = (OSError,)

    def __init__(self, read_size: int = 4096, poll_interval: float = 0.1) -> None:
        self._read_size = read_size
        self._poll_interval = poll_interval
        self._queue: asyncio.Queue[bytes | BaseException] = asyncio.Queue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._eof = False
        # Guards the hand-off of _release between close() and the reader thread
        self._release_lock = threading.Lock()
        self._reader_done = False
        self._release_deferred = False

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._eof

    def start(self) -> None:
        """Start the reader thread. Must be called from the event loop."""
        loop = asyncio.get_running_loop()
        self._thread = threading.Thread(
            target=self._reader, args=(loop,),
            name=f"{type(self).__name__}-reader", daemon=True,
        )
        self._thread.start()

    async def read(self) -> bytes:
        if self._eof:
            return b""
        item = await self._queue.get()
        if isinstance(item, BaseException):
            self._eof = True
            raise RelayIOError(f"Remote read failed: {item}") from item
        if not item:
            self._eof = True
        return item

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise RelayIOError("Remote channel is closed")
        loop = asyncio.get_running_loop()
        async with self._write_lock:
            try:
                await loop.run_in_executor(None, self._write_blocking, data)
            except self.io_errors as e:
                raise RelayIOError(f"Remote write failed: {e}") from e

    async def resize(self, cols: int, rows: int) -> bool:
        if self._closed:
            return False
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._resize_blocking, cols, rows)
        except self.io_errors as e:
            raise RelayIOError(f"Remote resize failed: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        loop = asyncio.get_running_loop()
        if self._thread is not None:
            await loop.run_in_executor(None, self._thread.join, self._poll_interval * 10)
            with self._release_lock:
                if not self._reader_done:
                    # The reader releases the channel itself once its last poll returns
                    self._release_deferred = True
                    logger.warning(
                        "Reader thread %s did not stop in time, deferring release",
                        self._thread.name,
                    )
                    return
        await loop.run_in_executor(None, self._release_quietly)

    def _release_quietly(self) -> None:
        try:
            self._release()
        except self.io_errors as e:
            logger.debug("Error releasing remote channel: %s", e)

    def _reader(self, loop: asyncio.AbstractEventLoop) -> None:
        try:
            self._read_until_stopped(loop)
        finally:
            with self._release_lock:
                self._reader_done = True
                deferred = self._release_deferred
            if deferred:
                self._release_quietly()

    def _read_until_stopped(self, loop: asyncio.AbstractEventLoop) -> None:
        while not self._stop.is_set():
            try:
                data = self._poll_read(self._poll_interval)
            except self.io_errors as e:
                if not self._stop.is_set():
                    self._post(loop, e)
                return
            if data is None:
                continue
            self._post(loop, data)
            if not data:
                return

    def _post(self, loop: asyncio.AbstractEventLoop, item: bytes | BaseException) -> None:
        try:
            loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Event loop already closed
            pass

    @abstractmethod
    def _poll_read(self, timeout: float) -> bytes | None:
        """Wait up to ``timeout`` seconds for output.

        Returns the data read, ``None`` if nothing arrived, or ``b""`` on
        end of stream.
        """
        ...

    @abstractmethod
    def _write_blocking(self, data: bytes) -> None:
        ...

    @abstractmethod
    def _resize_blocking(self, cols: int, rows: int) -> bool:
        ...

    @abstractmethod
    def _release(self) -> None:
        """Close the underlying channel. Called once the reader has stopped."""
        ...
