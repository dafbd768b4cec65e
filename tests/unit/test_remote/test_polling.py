"""Tests for the thread-backed PollingDuplex."""

from __future__ import annotations

import asyncio
import queue
import threading
from typing import Iterable

import pytest

from termrelay.domain.errors import RelayIOError
from termrelay.remote.base import PollingDuplex


class ScriptedDuplex(PollingDuplex):
    """A PollingDuplex over an in-process queue of scripted reads."""

    def __init__(
        self,
        script: Iterable[bytes | BaseException] = (),
        write_error: Exception | None = None,
    ) -> None:
        super().__init__(read_size=64, poll_interval=0.01)
        self.script: queue.Queue[bytes | BaseException] = queue.Queue()
        for item in script:
            self.script.put(item)
        self.write_error = write_error
        self.written: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.released = False

    def _poll_read(self, timeout: float) -> bytes | None:
        try:
            item = self.script.get(timeout=timeout)
        except queue.Empty:
            return None
        if isinstance(item, BaseException):
            raise item
        return item

    def _write_blocking(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data)

    def _resize_blocking(self, cols: int, rows: int) -> bool:
        self.resizes.append((cols, rows))
        return True

    def _release(self) -> None:
        self.released = True


class StuckDuplex(ScriptedDuplex):
    """A duplex whose poll hangs until ``gate`` opens."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = threading.Event()
        self.events: list[str] = []

    def _poll_read(self, timeout: float) -> bytes | None:
        self.gate.wait(2.0)
        self.events.append("poll returned")
        return None

    def _release(self) -> None:
        self.events.append("released")
        super()._release()


class TestPollingDuplex:
    @pytest.mark.asyncio
    async def test_reads_in_order_then_eof(self) -> None:
        duplex = ScriptedDuplex([b"one", b"two", b""])
        duplex.start()

        assert await duplex.read() == b"one"
        assert await duplex.read() == b"two"
        assert await duplex.read() == b""
        # EOF is sticky
        assert await duplex.read() == b""
        assert not duplex.is_open

        await duplex.close()
        assert duplex.released

    @pytest.mark.asyncio
    async def test_read_error_surfaces_as_relay_io_error(self) -> None:
        duplex = ScriptedDuplex([b"partial", OSError("connection reset")])
        duplex.start()

        assert await duplex.read() == b"partial"
        with pytest.raises(RelayIOError, match="connection reset"):
            await duplex.read()
        await duplex.close()

    @pytest.mark.asyncio
    async def test_close_stops_idle_reader(self) -> None:
        duplex = ScriptedDuplex()
        duplex.start()

        await duplex.close()

        assert duplex._thread is not None
        assert not duplex._thread.is_alive()
        assert duplex.released
        assert not duplex.is_open

    @pytest.mark.asyncio
    async def test_cancelled_read_leaves_channel_usable(self) -> None:
        duplex = ScriptedDuplex()
        duplex.start()

        pending = asyncio.create_task(duplex.read())
        await asyncio.sleep(0.05)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

        duplex.script.put(b"later")
        assert await asyncio.wait_for(duplex.read(), timeout=1.0) == b"later"
        assert not duplex.released
        await duplex.close()

    @pytest.mark.asyncio
    async def test_write_and_resize(self) -> None:
        duplex = ScriptedDuplex()
        duplex.start()

        await duplex.write(b"ls\n")
        assert await duplex.resize(100, 30) is True

        assert duplex.written == [b"ls\n"]
        assert duplex.resizes == [(100, 30)]
        await duplex.close()

    @pytest.mark.asyncio
    async def test_write_error_wrapped(self) -> None:
        duplex = ScriptedDuplex(write_error=BrokenPipeError("pipe closed"))
        duplex.start()

        with pytest.raises(RelayIOError, match="pipe closed"):
            await duplex.write(b"x")
        await duplex.close()

    @pytest.mark.asyncio
    async def test_after_close(self) -> None:
        duplex = ScriptedDuplex()
        duplex.start()
        await duplex.close()

        with pytest.raises(RelayIOError):
            await duplex.write(b"x")
        assert await duplex.resize(80, 24) is False
        # Closing twice is harmless
        await duplex.close()

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self) -> None:
        duplex = ScriptedDuplex([b"hi"])
        duplex.start()

        async with duplex:
            assert await duplex.read() == b"hi"

        assert duplex.released

    @pytest.mark.asyncio
    async def test_release_waits_for_hung_reader(self, eventually) -> None:
        duplex = StuckDuplex()
        duplex.start()

        await duplex.close()
        assert not duplex.released
        assert not duplex.is_open

        duplex.gate.set()
        await eventually(lambda: duplex.released)
        assert duplex.events == ["poll returned", "released"]
