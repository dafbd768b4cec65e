"""Local pty remote backend.

Runs a shell on the relay host itself under a pseudo-terminal. Useful
for development and demos: the descriptor's credentials are ignored and
every session gets a fresh shell.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import termios
import time

from termrelay.domain.errors import RemoteUnreachable
from termrelay.domain.models import ConnectionDescriptor, TerminalGeometry
from termrelay.remote.base import PollingDuplex, RemoteConnector

logger = logging.getLogger(__name__)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


class LocalPtyDuplex(PollingDuplex):
    """A shell subprocess attached to the master side of a pty."""

    def __init__(
        self,
        master_fd: int,
        pid: int,
        read_size: int = 4096,
        poll_interval: float = 0.1,
    ) -> None:
        super().__init__(read_size=read_size, poll_interval=poll_interval)
        self._master_fd = master_fd
        self._pid = pid

    @property
    def pid(self) -> int:
        return self._pid

    def _poll_read(self, timeout: float) -> bytes | None:
        r, _, _ = select.select([self._master_fd], [], [], timeout)
        if not r:
            return None
        try:
            return os.read(self._master_fd, self._read_size)
        except OSError as e:
            # Linux reports EIO on the master once the slave side is gone
            if e.errno == errno.EIO:
                return b""
            raise

    def _write_blocking(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self._master_fd, view)
            view = view[written:]

    def _resize_blocking(self, cols: int, rows: int) -> bool:
        _set_winsize(self._master_fd, cols, rows)
        return True

    def _release(self) -> None:
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._reap()
        logger.info("Local shell stopped (pid=%d)", self._pid)

    def _reap(self) -> None:
        """Hang up the shell, escalating to SIGKILL if it lingers."""
        try:
            os.kill(self._pid, signal.SIGHUP)
        except ProcessLookupError:
            pass
        for _ in range(5):
            try:
                pid, _ = os.waitpid(self._pid, os.WNOHANG)
            except ChildProcessError:
                return
            if pid:
                return
            time.sleep(0.1)
        try:
            os.kill(self._pid, signal.SIGKILL)
            os.waitpid(self._pid, 0)
        except (ProcessLookupError, ChildProcessError):
            pass


class LocalPtyConnector(RemoteConnector):
    """Spawns a local shell per session."""

    def __init__(
        self,
        shell_command: str = "/bin/bash",
        term: str = "xterm-256color",
        read_size: int = 4096,
    ) -> None:
        self._shell_command = shell_command
        self._term = term
        self._read_size = read_size

    async def open(
        self,
        descriptor: ConnectionDescriptor,
        geometry: TerminalGeometry,
        timeout: float,
    ) -> LocalPtyDuplex:
        """Start the shell subprocess using a pty."""
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise RemoteUnreachable(f"failed to allocate pty: {e}") from e

        _set_winsize(slave_fd, geometry.cols, geometry.rows)

        env = os.environ.copy()
        env["TERM"] = self._term
        env["COLUMNS"] = str(geometry.cols)
        env["LINES"] = str(geometry.rows)

        pid = os.fork()
        if pid == 0:
            # Child process
            try:
                os.close(master_fd)
                os.setsid()
                fcntl.ioctl(slave_fd, termios.TIOCSCTTY, 0)
                os.dup2(slave_fd, 0)
                os.dup2(slave_fd, 1)
                os.dup2(slave_fd, 2)
                if slave_fd > 2:
                    os.close(slave_fd)
                os.execvpe(self._shell_command, [self._shell_command], env)
            finally:
                os._exit(127)

        # Parent process
        os.close(slave_fd)
        duplex = LocalPtyDuplex(master_fd, pid, read_size=self._read_size)
        duplex.start()
        logger.info(
            "Started local shell %s for connection %d (pid=%d, %dx%d)",
            self._shell_command, descriptor.id, pid, geometry.cols, geometry.rows,
        )
        return duplex
