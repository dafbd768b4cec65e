"""SSH remote backend.

Opens an interactive shell on the stored host with paramiko, using the
descriptor's password or private key, and exposes it as a duplex.
"""

from __future__ import annotations

import asyncio
import functools
import io
import logging
import select
import socket

import paramiko

from termrelay.domain.errors import RemoteAuthFailed, RemoteUnreachable
from termrelay.domain.models import AuthType, ConnectionDescriptor, TerminalGeometry
from termrelay.remote.base import PollingDuplex, RemoteConnector

logger = logging.getLogger(__name__)

# Key types tried, in order, when parsing a stored private key
KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


class SshDuplex(PollingDuplex):
    """An interactive shell channel on an established SSH client."""

    io_errors = (OSError, EOFError, paramiko.SSHException)

    def __init__(
        self,
        client: paramiko.SSHClient,
        channel: paramiko.Channel,
        read_size: int = 4096,
        poll_interval: float = 0.1,
    ) -> None:
        super().__init__(read_size=read_size, poll_interval=poll_interval)
        self._client = client
        self._channel = channel

    def _poll_read(self, timeout: float) -> bytes | None:
        r, _, _ = select.select([self._channel], [], [], timeout)
        if not r:
            return None
        return self._channel.recv(self._read_size)

    def _write_blocking(self, data: bytes) -> None:
        self._channel.sendall(data)

    def _resize_blocking(self, cols: int, rows: int) -> bool:
        self._channel.resize_pty(width=cols, height=rows)
        return True

    def _release(self) -> None:
        try:
            self._channel.close()
        finally:
            self._client.close()
        logger.debug("SSH channel released")


class SshConnector(RemoteConnector):
    """Connects to remote hosts over SSH.

    Host keys are not verified; stored connections are trusted as
    configured by their owner.
    """

    def __init__(
        self,
        term: str = "xterm-256color",
        read_size: int = 4096,
    ) -> None:
        self._term = term
        self._read_size = read_size

    async def open(
        self,
        descriptor: ConnectionDescriptor,
        geometry: TerminalGeometry,
        timeout: float,
    ) -> SshDuplex:
        """Connect, authenticate and start a shell with a pty."""
        loop = asyncio.get_running_loop()
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        future = loop.run_in_executor(
            None, self._open_blocking, client, descriptor, geometry, timeout
        )
        try:
            channel = await asyncio.shield(future)
        except asyncio.CancelledError:
            # The blocking open keeps running in its thread; close what it produces
            future.add_done_callback(functools.partial(_discard_abandoned, client))
            raise
        except (RemoteAuthFailed, RemoteUnreachable):
            client.close()
            raise

        duplex = SshDuplex(client, channel, read_size=self._read_size)
        duplex.start()
        logger.info(
            "SSH shell opened to %s (%dx%d)",
            descriptor.address, geometry.cols, geometry.rows,
        )
        return duplex

    def _open_blocking(
        self,
        client: paramiko.SSHClient,
        descriptor: ConnectionDescriptor,
        geometry: TerminalGeometry,
        timeout: float,
    ) -> paramiko.Channel:
        credentials = _credentials(descriptor)
        address = f"{descriptor.host}:{descriptor.port}"
        try:
            client.connect(
                hostname=descriptor.host,
                port=descriptor.port,
                username=descriptor.username,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
                **credentials,
            )
        except paramiko.AuthenticationException as e:
            raise RemoteAuthFailed(f"authentication failed for {descriptor.address}: {e}") from e
        except socket.timeout as e:
            raise RemoteUnreachable(f"failed to connect to {address}: timed out") from e
        except (OSError, EOFError, paramiko.SSHException) as e:
            raise RemoteUnreachable(f"failed to connect to {address}: {e}") from e

        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise RemoteUnreachable(f"failed to connect to {address}: transport closed")
        try:
            channel = transport.open_session(timeout=timeout)
            channel.get_pty(term=self._term, width=geometry.cols, height=geometry.rows)
            channel.set_combine_stderr(True)
            channel.invoke_shell()
        except (OSError, EOFError, paramiko.SSHException) as e:
            raise RemoteUnreachable(f"failed to start shell on {address}: {e}") from e
        return channel


def _credentials(descriptor: ConnectionDescriptor) -> dict:
    """Build paramiko auth kwargs from the descriptor's secret material."""
    if descriptor.auth_type == AuthType.PASSWORD:
        if descriptor.password is None:
            raise RemoteAuthFailed("no password set")
        return {"password": descriptor.password.get_secret_value()}

    if descriptor.private_key is None:
        raise RemoteAuthFailed("no private key set")
    return {"pkey": parse_private_key(descriptor.private_key.get_secret_value())}


def parse_private_key(key_text: str) -> paramiko.PKey:
    """Parse an unencrypted OpenSSH/PEM private key of any supported type.

    Raises:
        RemoteAuthFailed: If no key type accepts the text.
    """
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_text))
        except (paramiko.SSHException, ValueError):
            continue
    raise RemoteAuthFailed("failed to parse private key")


def _discard_abandoned(client: paramiko.SSHClient, future: asyncio.Future) -> None:
    """Close the connection produced by an open whose caller went away."""
    channel = None
    if not future.cancelled() and future.exception() is None:
        channel = future.result()
    future.get_loop().run_in_executor(None, _close_abandoned, client, channel)


def _close_abandoned(client: paramiko.SSHClient, channel: paramiko.Channel | None) -> None:
    try:
        if channel is not None:
            channel.close()
        client.close()
    except (OSError, EOFError, paramiko.SSHException) as e:
        logger.debug("Error closing abandoned SSH connection: %s", e)
        return
    logger.info("Closed SSH connection abandoned during open")
