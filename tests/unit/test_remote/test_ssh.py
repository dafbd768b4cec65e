"""Tests for the paramiko SSH backend."""

from __future__ import annotations

import asyncio
import io
import socket
import time
from unittest.mock import MagicMock, patch

import paramiko
import pytest
from pydantic import SecretStr

from termrelay.domain.errors import RemoteAuthFailed, RemoteUnreachable
from termrelay.domain.models import AuthType, ConnectionDescriptor, TerminalGeometry
from termrelay.remote.ssh import SshConnector, _credentials, parse_private_key


@pytest.fixture
def rsa_pem() -> str:
    key = paramiko.RSAKey.generate(bits=2048)
    buf = io.StringIO()
    key.write_private_key(buf)
    return buf.getvalue()


def _key_descriptor(private_key: str | None) -> ConnectionDescriptor:
    return ConnectionDescriptor(
        id=7,
        user_id=1,
        host="10.0.0.7",
        username="ops",
        auth_type=AuthType.KEY,
        private_key=SecretStr(private_key) if private_key is not None else None,
    )


class TestCredentials:
    def test_password(self, descriptor: ConnectionDescriptor) -> None:
        assert _credentials(descriptor) == {"password": "hunter2"}

    def test_missing_password(self) -> None:
        desc = ConnectionDescriptor(id=1, user_id=1, host="h", username="u")
        with pytest.raises(RemoteAuthFailed, match="no password set"):
            _credentials(desc)

    def test_missing_private_key(self) -> None:
        with pytest.raises(RemoteAuthFailed, match="no private key set"):
            _credentials(_key_descriptor(None))

    def test_private_key(self, rsa_pem: str) -> None:
        creds = _credentials(_key_descriptor(rsa_pem))
        assert isinstance(creds["pkey"], paramiko.RSAKey)


class TestParsePrivateKey:
    def test_rsa_key(self, rsa_pem: str) -> None:
        assert isinstance(parse_private_key(rsa_pem), paramiko.RSAKey)

    def test_garbage(self) -> None:
        with pytest.raises(RemoteAuthFailed, match="failed to parse private key"):
            parse_private_key("-----BEGIN NOTHING-----\nAAAA\n-----END NOTHING-----\n")


class TestOpenBlocking:
    """Error mapping of the blocking connect sequence."""

    @pytest.fixture
    def connector(self) -> SshConnector:
        return SshConnector()

    @pytest.mark.parametrize(
        ("raised", "expected", "fragment"),
        [
            (paramiko.AuthenticationException("bad password"), RemoteAuthFailed, "authentication failed"),
            (socket.timeout("timed out"), RemoteUnreachable, "timed out"),
            (ConnectionRefusedError(111, "Connection refused"), RemoteUnreachable, "Connection refused"),
            (paramiko.SSHException("Error reading SSH protocol banner"), RemoteUnreachable, "banner"),
        ],
    )
    def test_connect_errors(self, connector, descriptor, raised, expected, fragment) -> None:
        client = MagicMock(spec=paramiko.SSHClient)
        client.connect.side_effect = raised

        with pytest.raises(expected, match=fragment):
            connector._open_blocking(client, descriptor, TerminalGeometry(), 5.0)

    def test_shell_setup(self, connector, descriptor) -> None:
        client = MagicMock(spec=paramiko.SSHClient)
        channel = client.get_transport.return_value.open_session.return_value

        result = connector._open_blocking(client, descriptor, TerminalGeometry(cols=132, rows=43), 5.0)

        assert result is channel
        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "build.internal"
        assert kwargs["port"] == 22
        assert kwargs["username"] == "deploy"
        assert kwargs["password"] == "hunter2"
        assert kwargs["look_for_keys"] is False
        channel.get_pty.assert_called_once_with(term="xterm-256color", width=132, height=43)
        channel.invoke_shell.assert_called_once()

    def test_inactive_transport(self, connector, descriptor) -> None:
        client = MagicMock(spec=paramiko.SSHClient)
        client.get_transport.return_value.is_active.return_value = False

        with pytest.raises(RemoteUnreachable, match="transport closed"):
            connector._open_blocking(client, descriptor, TerminalGeometry(), 5.0)


class TestSshConnector:
    @pytest.mark.asyncio
    async def test_failed_open_closes_client(self, descriptor) -> None:
        with patch("termrelay.remote.ssh.paramiko.SSHClient") as client_cls:
            client = client_cls.return_value
            client.connect.side_effect = ConnectionRefusedError(111, "Connection refused")

            with pytest.raises(RemoteUnreachable):
                await SshConnector().open(descriptor, TerminalGeometry(), 1.0)

        client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_unusable_key_is_auth_failure(self) -> None:
        with patch("termrelay.remote.ssh.paramiko.SSHClient") as client_cls:
            with pytest.raises(RemoteAuthFailed):
                await SshConnector().open(_key_descriptor("junk"), TerminalGeometry(), 1.0)

        client_cls.return_value.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_during_connect_closes_late_shell(self, descriptor, eventually) -> None:
        events: list[str] = []

        def slow_connect(**kwargs) -> None:
            time.sleep(0.3)
            events.append("connect")

        with patch("termrelay.remote.ssh.paramiko.SSHClient") as client_cls:
            client = client_cls.return_value
            client.connect.side_effect = slow_connect
            client.close.side_effect = lambda: events.append("client.close")
            channel = client.get_transport.return_value.open_session.return_value
            channel.invoke_shell.side_effect = lambda: events.append("shell")
            channel.close.side_effect = lambda: events.append("channel.close")

            opening = asyncio.create_task(SshConnector().open(descriptor, TerminalGeometry(), 5.0))
            await asyncio.sleep(0.05)
            opening.cancel()
            with pytest.raises(asyncio.CancelledError):
                await opening

            await eventually(lambda: "client.close" in events)

        assert events == ["connect", "shell", "channel.close", "client.close"]

    @pytest.mark.asyncio
    async def test_cancel_during_failing_connect_closes_client(self, descriptor, eventually) -> None:
        def slow_refusal(**kwargs) -> None:
            time.sleep(0.2)
            raise ConnectionRefusedError(111, "Connection refused")

        with patch("termrelay.remote.ssh.paramiko.SSHClient") as client_cls:
            client = client_cls.return_value
            client.connect.side_effect = slow_refusal

            opening = asyncio.create_task(SshConnector().open(descriptor, TerminalGeometry(), 5.0))
            await asyncio.sleep(0.05)
            opening.cancel()
            with pytest.raises(asyncio.CancelledError):
                await opening
            client.close.assert_not_called()

            await eventually(lambda: client.close.called)

        client.get_transport.assert_not_called()
