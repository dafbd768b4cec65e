"""Remote side of a terminal session.

Translates a stored connection descriptor into a live byte duplex via
pluggable connectors: SSH for real hosts, a local pty for development.

Public API:
    RemoteDuplex -- Abstract byte stream to a remote shell
    RemoteConnector -- Abstract duplex factory
    SshConnector -- paramiko backend
    LocalPtyConnector -- local shell backend
    create_connector -- build the connector named in the configuration
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from termrelay.remote.base import PollingDuplex, RemoteConnector, RemoteDuplex

if TYPE_CHECKING:
    from termrelay.config.settings import RemoteConfig

__all__ = [
    "LocalPtyConnector",
    "PollingDuplex",
    "RemoteConnector",
    "RemoteDuplex",
    "SshConnector",
    "create_connector",
]


def create_connector(config: RemoteConfig) -> RemoteConnector:
    """Instantiate the backend selected by ``config.backend``."""
    if config.backend == "local":
        from termrelay.remote.local import LocalPtyConnector
        return LocalPtyConnector(
            shell_command=config.shell_command,
            term=config.term,
            read_size=config.read_size,
        )
    from termrelay.remote.ssh import SshConnector
    return SshConnector(term=config.term, read_size=config.read_size)


def __getattr__(name: str) -> type:
    """Lazy import for concrete implementations that require external deps."""
    if name == "SshConnector":
        from termrelay.remote.ssh import SshConnector
        return SshConnector
    if name == "LocalPtyConnector":
        from termrelay.remote.local import LocalPtyConnector
        return LocalPtyConnector
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
