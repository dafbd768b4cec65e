"""Abstract credential store and an in-memory implementation.

The relay looks up stored connections by id on behalf of an identity and
never writes them back.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from termrelay.domain.errors import ConnectionNotFound, NotOwner
from termrelay.domain.models import ConnectionDescriptor, Identity

logger = logging.getLogger(__name__)


class ConnectionStore(ABC):
    """Read-only access to stored connection descriptors."""

    @abstractmethod
    async def get_connection_by_id(
        self, connection_id: int, identity: Identity
    ) -> ConnectionDescriptor:
        """Fetch a connection owned by ``identity``.

        Raises:
            ConnectionNotFound: No connection with that id exists.
            NotOwner: The connection belongs to another user.
        """
        ...

    @abstractmethod
    async def list_connections(self, identity: Identity) -> list[ConnectionDescriptor]:
        """All connections owned by ``identity``."""
        ...


class InMemoryConnectionStore(ConnectionStore):
    """A dict-backed store, filled at construction time."""

    def __init__(self, connections: Iterable[ConnectionDescriptor] = ()) -> None:
        self._connections: dict[int, ConnectionDescriptor] = {}
        for conn in connections:
            self.add(conn)

    def add(self, connection: ConnectionDescriptor) -> None:
        if connection.id in self._connections:
            raise ValueError(f"Duplicate connection id: {connection.id}")
        self._connections[connection.id] = connection

    def __len__(self) -> int:
        return len(self._connections)

    async def get_connection_by_id(
        self, connection_id: int, identity: Identity
    ) -> ConnectionDescriptor:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        if conn.user_id != identity.user_id:
            raise NotOwner(f"Connection {connection_id} is not owned by user {identity.user_id}")
        return conn

    async def list_connections(self, identity: Identity) -> list[ConnectionDescriptor]:
        return [c for c in self._connections.values() if c.user_id == identity.user_id]
