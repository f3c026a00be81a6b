from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

ConnectionId = str


@dataclass(frozen=True)
class Identity:
    """Verified identity bound to a connection.

    Anonymous game-room spectators have no user_id.
    """

    user_id: str | None
    username: str | None = None
    avatar: str = ""


@dataclass
class Connection:
    id: ConnectionId
    transport: Any = None
    identity: Identity | None = None
    attached_at: float = field(default_factory=time.monotonic)
    awaiting_pong: float | None = None


class ConnectionRegistry:
    """
    Owns the lifecycle of live transport connections.

    This class is responsible for:
    - Allocating connection ids on attach
    - Binding an optional identity to each connection
    - Handing the connection record back exactly once on detach

    Room and DM cleanup is driven by the caller when detach() returns a
    record; a second detach for the same id returns None.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("gbrelay.connections")
        self._connections: dict[ConnectionId, Connection] = {}

    def attach(self, transport: Any = None) -> ConnectionId:
        """Allocate an id for a newly attached transport. No room side effects."""
        cid = os.urandom(8).hex()
        while cid in self._connections:
            cid = os.urandom(8).hex()
        self._connections[cid] = Connection(id=cid, transport=transport)
        self.log.debug("Connection attached conn=%s", cid)
        return cid

    def detach(self, connection_id: ConnectionId) -> Connection | None:
        """Forget a connection. Returns its record the first time only."""
        conn = self._connections.pop(connection_id, None)
        if conn is not None:
            self.log.debug("Connection detached conn=%s", connection_id)
        return conn

    def bind(self, connection_id: ConnectionId, identity: Identity) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        conn.identity = identity
        return True

    def get(self, connection_id: ConnectionId) -> Connection | None:
        return self._connections.get(connection_id)

    def identity_of(self, connection_id: ConnectionId) -> Identity | None:
        conn = self._connections.get(connection_id)
        return conn.identity if conn else None

    def transport_of(self, connection_id: ConnectionId) -> Any:
        conn = self._connections.get(connection_id)
        return conn.transport if conn else None

    def ids(self) -> list[ConnectionId]:
        return list(self._connections.keys())

    def items(self) -> list[tuple[ConnectionId, Connection]]:
        return list(self._connections.items())

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def clear_all(self) -> list[Connection]:
        """Drop every connection and return the records for teardown."""
        conns = list(self._connections.values())
        self._connections.clear()
        return conns

    def get_stats(self) -> dict[str, Any]:
        total = len(self._connections)
        identified = sum(
            1
            for c in self._connections.values()
            if c.identity is not None and c.identity.user_id is not None
        )
        return {"total": total, "identified": identified}
