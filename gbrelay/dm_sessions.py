from __future__ import annotations

import logging
from typing import Any

from .connections import ConnectionId


class DmSessionIndex:
    """
    Maps a durable user id to the connections currently bound to it.

    A user may have several devices attached at once. Each connection is
    indexed under at most one user id, and a user id disappears from the
    index together with its last connection. Room fan-out never goes through
    this index; it only answers "which connections belong to user X".
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("gbrelay.dm")
        self._by_user: dict[str, set[ConnectionId]] = {}
        self._user_by_conn: dict[ConnectionId, str] = {}

    def register(self, connection_id: ConnectionId, user_id: str) -> None:
        previous = self._user_by_conn.get(connection_id)
        if previous == user_id:
            return
        if previous is not None:
            self._discard(previous, connection_id)
            self.log.debug(
                "Connection rebound conn=%s user=%s -> %s",
                connection_id,
                previous,
                user_id,
            )

        self._user_by_conn[connection_id] = user_id
        self._by_user.setdefault(user_id, set()).add(connection_id)

    def unregister(self, connection_id: ConnectionId) -> str | None:
        """Drop a connection. Returns the user id it was bound to, if any."""
        user_id = self._user_by_conn.pop(connection_id, None)
        if user_id is not None:
            self._discard(user_id, connection_id)
        return user_id

    def _discard(self, user_id: str, connection_id: ConnectionId) -> None:
        conns = self._by_user.get(user_id)
        if conns is None:
            return
        conns.discard(connection_id)
        if not conns:
            self._by_user.pop(user_id, None)

    def connections_for(self, user_id: str) -> set[ConnectionId]:
        return set(self._by_user.get(user_id, ()))

    def user_of(self, connection_id: ConnectionId) -> str | None:
        return self._user_by_conn.get(connection_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def __len__(self) -> int:
        return len(self._by_user)

    def clear_all(self) -> None:
        self._by_user.clear()
        self._user_by_conn.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "users_online": len(self._by_user),
            "bound_connections": len(self._user_by_conn),
        }
