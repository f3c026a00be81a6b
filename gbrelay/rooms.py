"""Room membership for the gbrelay relay.

The membership table is the presence source of truth. Rooms are created on
first join and deleted as soon as their last member leaves, so churn across
many short-lived game rooms does not accumulate empty entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .connections import ConnectionId
from .constants import DM_ROOM_PREFIX, ROOM_DM, ROOM_GAME


@dataclass(frozen=True)
class RoomKey:
    """Namespaced room key.

    Game and DM keys never compare equal, even when a game id happens to
    look like a rendered DM key.
    """

    kind: str
    name: str

    def __str__(self) -> str:
        if self.kind == ROOM_DM:
            return f"{DM_ROOM_PREFIX}{self.name}"
        return self.name

    @property
    def is_dm(self) -> bool:
        return self.kind == ROOM_DM

    def wire_fields(self) -> dict[str, str]:
        if self.kind == ROOM_DM:
            return {"conversationId": self.name}
        return {"gameId": self.name}


def game_room(game_id: str) -> RoomKey:
    return RoomKey(ROOM_GAME, game_id)


def dm_room(conversation_id: str) -> RoomKey:
    return RoomKey(ROOM_DM, conversation_id)


@dataclass(frozen=True)
class Member:
    connection_id: ConnectionId
    username: str
    avatar: str = ""
    user_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "username": self.username,
            "avatar": self.avatar,
            "userId": self.user_id,
        }


class RoomTable:
    """Authoritative per-room membership: room -> connection -> member."""

    def __init__(self) -> None:
        self.log = logging.getLogger("gbrelay.rooms")
        self.rooms: dict[RoomKey, dict[ConnectionId, Member]] = {}
        self._rooms_by_conn: dict[ConnectionId, set[RoomKey]] = {}

    def join(self, key: RoomKey, connection_id: ConnectionId, member: Member) -> bool:
        """Add or refresh a member. Returns True if the connection was new to the room."""
        room = self.rooms.get(key)
        if room is None:
            room = {}
            self.rooms[key] = room

        is_new = connection_id not in room
        # Re-assigning an existing key keeps its insertion position.
        room[connection_id] = member
        self._rooms_by_conn.setdefault(connection_id, set()).add(key)
        return is_new

    def leave(self, key: RoomKey, connection_id: ConnectionId) -> Member | None:
        """Remove a member if present, deleting the room once it is empty."""
        room = self.rooms.get(key)
        if room is None:
            return None

        member = room.pop(connection_id, None)
        if member is None:
            return None

        if not room:
            self.rooms.pop(key, None)

        keys = self._rooms_by_conn.get(connection_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                self._rooms_by_conn.pop(connection_id, None)
        return member

    def leave_all(self, connection_id: ConnectionId) -> list[tuple[RoomKey, Member]]:
        """Remove a connection from every room it is in. One entry per affected room."""
        affected: list[tuple[RoomKey, Member]] = []
        for key in list(self._rooms_by_conn.get(connection_id, ())):
            member = self.leave(key, connection_id)
            if member is not None:
                affected.append((key, member))
        return affected

    def members_of(self, key: RoomKey) -> list[Member]:
        return list(self.rooms.get(key, {}).values())

    def member_ids(self, key: RoomKey) -> list[ConnectionId]:
        return list(self.rooms.get(key, {}).keys())

    def get_member(self, key: RoomKey, connection_id: ConnectionId) -> Member | None:
        return self.rooms.get(key, {}).get(connection_id)

    def rooms_of(self, connection_id: ConnectionId) -> set[RoomKey]:
        return set(self._rooms_by_conn.get(connection_id, ()))

    def has_room(self, key: RoomKey) -> bool:
        return bool(self.rooms.get(key))

    def __contains__(self, key: object) -> bool:
        return key in self.rooms

    def __len__(self) -> int:
        return len(self.rooms)

    def clear_all(self) -> None:
        self.rooms.clear()
        self._rooms_by_conn.clear()

    def get_stats(self) -> dict[str, Any]:
        rooms_total = len(self.rooms)
        dm_rooms = sum(1 for k in self.rooms if k.is_dm)
        memberships = sum(len(v) for v in self.rooms.values())
        top_rooms = sorted(
            ((str(key), len(members)) for key, members in self.rooms.items()),
            key=lambda x: (-x[1], x[0]),
        )[:5]
        return {
            "rooms_total": rooms_total,
            "dm_rooms": dm_rooms,
            "memberships": memberships,
            "top_rooms": top_rooms,
        }
