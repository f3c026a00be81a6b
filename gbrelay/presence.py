"""Room presence, derived on demand from the membership table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .rooms import Member, RoomKey, RoomTable


@dataclass(frozen=True)
class Presence:
    count: int
    members: tuple[Member, ...]

    @property
    def usernames(self) -> list[str]:
        return [m.username for m in self.members]


def room_presence(table: RoomTable, key: RoomKey) -> Presence:
    members = tuple(table.members_of(key))
    return Presence(count=len(members), members=members)


def presence_body(key: RoomKey, presence: Presence) -> dict[str, Any]:
    """Body of a room_users event."""
    body: dict[str, Any] = dict(key.wire_fields())
    body["count"] = presence.count
    body["users"] = [m.to_wire() for m in presence.members]
    return body


def member_change_body(key: RoomKey, username: str, presence: Presence) -> dict[str, Any]:
    """Body of a user_joined or user_left event."""
    body: dict[str, Any] = dict(key.wire_fields())
    body["username"] = username
    body["count"] = presence.count
    return body
