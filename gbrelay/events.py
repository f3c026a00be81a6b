"""Inbound client events.

Every event name accepted from the wire has one variant here and one decode
step in decode_event(). Anything that does not decode is dropped by the
caller without a reply.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from .constants import (
    DEFAULT_MESSAGE_TYPE,
    E_DISCONNECT,
    E_DM_TYPING,
    E_JOIN_DM_ROOM,
    E_JOIN_ROOM,
    E_LEAVE_DM_ROOM,
    E_LEAVE_ROOM,
    E_REGISTER_USER,
    E_SEND_DM,
    E_SEND_MESSAGE,
    E_STOP_TYPING,
    E_TYPING,
    MESSAGE_TYPES,
)
from .util import clean_text, normalize_room_id


@dataclass(frozen=True)
class JoinRoom:
    game_id: str
    user_id: str | None = None
    username: str | None = None
    avatar: str | None = None


@dataclass(frozen=True)
class LeaveRoom:
    game_id: str


@dataclass(frozen=True)
class SendMessage:
    game_id: str
    username: str
    content: str
    user_id: str | None = None
    avatar: str = ""
    type: str = DEFAULT_MESSAGE_TYPE


@dataclass(frozen=True)
class Typing:
    game_id: str
    username: str


@dataclass(frozen=True)
class StopTyping:
    game_id: str
    username: str


@dataclass(frozen=True)
class RegisterUser:
    user_id: str
    username: str | None = None
    avatar: str | None = None


@dataclass(frozen=True)
class JoinDm:
    conversation_id: str | None
    user_id: str | None = None


@dataclass(frozen=True)
class LeaveDm:
    conversation_id: str


@dataclass(frozen=True)
class SendDm:
    conversation_id: str
    message: Any


@dataclass(frozen=True)
class DmTyping:
    conversation_id: str
    username: str
    is_typing: bool


@dataclass(frozen=True)
class Disconnect:
    """Produced by the transport when a connection goes away."""


Event = Union[
    JoinRoom,
    LeaveRoom,
    SendMessage,
    Typing,
    StopTyping,
    RegisterUser,
    JoinDm,
    LeaveDm,
    SendDm,
    DmTyping,
    Disconnect,
]


def _user_id(value) -> str | None:
    # Numeric ids from the user store are treated like strings.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return clean_text(value)


def _optional_str(value) -> str | None:
    return value if isinstance(value, str) else None


def decode_event(name: Any, body: Any, *, max_room_key_len: int = 128) -> Event | None:
    """Decode one wire event into its variant, or None if it is malformed."""
    if not isinstance(name, str) or not isinstance(body, dict):
        return None

    def room_id(key: str) -> str | None:
        return normalize_room_id(body.get(key), max_len=max_room_key_len)

    if name == E_DISCONNECT:
        # Only the transport may raise a disconnect.
        return None

    if name == E_JOIN_ROOM:
        game_id = room_id("gameId")
        if game_id is None:
            return None
        user = body.get("user")
        if not isinstance(user, dict):
            return JoinRoom(game_id=game_id)
        uid = user.get("id")
        if uid is None:
            uid = user.get("_id")
        return JoinRoom(
            game_id=game_id,
            user_id=_user_id(uid),
            username=clean_text(user.get("username")),
            avatar=_optional_str(user.get("avatar")),
        )

    if name == E_LEAVE_ROOM:
        game_id = room_id("gameId")
        return LeaveRoom(game_id=game_id) if game_id is not None else None

    if name == E_SEND_MESSAGE:
        game_id = room_id("gameId")
        message = body.get("message")
        if game_id is None or not isinstance(message, dict):
            return None
        username = clean_text(message.get("username"))
        content = message.get("content")
        if username is None or not isinstance(content, str):
            return None
        msg_type = message.get("type")
        if msg_type not in MESSAGE_TYPES:
            msg_type = DEFAULT_MESSAGE_TYPE
        return SendMessage(
            game_id=game_id,
            username=username,
            content=content,
            user_id=_user_id(message.get("userId")),
            avatar=_optional_str(message.get("userAvatar")) or "",
            type=msg_type,
        )

    if name in (E_TYPING, E_STOP_TYPING):
        game_id = room_id("gameId")
        username = clean_text(body.get("username"))
        if game_id is None or username is None:
            return None
        if name == E_TYPING:
            return Typing(game_id=game_id, username=username)
        return StopTyping(game_id=game_id, username=username)

    if name == E_REGISTER_USER:
        uid = _user_id(body.get("userId"))
        if uid is None:
            return None
        return RegisterUser(
            user_id=uid,
            username=clean_text(body.get("username")),
            avatar=_optional_str(body.get("avatar")),
        )

    if name == E_JOIN_DM_ROOM:
        conversation_id = room_id("conversationId")
        uid = _user_id(body.get("userId"))
        if conversation_id is None and uid is None:
            return None
        return JoinDm(conversation_id=conversation_id, user_id=uid)

    if name == E_LEAVE_DM_ROOM:
        conversation_id = room_id("conversationId")
        return LeaveDm(conversation_id=conversation_id) if conversation_id else None

    if name == E_SEND_DM:
        conversation_id = room_id("conversationId")
        message = body.get("message")
        if conversation_id is None:
            return None
        # Empty maps and lists are valid payloads; only falsy scalars are dropped.
        if not message and not isinstance(message, (dict, list)):
            return None
        return SendDm(conversation_id=conversation_id, message=message)

    if name == E_DM_TYPING:
        conversation_id = room_id("conversationId")
        username = clean_text(body.get("username"))
        if conversation_id is None or username is None:
            return None
        return DmTyping(
            conversation_id=conversation_id,
            username=username,
            is_typing=bool(body.get("isTyping")),
        )

    return None
