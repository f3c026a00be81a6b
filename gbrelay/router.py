from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Any

from .codec import decode
from .config import RelayRuntimeConfig
from .connections import Connection, ConnectionId, Identity
from .constants import (
    ANONYMOUS_USERNAME,
    E_DM_USER_TYPING,
    E_NEW_DM,
    E_NEW_MESSAGE,
    E_PONG,
    E_ROOM_USERS,
    E_USER_JOINED,
    E_USER_LEFT,
    E_USER_TYPING,
    K_BODY,
    K_EVENT,
)
from .envelope import make_envelope, now_ms, validate_envelope
from .events import (
    Disconnect,
    DmTyping,
    Event,
    JoinDm,
    JoinRoom,
    LeaveDm,
    LeaveRoom,
    RegisterUser,
    SendDm,
    SendMessage,
    StopTyping,
    Typing,
    decode_event,
)
from .presence import member_change_body, presence_body, room_presence
from .rooms import Member, RoomKey, dm_room, game_room
from .state import RelayState

Outgoing = list[tuple[ConnectionId, dict]]


def chat_message_id() -> str:
    return f"msg_{now_ms()}_{os.urandom(5).hex()}"


def iso_now() -> str:
    ts = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return ts.replace("+00:00", "Z")


class EventRouter:
    """
    Dispatches inbound events and fans out the resulting server events.

    This class is responsible for:
    - Decoding and validating incoming packets
    - Dispatching decoded events by variant
    - Keeping room membership, identity binding and the DM index in step
    - Queueing presence, message and typing fan-out for the transport

    Every entry point must be called with the relay state lock held. Nothing
    is sent from here; envelopes are appended to `outgoing` as
    (connection id, envelope) pairs and the transport sends them in order
    once the lock is released.
    """

    def __init__(self, state: RelayState, config: RelayRuntimeConfig) -> None:
        self.state = state
        self.config = config
        self.log = logging.getLogger("gbrelay.router")

    def route_packet(
        self, connection_id: ConnectionId, data: bytes, outgoing: Outgoing
    ) -> None:
        """Main entry point for one inbound packet or resource payload."""
        conn = self.state.connections.get(connection_id)
        if conn is None:
            return

        self.state.stats.inc("events_in")
        self.state.stats.inc("bytes_in", len(data))

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self.state.stats.inc("events_bad")
            self.log.debug(
                "Bad packet conn=%s bytes=%s err=%s", connection_id, len(data), e
            )
            return

        name = env.get(K_EVENT)
        body = env.get(K_BODY)

        if name == E_PONG:
            self.state.stats.inc("pongs_in")
            conn.awaiting_pong = None
            return

        event = decode_event(name, body, max_room_key_len=self.config.max_room_key_len)
        if event is None:
            self.state.stats.inc("events_dropped")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "Dropped event conn=%s event=%r body_type=%s",
                    connection_id,
                    name,
                    type(body).__name__,
                )
            return

        self.dispatch(connection_id, event, outgoing)

    def dispatch(
        self, connection_id: ConnectionId, event: Event, outgoing: Outgoing
    ) -> None:
        if isinstance(event, JoinRoom):
            self._handle_join_room(connection_id, event, outgoing)
        elif isinstance(event, LeaveRoom):
            self._handle_leave(connection_id, game_room(event.game_id), outgoing)
        elif isinstance(event, SendMessage):
            self._handle_send_message(connection_id, event, outgoing)
        elif isinstance(event, Typing):
            self._handle_typing(
                connection_id, game_room(event.game_id), event.username, True, outgoing
            )
        elif isinstance(event, StopTyping):
            self._handle_typing(
                connection_id, game_room(event.game_id), event.username, False, outgoing
            )
        elif isinstance(event, RegisterUser):
            self._handle_register(connection_id, event)
        elif isinstance(event, JoinDm):
            self._handle_join_dm(connection_id, event, outgoing)
        elif isinstance(event, LeaveDm):
            self._handle_leave(connection_id, dm_room(event.conversation_id), outgoing)
        elif isinstance(event, SendDm):
            self._handle_send_dm(connection_id, event, outgoing)
        elif isinstance(event, DmTyping):
            self._handle_typing(
                connection_id,
                dm_room(event.conversation_id),
                event.username,
                event.is_typing,
                outgoing,
            )
        elif isinstance(event, Disconnect):
            self._handle_disconnect(connection_id, outgoing)
        else:
            raise TypeError(f"unhandled event type {type(event).__name__}")

    def on_detach(
        self, connection_id: ConnectionId, outgoing: Outgoing
    ) -> Connection | None:
        """Detach a connection and clean up after it, exactly once."""
        conn = self.state.connections.detach(connection_id)
        if conn is None:
            return None
        self.dispatch(connection_id, Disconnect(), outgoing)
        return conn

    def expire_typing(self, now: float, outgoing: Outgoing) -> int:
        """Relay isTyping=false for every indicator past its deadline."""
        expired = self.state.typing.expire(now)
        for key, username, origin in expired:
            self.state.stats.inc("typing_expired")
            self._relay_typing(key, origin, username, False, outgoing)
        return len(expired)

    # Queueing helpers

    def _queue_to_room(
        self,
        outgoing: Outgoing,
        key: RoomKey,
        event: str,
        body: Any,
        *,
        exclude: ConnectionId | None = None,
    ) -> int:
        recipients = [
            cid for cid in self.state.rooms.member_ids(key) if cid != exclude
        ]
        if not recipients:
            return 0
        # One envelope (and so one message id) shared by every recipient.
        env = make_envelope(event, body=body)
        for cid in recipients:
            outgoing.append((cid, env))
        return len(recipients)

    def _broadcast_membership_change(
        self, key: RoomKey, event: str, username: str, outgoing: Outgoing
    ) -> None:
        presence = room_presence(self.state.rooms, key)
        if presence.count == 0:
            return
        self._queue_to_room(outgoing, key, E_ROOM_USERS, presence_body(key, presence))
        self._queue_to_room(
            outgoing, key, event, member_change_body(key, username, presence)
        )
        self.state.stats.inc("presence_broadcasts")

    # Handlers

    def _identity_member(
        self,
        connection_id: ConnectionId,
        *,
        user_id: str | None = None,
        username: str | None = None,
        avatar: str | None = None,
    ) -> Member:
        """Membership metadata from the payload, falling back to the bound identity."""
        ident = self.state.connections.identity_of(connection_id)
        if username is None and ident is not None:
            username = ident.username
        if avatar is None:
            avatar = ident.avatar if ident is not None else ""
        if user_id is None and ident is not None:
            user_id = ident.user_id
        return Member(
            connection_id=connection_id,
            username=username or ANONYMOUS_USERNAME,
            avatar=avatar or "",
            user_id=user_id,
        )

    def _join(
        self,
        connection_id: ConnectionId,
        key: RoomKey,
        member: Member,
        outgoing: Outgoing,
    ) -> None:
        is_new = self.state.rooms.join(key, connection_id, member)
        self.state.stats.inc("joins")

        self.log.info(
            "JOIN conn=%s user=%r room=%s members=%s%s",
            connection_id,
            member.username,
            key,
            len(self.state.rooms.member_ids(key)),
            "" if is_new else " (refresh)",
        )

        self._broadcast_membership_change(key, E_USER_JOINED, member.username, outgoing)

    def _handle_join_room(
        self, connection_id: ConnectionId, event: JoinRoom, outgoing: Outgoing
    ) -> None:
        member = self._identity_member(
            connection_id,
            user_id=event.user_id,
            username=event.username,
            avatar=event.avatar,
        )
        self._join(connection_id, game_room(event.game_id), member, outgoing)

    def _handle_join_dm(
        self, connection_id: ConnectionId, event: JoinDm, outgoing: Outgoing
    ) -> None:
        if event.user_id is not None:
            self._handle_register(connection_id, RegisterUser(user_id=event.user_id))
        if event.conversation_id is None:
            return
        member = self._identity_member(connection_id)
        self._join(connection_id, dm_room(event.conversation_id), member, outgoing)

    def _handle_leave(
        self, connection_id: ConnectionId, key: RoomKey, outgoing: Outgoing
    ) -> None:
        member = self.state.rooms.leave(key, connection_id)
        if member is None:
            return

        self.state.stats.inc("leaves")
        self.state.typing.drop_room_connection(key, connection_id)

        self.log.info(
            "LEAVE conn=%s user=%r room=%s", connection_id, member.username, key
        )
        self._after_departure(key, member, outgoing)

    def _after_departure(self, key: RoomKey, member: Member, outgoing: Outgoing) -> None:
        if not self.state.rooms.has_room(key):
            self.log.debug("Room closed room=%s", key)
            return
        self._broadcast_membership_change(key, E_USER_LEFT, member.username, outgoing)

    def _handle_disconnect(self, connection_id: ConnectionId, outgoing: Outgoing) -> None:
        affected = self.state.rooms.leave_all(connection_id)
        for key, member in affected:
            self._after_departure(key, member, outgoing)

        user_id = self.state.dm_sessions.unregister(connection_id)
        self.state.typing.drop_connection(connection_id)
        self.state.stats.inc("disconnects")

        self.log.info(
            "DISCONNECT conn=%s user_id=%s rooms=%s",
            connection_id,
            user_id or "-",
            len(affected),
        )

    def _handle_register(self, connection_id: ConnectionId, event: RegisterUser) -> None:
        prev = self.state.connections.identity_of(connection_id)
        same_user = prev is not None and prev.user_id == event.user_id

        username = event.username
        if username is None and same_user:
            username = prev.username
        avatar = event.avatar
        if avatar is None:
            avatar = prev.avatar if same_user else ""

        identity = Identity(user_id=event.user_id, username=username, avatar=avatar)
        if not self.state.connections.bind(connection_id, identity):
            return
        self.state.dm_sessions.register(connection_id, event.user_id)

        self.log.info(
            "REGISTER conn=%s user_id=%s devices=%s",
            connection_id,
            event.user_id,
            len(self.state.dm_sessions.connections_for(event.user_id)),
        )

    def _sender(
        self, connection_id: ConnectionId, event: SendMessage
    ) -> dict[str, Any] | None:
        """The relayed `user` object, or None if the sender may not post."""
        if not self.config.strict_sender_identity:
            return {
                "_id": event.user_id,
                "username": event.username,
                "avatar": event.avatar,
            }

        ident = self.state.connections.identity_of(connection_id)
        if ident is None or ident.user_id is None:
            return None
        if event.user_id is not None and event.user_id != ident.user_id:
            return None
        # Display fields come from the bound identity too.
        return {
            "_id": ident.user_id,
            "username": ident.username if ident.username is not None else event.username,
            "avatar": ident.avatar,
        }

    def _handle_send_message(
        self, connection_id: ConnectionId, event: SendMessage, outgoing: Outgoing
    ) -> None:
        key = game_room(event.game_id)
        if not self.state.rooms.has_room(key):
            self.state.stats.inc("events_dropped")
            return

        user = self._sender(connection_id, event)
        if user is None:
            self.state.stats.inc("events_dropped")
            self.log.debug(
                "Rejected message conn=%s room=%s: sender identity mismatch",
                connection_id,
                key,
            )
            return

        body = {
            "_id": chat_message_id(),
            "gameId": event.game_id,
            "user": user,
            "content": event.content,
            "type": event.type,
            "createdAt": iso_now(),
        }

        # Senders render their own message from this echo.
        recipients = self._queue_to_room(outgoing, key, E_NEW_MESSAGE, body)
        self.state.stats.inc("msgs_relayed")

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Relayed message conn=%s user=%r room=%s recipients=%s chars=%s",
                connection_id,
                user["username"],
                key,
                recipients,
                len(event.content),
            )

    def _handle_send_dm(
        self, connection_id: ConnectionId, event: SendDm, outgoing: Outgoing
    ) -> None:
        key = dm_room(event.conversation_id)
        # DM senders already hold their own copy; never echo it back.
        recipients = self._queue_to_room(
            outgoing, key, E_NEW_DM, event.message, exclude=connection_id
        )
        if recipients:
            self.state.stats.inc("dms_relayed")

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Relayed dm conn=%s room=%s recipients=%s",
                connection_id,
                key,
                recipients,
            )

    def _handle_typing(
        self,
        connection_id: ConnectionId,
        key: RoomKey,
        username: str,
        is_typing: bool,
        outgoing: Outgoing,
    ) -> None:
        if is_typing:
            self.state.typing.start(key, username, connection_id, time.monotonic())
        else:
            self.state.typing.stop(key, username)
        self._relay_typing(key, connection_id, username, is_typing, outgoing)

    def _relay_typing(
        self,
        key: RoomKey,
        sender: ConnectionId,
        username: str,
        is_typing: bool,
        outgoing: Outgoing,
    ) -> None:
        event = E_DM_USER_TYPING if key.is_dm else E_USER_TYPING
        body: dict[str, Any] = dict(key.wire_fields())
        body["username"] = username
        body["isTyping"] = bool(is_typing)
        if self._queue_to_room(outgoing, key, event, body, exclude=sender):
            self.state.stats.inc("typing_relayed")
