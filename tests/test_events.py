from gbrelay.events import (
    DmTyping,
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


def test_join_room_with_user() -> None:
    ev = decode_event(
        "join_room",
        {"gameId": "g1", "user": {"id": 7, "username": " alice ", "avatar": "a.png"}},
    )
    assert ev == JoinRoom(game_id="g1", user_id="7", username="alice", avatar="a.png")


def test_join_room_accepts_underscore_id_and_numeric_game() -> None:
    ev = decode_event("join_room", {"gameId": 401, "user": {"_id": "u1"}})
    assert ev == JoinRoom(game_id="401", user_id="u1")


def test_join_room_without_user() -> None:
    assert decode_event("join_room", {"gameId": "g1"}) == JoinRoom(game_id="g1")


def test_room_ids_are_validated() -> None:
    assert decode_event("join_room", {}) is None
    assert decode_event("join_room", {"gameId": ""}) is None
    assert decode_event("join_room", {"gameId": True}) is None
    assert decode_event("join_room", {"gameId": "a\nb"}) is None
    assert decode_event("join_room", {"gameId": "x" * 10}, max_room_key_len=5) is None
    assert decode_event("leave_room", {"gameId": None}) is None


def test_leave_room() -> None:
    assert decode_event("leave_room", {"gameId": "g1"}) == LeaveRoom(game_id="g1")


def test_send_message() -> None:
    ev = decode_event(
        "send_message",
        {
            "gameId": "g1",
            "message": {
                "content": "hello",
                "userId": "u1",
                "username": "alice",
                "userAvatar": "a.png",
                "type": "reaction",
            },
        },
    )
    assert ev == SendMessage(
        game_id="g1",
        username="alice",
        content="hello",
        user_id="u1",
        avatar="a.png",
        type="reaction",
    )


def test_send_message_defaults_and_rejections() -> None:
    ev = decode_event(
        "send_message",
        {"gameId": "g1", "message": {"content": "hi", "username": "bob", "type": "gif"}},
    )
    assert isinstance(ev, SendMessage)
    assert ev.type == "text"
    assert ev.avatar == ""
    assert ev.user_id is None

    assert decode_event("send_message", {"gameId": "g1"}) is None
    assert decode_event("send_message", {"gameId": "g1", "message": "hi"}) is None
    assert (
        decode_event("send_message", {"gameId": "g1", "message": {"content": "hi"}})
        is None
    )
    assert (
        decode_event(
            "send_message", {"gameId": "g1", "message": {"username": "bob", "content": 3}}
        )
        is None
    )


def test_typing_events() -> None:
    assert decode_event("typing", {"gameId": "g1", "username": "alice"}) == Typing(
        "g1", "alice"
    )
    assert decode_event("stop_typing", {"gameId": "g1", "username": "alice"}) == (
        StopTyping("g1", "alice")
    )
    assert decode_event("typing", {"gameId": "g1"}) is None


def test_register_user() -> None:
    assert decode_event("register_user", {"userId": 12}) == RegisterUser(user_id="12")
    assert decode_event(
        "register_user", {"userId": "u1", "username": "alice", "avatar": "a.png"}
    ) == RegisterUser(user_id="u1", username="alice", avatar="a.png")
    assert decode_event("register_user", {}) is None
    assert decode_event("register_user", {"userId": False}) is None


def test_dm_events() -> None:
    assert decode_event("join_dm_room", {"conversationId": "c1"}) == JoinDm("c1")
    assert decode_event("join_dm_room", {"conversationId": "c1", "userId": "u1"}) == (
        JoinDm("c1", user_id="u1")
    )
    assert decode_event("join_dm_room", {"userId": "u1"}) == JoinDm(None, user_id="u1")
    assert decode_event("join_dm_room", {}) is None

    assert decode_event("leave_dm_room", {"conversationId": "c1"}) == LeaveDm("c1")

    msg = {"_id": "m1", "content": "hey"}
    assert decode_event("send_dm", {"conversationId": "c1", "message": msg}) == SendDm(
        "c1", msg
    )
    assert decode_event("send_dm", {"conversationId": "c1"}) is None

    assert decode_event("send_dm", {"conversationId": "c1", "message": {}}) == SendDm("c1", {})
    assert decode_event("send_dm", {"conversationId": "c1", "message": []}) == SendDm("c1", [])
    for falsy in ("", 0, False, None):
        assert decode_event("send_dm", {"conversationId": "c1", "message": falsy}) is None

    assert decode_event(
        "dm_typing", {"conversationId": "c1", "username": "alice", "isTyping": 1}
    ) == DmTyping("c1", "alice", True)
    assert decode_event(
        "dm_typing", {"conversationId": "c1", "username": "alice"}
    ) == DmTyping("c1", "alice", False)


def test_unknown_and_reserved_names_are_dropped() -> None:
    assert decode_event("nope", {}) is None
    assert decode_event("disconnect", {}) is None
    assert decode_event(None, {}) is None
    assert decode_event("join_room", ["g1"]) is None
