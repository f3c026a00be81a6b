import random
import time
from dataclasses import replace

import pytest

from gbrelay.codec import encode
from gbrelay.config import RelayRuntimeConfig
from gbrelay.constants import K_BODY, K_EVENT
from gbrelay.envelope import make_envelope
from gbrelay.events import Disconnect, JoinRoom
from gbrelay.rooms import dm_room, game_room
from gbrelay.router import EventRouter
from gbrelay.state import RelayState


def _relay(**overrides) -> tuple[RelayState, EventRouter]:
    cfg = replace(RelayRuntimeConfig(), **overrides)
    state = RelayState(typing_timeout_s=cfg.typing_timeout_s)
    return state, EventRouter(state, cfg)


def _send(router: EventRouter, cid: str, event: str, body) -> list:
    out: list = []
    router.route_packet(cid, encode(make_envelope(event, body=body)), out)
    return out


def _events(out: list) -> list[tuple[str, str, object]]:
    return [(cid, env[K_EVENT], env.get(K_BODY)) for cid, env in out]


def _to(out: list, cid: str) -> list[tuple[str, object]]:
    return [(name, body) for dest, name, body in _events(out) if dest == cid]


def _join(router, cid, game_id, username, user_id=None) -> list:
    user = {"username": username}
    if user_id is not None:
        user["id"] = user_id
    return _send(router, cid, "join_room", {"gameId": game_id, "user": user})


def test_first_join_broadcasts_presence_to_joiner() -> None:
    state, router = _relay()
    a = state.connections.attach()

    out = _join(router, a, "g1", "alice", "u1")

    assert _to(out, a) == [
        (
            "room_users",
            {
                "gameId": "g1",
                "count": 1,
                "users": [
                    {"connectionId": a, "username": "alice", "avatar": "", "userId": "u1"}
                ],
            },
        ),
        ("user_joined", {"gameId": "g1", "username": "alice", "count": 1}),
    ]


def test_second_join_reaches_every_member() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")

    out = _join(router, b, "g1", "bob")

    for cid in (a, b):
        names = [name for name, _ in _to(out, cid)]
        assert names == ["room_users", "user_joined"]
        room_users = _to(out, cid)[0][1]
        assert room_users["count"] == 2
        assert [u["username"] for u in room_users["users"]] == ["alice", "bob"]
        assert _to(out, cid)[1][1] == {"gameId": "g1", "username": "bob", "count": 2}


def test_fan_out_shares_one_envelope() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")
    out = _join(router, b, "g1", "bob")

    room_users = [env for _, env in out if env[K_EVENT] == "room_users"]
    assert len(room_users) == 2
    assert room_users[0] is room_users[1]


def test_rejoin_refreshes_without_duplicating() -> None:
    state, router = _relay()
    a = state.connections.attach()
    _join(router, a, "g1", "alice")

    out = _join(router, a, "g1", "alice-renamed")

    assert state.rooms.member_ids(game_room("g1")) == [a]
    room_users = _to(out, a)[0][1]
    assert room_users["count"] == 1
    assert room_users["users"][0]["username"] == "alice-renamed"


def test_join_without_user_is_anonymous_spectator() -> None:
    state, router = _relay()
    a = state.connections.attach()

    out = _send(router, a, "join_room", {"gameId": "g1"})

    assert _to(out, a)[1][1]["username"] == "Anonymous"


def test_join_falls_back_to_registered_identity() -> None:
    state, router = _relay()
    a = state.connections.attach()
    _send(router, a, "register_user", {"userId": "u1", "username": "alice", "avatar": "a.png"})

    out = _send(router, a, "join_room", {"gameId": "g1"})

    user = _to(out, a)[0][1]["users"][0]
    assert user == {"connectionId": a, "username": "alice", "avatar": "a.png", "userId": "u1"}


def test_message_reaches_all_members_including_sender() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice", "u1")
    _join(router, b, "g1", "bob", "u2")

    out = _send(
        router,
        a,
        "send_message",
        {"gameId": "g1", "message": {"content": "what a goal", "userId": "u1", "username": "alice"}},
    )

    assert sorted(cid for cid, _ in out) == sorted([a, b])
    for cid in (a, b):
        ((name, body),) = _to(out, cid)
        assert name == "new_message"
        assert body["gameId"] == "g1"
        assert body["content"] == "what a goal"
        assert body["type"] == "text"
        assert body["user"] == {"_id": "u1", "username": "alice", "avatar": ""}
        assert body["_id"].startswith("msg_")
        assert body["createdAt"].endswith("Z")
    assert state.stats.get("msgs_relayed") == 1


def test_message_to_unknown_room_is_dropped() -> None:
    state, router = _relay()
    a = state.connections.attach()

    out = _send(
        router,
        a,
        "send_message",
        {"gameId": "nowhere", "message": {"content": "hi", "username": "alice"}},
    )

    assert out == []
    assert state.stats.get("events_dropped") == 1


def test_disconnect_notifies_remaining_members() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")
    _join(router, b, "g1", "bob")

    out: list = []
    assert router.on_detach(b, out) is not None

    assert {cid for cid, _ in out} == {a}
    assert _to(out, a) == [
        (
            "room_users",
            {
                "gameId": "g1",
                "count": 1,
                "users": [{"connectionId": a, "username": "alice", "avatar": "", "userId": None}],
            },
        ),
        ("user_left", {"gameId": "g1", "username": "bob", "count": 1}),
    ]


def test_disconnect_cleanup_runs_exactly_once() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")
    _join(router, b, "g1", "bob")

    router.on_detach(b, [])
    out: list = []
    assert router.on_detach(b, out) is None
    assert out == []
    assert state.stats.get("disconnects") == 1


def test_last_leave_deletes_room_silently() -> None:
    state, router = _relay()
    a = state.connections.attach()
    _join(router, a, "g1", "alice")

    out = _send(router, a, "leave_room", {"gameId": "g1"})

    assert out == []
    assert game_room("g1") not in state.rooms
    assert state.rooms.rooms_of(a) == set()


def test_leave_room_not_joined_is_noop() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")

    out = _send(router, b, "leave_room", {"gameId": "g1"})

    assert out == []
    assert state.rooms.member_ids(game_room("g1")) == [a]


def test_disconnect_from_many_rooms_broadcasts_once_per_room() -> None:
    state, router = _relay()
    a = state.connections.attach()
    watchers = {}
    for game in ("g1", "g2", "g3"):
        watchers[game] = state.connections.attach()
        _join(router, watchers[game], game, f"watcher-{game}")
        _join(router, a, game, "alice")
    bystander = state.connections.attach()
    _join(router, bystander, "g4", "carol")

    out: list = []
    router.on_detach(a, out)

    left = [(cid, body) for cid, name, body in _events(out) if name == "user_left"]
    assert len(left) == 3
    assert {cid for cid, _ in left} == set(watchers.values())
    assert all(body["username"] == "alice" and body["count"] == 1 for _, body in left)
    assert bystander not in {cid for cid, _ in out}
    assert state.rooms.rooms_of(a) == set()


def test_dm_send_excludes_sender_and_reaches_other_devices() -> None:
    state, router = _relay()
    a = state.connections.attach()
    a2 = state.connections.attach()
    b = state.connections.attach()
    _send(router, a, "register_user", {"userId": "u1", "username": "alice"})
    _send(router, a2, "register_user", {"userId": "u1", "username": "alice"})
    _send(router, b, "join_dm_room", {"conversationId": "c1", "userId": "u2"})
    _send(router, a, "join_dm_room", {"conversationId": "c1"})
    _send(router, a2, "join_dm_room", {"conversationId": "c1"})

    assert state.dm_sessions.connections_for("u1") == {a, a2}
    assert state.dm_sessions.connections_for("u2") == {b}

    message = {"_id": "m1", "content": "see you at the match", "senderId": "u1"}
    out = _send(router, a, "send_dm", {"conversationId": "c1", "message": message})

    assert sorted(cid for cid, _ in out) == sorted([a2, b])
    assert all(name == "new_dm" and body == message for _, name, body in _events(out))

    router.on_detach(a, [])
    assert state.dm_sessions.connections_for("u1") == {a2}


def test_dm_room_presence_uses_conversation_id() -> None:
    state, router = _relay()
    a = state.connections.attach()
    _send(router, a, "register_user", {"userId": "u1", "username": "alice"})

    out = _send(router, a, "join_dm_room", {"conversationId": "c1"})

    room_users, joined = _to(out, a)
    assert room_users[1]["conversationId"] == "c1"
    assert "gameId" not in room_users[1]
    assert joined[1] == {"conversationId": "c1", "username": "alice", "count": 1}


def test_game_id_shaped_like_dm_key_stays_separate() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "dm_c1", "alice")
    _send(router, b, "join_dm_room", {"conversationId": "c1", "userId": "u2"})

    assert state.rooms.member_ids(game_room("dm_c1")) == [a]
    assert state.rooms.member_ids(dm_room("c1")) == [b]


def test_typing_excludes_sender() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")
    _join(router, b, "g1", "bob")

    out = _send(router, a, "typing", {"gameId": "g1", "username": "alice"})
    assert _events(out) == [
        (b, "user_typing", {"gameId": "g1", "username": "alice", "isTyping": True})
    ]

    out = _send(router, a, "stop_typing", {"gameId": "g1", "username": "alice"})
    assert _events(out) == [
        (b, "user_typing", {"gameId": "g1", "username": "alice", "isTyping": False})
    ]


def test_dm_typing_relays_to_peers() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _send(router, a, "join_dm_room", {"conversationId": "c1", "userId": "u1"})
    _send(router, b, "join_dm_room", {"conversationId": "c1", "userId": "u2"})

    out = _send(
        router, a, "dm_typing", {"conversationId": "c1", "username": "alice", "isTyping": True}
    )
    assert _events(out) == [
        (b, "dm_user_typing", {"conversationId": "c1", "username": "alice", "isTyping": True})
    ]


def test_typing_indicator_expires() -> None:
    state, router = _relay(typing_timeout_s=5.0)
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")
    _join(router, b, "g1", "bob")
    _send(router, a, "typing", {"gameId": "g1", "username": "alice"})

    out: list = []
    assert router.expire_typing(time.monotonic(), out) == 0
    assert router.expire_typing(time.monotonic() + 10, out) == 1
    assert _events(out) == [
        (b, "user_typing", {"gameId": "g1", "username": "alice", "isTyping": False})
    ]
    assert state.stats.get("typing_expired") == 1


def test_typing_indicator_dropped_on_leave() -> None:
    state, router = _relay(typing_timeout_s=5.0)
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")
    _join(router, b, "g1", "bob")
    _send(router, a, "typing", {"gameId": "g1", "username": "alice"})

    _send(router, a, "leave_room", {"gameId": "g1"})

    assert len(state.typing) == 0


def test_strict_sender_identity() -> None:
    state, router = _relay(strict_sender_identity=True)
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "alice")
    _join(router, b, "g1", "bob")
    msg = {"gameId": "g1", "message": {"content": "hi", "username": "alice", "userId": "u1"}}

    assert _send(router, a, "send_message", msg) == []

    _send(router, a, "register_user", {"userId": "u1"})
    out = _send(router, a, "send_message", msg)
    assert len(out) == 2
    assert out[0][1][K_BODY]["user"]["_id"] == "u1"

    spoofed = {"gameId": "g1", "message": {"content": "hi", "username": "bob", "userId": "u2"}}
    assert _send(router, a, "send_message", spoofed) == []


def test_strict_sender_identity_uses_bound_display_fields() -> None:
    state, router = _relay(strict_sender_identity=True)
    a = state.connections.attach()
    _join(router, a, "g1", "alice")
    _send(
        router, a, "register_user", {"userId": "u1", "username": "alice", "avatar": "a.png"}
    )

    out = _send(
        router,
        a,
        "send_message",
        {
            "gameId": "g1",
            "message": {
                "content": "hi",
                "username": "admin",
                "userAvatar": "admin.png",
                "userId": "u1",
            },
        },
    )

    ((_, env),) = out
    assert env[K_BODY]["user"] == {"_id": "u1", "username": "alice", "avatar": "a.png"}


def test_relaxed_sender_identity_trusts_payload() -> None:
    state, router = _relay()
    a = state.connections.attach()
    _join(router, a, "g1", "alice")
    _send(router, a, "register_user", {"userId": "u1", "username": "alice"})

    out = _send(
        router,
        a,
        "send_message",
        {"gameId": "g1", "message": {"content": "hi", "username": "al", "userId": "u9"}},
    )

    assert out[0][1][K_BODY]["user"] == {"_id": "u9", "username": "al", "avatar": ""}


def test_pong_clears_liveness_marker() -> None:
    state, router = _relay()
    a = state.connections.attach()
    state.connections.get(a).awaiting_pong = 123.0

    assert _send(router, a, "pong", None) == []
    assert state.connections.get(a).awaiting_pong is None
    assert state.stats.get("pongs_in") == 1


def test_malformed_and_unknown_input_is_dropped() -> None:
    state, router = _relay()
    a = state.connections.attach()

    out: list = []
    router.route_packet(a, encode([1, 2, 3]), out)
    assert out == []
    assert state.stats.get("events_bad") == 1

    assert _send(router, a, "bogus", {"gameId": "g1"}) == []
    assert _send(router, a, "join_room", {"gameId": ""}) == []
    assert _send(router, a, "disconnect", {}) == []
    assert state.stats.get("events_dropped") == 3
    assert a in state.connections


def test_unknown_connection_is_ignored() -> None:
    state, router = _relay()
    assert _send(router, "missing", "join_room", {"gameId": "g1"}) == []
    assert len(state.rooms) == 0


def test_dispatch_accepts_decoded_events() -> None:
    state, router = _relay()
    a = state.connections.attach()
    out: list = []
    router.dispatch(a, JoinRoom(game_id="g1", username="alice"), out)
    assert state.rooms.member_ids(game_room("g1")) == [a]

    router.dispatch(a, Disconnect(), out)
    assert len(state.rooms) == 0


def test_match_chat_walkthrough() -> None:
    state, router = _relay()
    a = state.connections.attach()
    b = state.connections.attach()
    _join(router, a, "g1", "A")
    _join(router, b, "g1", "B")

    out = _send(router, a, "send_message", {"gameId": "g1", "message": {"content": "hello", "username": "A"}})
    assert {cid for cid, _ in out} == {a, b}
    assert all(body["content"] == "hello" for _, _, body in _events(out))

    out = []
    router.on_detach(b, out)
    assert _to(out, a)[1] == ("user_left", {"gameId": "g1", "username": "B", "count": 1})

    assert _send(router, a, "leave_room", {"gameId": "g1"}) == []
    assert game_room("g1") not in state.rooms

    out = _send(router, a, "send_message", {"gameId": "g1", "message": {"content": "anyone?", "username": "A"}})
    assert out == []


@pytest.mark.parametrize("seed", range(20))
def test_membership_matches_replayed_history(seed: int) -> None:
    rng = random.Random(seed)
    state, router = _relay()
    conns = [state.connections.attach() for _ in range(4)]
    games = ["g0", "g1", "g2"]

    expected: dict[str, set[str]] = {g: set() for g in games}
    gone: set[str] = set()

    for _ in range(60):
        cid = rng.choice(conns)
        op = rng.choice(["join", "join", "leave", "disconnect"])
        game = rng.choice(games)

        if op == "join":
            _join(router, cid, game, f"user-{cid[:4]}")
            if cid not in gone:
                expected[game].add(cid)
        elif op == "leave":
            _send(router, cid, "leave_room", {"gameId": game})
            expected[game].discard(cid)
        else:
            router.on_detach(cid, [])
            gone.add(cid)
            for members in expected.values():
                members.discard(cid)

    for game in games:
        key = game_room(game)
        assert set(state.rooms.member_ids(key)) == expected[game]
        assert (key in state.rooms) == bool(expected[game])
    for cid in conns:
        assert state.rooms.rooms_of(cid) == {
            game_room(g) for g, members in expected.items() if cid in members
        }
