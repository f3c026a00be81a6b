from gbrelay.rooms import game_room
from gbrelay.typing_timers import TypingTracker


def test_disabled_tracker_records_nothing() -> None:
    t = TypingTracker(0)
    assert not t.enabled
    t.start(game_room("g1"), "alice", "a", 0.0)
    assert len(t) == 0
    assert t.expire(1000.0) == []


def test_expire_pops_overdue_indicators() -> None:
    t = TypingTracker(5)
    key = game_room("g1")
    t.start(key, "alice", "a", 0.0)
    t.start(key, "bob", "b", 3.0)

    assert t.expire(4.0) == []
    assert t.expire(5.0) == [(key, "alice", "a")]
    assert t.expire(5.0) == []
    assert len(t) == 1


def test_restart_extends_deadline() -> None:
    t = TypingTracker(5)
    key = game_room("g1")
    t.start(key, "alice", "a", 0.0)
    t.start(key, "alice", "a", 4.0)
    assert t.expire(6.0) == []
    assert len(t.expire(9.0)) == 1


def test_stop_and_drop() -> None:
    t = TypingTracker(5)
    g1, g2 = game_room("g1"), game_room("g2")
    t.start(g1, "alice", "a", 0.0)
    t.start(g2, "alice", "a", 0.0)
    t.start(g1, "bob", "b", 0.0)

    assert t.stop(g1, "bob")
    assert not t.stop(g1, "bob")
    assert t.drop_room_connection(g2, "a") == 1
    assert t.drop_connection("a") == 1
    assert len(t) == 0
