from gbrelay.presence import member_change_body, presence_body, room_presence
from gbrelay.rooms import Member, RoomTable, dm_room, game_room


def test_presence_body_lists_members_in_join_order() -> None:
    table = RoomTable()
    key = game_room("g1")
    table.join(key, "a", Member("a", "alice", "a.png", "u1"))
    table.join(key, "b", Member("b", "bob"))

    p = room_presence(table, key)
    assert p.count == 2
    assert p.usernames == ["alice", "bob"]

    body = presence_body(key, p)
    assert body["gameId"] == "g1"
    assert body["count"] == 2
    assert body["users"][0] == {
        "connectionId": "a",
        "username": "alice",
        "avatar": "a.png",
        "userId": "u1",
    }


def test_presence_of_missing_room_is_empty() -> None:
    p = room_presence(RoomTable(), game_room("none"))
    assert p.count == 0
    assert p.members == ()


def test_member_change_body_for_dm_room() -> None:
    table = RoomTable()
    key = dm_room("c1")
    table.join(key, "a", Member("a", "alice"))

    body = member_change_body(key, "bob", room_presence(table, key))
    assert body == {"conversationId": "c1", "username": "bob", "count": 1}
