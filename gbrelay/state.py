from __future__ import annotations

import threading

from .connections import ConnectionRegistry
from .dm_sessions import DmSessionIndex
from .rooms import RoomTable
from .stats import StatsManager
from .typing_timers import TypingTracker


class RelayState:
    """All mutable relay state, owned by one service instance.

    Transport callbacks arrive on Reticulum threads; every read or write of
    the members below happens with `lock` held, one inbound event at a time.
    """

    def __init__(self, *, typing_timeout_s: float = 0.0) -> None:
        self.lock = threading.RLock()
        self.connections = ConnectionRegistry()
        self.rooms = RoomTable()
        self.dm_sessions = DmSessionIndex()
        self.typing = TypingTracker(typing_timeout_s)
        # Not `lock`: the send path bumps counters and must not take it.
        self.stats = StatsManager()

    def clear_all(self) -> list:
        """Drop everything; returns the connection records for teardown."""
        with self.lock:
            conns = self.connections.clear_all()
            self.rooms.clear_all()
            self.dm_sessions.clear_all()
            self.typing.clear_all()
        return conns
