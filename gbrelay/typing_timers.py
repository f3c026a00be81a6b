from __future__ import annotations

from dataclasses import dataclass

from .connections import ConnectionId
from .rooms import RoomKey


@dataclass
class _Indicator:
    connection_id: ConnectionId
    deadline: float


class TypingTracker:
    """
    Expiring "is typing" indicators keyed by (room, username).

    A timeout of 0 disables tracking; the relay then only forwards the latest
    signal and leaves expiry to client timers.
    """

    def __init__(self, timeout_s: float = 0.0) -> None:
        self.timeout_s = float(timeout_s)
        self._indicators: dict[tuple[RoomKey, str], _Indicator] = {}

    @property
    def enabled(self) -> bool:
        return self.timeout_s > 0

    def start(
        self, key: RoomKey, username: str, connection_id: ConnectionId, now: float
    ) -> None:
        """Arm or re-arm the indicator."""
        if not self.enabled:
            return
        self._indicators[(key, username)] = _Indicator(
            connection_id=connection_id, deadline=now + self.timeout_s
        )

    def stop(self, key: RoomKey, username: str) -> bool:
        return self._indicators.pop((key, username), None) is not None

    def expire(self, now: float) -> list[tuple[RoomKey, str, ConnectionId]]:
        """Pop every overdue indicator."""
        expired: list[tuple[RoomKey, str, ConnectionId]] = []
        for (key, username), ind in list(self._indicators.items()):
            if ind.deadline <= now:
                self._indicators.pop((key, username), None)
                expired.append((key, username, ind.connection_id))
        return expired

    def drop_connection(self, connection_id: ConnectionId) -> int:
        stale = [k for k, ind in self._indicators.items() if ind.connection_id == connection_id]
        for k in stale:
            self._indicators.pop(k, None)
        return len(stale)

    def drop_room_connection(self, key: RoomKey, connection_id: ConnectionId) -> int:
        stale = [
            k
            for k, ind in self._indicators.items()
            if k[0] == key and ind.connection_id == connection_id
        ]
        for k in stale:
            self._indicators.pop(k, None)
        return len(stale)

    def __len__(self) -> int:
        return len(self._indicators)

    def clear_all(self) -> None:
        self._indicators.clear()
