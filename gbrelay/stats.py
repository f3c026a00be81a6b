"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import RelayState


class StatsManager:
    """
    Lifetime counters for the relay.

    Tracks:
    - Bytes and events in/out
    - Malformed and dropped events
    - Joins, leaves and disconnects
    - Messages, DMs and typing indicators relayed
    - Presence broadcasts
    - Ping/pong activity, announces and resource transfers
    """

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock if lock is not None else threading.RLock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "events_in": 0,
            "events_bad": 0,
            "events_dropped": 0,
            "joins": 0,
            "leaves": 0,
            "disconnects": 0,
            "msgs_relayed": 0,
            "dms_relayed": 0,
            "typing_relayed": 0,
            "typing_expired": 0,
            "presence_broadcasts": 0,
            "pings_out": 0,
            "pongs_in": 0,
            "announces": 0,
            "resources_sent": 0,
            "resources_received": 0,
            "resources_rejected": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, state: RelayState) -> str:
        """Format current statistics as a human-readable multi-line string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        with state.lock:
            conn_stats = state.connections.get_stats()
            room_stats = state.rooms.get_stats()
            dm_stats = state.dm_sessions.get_stats()
            typing_pending = len(state.typing)
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"gbrelay {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections={conn_stats['total']} identified={conn_stats['identified']}"
        )
        lines.append(
            f"rooms={room_stats['rooms_total']} dm_rooms={room_stats['dm_rooms']} "
            f"memberships={room_stats['memberships']}"
        )

        top_rooms = room_stats["top_rooms"]
        if top_rooms:
            lines.append("top_rooms=" + ", ".join(f"{r}:{n}" for r, n in top_rooms))

        lines.append(
            f"dm: users_online={dm_stats['users_online']} "
            f"bound_connections={dm_stats['bound_connections']} "
            f"typing_pending={typing_pending}"
        )
        lines.append(
            "io: events_in={} events_bad={} events_dropped={} bytes_in={} bytes_out={}".format(
                c.get("events_in", 0),
                c.get("events_bad", 0),
                c.get("events_dropped", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "rooms: joins={} leaves={} disconnects={} presence_broadcasts={}".format(
                c.get("joins", 0),
                c.get("leaves", 0),
                c.get("disconnects", 0),
                c.get("presence_broadcasts", 0),
            )
        )
        lines.append(
            "relay: msgs={} dms={} typing={} typing_expired={}".format(
                c.get("msgs_relayed", 0),
                c.get("dms_relayed", 0),
                c.get("typing_relayed", 0),
                c.get("typing_expired", 0),
            )
        )
        lines.append(
            "transport: pings_out={} pongs_in={} announces={} resources_sent={} resources_received={} resources_rejected={}".format(
                c.get("pings_out", 0),
                c.get("pongs_in", 0),
                c.get("announces", 0),
                c.get("resources_sent", 0),
                c.get("resources_received", 0),
                c.get("resources_rejected", 0),
            )
        )

        return "\n".join(lines)
