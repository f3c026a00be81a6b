from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from . import __version__
from .codec import encode
from .config import RelayRuntimeConfig
from .connections import ConnectionId
from .constants import E_PING, E_WELCOME
from .envelope import make_envelope
from .messages import MessageHelper
from .resources import ResourceTransfer
from .router import EventRouter, Outgoing
from .state import RelayState
from .util import expand_path


class RelayService:
    def __init__(self, config: RelayRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("gbrelay.relay")

        # Rooms, connections and the DM index are touched from Reticulum
        # callbacks and background worker threads; RelayState.lock guards them.
        self.state = RelayState(typing_timeout_s=config.typing_timeout_s)
        self.router = EventRouter(self.state, config)
        self.message_helper = MessageHelper(self)
        self.resource_transfer = ResourceTransfer(self)

        self._shutdown = threading.Event()

        # Taken while state.lock is still held and released once the batch is
        # sent, so batches leave in the order the router produced them.
        # Lock order: state.lock, then _send_lock. Never the reverse.
        self._send_lock = threading.RLock()

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        # Guarded by state.lock.
        self._conn_by_link: dict[Any, ConnectionId] = {}

        self._announce_thread: threading.Thread | None = None
        self._ping_thread: threading.Thread | None = None
        self._typing_thread: threading.Thread | None = None
        self._stats_thread: threading.Thread | None = None

    def _fmt_link_id(self, link: Any) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.state.stats.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        self.log.info(
            "Relay running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy strict_sender_identity=%s typing_timeout_s=%s max_room_key_len=%s",
            self.config.strict_sender_identity,
            self.config.typing_timeout_s,
            self.config.max_room_key_len,
        )

        self._start_worker_threads()

    def _start_worker_threads(self) -> None:
        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop, name="gbrelay-announce", daemon=True
            )
            self._announce_thread.start()

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._ping_thread = threading.Thread(
                target=self._ping_loop, name="gbrelay-ping", daemon=True
            )
            self._ping_thread.start()

        if self.state.typing.enabled:
            self._typing_thread = threading.Thread(
                target=self._typing_loop, name="gbrelay-typing", daemon=True
            )
            self._typing_thread.start()

        if self.config.stats_log_interval_s and self.config.stats_log_interval_s > 0:
            self._stats_thread = threading.Thread(
                target=self._stats_loop, name="gbrelay-stats", daemon=True
            )
            self._stats_thread.start()

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode(
                    {"proto": "gbrelay", "v": 1, "relay": self.config.relay_name}
                )
            )
            self.state.stats.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        self.log.info("Stopping relay\n%s", self.state.stats.format_stats(self.state))

        with self.state.lock:
            self._conn_by_link.clear()
            conns = self.state.clear_all()

        for conn in conns:
            self._teardown(conn.transport)

    def _teardown(self, link: Any) -> None:
        try:
            link.teardown()
        except Exception:
            self.log.debug(
                "Teardown failed link_id=%s", self._fmt_link_id(link), exc_info=True
            )

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Link lifecycle

    def _on_link(self, link: RNS.Link) -> None:
        with self.state.lock:
            cid = self.state.connections.attach(link)
            self._conn_by_link[link] = cid
            self._send_lock.acquire()

        try:
            link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
            link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
            self.resource_transfer.configure_link_callbacks(link)

            self.log.info(
                "Link established conn=%s link_id=%s", cid, self._fmt_link_id(link)
            )

            welcome = make_envelope(
                E_WELCOME,
                body={
                    "relay": self.config.relay_name,
                    "version": str(__version__),
                    "connectionId": cid,
                },
            )
            self.message_helper.send(link, welcome)
        finally:
            self._send_lock.release()

    def _on_close(self, link: RNS.Link) -> None:
        outgoing: Outgoing = []
        with self.state.lock:
            cid = self._conn_by_link.pop(link, None)
            if cid is None:
                return
            conn = self.router.on_detach(cid, outgoing)
            deliveries = self._resolve(outgoing)
            self._send_lock.acquire()

        self._flush(deliveries)

        if conn is not None:
            ident = conn.identity
            self.log.info(
                "Link closed conn=%s user_id=%s link_id=%s",
                cid,
                ident.user_id if ident else "-",
                self._fmt_link_id(link),
            )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Handle the event to completion under the lock, then send without it.
        outgoing: Outgoing = []
        with self.state.lock:
            cid = self._conn_by_link.get(link)
            if cid is None:
                return
            self.router.route_packet(cid, data, outgoing)
            deliveries = self._resolve(outgoing)
            self._send_lock.acquire()

        if self.log.isEnabledFor(logging.DEBUG) and deliveries:
            self.log.debug("Sending %d envelope(s) for conn=%s", len(deliveries), cid)

        self._flush(deliveries)

    def _resolve(self, outgoing: Outgoing) -> list[tuple[Any, dict]]:
        """Map queued connection ids to their links. Must hold state.lock."""
        deliveries: list[tuple[Any, dict]] = []
        for cid, env in outgoing:
            link = self.state.connections.transport_of(cid)
            if link is not None:
                deliveries.append((link, env))
        return deliveries

    def _flush(self, deliveries: list[tuple[Any, dict]]) -> None:
        """Send a batch, then release the send lock acquired under state.lock."""
        try:
            self.message_helper.send_all(deliveries)
        finally:
            self._send_lock.release()

    # Background loops

    def _ping_loop(self) -> None:
        interval = float(self.config.ping_interval_s)
        while not self._shutdown.wait(interval):
            self._ping_once(time.monotonic())

    def _ping_once(self, now: float) -> None:
        """Tear down links overdue for a pong and ping the idle ones."""
        timeout = float(self.config.ping_timeout_s)
        to_teardown: list[Any] = []
        to_ping: list[Any] = []

        with self.state.lock:
            for _cid, conn in self.state.connections.items():
                awaiting = conn.awaiting_pong
                if timeout > 0 and awaiting is not None and (now - awaiting) > timeout:
                    to_teardown.append(conn.transport)
                    continue
                if awaiting is None:
                    conn.awaiting_pong = now
                    to_ping.append(conn.transport)

        # Teardown fires the link closed callback, which detaches.
        for link in to_teardown:
            self.log.info("Ping timeout link_id=%s", self._fmt_link_id(link))
            self._teardown(link)

        with self._send_lock:
            for link in to_ping:
                self.state.stats.inc("pings_out")
                self.message_helper.send(link, make_envelope(E_PING, body=now))

    def _typing_loop(self) -> None:
        while not self._shutdown.wait(1.0):
            self._expire_typing(time.monotonic())

    def _expire_typing(self, now: float) -> None:
        outgoing: Outgoing = []
        with self.state.lock:
            self.router.expire_typing(now, outgoing)
            deliveries = self._resolve(outgoing)
            self._send_lock.acquire()
        self._flush(deliveries)

    def _stats_loop(self) -> None:
        interval = float(self.config.stats_log_interval_s)
        while not self._shutdown.wait(interval):
            self.log.info("%s", self.state.stats.format_stats(self.state))
