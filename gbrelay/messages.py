"""Outbound delivery for the relay: encode envelopes and put them on links."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import RNS

from .codec import encode

if TYPE_CHECKING:
    from .service import RelayService


class MessageHelper:
    """
    Sends queued envelopes over Reticulum links.

    Handles:
    - Encoding each distinct envelope once per fan-out batch
    - Packet sends for payloads within the link MDU
    - Resource transfer for payloads that do not fit (large presence lists)
    - Logging send failures without disturbing relay state
    """

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.log = relay.log

    def packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload fits within link MDU without creating/packing packets."""
        try:
            if hasattr(link, "MDU") and link.MDU is not None:
                return len(payload) <= link.MDU
            pkt = RNS.Packet(link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def send_all(self, deliveries: list[tuple[Any, dict]]) -> None:
        """Send (link, envelope) pairs in order. Call without the state lock held."""
        encoded: dict[int, bytes] = {}
        for link, env in deliveries:
            payload = encoded.get(id(env))
            if payload is None:
                payload = encode(env)
                encoded[id(env)] = payload
            self.send_payload(link, payload)

    def send(self, link: RNS.Link, env: dict) -> None:
        """Send an envelope immediately (not queued)."""
        self.send_payload(link, encode(env))

    def send_payload(self, link: RNS.Link, payload: bytes) -> None:
        self.relay.state.stats.inc("bytes_out", len(payload))

        if not self.packet_would_fit(link, payload):
            if self.relay.resource_transfer.send_via_resource(link, payload):
                return
            self.log.warning(
                "Dropping oversized payload link_id=%s bytes=%s",
                self.relay._fmt_link_id(link),
                len(payload),
            )
            return

        try:
            RNS.Packet(link, payload).send()
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.relay._fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self.relay._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
