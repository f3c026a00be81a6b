"""Resource transfer for envelopes larger than a link packet."""

from __future__ import annotations

from typing import TYPE_CHECKING

import RNS

if TYPE_CHECKING:
    from .service import RelayService


class ResourceTransfer:
    """
    Moves whole encoded envelopes as RNS.Resource transfers.

    Outbound: a room_users list for a busy game room easily exceeds the link
    MDU, so the encoded envelope is sent as a resource instead.
    Inbound: clients may do the same for long chat messages; a completed
    resource is routed exactly like a packet.
    """

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.log = relay.log

    def configure_link_callbacks(self, link: RNS.Link) -> None:
        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._resource_advertised)
            link.set_resource_concluded_callback(self._resource_concluded)
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks link_id=%s: %s",
                self.relay._fmt_link_id(link),
                e,
            )

    def _resource_advertised(self, resource) -> bool:
        """Accept an advertised resource if it is within the size limit."""
        link = resource.link
        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        if size > self.relay.config.max_resource_bytes:
            self.log.warning(
                "Rejecting resource (too large: %s > %s) link_id=%s",
                size,
                self.relay.config.max_resource_bytes,
                self.relay._fmt_link_id(link),
            )
            self.relay.state.stats.inc("resources_rejected")
            return False
        return True

    def _resource_concluded(self, resource: RNS.Resource) -> None:
        link = resource.link
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed link_id=%s status=%s",
                self.relay._fmt_link_id(link),
                resource.status,
            )
            return

        try:
            data = resource.data.read() if hasattr(resource.data, "read") else resource.data
        except Exception as e:
            self.log.error(
                "Failed to read resource data link_id=%s: %s",
                self.relay._fmt_link_id(link),
                e,
            )
            return

        self.relay.state.stats.inc("resources_received")
        self.relay._on_packet(link, bytes(data))

    def send_via_resource(self, link: RNS.Link, payload: bytes) -> bool:
        """Start a resource transfer. Returns True if it was initiated."""
        size = len(payload)
        if size > self.relay.config.max_resource_bytes:
            self.log.error(
                "Payload too large for resource transfer: %s > %s",
                size,
                self.relay.config.max_resource_bytes,
            )
            return False

        try:
            RNS.Resource(payload, link, advertise=True, auto_compress=False)
        except Exception as e:
            self.log.error(
                "Failed to create resource link_id=%s: %s",
                self.relay._fmt_link_id(link),
                e,
            )
            return False

        self.relay.state.stats.inc("resources_sent")
        self.log.debug(
            "Sent resource link_id=%s size=%s", self.relay._fmt_link_id(link), size
        )
        return True
