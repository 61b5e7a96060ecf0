"""Resource transfer for replies that do not fit a single packet."""

from __future__ import annotations

import hashlib
import os
import threading
from collections import deque
from typing import TYPE_CHECKING, Any

import RNS

from .codec import encode
from .constants import (
    B_RES_ID,
    B_RES_KIND,
    B_RES_SHA256,
    B_RES_SIZE,
    T_RESOURCE_ENVELOPE,
)
from .envelope import make_envelope
from .messages import ResourcePayload

if TYPE_CHECKING:
    from .service import HubService


class ResourceSender:
    """
    Sends large hub replies (usually channel history) as RNS Resources.

    A small RESOURCE_ENVELOPE packet announces id, kind, size and SHA-256
    first, so the client can match and verify the Resource when it concludes.
    The Resource data is itself one encoded envelope.

    Only one Resource is in flight per link. Anything queued for that link
    after it is held back until it concludes, so a link sees its items in
    queue order.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log
        self._lock = threading.Lock()
        # link -> in-flight Resource (None while it is being created)
        self._busy: dict[Any, RNS.Resource | None] = {}
        self._held: dict[Any, deque[bytes | ResourcePayload]] = {}

    def on_link_closed(self, link: RNS.Link) -> None:
        with self._lock:
            self._busy.pop(link, None)
            self._held.pop(link, None)

    def clear_all(self) -> None:
        with self._lock:
            self._busy.clear()
            self._held.clear()

    def deliver(self, link: RNS.Link, item: bytes | ResourcePayload) -> None:
        """Send a packet or start a Resource, or hold it behind one in flight."""
        with self._lock:
            if link in self._busy or self._held.get(link):
                self._held.setdefault(link, deque()).append(item)
                return
        self._dispatch(link, item)

    def resume(self, link: RNS.Link) -> None:
        """Send held items for `link` until the next Resource starts."""
        while True:
            with self._lock:
                if link in self._busy:
                    return
                held = self._held.get(link)
                if not held:
                    self._held.pop(link, None)
                    return
                item = held.popleft()
            self._dispatch(link, item)

    def _dispatch(self, link: RNS.Link, item: bytes | ResourcePayload) -> None:
        if isinstance(item, ResourcePayload):
            if not self.send_via_resource(
                link, kind=item.kind, payload=item.data, channel=item.channel
            ):
                self.hub.stats_manager.inc("send_failures")
            return
        self.hub._transmit(link, item)

    def send_via_resource(
        self,
        link: RNS.Link,
        *,
        kind: str,
        payload: bytes,
        channel: str | None = None,
    ) -> bool:
        """
        Announce and start a Resource transfer.
        Returns True if successfully initiated, False otherwise.
        """
        if not self.hub.config.enable_resource_transfer:
            return False

        size = len(payload)
        if size > self.hub.config.max_resource_bytes:
            self.log.error(
                "Payload too large for resource transfer: %s > %s",
                size,
                self.hub.config.max_resource_bytes,
            )
            return False

        rid = os.urandom(8)
        envelope_body = {
            B_RES_ID: rid,
            B_RES_KIND: kind,
            B_RES_SIZE: size,
            B_RES_SHA256: hashlib.sha256(payload).digest(),
        }
        envelope = make_envelope(
            T_RESOURCE_ENVELOPE,
            src=self.hub.src_hash,
            channel=channel,
            body=envelope_body,
        )
        if not self.hub._transmit(link, encode(envelope)):
            return False

        with self._lock:
            self._busy[link] = None
        try:
            resource = RNS.Resource(
                payload,
                link,
                advertise=True,
                auto_compress=False,
                callback=self._resource_concluded,
            )
        except Exception as e:
            with self._lock:
                self._busy.pop(link, None)
            self.log.error(
                "Failed to create resource link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )
            return False

        with self._lock:
            # It may already have concluded on another thread.
            if link in self._busy:
                self._busy[link] = resource

        self.hub.stats_manager.inc("resources_sent")
        self.hub.stats_manager.inc("resource_bytes_sent", size)
        self.log.info(
            "Sent resource link_id=%s rid=%s kind=%s size=%s",
            self.hub._fmt_link_id(link),
            rid.hex(),
            kind,
            size,
        )
        return True

    def _resource_concluded(self, resource: RNS.Resource) -> None:
        link = getattr(resource, "link", None)
        with self._lock:
            self._busy.pop(link, None)
        if getattr(resource, "status", None) != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed link_id=%s",
                self.hub._fmt_link_id(link) if link is not None else "-",
            )
        if link is not None:
            self.hub.resume_delivery(link)
