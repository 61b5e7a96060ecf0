"""Message building and queueing utilities for the chatrelay hub."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Union

from .codec import encode
from .constants import (
    B_CODE,
    B_ERROR,
    B_HIST_MESSAGES,
    B_HIST_MORE,
    B_OK,
    B_WELCOME_GREETING,
    B_WELCOME_HUB,
    B_WELCOME_VER,
    E_TOO_LARGE,
    K_CHANNEL,
    RES_KIND_HISTORY,
    T_CHANNEL_HISTORY,
    T_ERROR,
    T_NEW_MESSAGE,
    T_RESULT,
    T_WELCOME,
)
from .envelope import make_envelope
from .errors import PayloadTooLarge

if TYPE_CHECKING:
    import RNS

    from .channels import StoredMessage
    from .service import HubService


@dataclass(frozen=True)
class ResourcePayload:
    """Outgoing data too large for one packet; delivered as an RNS Resource."""

    data: bytes
    kind: str
    channel: str | None = None


Outgoing = list[tuple["RNS.Link", Union[bytes, ResourcePayload]]]


class MessageHelper:
    """
    Helper methods for building and queueing hub replies.

    Handles:
    - Outgoing queue entries (packets and resources)
    - Acknowledgments (T_RESULT) and error events (T_ERROR)
    - WELCOME construction
    - Channel history delivery, paged when it does not fit one packet
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log

    @property
    def src(self) -> bytes:
        return self.hub.src_hash

    def packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload fits within the link MDU."""
        mdu = getattr(link, "MDU", None)
        if mdu is None:
            return True
        return len(payload) <= int(mdu)

    def queue_payload(self, outgoing: Outgoing, link: RNS.Link, payload: bytes) -> None:
        outgoing.append((link, payload))

    def queue_env(self, outgoing: Outgoing, link: RNS.Link, env: dict) -> None:
        self.queue_payload(outgoing, link, encode(env))

    def can_deliver(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload can reach the link as a packet or as a resource."""
        if self.packet_would_fit(link, payload):
            return True
        cfg = self.hub.config
        return bool(cfg.enable_resource_transfer) and len(payload) <= cfg.max_resource_bytes

    def queue_env_smart(
        self, outgoing: Outgoing, link: RNS.Link, env: dict, *, kind: str
    ) -> bool:
        """
        Queue an envelope as a packet, or as a resource when it is too large.
        Returns False if neither is possible.
        """
        payload = encode(env)
        if self.packet_would_fit(link, payload):
            self.queue_payload(outgoing, link, payload)
            return True

        if self.can_deliver(link, payload):
            resource = ResourcePayload(data=payload, kind=kind, channel=env.get(K_CHANNEL))
            outgoing.append((link, resource))
            return True
        return False

    def message_envelope(self, stored: StoredMessage) -> dict:
        return make_envelope(
            T_NEW_MESSAGE,
            src=self.src,
            channel=stored.channel_id,
            body=stored.to_body(),
        )

    def check_deliverable(
        self,
        links: Iterable[RNS.Link],
        stored: StoredMessage,
        *,
        ref: bytes | None = None,
    ) -> None:
        """
        Raise PayloadTooLarge unless every link can receive `stored` both as a
        NEW_MESSAGE broadcast and as a single-entry history page.
        """
        live = encode(self.message_envelope(stored))
        page = encode(
            self._history_envelope(stored.channel_id, [stored.to_body()], True, ref)
        )
        for link in links:
            if not (self.can_deliver(link, live) and self.can_deliver(link, page)):
                raise PayloadTooLarge(max(len(live), len(page)))

    def queue_result(
        self,
        outgoing: Outgoing,
        link: RNS.Link,
        *,
        ref: bytes | None,
        body: dict[int, Any],
    ) -> None:
        """Queue a successful acknowledgment for the request `ref`."""
        full = {B_OK: True, **body}
        env = make_envelope(T_RESULT, src=self.src, body=full, ref=ref)
        if not self.queue_env_smart(outgoing, link, env, kind="result"):
            self.log.warning(
                "Result too large to deliver link_id=%s bytes=%s",
                self.hub._fmt_link_id(link),
                len(encode(env)),
            )
            self.queue_failure(
                outgoing, link, ref=ref, code=E_TOO_LARGE, text="result too large"
            )

    def queue_failure(
        self,
        outgoing: Outgoing,
        link: RNS.Link,
        *,
        ref: bytes | None,
        code: str,
        text: str,
        extra: dict[int, Any] | None = None,
    ) -> None:
        """Queue a failed acknowledgment for the request `ref`."""
        self.hub.stats_manager.inc("errors_sent")
        body: dict[int, Any] = {B_OK: False, B_CODE: code, B_ERROR: text}
        if extra:
            body.update(extra)
        env = make_envelope(T_RESULT, src=self.src, body=body, ref=ref)
        self.queue_env(outgoing, link, env)

    def emit_error(
        self,
        outgoing: Outgoing,
        link: RNS.Link,
        *,
        code: str,
        text: str,
        channel: str | None = None,
        ref: bytes | None = None,
    ) -> None:
        """Queue an unsolicited error event (join/send failures, bad packets)."""
        self.hub.stats_manager.inc("errors_sent")
        body = {B_CODE: code, B_ERROR: text}
        env = make_envelope(T_ERROR, src=self.src, channel=channel, body=body, ref=ref)
        self.queue_env(outgoing, link, env)

    def queue_welcome(self, outgoing: Outgoing, link: RNS.Link) -> None:
        from . import __version__

        body_w: dict[int, Any] = {
            B_WELCOME_HUB: self.hub.config.hub_name,
            B_WELCOME_VER: str(__version__),
        }
        if self.hub.config.greeting:
            body_w[B_WELCOME_GREETING] = self.hub.config.greeting
        welcome = make_envelope(T_WELCOME, src=self.src, body=body_w)
        if not self.queue_env_smart(outgoing, link, welcome, kind="welcome"):
            self.log.warning(
                "WELCOME would not fit MTU; cannot welcome link_id=%s",
                self.hub._fmt_link_id(link),
            )

    def queue_history(
        self,
        outgoing: Outgoing,
        link: RNS.Link,
        channel: str,
        history: list[StoredMessage],
        *,
        ref: bytes | None = None,
    ) -> None:
        """
        Queue the channel history for a joining link.

        The whole history goes out as one envelope (packet or resource) when
        possible; otherwise it is split into pages and every page but the last
        carries B_HIST_MORE.
        """
        entries = [m.to_body() for m in history]
        env = self._history_envelope(channel, entries, False, ref)
        if self.queue_env_smart(outgoing, link, env, kind=RES_KIND_HISTORY):
            return

        # Entries are packed greedily; one that fits no packet on its own
        # gets a page to itself and goes out as a resource.
        pages: list[list[dict[int, Any]]] = []
        page: list[dict[int, Any]] = []
        for entry in entries:
            trial = page + [entry]
            if page and not self.packet_would_fit(
                link, encode(self._history_envelope(channel, trial, True, ref))
            ):
                pages.append(page)
                page = [entry]
            else:
                page = trial
        pages.append(page)

        for i, chunk in enumerate(pages):
            page_env = self._history_envelope(channel, chunk, i < len(pages) - 1, ref)
            if not self.queue_env_smart(outgoing, link, page_env, kind=RES_KIND_HISTORY):
                self.log.warning(
                    "History page too large for link_id=%s channel=%s",
                    self.hub._fmt_link_id(link),
                    channel,
                )

    def _history_envelope(
        self,
        channel: str,
        entries: list[dict[int, Any]],
        more: bool,
        ref: bytes | None,
    ) -> dict:
        return make_envelope(
            T_CHANNEL_HISTORY,
            src=self.src,
            channel=channel,
            body={B_HIST_MESSAGES: entries, B_HIST_MORE: more},
            ref=ref,
        )
