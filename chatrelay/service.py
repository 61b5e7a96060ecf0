from __future__ import annotations

import logging
import os
import queue
import signal
import threading
import time
from typing import Any

import RNS

from .admin import AdminFacade
from .channels import ChannelStore
from .codec import encode
from .commands import CommandHandler
from .config import HubRuntimeConfig
from .constants import T_PING
from .envelope import make_envelope
from .identity import IdentityRegistry
from .messages import MessageHelper, Outgoing, ResourcePayload
from .resources import ResourceSender
from .router import MessageRouter
from .session import SessionManager
from .stats import StatsManager
from .util import expand_path


class HubService:
    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        registry: IdentityRegistry | None = None,
        channels: ChannelStore | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("chatrelay.hub")

        # Sessions are touched from Reticulum callbacks and background worker
        # threads. Every inbound packet is routed under this lock, which also
        # serializes registry and channel operations coming from links.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.registry = registry or IdentityRegistry(
            name_max_chars=config.name_max_chars
        )
        self.channels = channels or ChannelStore(self.registry)
        self.admin = AdminFacade(
            self.registry,
            self.channels,
            on_identities_cleared=self._on_identities_cleared,
        )

        self.stats_manager = StatsManager(self)
        self.session_manager = SessionManager(self)
        self.message_helper = MessageHelper(self)
        self.router = MessageRouter(self)
        self.command_handler = CommandHandler(self)
        self.resource_sender = ResourceSender(self)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._trusted: set[bytes] = {
            self._parse_identity_hash(h)
            for h in (config.trusted_identities or ())
            if str(h).strip()
        }

        # Packets leave in the order they were queued; the queue is filled
        # while the state lock is held. A None item resumes a link whose
        # Resource has concluded.
        self._outbox: queue.Queue[tuple[Any, bytes | ResourcePayload | None]] = (
            queue.Queue()
        )

        self._delivery_thread: threading.Thread | None = None
        self._ping_thread: threading.Thread | None = None
        self._announce_thread: threading.Thread | None = None

    @property
    def src_hash(self) -> bytes:
        return self.identity.hash if self.identity is not None else b""

    def _fmt_hash(self, h: Any, *, prefix: int = 12) -> str:
        if isinstance(h, (bytes, bytearray)):
            s = bytes(h).hex()
            return s if prefix <= 0 else s[: min(prefix, len(s))]
        return "-"

    def _fmt_link_id(self, link: Any) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def is_trusted(self, peer_hash: bytes | None) -> bool:
        if not peer_hash:
            return False
        return bytes(peer_hash) in self._trusted

    def start(self) -> None:
        self.stats_manager.set_start_time()

        # All state is process-lifetime memory; start from nothing.
        cleared = self.admin.purge_all()
        self.log.info(
            "State reset at startup identities=%s channels=%s",
            cleared["identities"],
            cleared["channels"],
        )

        self.log.info("Starting Reticulum")
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

        self._delivery_thread = threading.Thread(
            target=self._delivery_loop, name="chatrelay-delivery", daemon=True
        )
        self._delivery_thread.start()

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="chatrelay-announce",
                daemon=True,
            )
            self._announce_thread.start()

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._ping_thread = threading.Thread(
                target=self._ping_loop, name="chatrelay-ping", daemon=True
            )
            self._ping_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy require_auth=%s max_channel_id_len=%s rate_limit_msgs_per_minute=%s trusted=%s",
            self.config.require_auth,
            self.config.max_channel_id_len,
            self.config.rate_limit_msgs_per_minute,
            len(self._trusted),
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "chatrelay", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if self._shutdown.wait(period if period > 0 else 1.0):
                break
            if period > 0:
                self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        self._shutdown.set()

        with self._state_lock:
            links = self.session_manager.clear_all()
            self.resource_sender.clear_all()

        for link in links:
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

    def _parse_identity_hash(self, text: str) -> bytes:
        s = str(text).strip().lower()
        if s.startswith("0x"):
            s = s[2:]
        s = "".join(ch for ch in s if not ch.isspace())
        try:
            b = bytes.fromhex(s)
        except ValueError as e:
            raise ValueError(f"invalid identity hash {text!r}: {e}") from e
        if len(b) < 4:
            raise ValueError(f"identity hash too short: {text!r}")
        return b

    def _on_identities_cleared(self) -> None:
        with self._state_lock:
            self.session_manager.reset_authentication()

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        outgoing: Outgoing = []
        with self._state_lock:
            self.session_manager.on_link_established(link)
            self.message_helper.queue_welcome(outgoing, link)
            self._enqueue(outgoing)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        link.set_remote_identified_callback(
            lambda identified_link, ident: self._on_remote_identified(
                identified_link, ident
            )
        )

        self.log.info("Link established link_id=%s", self._fmt_link_id(link))

    def _on_remote_identified(
        self, link: RNS.Link, identity: RNS.Identity | None
    ) -> None:
        peer_hash = identity.hash if identity is not None else None
        with self._state_lock:
            self.session_manager.on_remote_identified(link, peer_hash)

    def _on_close(self, link: RNS.Link) -> None:
        with self._state_lock:
            user_id, channels_left = self.session_manager.on_link_closed(link)
        self.resource_sender.on_link_closed(link)

        self.log.info(
            "Link closed user=%s channels=%s link_id=%s",
            user_id or "-",
            channels_left,
            self._fmt_link_id(link),
        )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Packet callbacks can occur concurrently with other link callbacks and
        # background worker threads. Routing happens under the shared lock;
        # sending happens on the delivery thread.
        outgoing: Outgoing = []
        with self._state_lock:
            self.router.route_packet(link, data, outgoing)
            self._enqueue(outgoing)

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Queued %d outgoing item(s) link_id=%s",
                len(outgoing),
                self._fmt_link_id(link),
            )

    # Delivery

    def _enqueue(self, outgoing: Outgoing) -> None:
        for item in outgoing:
            self._outbox.put(item)

    def _delivery_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                link, item = self._outbox.get(timeout=0.25)
            except queue.Empty:
                continue
            self._deliver(link, item)

    def drain_outbox(self) -> int:
        """Deliver everything queued so far on the calling thread.

        Only meant for use when the delivery thread is not running.
        """
        delivered = 0
        while True:
            try:
                link, item = self._outbox.get_nowait()
            except queue.Empty:
                return delivered
            self._deliver(link, item)
            delivered += 1

    def resume_delivery(self, link: Any) -> None:
        self._outbox.put((link, None))

    def _deliver(self, link: Any, item: bytes | ResourcePayload | None) -> None:
        if item is None:
            self.resource_sender.resume(link)
            return
        self.resource_sender.deliver(link, item)

    def _transmit(self, link: Any, payload: bytes) -> bool:
        """Send one packet. A failure only affects this recipient."""
        try:
            RNS.Packet(link, payload).send()
        except OSError as e:
            # Common failure mode on low-MTU links: packet too large.
            self.stats_manager.inc("send_failures")
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self._fmt_link_id(link),
                len(payload),
                e,
            )
            return False
        except Exception:
            self.stats_manager.inc("send_failures")
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
            return False

        self.stats_manager.inc("bytes_out", len(payload))
        return True

    def _ping_loop(self) -> None:
        while not self._shutdown.is_set():
            interval = float(self.config.ping_interval_s)
            timeout = float(self.config.ping_timeout_s)
            if interval <= 0:
                if self._shutdown.wait(1.0):
                    break
                continue

            if self._shutdown.wait(interval):
                break

            now = time.monotonic()
            to_teardown: list[RNS.Link] = []
            outgoing: Outgoing = []

            with self._state_lock:
                for link, sess in list(self.session_manager.sessions.items()):
                    awaiting = sess.get("awaiting_pong")
                    if (
                        timeout > 0
                        and awaiting is not None
                        and (now - float(awaiting)) > timeout
                    ):
                        to_teardown.append(link)
                        continue

                    if awaiting is None:
                        sess["awaiting_pong"] = now
                        ping = make_envelope(T_PING, src=self.src_hash, body=int(now))
                        self.message_helper.queue_env(outgoing, link, ping)
                        self.stats_manager.inc("pings_out")
                self._enqueue(outgoing)

            for link in to_teardown:
                self.log.info(
                    "Ping timeout; closing link_id=%s", self._fmt_link_id(link)
                )
                try:
                    link.teardown()
                except Exception:
                    self.log.debug("Teardown failed", exc_info=True)
