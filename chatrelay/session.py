from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import RNS

    from .service import HubService


class ConnState(enum.Enum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class SessionManager:
    """
    Manages the lifecycle of hub connections.

    This class is responsible for:
    - Session creation when a link is established
    - The CONNECTED -> AUTHENTICATED -> DISCONNECTED state machine
    - Tracking the Reticulum identity of operator links
    - Rate limiting with a token bucket per link
    - Teardown: identity presence and channel membership cleanup
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}

    def on_link_established(self, link: RNS.Link) -> dict[str, Any]:
        """
        Create session state for a new link.

        Must be called with state lock held.
        """
        sess: dict[str, Any] = {
            "state": ConnState.CONNECTED,
            "user_id": None,
            "peer": None,
            "awaiting_pong": None,
        }
        self.sessions[link] = sess

        self._rate[link] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )

        self.log.info("Session created link_id=%s", self.hub._fmt_link_id(link))
        return sess

    def on_remote_identified(self, link: RNS.Link, peer_hash: bytes | None) -> None:
        """
        Remember the Reticulum identity a link proved. Only used to authorize
        operator commands; chat identity comes from register/login.

        Must be called with state lock held.
        """
        sess = self.sessions.get(link)
        if sess is None or peer_hash is None:
            return
        sess["peer"] = bytes(peer_hash)
        self.log.info(
            "Remote identified peer=%s link_id=%s",
            self.hub._fmt_hash(peer_hash),
            self.hub._fmt_link_id(link),
        )

    def mark_authenticated(self, link: RNS.Link, user_id: str) -> None:
        """
        Bind a session to an identity. Re-binding an authenticated session
        replaces the previous identity.

        Must be called with state lock held.
        """
        sess = self.sessions.get(link)
        if sess is None:
            return
        prev = sess.get("user_id")
        sess["user_id"] = user_id
        sess["state"] = ConnState.AUTHENTICATED
        if prev is not None and prev != user_id:
            self.log.info(
                "Session rebound link_id=%s from=%s to=%s",
                self.hub._fmt_link_id(link),
                prev,
                user_id,
            )

    def is_authenticated(self, link: RNS.Link) -> bool:
        sess = self.sessions.get(link)
        return sess is not None and sess["state"] is ConnState.AUTHENTICATED

    def on_link_closed(self, link: RNS.Link) -> tuple[str | None, int]:
        """
        Tear down a closed link.

        Returns:
            (user_id, channels_left) for logging
        Must be called with state lock held.
        """
        sess = self.sessions.pop(link, None)
        self._rate.pop(link, None)

        if sess is not None:
            sess["state"] = ConnState.DISCONNECTED

        # Presence is cleared even for links that never authenticated; the
        # registry treats an unknown connection as a no-op.
        user_id = self.hub.registry.on_disconnect(link)
        channels_left = self.hub.channels.leave_all(link)
        return user_id, channels_left

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        A limit of 0 disables rate limiting.

        Must be called with state lock held.
        """
        per_min_cfg = int(self.hub.config.rate_limit_msgs_per_minute)
        if per_min_cfg <= 0:
            return True

        state = self._rate.get(link)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(per_min_cfg)
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def reset_authentication(self) -> int:
        """
        Drop every session back to CONNECTED after the identities it was
        bound to have been purged. Returns how many sessions were reset.

        Must be called with state lock held.
        """
        reset = 0
        for sess in self.sessions.values():
            if sess["state"] is ConnState.AUTHENTICATED:
                sess["state"] = ConnState.CONNECTED
                sess["user_id"] = None
                reset += 1
        if reset:
            self.log.info("Reset %d authenticated session(s)", reset)
        return reset

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        return self.sessions.get(link)

    def clear_all(self) -> list[RNS.Link]:
        """
        Clear all sessions and return the links for teardown.

        Must be called with state lock held.
        """
        links = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        return links

    def get_stats(self) -> dict[str, int]:
        total = len(self.sessions)
        authenticated = sum(
            1 for s in self.sessions.values() if s["state"] is ConnState.AUTHENTICATED
        )
        operators = sum(
            1 for s in self.sessions.values() if self.hub.is_trusted(s.get("peer"))
        )
        return {
            "total": total,
            "authenticated": authenticated,
            "operators": operators,
        }
