"""Statistics tracking and reporting for the chatrelay hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Lifetime counters for the hub, rendered by the /stats operator command.

    Tracks:
    - Bytes and packets in/out
    - Registrations and logins (and their failures)
    - Channel joins and routed messages
    - Errors sent and rate limiting events
    - Ping/pong activity, announces and resource transfers
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "send_failures": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "registrations": 0,
            "registrations_failed": 0,
            "logins": 0,
            "logins_failed": 0,
            "lookups": 0,
            "joins": 0,
            "msgs_routed": 0,
            "msgs_too_large": 0,
            "pings_in": 0,
            "pongs_in": 0,
            "pings_out": 0,
            "pongs_out": 0,
            "announces": 0,
            "resources_sent": 0,
            "resource_bytes_sent": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self.hub._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return int(self._counters.get(key, 0))

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        with self.hub._state_lock:
            session_stats = self.hub.session_manager.get_stats()
            c = dict(self._counters)
        identity_stats = self.hub.registry.get_stats()
        channel_stats = self.hub.channels.get_stats()

        lines: list[str] = []
        lines.append(f"chatrelay {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections_total={session_stats['total']} "
            f"connections_authenticated={session_stats['authenticated']} "
            f"operators={session_stats['operators']}"
        )
        lines.append(
            f"identities={identity_stats['identities']} "
            f"online={identity_stats['online']} "
            f"bound_connections={identity_stats['bound_connections']}"
        )
        lines.append(
            f"channels={channel_stats['channels_total']} "
            f"memberships={channel_stats['memberships']} "
            f"messages={channel_stats['messages']}"
        )

        top = channel_stats["top_channels"]
        if top:
            lines.append("top_channels=" + ", ".join(f"{cid}:{n}" for cid, n in top))

        lines.append(
            f"limits: rate_limit_msgs_per_minute={self.hub.config.rate_limit_msgs_per_minute} "
            f"max_channel_id_len={self.hub.config.max_channel_id_len} "
            f"require_auth={self.hub.config.require_auth}"
        )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={} send_failures={}".format(
                c.get("pkts_in", 0),
                c.get("pkts_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
                c.get("send_failures", 0),
            )
        )
        lines.append(
            "identity: registrations={} failed={} logins={} failed={} lookups={}".format(
                c.get("registrations", 0),
                c.get("registrations_failed", 0),
                c.get("logins", 0),
                c.get("logins_failed", 0),
                c.get("lookups", 0),
            )
        )
        lines.append(
            "events: joins={} msgs_routed={} msgs_too_large={} errors_sent={} rate_limited={}".format(
                c.get("joins", 0),
                c.get("msgs_routed", 0),
                c.get("msgs_too_large", 0),
                c.get("errors_sent", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "pings: in={} out={} pongs: in={} out={}".format(
                c.get("pings_in", 0),
                c.get("pings_out", 0),
                c.get("pongs_in", 0),
                c.get("pongs_out", 0),
            )
        )
        lines.append(
            "resources: sent={} bytes_sent={}".format(
                c.get("resources_sent", 0),
                c.get("resource_bytes_sent", 0),
            )
        )

        return "\n".join(lines)
