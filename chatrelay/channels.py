"""Channel history and membership for the chatrelay hub."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Hashable

from .constants import M_PAYLOAD, M_SENDER, M_SEQ, M_TS, UNKNOWN_SENDER
from .envelope import now_ms
from .errors import MissingField

if TYPE_CHECKING:
    from .identity import IdentityRegistry


@dataclass(frozen=True)
class StoredMessage:
    channel_id: str
    sender_id: str
    payload: Any
    timestamp: int
    seq: int

    def to_body(self) -> dict[int, Any]:
        return {
            M_SENDER: self.sender_id,
            M_PAYLOAD: self.payload,
            M_TS: self.timestamp,
            M_SEQ: self.seq,
        }


@dataclass
class _Channel:
    history: list[StoredMessage] = field(default_factory=list)
    members: set[Hashable] = field(default_factory=set)


class ChannelStore:
    """Owns per-channel history and the set of joined connections.

    History is append-only; append order is delivery order.
    """

    def __init__(
        self,
        registry: IdentityRegistry | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.registry = registry
        self.log = logging.getLogger("chatrelay.channels")
        self._clock = clock
        self._lock = threading.RLock()
        self._channels: dict[str, _Channel] = {}

    def join(self, channel_id: str | None, connection: Hashable) -> list[StoredMessage]:
        """Add `connection` to the channel and return the full history."""
        if not isinstance(channel_id, str) or not channel_id:
            raise MissingField("channelId")

        with self._lock:
            ch = self._channels.setdefault(channel_id, _Channel())
            ch.members.add(connection)
            return list(ch.history)

    def leave(self, channel_id: str, connection: Hashable) -> bool:
        with self._lock:
            ch = self._channels.get(channel_id)
            if ch is None or connection not in ch.members:
                return False
            ch.members.discard(connection)
            return True

    def leave_all(self, connection: Hashable) -> int:
        """Remove a connection from every channel. Returns number of channels left."""
        with self._lock:
            left = 0
            for ch in self._channels.values():
                if connection in ch.members:
                    ch.members.discard(connection)
                    left += 1
            return left

    def append(
        self,
        channel_id: str | None,
        message: dict[int, Any] | None,
        *,
        connection: Hashable | None = None,
        check: Callable[[StoredMessage], None] | None = None,
    ) -> StoredMessage:
        """Store a message and return it with its sequence number.

        `check` runs under the store lock before the message is stored and
        may raise to reject it; a rejected message takes no sequence number.
        """
        if not isinstance(channel_id, str) or not channel_id:
            raise MissingField("channelId")
        if not isinstance(message, dict) or message.get(M_PAYLOAD) is None:
            raise MissingField("message")

        sender = message.get(M_SENDER)
        if not isinstance(sender, str) or not sender:
            sender = None
            if connection is not None and self.registry is not None:
                sender = self.registry.identity_for_connection(connection)
            if sender is None:
                sender = UNKNOWN_SENDER

        ts = message.get(M_TS)
        if not isinstance(ts, int) or isinstance(ts, bool) or ts <= 0:
            ts = self._clock()

        with self._lock:
            ch = self._channels.get(channel_id)
            stored = StoredMessage(
                channel_id=channel_id,
                sender_id=sender,
                payload=message[M_PAYLOAD],
                timestamp=ts,
                seq=len(ch.history) if ch is not None else 0,
            )
            if check is not None:
                check(stored)
            if ch is None:
                ch = self._channels[channel_id] = _Channel()
            ch.history.append(stored)
            return stored

    def history(self, channel_id: str) -> list[StoredMessage]:
        with self._lock:
            ch = self._channels.get(channel_id)
            return list(ch.history) if ch is not None else []

    def members(self, channel_id: str) -> set[Hashable]:
        with self._lock:
            ch = self._channels.get(channel_id)
            return set(ch.members) if ch is not None else set()

    def channels_of(self, connection: Hashable) -> list[str]:
        with self._lock:
            return [cid for cid, ch in self._channels.items() if connection in ch.members]

    def count(self) -> int:
        with self._lock:
            return len(self._channels)

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._channels)
            self._channels.clear()

        self.log.info("Cleared channels=%s", count)
        return count

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            channels_total = len(self._channels)
            memberships = sum(len(ch.members) for ch in self._channels.values())
            messages = sum(len(ch.history) for ch in self._channels.values())
            top_channels = sorted(
                ((cid, len(ch.history)) for cid, ch in self._channels.items()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
        return {
            "channels_total": channels_total,
            "memberships": memberships,
            "messages": messages,
            "top_channels": top_channels,
        }
