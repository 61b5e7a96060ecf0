from __future__ import annotations

import os
from typing import Any

import pytest

from chatrelay.codec import decode, encode
from chatrelay.config import HubRuntimeConfig
from chatrelay.constants import K_ID, K_T
from chatrelay.envelope import make_envelope
from chatrelay.service import HubService

OPERATOR_HASH = bytes.fromhex("00112233445566778899aabbccddeeff")


class FakeLink:
    """Stands in for an RNS.Link; records every packet the hub sends to it."""

    def __init__(self, mdu: int | None = 4096) -> None:
        self.link_id = os.urandom(16)
        self.MDU = mdu
        self.sent: list[bytes] = []
        self.torn_down = False
        self.packet_callback = None
        self.link_closed_callback = None
        self.remote_identified_callback = None

    def set_packet_callback(self, cb) -> None:
        self.packet_callback = cb

    def set_link_closed_callback(self, cb) -> None:
        self.link_closed_callback = cb

    def set_remote_identified_callback(self, cb) -> None:
        self.remote_identified_callback = cb

    def teardown(self) -> None:
        self.torn_down = True

    def take(self, msg_type: int | None = None) -> list[dict[int, Any]]:
        """Decode and clear everything received so far."""
        envs = [decode(p) for p in self.sent]
        self.sent.clear()
        if msg_type is None:
            return envs
        return [e for e in envs if e[K_T] == msg_type]


class FakeIdentity:
    def __init__(self, h: bytes) -> None:
        self.hash = h


class RecordingHub(HubService):
    """HubService that writes packets into FakeLink.sent instead of Reticulum."""

    def _transmit(self, link: Any, payload: bytes) -> bool:
        link.sent.append(payload)
        self.stats_manager.inc("bytes_out", len(payload))
        return True

    def connect(self, *, mdu: int | None = 4096, operator: bool = False) -> FakeLink:
        link = FakeLink(mdu=mdu)
        self._on_link(link)
        if operator:
            self._on_remote_identified(link, FakeIdentity(OPERATOR_HASH))
        self.drain_outbox()
        link.take()
        return link

    def disconnect(self, link: FakeLink) -> None:
        self._on_close(link)

    def request(
        self,
        link: FakeLink,
        msg_type: int,
        body: Any = None,
        *,
        channel: str | None = None,
    ) -> bytes:
        env = make_envelope(msg_type, src=b"client", channel=channel, body=body)
        self._on_packet(link, encode(env))
        self.drain_outbox()
        return env[K_ID]


def make_hub(**overrides: Any) -> RecordingHub:
    cfg = HubRuntimeConfig(
        trusted_identities=(OPERATOR_HASH.hex(),),
        **overrides,
    )
    hub = RecordingHub(cfg)
    hub.stats_manager.set_start_time()
    return hub


@pytest.fixture
def hub() -> RecordingHub:
    return make_hub()
