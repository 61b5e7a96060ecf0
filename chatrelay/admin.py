"""Operational inspection and reset over the identity registry and channel store."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from .errors import NotFound
from .util import normalize_phone

if TYPE_CHECKING:
    from .channels import ChannelStore
    from .identity import IdentityRegistry


class AdminFacade:
    """Synchronous status, dump and purge operations.

    Nothing here mutates state except the two purge operations.
    `on_identities_cleared` runs after every identity purge so the hub can
    drop its own view of which connections are authenticated.
    """

    def __init__(
        self,
        registry: IdentityRegistry,
        channels: ChannelStore,
        *,
        on_identities_cleared: Callable[[], None] | None = None,
    ) -> None:
        self.registry = registry
        self.channels = channels
        self.on_identities_cleared = on_identities_cleared
        self.log = logging.getLogger("chatrelay.admin")

    def status(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "identity_count": self.registry.count(),
            "channel_count": self.channels.count(),
        }

    def dump(self) -> list[dict[int, Any]]:
        return self.registry.list_all(include_created=True)

    def list_identities(self) -> tuple[list[dict[int, Any]], int]:
        users = self.dump()
        return users, len(users)

    def lookup_by_phone(self, phone_number: str) -> dict[int, Any]:
        found = self.registry.lookup_by_phone(phone_number, include_created=True)
        if found is None:
            raise NotFound(f"user {normalize_phone(phone_number) or phone_number!r}")
        return found

    def purge_all(self) -> dict[str, int]:
        identities = self.registry.clear_all()["identities"]
        channels = self.channels.clear_all()
        self._identities_cleared()
        self.log.warning(
            "Cleared all data: %s identities, %s channels", identities, channels
        )
        return {"identities": identities, "channels": channels}

    def purge_identities_only(self) -> dict[str, int]:
        identities = self.registry.clear_all()["identities"]
        self._identities_cleared()
        self.log.warning("Cleared all identities: %s identities", identities)
        return {"identities": identities}

    def _identities_cleared(self) -> None:
        if self.on_identities_cleared is not None:
            self.on_identities_cleared()
