"""Operator commands for the chatrelay hub."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import B_RES_DATA, E_NOT_AUTHORIZED, E_UNKNOWN_COMMAND
from .errors import MissingField, NotFound

if TYPE_CHECKING:
    import RNS

    from .messages import Outgoing
    from .service import HubService


class CommandHandler:
    """Handles T_COMMAND requests from operator links.

    Only links whose Reticulum identity is listed in `trusted_identities` may
    run commands. Replies are T_RESULT acknowledgments whose B_RES_DATA holds
    the command output.
    """

    USAGE = "commands: /status /users /user <phone> /who <channel> /stats /purge /purge-users"

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.commands")

    def handle_command(
        self,
        link: RNS.Link,
        sess: dict[str, Any],
        text: Any,
        *,
        ref: bytes | None,
        outgoing: Outgoing,
    ) -> bool:
        """Run one command line. Returns True if the command was recognized."""
        helper = self.hub.message_helper

        if not self.hub.is_trusted(sess.get("peer")):
            helper.queue_failure(
                outgoing, link, ref=ref, code=E_NOT_AUTHORIZED, text="not authorized"
            )
            return True

        cmdline = text.strip() if isinstance(text, str) else ""
        parts = [p for p in cmdline.removeprefix("/").split() if p]
        if not parts:
            helper.queue_failure(
                outgoing, link, ref=ref, code=E_UNKNOWN_COMMAND, text=self.USAGE
            )
            return False

        cmd = parts[0].lower()
        admin = self.hub.admin

        self.log.info(
            "Operator command peer=%s cmd=%s link_id=%s",
            self.hub._fmt_hash(sess.get("peer")),
            cmd,
            self.hub._fmt_link_id(link),
        )

        data: Any
        if cmd == "status":
            data = admin.status()
        elif cmd == "users":
            users, count = admin.list_identities()
            data = {"users": users, "count": count}
        elif cmd == "user":
            if len(parts) < 2:
                err = MissingField("phoneNumber")
                helper.queue_failure(outgoing, link, ref=ref, code=err.code, text=err.message)
                return True
            try:
                data = admin.lookup_by_phone(parts[1])
            except NotFound as e:
                helper.queue_failure(outgoing, link, ref=ref, code=e.code, text=e.message)
                return True
        elif cmd in ("who", "members"):
            if len(parts) < 2:
                err = MissingField("channelId")
                helper.queue_failure(outgoing, link, ref=ref, code=err.code, text=err.message)
                return True
            data = {"channel": parts[1], "members": self._channel_members(parts[1])}
        elif cmd == "stats":
            data = self.hub.stats_manager.format_stats()
        elif cmd == "purge":
            data = {"deleted": admin.purge_all()}
        elif cmd in ("purge-users", "purge_users"):
            data = {"deleted": admin.purge_identities_only()}
        else:
            helper.queue_failure(
                outgoing, link, ref=ref, code=E_UNKNOWN_COMMAND, text=self.USAGE
            )
            return False

        helper.queue_result(outgoing, link, ref=ref, body={B_RES_DATA: data})
        return True

    def _channel_members(self, channel: str) -> list[str]:
        out: list[str] = []
        for member in self.hub.channels.members(channel):
            user_id = self.hub.registry.identity_for_connection(member)
            out.append(user_id if user_id else self.hub._fmt_link_id(member))
        return sorted(out)
