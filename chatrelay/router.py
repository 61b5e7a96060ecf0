from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .codec import decode_envelope
from .constants import (
    B_COUNTRY,
    B_NAME,
    B_PHONE,
    B_RES_USER,
    B_RES_USER_ID,
    B_RES_USERS,
    B_SECRET,
    B_USER_ID,
    E_BAD_MESSAGE,
    E_NOT_AUTHENTICATED,
    E_RATE_LIMITED,
    K_BODY,
    K_CHANNEL,
    K_ID,
    K_T,
    T_COMMAND,
    T_FIND_USER_BY_ID,
    T_FIND_USER_BY_PHONE,
    T_GET_ALL_USERS,
    T_JOIN_CHANNEL,
    T_LOGIN,
    T_PING,
    T_PONG,
    T_REGISTER,
    T_SEND_MESSAGE,
    U_ID,
)
from .envelope import make_envelope
from .errors import (
    AlreadyRegistered,
    MissingField,
    NotFound,
    PayloadTooLarge,
    RelayError,
)

if TYPE_CHECKING:
    import RNS

    from .messages import Outgoing
    from .service import HubService


def _text_field(body: Any, key: int) -> str | None:
    if not isinstance(body, dict):
        return None
    value = body.get(key)
    return value if isinstance(value, str) else None


class MessageRouter:
    """
    Handles event routing and dispatching for the chatrelay hub.

    This class is responsible for:
    - Decoding and validating incoming packets
    - Dispatching events by type to the identity registry and channel store
    - Turning results and failures into acknowledgments
    - Fanning out stored messages to channel members
    - Rate limiting
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.router")

    def route_packet(self, link: RNS.Link, data: bytes, outgoing: Outgoing) -> None:
        """
        Main entry point for routing an incoming packet.

        This method should be called with the state lock held.
        """
        sess = self.hub.session_manager.get_session(link)
        if sess is None:
            return

        stats = self.hub.stats_manager
        stats.inc("pkts_in")
        stats.inc("bytes_in", len(data))

        if not self.hub.session_manager.refill_and_take(link, 1.0):
            stats.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited link_id=%s", self.hub._fmt_link_id(link))
            self.hub.message_helper.emit_error(
                outgoing, link, code=E_RATE_LIMITED, text="rate limited"
            )
            return

        try:
            env = decode_envelope(data)
        except (TypeError, ValueError) as e:
            stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(data),
                e,
            )
            self.hub.message_helper.emit_error(
                outgoing, link, code=E_BAD_MESSAGE, text=f"bad message: {e}"
            )
            return

        t = env.get(K_T)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX link_id=%s user=%s t=%s channel=%r bytes=%s",
                self.hub._fmt_link_id(link),
                sess.get("user_id"),
                t,
                env.get(K_CHANNEL),
                len(data),
            )

        # Dispatch by message type
        if t == T_REGISTER:
            self._handle_register(link, env, outgoing)
        elif t == T_LOGIN:
            self._handle_login(link, env, outgoing)
        elif t == T_FIND_USER_BY_ID:
            self._handle_find_by_id(link, env, outgoing)
        elif t == T_FIND_USER_BY_PHONE:
            self._handle_find_by_phone(link, env, outgoing)
        elif t == T_GET_ALL_USERS:
            self._handle_get_all_users(link, env, outgoing)
        elif t == T_JOIN_CHANNEL:
            self._handle_join(link, sess, env, outgoing)
        elif t == T_SEND_MESSAGE:
            self._handle_send(link, sess, env, outgoing)
        elif t == T_PING:
            self._handle_ping(link, env, outgoing)
        elif t == T_PONG:
            self._handle_pong(sess)
        elif t == T_COMMAND:
            self.hub.command_handler.handle_command(
                link, sess, env.get(K_BODY), ref=env.get(K_ID), outgoing=outgoing
            )
        else:
            self.hub.message_helper.emit_error(
                outgoing,
                link,
                code=E_BAD_MESSAGE,
                text=f"unsupported message type {t}",
                ref=env.get(K_ID),
            )

    def _fail(
        self,
        outgoing: Outgoing,
        link: RNS.Link,
        ref: bytes | None,
        err: RelayError,
        extra: dict[int, Any] | None = None,
    ) -> None:
        self.hub.message_helper.queue_failure(
            outgoing, link, ref=ref, code=err.code, text=err.message, extra=extra
        )

    def _handle_register(self, link: RNS.Link, env: dict, outgoing: Outgoing) -> None:
        body = env.get(K_BODY)
        ref = env.get(K_ID)
        try:
            user_id = self.hub.registry.register(
                _text_field(body, B_PHONE),
                _text_field(body, B_NAME),
                _text_field(body, B_SECRET),
                _text_field(body, B_COUNTRY),
                connection=link,
            )
        except AlreadyRegistered as e:
            self.hub.stats_manager.inc("registrations_failed")
            self._fail(outgoing, link, ref, e, {B_RES_USER_ID: e.existing_id})
            return
        except RelayError as e:
            self.hub.stats_manager.inc("registrations_failed")
            self._fail(outgoing, link, ref, e)
            return

        self.hub.stats_manager.inc("registrations")
        self.hub.session_manager.mark_authenticated(link, user_id)
        self.hub.message_helper.queue_result(
            outgoing, link, ref=ref, body={B_RES_USER_ID: user_id}
        )

    def _handle_login(self, link: RNS.Link, env: dict, outgoing: Outgoing) -> None:
        body = env.get(K_BODY)
        ref = env.get(K_ID)
        try:
            summary = self.hub.registry.authenticate(
                _text_field(body, B_PHONE),
                _text_field(body, B_SECRET),
                connection=link,
            )
        except RelayError as e:
            self.hub.stats_manager.inc("logins_failed")
            self._fail(outgoing, link, ref, e)
            return

        user_id = summary[U_ID]
        self.hub.stats_manager.inc("logins")
        self.hub.session_manager.mark_authenticated(link, user_id)
        self.hub.message_helper.queue_result(
            outgoing,
            link,
            ref=ref,
            body={B_RES_USER_ID: user_id, B_RES_USER: summary},
        )

    def _handle_find_by_id(self, link: RNS.Link, env: dict, outgoing: Outgoing) -> None:
        ref = env.get(K_ID)
        user_id = _text_field(env.get(K_BODY), B_USER_ID)
        self.hub.stats_manager.inc("lookups")
        if not user_id:
            self._fail(outgoing, link, ref, MissingField("userId"))
            return
        found = self.hub.registry.lookup_by_id(user_id)
        if found is None:
            self._fail(outgoing, link, ref, NotFound("user"))
            return
        self.hub.message_helper.queue_result(
            outgoing, link, ref=ref, body={B_RES_USER: found}
        )

    def _handle_find_by_phone(
        self, link: RNS.Link, env: dict, outgoing: Outgoing
    ) -> None:
        ref = env.get(K_ID)
        phone = _text_field(env.get(K_BODY), B_PHONE)
        self.hub.stats_manager.inc("lookups")
        if not phone:
            self._fail(outgoing, link, ref, MissingField("phoneNumber"))
            return
        found = self.hub.registry.lookup_by_phone(phone)
        if found is None:
            self._fail(outgoing, link, ref, NotFound("user"))
            return
        self.hub.message_helper.queue_result(
            outgoing, link, ref=ref, body={B_RES_USER: found}
        )

    def _handle_get_all_users(
        self, link: RNS.Link, env: dict, outgoing: Outgoing
    ) -> None:
        self.hub.stats_manager.inc("lookups")
        self.hub.message_helper.queue_result(
            outgoing,
            link,
            ref=env.get(K_ID),
            body={B_RES_USERS: self.hub.registry.list_all()},
        )

    def _check_channel(
        self,
        link: RNS.Link,
        env: dict,
        outgoing: Outgoing,
    ) -> str | None:
        """Common checks for join/send. Returns the channel id or None after queueing an error."""
        channel = env.get(K_CHANNEL)
        ref = env.get(K_ID)
        helper = self.hub.message_helper

        if self.hub.config.require_auth and not self.hub.session_manager.is_authenticated(
            link
        ):
            helper.emit_error(
                outgoing,
                link,
                code=E_NOT_AUTHENTICATED,
                text="login required",
                channel=channel if isinstance(channel, str) else None,
                ref=ref,
            )
            return None

        if not isinstance(channel, str) or not channel:
            err = MissingField("channelId")
            helper.emit_error(outgoing, link, code=err.code, text=err.message, ref=ref)
            return None

        if len(channel) > int(self.hub.config.max_channel_id_len):
            helper.emit_error(
                outgoing,
                link,
                code=E_BAD_MESSAGE,
                text="channel id too long",
                ref=ref,
            )
            return None

        return channel

    def _handle_join(
        self,
        link: RNS.Link,
        sess: dict[str, Any],
        env: dict,
        outgoing: Outgoing,
    ) -> None:
        channel = self._check_channel(link, env, outgoing)
        if channel is None:
            return
        ref = env.get(K_ID)

        user_id = _text_field(env.get(K_BODY), B_USER_ID) or sess.get("user_id")
        if not user_id:
            err = MissingField("userId")
            self.hub.message_helper.emit_error(
                outgoing, link, code=err.code, text=err.message, channel=channel, ref=ref
            )
            return

        history = self.hub.channels.join(channel, link)
        self.hub.stats_manager.inc("joins")
        self.log.info(
            "JOIN user=%s channel=%s history=%s link_id=%s",
            user_id,
            channel,
            len(history),
            self.hub._fmt_link_id(link),
        )
        self.hub.message_helper.queue_history(outgoing, link, channel, history, ref=ref)

    def _handle_send(
        self,
        link: RNS.Link,
        sess: dict[str, Any],
        env: dict,
        outgoing: Outgoing,
    ) -> None:
        channel = self._check_channel(link, env, outgoing)
        if channel is None:
            return
        ref = env.get(K_ID)
        helper = self.hub.message_helper

        # The sender stands in for members that join later.
        recipients = self.hub.channels.members(channel)
        targets = recipients | {link}
        try:
            stored = self.hub.channels.append(
                channel,
                env.get(K_BODY),
                connection=link,
                check=lambda msg: helper.check_deliverable(targets, msg, ref=ref),
            )
        except PayloadTooLarge as e:
            self.hub.stats_manager.inc("msgs_too_large")
            self.log.info(
                "Message refused channel=%s bytes=%s link_id=%s",
                channel,
                e.size,
                self.hub._fmt_link_id(link),
            )
            helper.emit_error(
                outgoing, link, code=e.code, text=e.message, channel=channel, ref=ref
            )
            return
        except RelayError as e:
            helper.emit_error(
                outgoing, link, code=e.code, text=e.message, channel=channel, ref=ref
            )
            return

        out_env = helper.message_envelope(stored)
        for other in recipients:
            helper.queue_env_smart(outgoing, other, out_env, kind="message")

        self.hub.stats_manager.inc("msgs_routed")
        self.log.info(
            "Message channel=%s sender=%s seq=%s recipients=%s",
            channel,
            stored.sender_id,
            stored.seq,
            len(recipients),
        )

    def _handle_ping(self, link: RNS.Link, env: dict, outgoing: Outgoing) -> None:
        self.hub.stats_manager.inc("pings_in")
        pong = make_envelope(T_PONG, src=self.hub.src_hash, body=env.get(K_BODY))
        self.hub.stats_manager.inc("pongs_out")
        self.hub.message_helper.queue_env(outgoing, link, pong)

    def _handle_pong(self, sess: dict[str, Any]) -> None:
        self.hub.stats_manager.inc("pongs_in")
        sess["awaiting_pong"] = None
