from chatrelay.codec import encode
from chatrelay.constants import (
    B_CODE,
    B_COUNTRY,
    B_HIST_MESSAGES,
    B_HIST_MORE,
    B_NAME,
    B_OK,
    B_PHONE,
    B_RES_USER,
    B_RES_USER_ID,
    B_RES_USERS,
    B_SECRET,
    B_USER_ID,
    B_WELCOME_GREETING,
    B_WELCOME_HUB,
    E_ALREADY_REGISTERED,
    E_BAD_FIELD,
    E_BAD_MESSAGE,
    E_INVALID_CREDENTIAL,
    E_MISSING_FIELD,
    E_NOT_AUTHENTICATED,
    E_NOT_FOUND,
    E_RATE_LIMITED,
    E_TOO_LARGE,
    K_BODY,
    K_CHANNEL,
    K_REF,
    K_T,
    M_PAYLOAD,
    M_SENDER,
    M_SEQ,
    T_CHANNEL_HISTORY,
    T_ERROR,
    T_FIND_USER_BY_ID,
    T_FIND_USER_BY_PHONE,
    T_GET_ALL_USERS,
    T_JOIN_CHANNEL,
    T_LOGIN,
    T_NEW_MESSAGE,
    T_PING,
    T_PONG,
    T_REGISTER,
    T_RESULT,
    T_SEND_MESSAGE,
    T_WELCOME,
    U_ID,
    U_PHONE,
)
from chatrelay.envelope import make_envelope
from chatrelay.util import channel_id_for

from conftest import FakeLink, RecordingHub, make_hub


def _one(link, msg_type):
    envs = link.take(msg_type)
    assert len(envs) == 1, envs
    return envs[0]


def _register(hub, link, phone="+15550100", secret="pw"):
    ref = hub.request(
        link,
        T_REGISTER,
        {B_PHONE: phone, B_NAME: "user", B_SECRET: secret, B_COUNTRY: "US"},
    )
    res = _one(link, T_RESULT)
    assert res[K_REF] == ref
    assert res[K_BODY][B_OK] is True
    return res[K_BODY][B_RES_USER_ID]


def test_welcome_on_connect() -> None:
    hub = make_hub(greeting="hello there")
    link = FakeLink()
    hub._on_link(link)
    hub.drain_outbox()

    welcome = _one(link, T_WELCOME)
    assert welcome[K_BODY][B_WELCOME_HUB] == "chatrelay"
    assert welcome[K_BODY][B_WELCOME_GREETING] == "hello there"
    assert link.packet_callback is not None
    assert link.link_closed_callback is not None


def test_packet_callback_routes(hub) -> None:
    link = hub.connect()
    env = make_envelope(T_PING, src=b"client", body=7)
    link.packet_callback(encode(env), None)
    hub.drain_outbox()
    assert _one(link, T_PONG)[K_BODY] == 7


def test_register_and_duplicate(hub) -> None:
    link = hub.connect()
    user_id = _register(hub, link)
    assert hub.session_manager.is_authenticated(link)
    assert hub.stats_manager.get("registrations") == 1

    other = hub.connect()
    hub.request(other, T_REGISTER, {B_PHONE: "1 555 0100", B_SECRET: "x"})
    res = _one(other, T_RESULT)
    assert res[K_BODY][B_OK] is False
    assert res[K_BODY][B_CODE] == E_ALREADY_REGISTERED
    assert res[K_BODY][B_RES_USER_ID] == user_id
    assert not hub.session_manager.is_authenticated(other)


def test_register_missing_phone(hub) -> None:
    link = hub.connect()
    hub.request(link, T_REGISTER, {B_NAME: "nobody"})
    res = _one(link, T_RESULT)
    assert res[K_BODY][B_OK] is False
    assert res[K_BODY][B_CODE] == E_MISSING_FIELD


def test_register_with_unusable_name_fails(hub) -> None:
    link = hub.connect()
    hub.request(link, T_REGISTER, {B_PHONE: "+15550100", B_NAME: "n" * 100, B_SECRET: "pw"})
    res = _one(link, T_RESULT)
    assert res[K_BODY][B_OK] is False
    assert res[K_BODY][B_CODE] == E_BAD_FIELD
    assert hub.registry.count() == 0
    assert not hub.session_manager.is_authenticated(link)


def test_login(hub) -> None:
    link = hub.connect()
    user_id = _register(hub, link)

    other = hub.connect()
    hub.request(other, T_LOGIN, {B_PHONE: "+15550100", B_SECRET: "wrong"})
    assert _one(other, T_RESULT)[K_BODY][B_CODE] == E_INVALID_CREDENTIAL

    hub.request(other, T_LOGIN, {B_PHONE: "+19990000", B_SECRET: "pw"})
    assert _one(other, T_RESULT)[K_BODY][B_CODE] == E_NOT_FOUND

    hub.request(other, T_LOGIN, {B_PHONE: "+15550100", B_SECRET: "pw"})
    res = _one(other, T_RESULT)
    assert res[K_BODY][B_RES_USER_ID] == user_id
    assert res[K_BODY][B_RES_USER][U_PHONE] == "+15550100"
    assert hub.registry.live_connection(user_id) is other


def test_lookups(hub) -> None:
    link = hub.connect()
    user_id = _register(hub, link)
    _register(hub, hub.connect(), phone="+15550101")

    hub.request(link, T_FIND_USER_BY_ID, {B_USER_ID: user_id})
    assert _one(link, T_RESULT)[K_BODY][B_RES_USER][U_ID] == user_id

    hub.request(link, T_FIND_USER_BY_ID, {B_USER_ID: "ZZZZZZZ"})
    assert _one(link, T_RESULT)[K_BODY][B_CODE] == E_NOT_FOUND

    hub.request(link, T_FIND_USER_BY_PHONE, {B_PHONE: "(555) 0100"})
    assert _one(link, T_RESULT)[K_BODY][B_CODE] == E_NOT_FOUND

    hub.request(link, T_FIND_USER_BY_PHONE, {B_PHONE: "+1 555 0100"})
    assert _one(link, T_RESULT)[K_BODY][B_RES_USER][U_ID] == user_id

    hub.request(link, T_FIND_USER_BY_PHONE, {})
    assert _one(link, T_RESULT)[K_BODY][B_CODE] == E_MISSING_FIELD

    hub.request(link, T_GET_ALL_USERS)
    assert len(_one(link, T_RESULT)[K_BODY][B_RES_USERS]) == 2


def test_join_send_and_fan_out(hub) -> None:
    a = hub.connect()
    b = hub.connect()
    a_id = _register(hub, a, phone="+15550100")
    b_id = _register(hub, b, phone="+15550101")
    channel = channel_id_for(a_id, b_id)

    ref = hub.request(a, T_JOIN_CHANNEL, channel=channel)
    hist = _one(a, T_CHANNEL_HISTORY)
    assert hist[K_REF] == ref
    assert hist[K_BODY][B_HIST_MESSAGES] == []
    hub.request(b, T_JOIN_CHANNEL, channel=channel)
    b.take()

    for i in range(3):
        hub.request(a, T_SEND_MESSAGE, {M_PAYLOAD: f"m{i}"}, channel=channel)

    for link in (a, b):
        msgs = link.take(T_NEW_MESSAGE)
        assert [m[K_BODY][M_PAYLOAD] for m in msgs] == ["m0", "m1", "m2"]
        assert [m[K_BODY][M_SEQ] for m in msgs] == [0, 1, 2]
        assert all(m[K_BODY][M_SENDER] == a_id for m in msgs)
        assert all(m[K_CHANNEL] == channel for m in msgs)


def test_late_joiner_gets_history(hub) -> None:
    a = hub.connect()
    hub.request(a, T_SEND_MESSAGE, {M_SENDER: "A", M_PAYLOAD: "first"}, channel="A_B")
    hub.request(a, T_SEND_MESSAGE, {M_SENDER: "A", M_PAYLOAD: "second"}, channel="A_B")

    b = hub.connect()
    hub.request(b, T_JOIN_CHANNEL, {B_USER_ID: "B"}, channel="A_B")
    entries = _one(b, T_CHANNEL_HISTORY)[K_BODY][B_HIST_MESSAGES]
    assert [e[M_PAYLOAD] for e in entries] == ["first", "second"]


def test_join_without_user_id_fails(hub) -> None:
    link = hub.connect()
    hub.request(link, T_JOIN_CHANNEL, channel="A_B")
    err = _one(link, T_ERROR)
    assert err[K_BODY][B_CODE] == E_MISSING_FIELD
    assert hub.channels.members("A_B") == set()


def test_send_without_payload_fails(hub) -> None:
    link = hub.connect()
    hub.request(link, T_SEND_MESSAGE, {M_SENDER: "A"}, channel="A_B")
    assert _one(link, T_ERROR)[K_BODY][B_CODE] == E_MISSING_FIELD
    assert hub.channels.history("A_B") == []


def test_channel_checks(hub) -> None:
    link = hub.connect()
    hub.request(link, T_SEND_MESSAGE, {M_PAYLOAD: "x"})
    assert _one(link, T_ERROR)[K_BODY][B_CODE] == E_MISSING_FIELD

    hub.request(link, T_SEND_MESSAGE, {M_PAYLOAD: "x"}, channel="c" * 500)
    assert _one(link, T_ERROR)[K_BODY][B_CODE] == E_BAD_MESSAGE


def test_require_auth() -> None:
    hub = make_hub(require_auth=True)
    link = hub.connect()
    hub.request(link, T_JOIN_CHANNEL, {B_USER_ID: "A"}, channel="A_B")
    assert _one(link, T_ERROR)[K_BODY][B_CODE] == E_NOT_AUTHENTICATED

    _register(hub, link)
    hub.request(link, T_JOIN_CHANNEL, channel="A_B")
    _one(link, T_CHANNEL_HISTORY)


def test_bad_packets(hub) -> None:
    link = hub.connect()
    hub._on_packet(link, b"\x82\x01")
    hub.drain_outbox()
    assert _one(link, T_ERROR)[K_BODY][B_CODE] == E_BAD_MESSAGE
    assert hub.stats_manager.get("pkts_bad") == 1

    ref = hub.request(link, 999)
    err = _one(link, T_ERROR)
    assert err[K_BODY][B_CODE] == E_BAD_MESSAGE
    assert err[K_REF] == ref


def test_packets_from_unknown_link_are_ignored(hub) -> None:
    link = FakeLink()
    hub.request(link, T_PING, 1)
    assert link.take() == []


def test_rate_limit() -> None:
    hub = make_hub(rate_limit_msgs_per_minute=2)
    link = hub.connect()
    for _ in range(3):
        hub.request(link, T_PING, 1)
    envs = link.take()
    assert [e[K_T] for e in envs] == [T_PONG, T_PONG, T_ERROR]
    assert envs[2][K_BODY][B_CODE] == E_RATE_LIMITED
    assert hub.stats_manager.get("rate_limited") == 1


def test_disconnect_keeps_identity(hub) -> None:
    link = hub.connect()
    user_id = _register(hub, link)
    hub.request(link, T_JOIN_CHANNEL, channel="A_B")
    link.take()

    hub.disconnect(link)

    assert hub.session_manager.get_session(link) is None
    assert hub.channels.members("A_B") == set()
    assert hub.registry.live_connection(user_id) is None
    assert hub.registry.lookup_by_id(user_id) is not None

    again = hub.connect()
    hub.request(again, T_LOGIN, {B_PHONE: "+15550100", B_SECRET: "pw"})
    assert _one(again, T_RESULT)[K_BODY][B_RES_USER_ID] == user_id


def test_send_failure_to_one_member_does_not_block_others() -> None:
    class FlakyHub(RecordingHub):
        def _transmit(self, link, payload):
            if getattr(link, "broken", False):
                self.stats_manager.inc("send_failures")
                return False
            return super()._transmit(link, payload)

    hub = FlakyHub(make_hub().config)
    a = hub.connect()
    b = hub.connect()
    c = hub.connect()
    for link in (a, b, c):
        hub.request(link, T_JOIN_CHANNEL, {B_USER_ID: "X"}, channel="room")
        link.take()

    b.broken = True
    hub.request(a, T_SEND_MESSAGE, {M_PAYLOAD: "hi"}, channel="room")

    assert len(a.take(T_NEW_MESSAGE)) == 1
    assert len(c.take(T_NEW_MESSAGE)) == 1
    assert hub.stats_manager.get("send_failures") == 1


def test_history_is_paged_when_too_large_for_one_packet() -> None:
    hub = make_hub(enable_resource_transfer=False)
    writer = hub.connect()
    for i in range(10):
        hub.request(
            writer, T_SEND_MESSAGE, {M_SENDER: "A", M_PAYLOAD: "x" * 40}, channel="A_B"
        )

    reader = hub.connect(mdu=200)
    hub.request(reader, T_JOIN_CHANNEL, {B_USER_ID: "B"}, channel="A_B")

    raw = list(reader.sent)
    assert all(len(p) <= 200 for p in raw)
    pages = reader.take(T_CHANNEL_HISTORY)
    assert len(pages) > 1
    assert [p[K_BODY][B_HIST_MORE] for p in pages] == [True] * (len(pages) - 1) + [False]
    seqs = [e[M_SEQ] for p in pages for e in p[K_BODY][B_HIST_MESSAGES]]
    assert seqs == list(range(10))


def test_undeliverable_message_is_refused_and_not_stored() -> None:
    hub = make_hub(enable_resource_transfer=False)
    a = hub.connect(mdu=200)
    hub.request(a, T_JOIN_CHANNEL, {B_USER_ID: "A"}, channel="A_B")
    a.take()

    refs = [
        hub.request(a, T_SEND_MESSAGE, {M_PAYLOAD: payload}, channel="A_B")
        for payload in ("small0", "x" * 400, "small2")
    ]

    envs = a.take()
    assert [e[K_T] for e in envs] == [T_NEW_MESSAGE, T_ERROR, T_NEW_MESSAGE]
    assert envs[1][K_BODY][B_CODE] == E_TOO_LARGE
    assert envs[1][K_REF] == refs[1]
    assert [envs[0][K_BODY][M_SEQ], envs[2][K_BODY][M_SEQ]] == [0, 1]
    assert hub.stats_manager.get("msgs_too_large") == 1
    assert len(hub.channels.history("A_B")) == 2

    late = hub.connect(mdu=200)
    hub.request(late, T_JOIN_CHANNEL, {B_USER_ID: "B"}, channel="A_B")
    entries = [
        e for p in late.take(T_CHANNEL_HISTORY) for e in p[K_BODY][B_HIST_MESSAGES]
    ]
    assert [(e[M_SEQ], e[M_PAYLOAD]) for e in entries] == [(0, "small0"), (1, "small2")]


def test_message_over_resource_limit_is_refused() -> None:
    hub = make_hub(max_resource_bytes=256)
    a = hub.connect(mdu=200)

    hub.request(a, T_SEND_MESSAGE, {M_PAYLOAD: "x" * 400}, channel="A_B")

    assert _one(a, T_ERROR)[K_BODY][B_CODE] == E_TOO_LARGE
    assert hub.channels.history("A_B") == []
    assert hub.channels.count() == 0



def test_two_user_scenario(hub) -> None:
    ann = hub.connect()
    bo = hub.connect()
    hub.request(ann, T_REGISTER, {B_PHONE: "5551234", B_NAME: "Ann"})
    a_id = _one(ann, T_RESULT)[K_BODY][B_RES_USER_ID]
    hub.request(bo, T_REGISTER, {B_PHONE: "5557777", B_NAME: "Bo"})
    b_id = _one(bo, T_RESULT)[K_BODY][B_RES_USER_ID]
    channel = channel_id_for(a_id, b_id)

    hub.request(ann, T_JOIN_CHANNEL, {B_USER_ID: a_id}, channel=channel)
    assert _one(ann, T_CHANNEL_HISTORY)[K_BODY][B_HIST_MESSAGES] == []

    hub.request(ann, T_SEND_MESSAGE, {M_SENDER: a_id, M_PAYLOAD: "hi"}, channel=channel)
    echo = _one(ann, T_NEW_MESSAGE)
    assert echo[K_BODY][M_SENDER] == a_id
    assert echo[K_BODY][M_PAYLOAD] == "hi"
    assert bo.take() == []

    hub.request(bo, T_JOIN_CHANNEL, {B_USER_ID: b_id}, channel=channel)
    entries = _one(bo, T_CHANNEL_HISTORY)[K_BODY][B_HIST_MESSAGES]
    assert [(e[M_SENDER], e[M_PAYLOAD]) for e in entries] == [(a_id, "hi")]

    hub.request(ann, T_SEND_MESSAGE, {M_PAYLOAD: "again"}, channel=channel)
    for link in (ann, bo):
        msgs = link.take(T_NEW_MESSAGE)
        assert [(m[K_BODY][M_SEQ], m[K_BODY][M_PAYLOAD]) for m in msgs] == [(1, "again")]


def test_purge_makes_lookups_miss(hub) -> None:
    link = hub.connect()
    user_id = _register(hub, link)
    hub.request(link, T_SEND_MESSAGE, {M_PAYLOAD: "x"}, channel="A_B")
    link.take()

    hub.admin.purge_all()

    assert hub.admin.status()["identity_count"] == 0
    assert hub.admin.status()["channel_count"] == 0
    hub.request(link, T_FIND_USER_BY_ID, {B_USER_ID: user_id})
    assert _one(link, T_RESULT)[K_BODY][B_CODE] == E_NOT_FOUND
    hub.request(link, T_FIND_USER_BY_PHONE, {B_PHONE: "+15550100"})
    assert _one(link, T_RESULT)[K_BODY][B_CODE] == E_NOT_FOUND
