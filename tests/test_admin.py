import pytest

from chatrelay.admin import AdminFacade
from chatrelay.channels import ChannelStore
from chatrelay.constants import M_PAYLOAD, U_CREATED, U_PHONE
from chatrelay.errors import NotFound
from chatrelay.identity import IdentityRegistry


@pytest.fixture
def facade():
    reg = IdentityRegistry()
    store = ChannelStore(reg)
    calls = []
    admin = AdminFacade(reg, store, on_identities_cleared=lambda: calls.append(1))
    admin.cleared_calls = calls
    reg.register("+15550100", "a", "pw", "US")
    reg.register("+15550101", "b", "pw", "US")
    store.append("A_B", {M_PAYLOAD: "hi"})
    return admin


def test_status(facade) -> None:
    assert facade.status() == {"status": "ok", "identity_count": 2, "channel_count": 1}


def test_dump_includes_created_at(facade) -> None:
    users, count = facade.list_identities()
    assert count == 2
    assert all(U_CREATED in u for u in users)


def test_lookup_by_phone(facade) -> None:
    assert facade.lookup_by_phone("1 555 0100")[U_PHONE] == "+15550100"
    with pytest.raises(NotFound):
        facade.lookup_by_phone("+19999999")


def test_purge_all(facade) -> None:
    assert facade.purge_all() == {"identities": 2, "channels": 1}
    assert facade.status() == {"status": "ok", "identity_count": 0, "channel_count": 0}
    assert facade.cleared_calls == [1]


def test_purge_identities_only_keeps_channels(facade) -> None:
    assert facade.purge_identities_only() == {"identities": 2}
    assert facade.status()["identity_count"] == 0
    assert facade.status()["channel_count"] == 1
    assert facade.cleared_calls == [1]


def test_purge_on_empty_state(facade) -> None:
    facade.purge_all()
    assert facade.purge_all() == {"identities": 0, "channels": 0}
