"""Identity registry for the chatrelay hub.

This module owns everything the hub knows about people:
- the identity table keyed by short id
- the phone index (normalized phone -> id)
- the connection index (live connection -> id)
- credential checks and presence (last seen, live connection)

Connections are opaque hashable objects; the registry never sends anything
over them.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from .constants import (
    DEFAULT_LANGUAGE,
    ID_MAX_ATTEMPTS,
    U_COUNTRY,
    U_CREATED,
    U_ID,
    U_LANGUAGE,
    U_LAST_SEEN,
    U_NAME,
    U_PHONE,
)
from .envelope import now_ms
from .errors import (
    AlreadyRegistered,
    BadField,
    IdExhausted,
    InvalidCredential,
    MissingField,
    NotFound,
)
from .ids import IdGenerator
from .util import normalize_name, normalize_phone


def hash_secret(secret: str | None) -> str:
    return hashlib.sha256((secret or "").encode("utf-8")).hexdigest()


@dataclass
class Identity:
    id: str
    phone_number: str
    credential_hash: str
    created_at: int
    last_seen_at: int
    display_name: str = ""
    country: str = ""
    language: str = DEFAULT_LANGUAGE
    live_connection: Hashable | None = None

    def summary(self, *, include_created: bool = False) -> dict[int, Any]:
        """Public view of the identity. Never includes the credential hash."""
        out: dict[int, Any] = {
            U_ID: self.id,
            U_PHONE: self.phone_number,
            U_NAME: self.display_name,
            U_COUNTRY: self.country,
            U_LANGUAGE: self.language,
            U_LAST_SEEN: self.last_seen_at,
        }
        if include_created:
            out[U_CREATED] = self.created_at
        return out


class IdentityRegistry:
    """Owns identities and the phone and connection indexes.

    The identity table and both indexes are only mutated together under one
    lock, so a phone number can never be claimed twice by concurrent
    registrations.
    """

    def __init__(
        self,
        id_generator: IdGenerator | None = None,
        *,
        max_attempts: int = ID_MAX_ATTEMPTS,
        name_max_chars: int = 64,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.log = logging.getLogger("chatrelay.identity")
        self.id_generator = id_generator or IdGenerator()
        self.max_attempts = int(max_attempts)
        self.name_max_chars = int(name_max_chars)
        self._clock = clock

        self._lock = threading.RLock()
        self._identities: dict[str, Identity] = {}
        self._index_by_phone: dict[str, str] = {}  # normalized phone -> id
        self._index_by_connection: dict[Hashable, str] = {}  # connection -> id

    def register(
        self,
        phone_number: str | None,
        display_name: str | None = None,
        secret: str | None = None,
        country: str | None = None,
        *,
        connection: Hashable | None = None,
    ) -> str:
        """Create an identity and return its new id.

        An empty or missing secret is accepted and hashed as the empty string.
        """
        phone = normalize_phone(phone_number)
        if phone is None:
            raise MissingField("phoneNumber")

        name = ""
        if isinstance(display_name, str) and display_name.strip():
            name = normalize_name(display_name, max_chars=self.name_max_chars)
            if name is None:
                raise BadField(
                    "displayName",
                    f"longer than {self.name_max_chars} characters or not one line",
                )
        country_s = country.strip() if isinstance(country, str) else ""

        with self._lock:
            existing = self._index_by_phone.get(phone)
            if existing is not None:
                raise AlreadyRegistered(existing)

            new_id = self._issue_id()
            ts = self._clock()
            ident = Identity(
                id=new_id,
                phone_number=phone,
                credential_hash=hash_secret(secret),
                created_at=ts,
                last_seen_at=ts,
                display_name=name,
                country=country_s,
            )
            self._identities[new_id] = ident
            self._index_by_phone[phone] = new_id
            if connection is not None:
                self._bind(connection, ident)

        self.log.info("Registered id=%s phone=%s country=%r", new_id, phone, country_s)
        return new_id

    def authenticate(
        self,
        phone_number: str | None,
        secret: str | None,
        *,
        connection: Hashable | None = None,
    ) -> dict[int, Any]:
        if not phone_number:
            raise MissingField("phoneNumber")
        if not secret:
            raise MissingField("password")

        phone = normalize_phone(phone_number)
        if phone is None:
            raise MissingField("phoneNumber")

        with self._lock:
            ident_id = self._index_by_phone.get(phone)
            ident = self._identities.get(ident_id) if ident_id is not None else None
            if ident is None:
                raise NotFound("user")

            if not hmac.compare_digest(ident.credential_hash, hash_secret(secret)):
                self.log.info("Login rejected id=%s: bad credential", ident.id)
                raise InvalidCredential()

            # Another connection may still hold a stale binding to this
            # identity; it keeps it until it disconnects on its own.
            if connection is not None:
                self._bind(connection, ident)
            ident.last_seen_at = self._clock()
            summary = ident.summary()

        self.log.info("Logged in id=%s phone=%s", ident.id, phone)
        return summary

    def lookup_by_id(self, ident_id: str | None) -> dict[int, Any] | None:
        if not isinstance(ident_id, str) or not ident_id:
            return None
        with self._lock:
            ident = self._identities.get(ident_id)
            return ident.summary() if ident is not None else None

    def lookup_by_phone(
        self, phone_number: str | None, *, include_created: bool = False
    ) -> dict[int, Any] | None:
        if not isinstance(phone_number, str) or not phone_number:
            return None
        phone = normalize_phone(phone_number)
        with self._lock:
            ident_id = self._index_by_phone.get(phone) if phone else None
            ident = self._identities.get(ident_id) if ident_id is not None else None
            if ident is None:
                # Records stored before normalization changed would only
                # match on the raw input.
                for candidate in self._identities.values():
                    if candidate.phone_number == phone_number:
                        ident = candidate
                        break
            if ident is None:
                return None
            return ident.summary(include_created=include_created)

    def list_all(self, *, include_created: bool = False) -> list[dict[int, Any]]:
        with self._lock:
            return [
                ident.summary(include_created=include_created)
                for ident in self._identities.values()
            ]

    def identity_for_connection(self, connection: Hashable) -> str | None:
        with self._lock:
            return self._index_by_connection.get(connection)

    def live_connection(self, ident_id: str) -> Hashable | None:
        with self._lock:
            ident = self._identities.get(ident_id)
            return ident.live_connection if ident is not None else None

    def on_disconnect(self, connection: Hashable) -> str | None:
        """Drop the binding for a closed connection. Returns the identity id, if any."""
        with self._lock:
            ident_id = self._index_by_connection.pop(connection, None)
            if ident_id is None:
                return None
            ident = self._identities.get(ident_id)
            if ident is not None:
                ident.last_seen_at = self._clock()
                if ident.live_connection == connection:
                    ident.live_connection = None

        self.log.info("Went offline id=%s", ident_id)
        return ident_id

    def clear_all(self) -> dict[str, int]:
        with self._lock:
            counts = {
                "identities": len(self._identities),
                "phones": len(self._index_by_phone),
                "connections": len(self._index_by_connection),
            }
            self._identities.clear()
            self._index_by_phone.clear()
            self._index_by_connection.clear()

        self.log.info("Cleared identities=%s", counts["identities"])
        return counts

    def count(self) -> int:
        with self._lock:
            return len(self._identities)

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "identities": len(self._identities),
                "online": sum(
                    1 for i in self._identities.values() if i.live_connection is not None
                ),
                "bound_connections": len(self._index_by_connection),
            }

    def _issue_id(self) -> str:
        """Must be called with the registry lock held."""
        for _ in range(self.max_attempts):
            candidate = self.id_generator.generate()
            if candidate not in self._identities:
                return candidate
        self.log.warning("Id generation exhausted after %s attempts", self.max_attempts)
        raise IdExhausted(self.max_attempts)

    def _bind(self, connection: Hashable, ident: Identity) -> None:
        """Point `connection` at `ident`, replacing any earlier binding.

        Must be called with the registry lock held.
        """
        prev_id = self._index_by_connection.get(connection)
        if prev_id is not None and prev_id != ident.id:
            prev = self._identities.get(prev_id)
            if prev is not None and prev.live_connection == connection:
                prev.live_connection = None
        self._index_by_connection[connection] = ident.id
        ident.live_connection = connection
