"""Failure kinds reported back to the calling connection."""

from __future__ import annotations

from .constants import (
    E_ALREADY_REGISTERED,
    E_BAD_FIELD,
    E_ID_EXHAUSTED,
    E_INVALID_CREDENTIAL,
    E_MISSING_FIELD,
    E_NOT_FOUND,
    E_TOO_LARGE,
)


class RelayError(Exception):
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MissingField(RelayError):
    code = E_MISSING_FIELD

    def __init__(self, field: str) -> None:
        super().__init__(f"missing {field}")
        self.field = field


class AlreadyRegistered(RelayError):
    code = E_ALREADY_REGISTERED

    def __init__(self, existing_id: str) -> None:
        super().__init__("user already exists")
        self.existing_id = existing_id


class IdExhausted(RelayError):
    code = E_ID_EXHAUSTED

    def __init__(self, attempts: int) -> None:
        super().__init__(f"failed to generate unique id after {attempts} attempts")
        self.attempts = attempts


class NotFound(RelayError):
    code = E_NOT_FOUND

    def __init__(self, what: str = "user") -> None:
        super().__init__(f"{what} not found")


class InvalidCredential(RelayError):
    code = E_INVALID_CREDENTIAL

    def __init__(self) -> None:
        super().__init__("invalid password")


class BadField(RelayError):
    code = E_BAD_FIELD

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"invalid {field}: {reason}")
        self.field = field


class PayloadTooLarge(RelayError):
    code = E_TOO_LARGE

    def __init__(self, size: int) -> None:
        super().__init__(f"message too large to deliver ({size} bytes)")
        self.size = size
