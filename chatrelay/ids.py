from __future__ import annotations

import secrets

from .constants import ID_ALPHABET, ID_LENGTH


class IdGenerator:
    """Issues short, human-shareable identifiers.

    Identifiers are drawn uniformly from a 32 symbol alphabet without the
    easily confused characters 0/O and 1/I. Uniqueness is not checked here;
    IdentityRegistry retries on collision.
    """

    def __init__(self, length: int = ID_LENGTH, alphabet: str = ID_ALPHABET) -> None:
        if length <= 0:
            raise ValueError("id length must be positive")
        if not alphabet:
            raise ValueError("id alphabet must not be empty")
        self.length = int(length)
        self.alphabet = alphabet

    def generate(self) -> str:
        return "".join(secrets.choice(self.alphabet) for _ in range(self.length))
