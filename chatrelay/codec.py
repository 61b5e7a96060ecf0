from __future__ import annotations

import cbor2

from .envelope import validate_envelope


class DecodeError(ValueError):
    pass


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    try:
        return cbor2.loads(b)
    except cbor2.CBORDecodeError as e:
        raise DecodeError(f"invalid CBOR: {e}") from e


def decode_envelope(b: bytes) -> dict:
    """Decode one packet into a validated envelope.

    Raises DecodeError for bad CBOR, and TypeError/ValueError for a
    well-formed value that is not a valid envelope.
    """
    if not b:
        raise DecodeError("empty packet")
    env = decode(b)
    validate_envelope(env)
    return env
