from __future__ import annotations

import os


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_phone(value) -> str | None:
    """Return the `+<digits>` form of a phone number, or None if it has no digits."""
    if not isinstance(value, str):
        return None

    digits = "".join(ch for ch in value if ch.isascii() and ch.isdigit())
    if not digits:
        return None
    return "+" + digits


def normalize_name(value, *, max_chars: int = 64) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Names end up in client lists and logs; refuse control characters.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def channel_id_for(user_a: str, user_b: str) -> str:
    """Channel id both parties of a two-party chat compute independently."""
    return "_".join(sorted((user_a, user_b)))
