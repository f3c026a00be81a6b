from __future__ import annotations

import os


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_room_id(value, *, max_len: int) -> str | None:
    """Return a usable game or conversation id, or None.

    Sports feeds hand out numeric fixture ids, so integers are accepted and
    stringified. bool is an int subclass and is rejected.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None
    if max_len > 0 and len(s) > int(max_len):
        return None
    if "\n" in s or "\r" in s or "\x00" in s:
        return None
    return s


def clean_text(value) -> str | None:
    """Stripped non-empty string or None."""
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s or None
