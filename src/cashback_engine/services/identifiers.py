"""Click identifier generation.

Identifiers look like ``CLID-7KQ2M9XD4HTW``: a fixed prefix that is easy to
spot in partner dashboards and logs, followed by 12 symbols drawn from an
alphabet without look-alike characters (0/O, 1/I). That gives 60 bits of
randomness per identifier.
"""

from __future__ import annotations

import shortuuid

CLICK_ID_PREFIX = "CLID-"
CLICK_ID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
CLICK_ID_LENGTH = 12

_generator = shortuuid.ShortUUID(alphabet=CLICK_ID_ALPHABET)


def generate_click_id() -> str:
    return f"{CLICK_ID_PREFIX}{_generator.random(length=CLICK_ID_LENGTH)}"


def looks_like_click_id(value: str | None) -> bool:
    if not value or not value.startswith(CLICK_ID_PREFIX):
        return False
    suffix = value[len(CLICK_ID_PREFIX):]
    return len(suffix) == CLICK_ID_LENGTH and all(ch in CLICK_ID_ALPHABET for ch in suffix)


__all__ = ["generate_click_id", "looks_like_click_id", "CLICK_ID_PREFIX"]
