"""
Shortcode name validation.

A valid name is 1-50 characters of letters, digits, underscores and
hyphens, starts with a letter, and does not collide with a tag reserved by
the host content renderer.
"""

from __future__ import annotations

import re
from typing import Any

MAX_NAME_LENGTH = 50

RESERVED_NAMES = frozenset({
    "caption",
    "gallery",
    "playlist",
    "audio",
    "video",
    "embed",
    "wp_caption",
})

_NAME_CHARS = re.compile(r"^[a-z0-9_-]+\Z", re.IGNORECASE | re.ASCII)
_BAD_START = re.compile(r"^[0-9_-]")


def validate_shortcode_name(name: Any) -> bool:
    """Return True if ``name`` may be used as a shortcode tag."""
    if not name or not isinstance(name, str):
        return False

    if len(name) < 1 or len(name) > MAX_NAME_LENGTH:
        return False

    if not _NAME_CHARS.match(name):
        return False

    if _BAD_START.match(name):
        return False

    if name.lower() in RESERVED_NAMES:
        return False

    return True
