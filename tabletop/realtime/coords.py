"""Grid coordinate labels ("A1") to and from zero-based (x, y) pairs.

Only single-letter columns are supported, so labels cover x in [0, 25].
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

_FIRST_COLUMN = ord("A")
_LAST_COLUMN = ord("Z")


def decode(label: str) -> tuple[int, int]:
    """Parse a label such as ``"C4"`` into ``(2, 3)``.

    Malformed labels never raise: a warning is logged and ``(0, 0)`` is
    returned, so callers must tolerate that fallback.
    """
    if not isinstance(label, str) or len(label) < 2:
        logger.warning("Invalid coordinate label: %r", label)
        return (0, 0)

    column = ord(label[0])
    suffix = label[1:]
    valid_row = suffix.isascii() and suffix.isdigit() and int(suffix) >= 1
    if not _FIRST_COLUMN <= column <= _LAST_COLUMN or not valid_row:
        logger.warning("Invalid coordinate label: %r", label)
        return (0, 0)

    return (column - _FIRST_COLUMN, int(suffix) - 1)


def encode(x: int, y: int) -> str:
    """Format a zero-based grid position as a label; negatives clamp to 0."""
    column = chr(_FIRST_COLUMN + max(0, x))
    row = max(0, y) + 1
    return f"{column}{row}"
