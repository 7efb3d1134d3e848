"""
Opaque pagination cursors for inbox queries.

A cursor encodes the (created_at, item_id) of the last item on a page as
URL-safe base64 of "{created_at}|{item_id}" without padding. Callers must
treat it as opaque.
"""

from __future__ import annotations

import base64
import binascii

from ..errors import ValidationError


def encode_cursor(created_at: int, item_id: str) -> str:
    raw = f"{created_at}|{item_id}".encode()
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[int, str]:
    """Decode a cursor produced by encode_cursor.

    Raises:
        ValidationError: If the cursor is not a valid inbox cursor
    """
    token = cursor.strip()
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        created_at, item_id = raw.split("|", 1)
        if not item_id:
            raise ValueError("empty item id")
        return int(created_at), item_id
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValidationError.from_errors([f"cursor is invalid: {e}"]) from e
