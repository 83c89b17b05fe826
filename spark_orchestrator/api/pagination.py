from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Keyset position: the (created_at, id) of the last item already returned."""

    created_at: float
    item_id: str

    def as_key(self) -> tuple[float, str]:
        return (self.created_at, self.item_id)


def encode_cursor(cursor: Cursor) -> str:
    raw = json.dumps({"t": cursor.created_at, "id": cursor.item_id}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str) -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        obj = json.loads(base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8"))
        return Cursor(created_at=float(obj["t"]), item_id=str(obj["id"]))
    except (ValueError, KeyError, TypeError) as e:
        raise CursorError("Invalid cursor") from e


def encode_page(page: dict[str, Any]) -> dict[str, Any]:
    """Replace a store page's raw `next_cursor` key tuple with an opaque token."""
    key = page.get("next_cursor")
    if key is not None:
        created_at, item_id = key
        page["next_cursor"] = encode_cursor(Cursor(created_at=float(created_at), item_id=str(item_id)))
    return page
