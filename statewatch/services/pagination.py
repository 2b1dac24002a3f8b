from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.sql import ColumnElement

from statewatch.core.errors import CursorError


@dataclass(frozen=True)
class Keyset:
    # Last (created_at, id) pair seen by the client.
    created_at: datetime
    row_id: Any


@dataclass(frozen=True)
class PageInfo:
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def as_dict(self) -> dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
        }


def clamp_limit(limit: int | None, *, default: int, maximum: int) -> int:
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


def page_offset(page: int, limit: int) -> int:
    return (max(1, page) - 1) * limit


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(body: str, secret: str) -> str:
    return _b64(hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest())


def encode_cursor(payload: dict[str, Any], secret: str) -> str:
    """Serialize ``payload`` as ``<body>.<signature>``, both base64url without padding."""
    body = _b64(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{body}.{_sign(body, secret)}"


def decode_cursor(token: str, secret: str) -> dict[str, Any]:
    body, _, signature = token.partition(".")
    if not body or not signature:
        raise CursorError("Invalid cursor format")
    # The signature covers the encoded body, so it is checked before any decoding.
    if not hmac.compare_digest(_sign(body, secret).encode("utf-8"), signature.encode("utf-8")):
        raise CursorError("Invalid cursor signature")
    try:
        payload = json.loads(_unb64(body))
    except (ValueError, binascii.Error) as exc:
        raise CursorError("Invalid cursor payload") from exc
    if not isinstance(payload, dict):
        raise CursorError("Invalid cursor payload")
    return payload


def build_keyset_cursor(*, scope: str, tenant_id: str, keyset: Keyset, secret: str) -> str:
    payload = {
        "v": 1,
        "scope": scope,
        "tenant_id": tenant_id,
        "created_at": keyset.created_at.astimezone(timezone.utc).isoformat(),
        "id": keyset.row_id,
    }
    return encode_cursor(payload, secret)


def parse_keyset_cursor(*, token: str, scope: str, tenant_id: str, secret: str) -> Keyset:
    # Cursors are bound to the scope and tenant that issued them.
    payload = decode_cursor(token, secret)
    if payload.get("v") != 1:
        raise CursorError("Unsupported cursor version")
    if payload.get("scope") != scope:
        raise CursorError("Cursor scope mismatch")
    if payload.get("tenant_id") != tenant_id:
        raise CursorError("Cursor tenant mismatch")
    if "id" not in payload:
        raise CursorError("Cursor id missing")
    raw_created_at = payload.get("created_at")
    if not isinstance(raw_created_at, str):
        raise CursorError("Cursor timestamp missing")
    try:
        created_at = datetime.fromisoformat(raw_created_at)
    except ValueError as exc:
        raise CursorError("Cursor timestamp invalid") from exc
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Keyset(created_at=created_at, row_id=payload["id"])


def keyset_after(
    *,
    created_column: ColumnElement[Any],
    id_column: ColumnElement[Any],
    keyset: Keyset,
) -> ColumnElement[bool]:
    # Ascending (created_at, id) keyset: strictly after the last row returned.
    return or_(
        created_column > keyset.created_at,
        and_(created_column == keyset.created_at, id_column > keyset.row_id),
    )
