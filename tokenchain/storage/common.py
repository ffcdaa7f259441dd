"""Common storage utilities shared between memory and postgres implementations.

Both backends implement :class:`RefreshTokenStore`; the session layer only
ever talks to that protocol, so the rotation state machine can be exercised
against the in-memory store without a database.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol

from tokenchain.storage.models import RefreshToken

# 64 random bytes, url-safe encoded (~86 chars). Collisions are treated as
# impossible; a duplicate surfaces as ConstraintViolation, never a retry.
TOKEN_VALUE_BYTES = 64

# Guard against corrupted link data turning a chain walk into an endless loop
MAX_CHAIN_LENGTH = 10_000


class RefreshTokenStore(Protocol):
    def create(
        self,
        user_id: str,
        ttl: timedelta,
        *,
        token_value: Optional[str] = None,
    ) -> RefreshToken: ...

    def find_by_value(self, token_value: str) -> Optional[RefreshToken]: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def revoke_and_link(self, token_id: str, replaced_by_token_value: str) -> None: ...

    def rotate(
        self, token_id: str, new_token_value: str, ttl: timedelta
    ) -> RefreshToken: ...

    def revoke_all_for_user(self, user_id: str) -> int: ...

    def find_chain_root(self, token_id: str) -> Optional[RefreshToken]: ...

    def revoke_chain_from(self, token_id: str) -> int: ...

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[RefreshToken]: ...

    def purge_expired(self, older_than: datetime) -> int: ...


def generate_token_value() -> str:
    """High-entropy opaque bearer secret, unrelated to the record id."""
    return secrets.token_urlsafe(TOKEN_VALUE_BYTES)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict-like row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def row_to_refresh_token(row: Any) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_value=row["token"],
        issued_at=ensure_aware(row["created_at"]),
        expires_at=ensure_aware(row["expires_at"]),
        revoked_at=ensure_aware(safe_row_value(row, "revoked_at")),
        replaced_by_token_value=safe_row_value(row, "replaced_by_token"),
        compromised_at=ensure_aware(safe_row_value(row, "compromised_at")),
    )
