from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenState(str, Enum):
    """State of a refresh token as observed by a refresh attempt."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED_BY_ROTATION = "revoked_by_rotation"
    REVOKED_OTHER = "revoked_other"


@dataclass
class UserAccount:
    id: str
    email: str
    name: Optional[str] = None
    is_active: bool = True
    is_super_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_value: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by_token_value: Optional[str] = None
    # Set on every member of a chain once reuse of any member is detected.
    compromised_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_value: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_value=token_value,
            issued_at=issued,
            expires_at=issued + ttl,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        # Inclusive boundary: a token is dead at exactly expires_at.
        return (now or utcnow()) >= self.expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def state(self, now: Optional[datetime] = None) -> TokenState:
        """Classify the token; expiry wins over any revocation state."""
        if self.is_expired(now):
            return TokenState.EXPIRED
        if not self.is_revoked:
            return TokenState.ACTIVE
        if self.replaced_by_token_value:
            return TokenState.REVOKED_BY_ROTATION
        return TokenState.REVOKED_OTHER

    def copy(self) -> "RefreshToken":
        return replace(self)
