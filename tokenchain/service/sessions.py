"""Login, refresh-token rotation with reuse detection, and logout.

Every refresh token belongs to a rotation chain rooted at the token issued by
``login``. A successful refresh revokes the presented token, links it to a
freshly minted successor and returns a new token pair. Presenting a token
that was already rotated means either a replay or a lost race between two
clients; the two cannot be told apart, so the whole chain is revoked and the
caller has to log in again.

Expected failures come back as :class:`SessionFailure` values on the result,
not as exceptions. Storage errors that are not part of the state machine
propagate unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from tokenchain.config import Settings
from tokenchain.logging import get_logger, redact_token
from tokenchain.service.credentials import AccountLookup, CredentialVerifier
from tokenchain.service.errors import (
    AuthenticationError,
    ForbiddenError,
    ServiceError,
    SessionExpiredError,
    TokenVerificationError,
)
from tokenchain.service.tokens import TokenCodec
from tokenchain.storage.common import RefreshTokenStore, generate_token_value
from tokenchain.storage.errors import AlreadyRevoked
from tokenchain.storage.models import RefreshToken, TokenState, UserAccount, utcnow

logger = get_logger(__name__)

_SESSION_EXPIRED_MESSAGE = "session expired, please log in again"
_INVALID_LOGIN_MESSAGE = "invalid email or password"


class SessionFailure(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INACTIVE_ACCOUNT = "inactive_account"
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    REVOKED_TOKEN = "revoked_token"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"

    def to_service_error(self) -> ServiceError:
        """Map to the error shown at the API boundary.

        Refresh failures all collapse into one generic 401 so callers learn
        nothing about which token state they hit.
        """
        if self is SessionFailure.INVALID_CREDENTIALS:
            return AuthenticationError(_INVALID_LOGIN_MESSAGE)
        if self is SessionFailure.INACTIVE_ACCOUNT:
            return ForbiddenError("account is inactive")
        return SessionExpiredError(_SESSION_EXPIRED_MESSAGE)


@dataclass(frozen=True)
class TokenPair:
    user_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
            "token_type": self.token_type,
        }


@dataclass(frozen=True)
class SessionResult:
    tokens: Optional[TokenPair] = None
    error: Optional[SessionFailure] = None

    @property
    def ok(self) -> bool:
        return self.tokens is not None

    @classmethod
    def success(cls, tokens: TokenPair) -> "SessionResult":
        return cls(tokens=tokens)

    @classmethod
    def failure(cls, error: SessionFailure) -> "SessionResult":
        return cls(error=error)

    def unwrap(self) -> TokenPair:
        """Return the token pair or raise the boundary-safe service error."""
        if self.tokens is None:
            raise (self.error or SessionFailure.INVALID_TOKEN).to_service_error()
        return self.tokens


LoginResult = SessionResult
RefreshResult = SessionResult


class SessionManager:
    """Orchestrates the token codec and refresh token store."""

    def __init__(
        self,
        store: RefreshTokenStore,
        codec: TokenCodec,
        credentials: CredentialVerifier,
        *,
        accounts: AccountLookup,
        access_ttl: timedelta = timedelta(minutes=60),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.credentials = credentials
        self.accounts = accounts
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock = clock
        self.logger = logger

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: RefreshTokenStore,
        codec: TokenCodec,
        credentials: CredentialVerifier,
        *,
        accounts: AccountLookup,
        clock: Callable[[], datetime] = utcnow,
    ) -> "SessionManager":
        return cls(
            store,
            codec,
            credentials,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            accounts=accounts,
            clock=clock,
        )

    def login(self, email: str, password: str) -> LoginResult:
        user = self.credentials.verify_credentials(email, password)
        if user is None:
            self.logger.warning("login_failed", reason="invalid_credentials")
            return SessionResult.failure(SessionFailure.INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.warning("login_failed", reason="inactive_account", user_id=user.id)
            return SessionResult.failure(SessionFailure.INACTIVE_ACCOUNT)

        # Other sessions of the same user are left alone; each login roots a new chain
        root = self.store.create(user.id, self.refresh_ttl)
        self.accounts.record_login(user.id)
        tokens = self._token_pair(user, root)
        self.logger.info("login_succeeded", user_id=user.id, refresh_id=root.id)
        return SessionResult.success(tokens)

    def refresh(self, presented_token: str) -> RefreshResult:
        token = self.store.find_by_value(presented_token) if presented_token else None
        if token is None:
            self.logger.warning(
                "refresh_rejected",
                reason="refresh_token_not_found",
                fingerprint=redact_token(presented_token),
            )
            return SessionResult.failure(SessionFailure.INVALID_TOKEN)

        rejected = self._reject_inactive_state(token)
        if rejected is not None:
            return rejected

        user = self.accounts.get_user(token.user_id)
        if user is None or not user.is_active:
            revoked = self.store.revoke_all_for_user(token.user_id)
            self.logger.warning(
                "refresh_rejected",
                reason="account_unavailable",
                user_id=token.user_id,
                refresh_id=token.id,
                revoked=revoked,
            )
            return SessionResult.failure(SessionFailure.REVOKED_TOKEN)

        # Parent is linked to exactly this value by the compare-and-set
        candidate = generate_token_value()
        try:
            child = self.store.rotate(token.id, candidate, self.refresh_ttl)
        except AlreadyRevoked:
            # Another request revoked this token after our read
            current = self.store.find_by_value(presented_token) or token
            self.logger.warning(
                "refresh_rotation_conflict",
                user_id=token.user_id,
                refresh_id=token.id,
            )
            return self._reject_inactive_state(
                current, race_suspected=True
            ) or SessionResult.failure(SessionFailure.REVOKED_TOKEN)

        tokens = self._token_pair(user, child)
        self.logger.info(
            "refresh_rotated",
            user_id=token.user_id,
            refresh_id=token.id,
            successor_id=child.id,
        )
        return SessionResult.success(tokens)

    def logout(self, user_id: str) -> int:
        """Revoke every active refresh token of the user; safe to repeat."""
        revoked = self.store.revoke_all_for_user(user_id)
        self.logger.info("logout", user_id=user_id, revoked=revoked)
        return revoked

    def authenticate(self, access_token: str) -> Optional[dict[str, Any]]:
        """Claims of a valid access token, or ``None``."""
        try:
            return self.codec.verify(access_token)
        except TokenVerificationError as exc:
            self.logger.info("access_token_rejected", reason=exc.message)
            return None

    def _reject_inactive_state(
        self, token: RefreshToken, *, race_suspected: bool = False
    ) -> Optional[SessionResult]:
        """Handle every non-active state; ``None`` means the token is active.

        Expiry is checked first: an expired token is rejected without touching
        storage even if it was also revoked.
        """
        state = token.state(self.clock())
        if state is TokenState.ACTIVE:
            return None
        if state is TokenState.EXPIRED:
            self.logger.info(
                "refresh_rejected",
                reason="refresh_token_expired",
                user_id=token.user_id,
                refresh_id=token.id,
            )
            return SessionResult.failure(SessionFailure.EXPIRED_TOKEN)
        if state is TokenState.REVOKED_BY_ROTATION:
            return self._revoke_compromised_chain(token, race_suspected=race_suspected)
        self.logger.info(
            "refresh_rejected",
            reason="refresh_token_revoked",
            user_id=token.user_id,
            refresh_id=token.id,
        )
        return SessionResult.failure(SessionFailure.REVOKED_TOKEN)

    def _revoke_compromised_chain(
        self, token: RefreshToken, *, race_suspected: bool
    ) -> SessionResult:
        root = self.store.find_chain_root(token.id) or token
        revoked = self.store.revoke_chain_from(root.id)
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=token.user_id,
            refresh_id=token.id,
            root_id=root.id,
            revoked=revoked,
            race_suspected=race_suspected,
        )
        return SessionResult.failure(SessionFailure.TOKEN_REUSE_DETECTED)

    def _token_pair(
        self, user: UserAccount, refresh: RefreshToken
    ) -> TokenPair:
        # Same claim set on login and on every rotation
        claims: dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "name": user.name,
            "is_super_admin": user.is_super_admin,
        }
        access_token, access_expires_at = self.codec.issue(claims, self.access_ttl)
        return TokenPair(
            user_id=user.id,
            access_token=access_token,
            refresh_token=refresh.token_value,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh.expires_at,
        )
