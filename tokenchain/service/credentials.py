from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenchain.logging import get_logger
from tokenchain.storage.models import UserAccount

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialVerifier(Protocol):
    """External user-lookup capability consumed by the session manager.

    Returns the account when the email/password pair is valid (active or not),
    ``None`` when the user is unknown or the password does not match.
    """

    def verify_credentials(self, email: str, password: str) -> Optional[UserAccount]: ...


class AccountLookup(Protocol):
    """Account state read on every refresh; login time is written back on login."""

    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def record_login(self, user_id: str) -> None: ...


class UserCredentialStore(AccountLookup, Protocol):
    def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...


class PasswordVerifier:
    """Argon2id credential check against a store's user and password records."""

    def __init__(self, store: UserCredentialStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash("tokenchain-timing-equalizer")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_credentials(self, email: str, password: str) -> Optional[UserAccount]:
        user = self.store.get_user_by_email(email)
        record = self.store.get_password_record(user.id) if user else None
        if not user or not record:
            self._burn_hash(password)
            if user:
                logger.warning("password_record_missing", user_id=user.id)
            return None
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return None
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return None
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return None
        return user

    def _burn_hash(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass
