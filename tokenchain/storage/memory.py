from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from tokenchain.logging import get_logger
from tokenchain.storage.common import (
    MAX_CHAIN_LENGTH,
    ensure_aware,
    generate_token_value,
    generate_uuid,
)
from tokenchain.storage.errors import AlreadyRevoked, ConstraintViolation
from tokenchain.storage.models import RefreshToken, UserAccount, utcnow


class MemoryStore:
    """In-process backing store for tests and single-node development.

    A single re-entrant lock stands in for the database's row-level atomicity:
    every conditional write (``revoke_and_link``, ``rotate``) runs its check and
    its update under one lock hold. When ``fs_root`` is given, state is
    mirrored to ``<fs_root>/state/memory_store.json`` after each mutation.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock
        self.users: Dict[str, UserAccount] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # token_value -> id, the unique index
        self._by_value: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        is_active: bool = True,
        is_super_admin: bool = False,
    ) -> UserAccount:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserAccount(
                id=generate_uuid(),
                email=normalized,
                name=name,
                is_active=is_active,
                is_super_admin=is_super_admin,
                created_at=self.clock(),
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login = self.clock()
            self._persist_state()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def create(
        self,
        user_id: str,
        ttl: timedelta,
        *,
        token_value: Optional[str] = None,
    ) -> RefreshToken:
        with self._data_lock:
            token = self._insert_locked(user_id, ttl, token_value or generate_token_value())
            self._persist_state()
            return token.copy()

    def find_by_value(self, token_value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._by_value.get(token_value)
            if token_id is None:
                return None
            return self.refresh_tokens[token_id].copy()

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            return token.copy() if token else None

    def revoke_and_link(self, token_id: str, replaced_by_token_value: str) -> None:
        with self._data_lock:
            self._revoke_and_link_locked(token_id, replaced_by_token_value)
            self._persist_state()

    def rotate(
        self, token_id: str, new_token_value: str, ttl: timedelta
    ) -> RefreshToken:
        with self._data_lock:
            parent = self.refresh_tokens.get(token_id)
            if parent is None:
                raise AlreadyRevoked(token_id)
            if new_token_value in self._by_value:
                raise ConstraintViolation(
                    "refresh token value already exists", {"field": "token"}
                )
            self._revoke_and_link_locked(token_id, new_token_value)
            child = self._insert_locked(parent.user_id, ttl, new_token_value)
            self._persist_state()
            return child.copy()

    def revoke_all_for_user(self, user_id: str) -> int:
        with self._data_lock:
            now = self.clock()
            count = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and token.is_active(now):
                    token.revoked_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def find_chain_root(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None:
                return None
            parents = {
                t.replaced_by_token_value: t
                for t in self.refresh_tokens.values()
                if t.replaced_by_token_value
            }
            for _ in range(MAX_CHAIN_LENGTH):
                parent = parents.get(current.token_value)
                if parent is None:
                    break
                current = parent
            return current.copy()

    def revoke_chain_from(self, token_id: str) -> int:
        with self._data_lock:
            now = self.clock()
            current = self.refresh_tokens.get(token_id)
            marked = 0
            steps = 0
            while current is not None and steps < MAX_CHAIN_LENGTH:
                steps += 1
                if current.revoked_at is None:
                    current.revoked_at = now
                if current.compromised_at is None:
                    current.compromised_at = now
                    marked += 1
                next_value = current.replaced_by_token_value
                next_id = self._by_value.get(next_value) if next_value else None
                current = self.refresh_tokens.get(next_id) if next_id else None
            if marked:
                self._persist_state()
            return marked

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[RefreshToken]:
        with self._data_lock:
            now = self.clock()
            tokens = [
                t.copy()
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and (not active_only or t.is_active(now))
            ]
            return sorted(tokens, key=lambda t: t.issued_at, reverse=True)

    def purge_expired(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [
                t for t in self.refresh_tokens.values() if t.expires_at < older_than
            ]
            for token in stale:
                self.refresh_tokens.pop(token.id, None)
                self._by_value.pop(token.token_value, None)
            if stale:
                self._persist_state()
            return len(stale)

    def _insert_locked(
        self, user_id: str, ttl: timedelta, token_value: str
    ) -> RefreshToken:
        if user_id not in self.users:
            raise ConstraintViolation("refresh token owner missing", {"user_id": user_id})
        if token_value in self._by_value:
            raise ConstraintViolation(
                "refresh token value already exists", {"field": "token"}
            )
        token = RefreshToken.new(user_id, token_value, ttl, now=self.clock())
        self.refresh_tokens[token.id] = token
        self._by_value[token_value] = token.id
        return token

    def _revoke_and_link_locked(self, token_id: str, replaced_by_token_value: str) -> None:
        token = self.refresh_tokens.get(token_id)
        if token is None or token.revoked_at is not None:
            raise AlreadyRevoked(token_id)
        token.revoked_at = self.clock()
        token.replaced_by_token_value = replaced_by_token_value

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_aware(datetime.fromisoformat(raw)) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self._by_value = {t.token_value: t.id for t in self.refresh_tokens.values()}
        self.logger.debug(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: UserAccount) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "is_active": user.is_active,
            "is_super_admin": user.is_super_admin,
            "created_at": self._serialize_datetime(user.created_at),
            "last_login": self._serialize_datetime(user.last_login),
        }

    def _deserialize_user(self, data: dict) -> UserAccount:
        return UserAccount(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            is_active=data.get("is_active", True),
            is_super_admin=data.get("is_super_admin", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_login=self._deserialize_datetime(data.get("last_login")),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token": token.token_value,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "replaced_by_token": token.replaced_by_token_value,
            "compromised_at": self._serialize_datetime(token.compromised_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token_value=data["token"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by_token_value=data.get("replaced_by_token"),
            compromised_at=self._deserialize_datetime(data.get("compromised_at")),
        )
