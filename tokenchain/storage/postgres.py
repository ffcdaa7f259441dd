from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenchain.logging import get_logger
from tokenchain.storage.common import (
    MAX_CHAIN_LENGTH,
    ensure_aware,
    generate_token_value,
    row_to_refresh_token,
    safe_row_value,
)
from tokenchain.storage.errors import AlreadyRevoked, ConstraintViolation
from tokenchain.storage.models import RefreshToken, UserAccount, utcnow

_TOKEN_COLUMNS = (
    "id, user_id, token, created_at, expires_at, revoked_at, replaced_by_token, compromised_at"
)

_USER_COLUMNS = "id::text AS id, email, name, is_active, is_super_admin, created_at, last_login"

# Walks forward through already-marked members so a later pass reaches new children
_REVOKE_CHAIN_SQL = """
WITH RECURSIVE chain AS (
    SELECT id, replaced_by_token, 0 AS depth
    FROM refresh_tokens WHERE id = %s
    UNION ALL
    SELECT c.id, c.replaced_by_token, chain.depth + 1
    FROM refresh_tokens c
    JOIN chain ON c.token = chain.replaced_by_token
    WHERE chain.depth < %s
)
UPDATE refresh_tokens t
SET revoked_at = COALESCE(t.revoked_at, %s),
    compromised_at = %s
FROM chain
WHERE t.id = chain.id AND t.compromised_at IS NULL
"""


class PostgresStore:
    """Postgres-backed refresh token store.

    Every state transition the rotation algorithm depends on is a single
    conditional statement (``... WHERE revoked_at IS NULL``), so replicas of
    the service coordinate through the database alone.
    """

    def __init__(
        self,
        dsn: str,
        *,
        clock: Callable[[], datetime] = utcnow,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.clock = clock
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``refresh_tokens`` table and its indexes if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_tokens (
                    id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token VARCHAR(500) NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    expires_at TIMESTAMPTZ NOT NULL,
                    revoked_at TIMESTAMPTZ,
                    replaced_by_token VARCHAR(500)
                )
                """
            )
            # Older deployments predate the audit column
            conn.execute(
                "ALTER TABLE refresh_tokens ADD COLUMN IF NOT EXISTS compromised_at TIMESTAMPTZ"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ix_refresh_tokens_token ON refresh_tokens (token)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_refresh_tokens_user_id ON refresh_tokens (user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_refresh_tokens_replaced_by ON refresh_tokens (replaced_by_token)"
            )

    # users (read side of the external user table)
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id::text = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id::text = %s", (user_id,)
            ).fetchone()
        password_hash = safe_row_value(row, "password_hash")
        if not password_hash:
            return None
        return password_hash, self._infer_password_algo(password_hash)

    def record_login(self, user_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE users SET last_login = %s WHERE id::text = %s",
                    (self.clock(), user_id),
                )
        except errors.Error as exc:
            # last_login is informational; a failed write must not fail the login
            self.logger.warning("record_login_failed", user_id=user_id, error=str(exc))

    @staticmethod
    def _infer_password_algo(password_hash: str) -> str:
        if password_hash.startswith("$argon2id$"):
            return "argon2id"
        if password_hash.startswith(("$2a$", "$2b$", "$2y$")):
            return "bcrypt"
        return "unknown"

    @staticmethod
    def _row_to_user(row: dict) -> UserAccount:
        return UserAccount(
            id=str(row["id"]),
            email=row["email"],
            name=safe_row_value(row, "name"),
            is_active=safe_row_value(row, "is_active", True),
            is_super_admin=safe_row_value(row, "is_super_admin", False),
            created_at=ensure_aware(safe_row_value(row, "created_at", utcnow())),
            last_login=ensure_aware(safe_row_value(row, "last_login")),
        )

    # refresh tokens
    def create(
        self,
        user_id: str,
        ttl: timedelta,
        *,
        token_value: Optional[str] = None,
    ) -> RefreshToken:
        token = RefreshToken.new(
            user_id, token_value or generate_token_value(), ttl, now=self.clock()
        )
        with self._connect() as conn:
            self._insert(conn, token)
        return token

    def _insert(self, conn, token: RefreshToken) -> None:
        try:
            conn.execute(
                """
                INSERT INTO refresh_tokens (id, user_id, token, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.token_value,
                    token.issued_at,
                    token.expires_at,
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token value already exists", {"field": "token"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token owner missing", {"user_id": token.user_id}
            )

    def find_by_value(self, token_value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM refresh_tokens WHERE token = %s",
                (token_value,),
            ).fetchone()
        return row_to_refresh_token(row) if row else None

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM refresh_tokens WHERE id = %s",
                (token_id,),
            ).fetchone()
        return row_to_refresh_token(row) if row else None

    def revoke_and_link(self, token_id: str, replaced_by_token_value: str) -> None:
        with self._connect() as conn:
            self._conditional_revoke(conn, token_id, replaced_by_token_value)

    def _conditional_revoke(self, conn, token_id: str, replaced_by_token_value: str) -> dict:
        # Single statement compare-and-set; never a read followed by a write
        row = conn.execute(
            """
            UPDATE refresh_tokens
            SET revoked_at = %s, replaced_by_token = %s
            WHERE id = %s AND revoked_at IS NULL
            RETURNING id, user_id
            """,
            (self.clock(), replaced_by_token_value, token_id),
        ).fetchone()
        if not row:
            raise AlreadyRevoked(token_id)
        return row

    def rotate(
        self, token_id: str, new_token_value: str, ttl: timedelta
    ) -> RefreshToken:
        with self._connect() as conn:
            with conn.transaction():
                row = self._conditional_revoke(conn, token_id, new_token_value)
                child = RefreshToken.new(
                    str(row["user_id"]), new_token_value, ttl, now=self.clock()
                )
                self._insert(conn, child)
        return child

    def revoke_all_for_user(self, user_id: str) -> int:
        now = self.clock()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens
                SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, user_id, now),
            )
            return max(cur.rowcount, 0)

    def find_chain_root(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                WITH RECURSIVE ancestors AS (
                    SELECT {_TOKEN_COLUMNS}, 0 AS depth
                    FROM refresh_tokens WHERE id = %s
                    UNION ALL
                    SELECT p.id, p.user_id, p.token, p.created_at, p.expires_at,
                           p.revoked_at, p.replaced_by_token, p.compromised_at, a.depth + 1
                    FROM refresh_tokens p
                    JOIN ancestors a ON p.replaced_by_token = a.token
                    WHERE a.depth < %s
                )
                SELECT * FROM ancestors ORDER BY depth DESC LIMIT 1
                """,
                (token_id, MAX_CHAIN_LENGTH),
            ).fetchone()
        return row_to_refresh_token(row) if row else None

    def revoke_chain_from(self, token_id: str) -> int:
        """Mark every member reachable from ``token_id`` compromised.

        Each statement only sees rows committed when it started, so a child
        committed by a rotation that held a chain row lock is missed by the
        pass that waited on it. Passes repeat until one marks nothing.
        """
        now = self.clock()
        marked = 0
        with self._connect() as conn:
            with conn.transaction():
                for _ in range(MAX_CHAIN_LENGTH):
                    cur = conn.execute(
                        _REVOKE_CHAIN_SQL,
                        (token_id, MAX_CHAIN_LENGTH, now, now),
                    )
                    if cur.rowcount <= 0:
                        break
                    marked += cur.rowcount
        return marked

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[RefreshToken]:
        query = f"SELECT {_TOKEN_COLUMNS} FROM refresh_tokens WHERE user_id = %s"
        params: list = [user_id]
        if active_only:
            query += " AND revoked_at IS NULL AND expires_at > %s"
            params.append(self.clock())
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [row_to_refresh_token(row) for row in rows]

    def purge_expired(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < %s", (older_than,)
            )
            return max(cur.rowcount, 0)

    def close(self) -> None:
        self.pool.close()
