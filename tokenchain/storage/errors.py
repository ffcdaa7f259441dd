from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AlreadyRevoked(Exception):
    """The conditional revoke found ``revoked_at`` already set (or no such row).

    Raised by ``revoke_and_link`` and ``rotate`` when another writer got there
    first; the caller must treat the presented token as reused.
    """

    def __init__(self, token_id: str):
        super().__init__(f"refresh token {token_id} is already revoked")
        self.token_id = token_id


__all__ = ["ConstraintViolation", "AlreadyRevoked"]
