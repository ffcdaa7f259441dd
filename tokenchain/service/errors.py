from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` the HTTP layer can put in its error envelope:
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session is no longer usable; the client must log in again (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class TokenVerificationError(AuthenticationError):
    """An access token could not be accepted."""
    pass


class InvalidSignatureError(TokenVerificationError):
    """Malformed, tampered, or foreign access token."""
    pass


class TokenExpiredError(TokenVerificationError):
    """Access token is past its ``exp`` claim."""
    pass


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "TokenVerificationError",
    "InvalidSignatureError",
    "TokenExpiredError",
]
