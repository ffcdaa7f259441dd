from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Tuple

from tokenchain.config import Settings
from tokenchain.logging import get_logger
from tokenchain.service.errors import InvalidSignatureError, TokenExpiredError
from tokenchain.storage.models import utcnow

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_HEADER = {"alg": _ALGORITHM, "typ": "JWT"}
ACCESS_TOKEN_TYPE = "access"

# Claims the codec owns; caller-supplied values for these are overwritten.
RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "token_type"})


class TokenCodec:
    """Issue and verify short-lived HS256 access tokens.

    Stateless apart from the signing secret: access tokens are never stored
    and cannot be revoked individually, they simply expire.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway
        self.clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway=timedelta(seconds=settings.access_token_leeway_seconds),
            clock=clock,
        )

    def issue(
        self, claims: Mapping[str, Any], ttl: timedelta
    ) -> Tuple[str, datetime]:
        now = self.clock()
        exp = int((now + ttl).timestamp())
        payload = {k: v for k, v in claims.items() if k not in RESERVED_CLAIMS}
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "iat": int(now.timestamp()),
                "exp": exp,
                "token_type": ACCESS_TOKEN_TYPE,
            }
        )
        return self._encode(payload), datetime.fromtimestamp(exp, tz=timezone.utc)

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid token.

        Raises:
            InvalidSignatureError: malformed, tampered, wrong issuer/audience/type
            TokenExpiredError: signature fine but ``now >= exp``
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidSignatureError("malformed access token")

        # Pin the algorithm to block alg-confusion ("none", RS256 with our secret, ...)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidSignatureError("malformed access token header")
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "access_token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignatureError("unsupported token algorithm")

        if not sig_b64.isascii():
            raise InvalidSignatureError("malformed access token signature")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignatureError("access token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidSignatureError("malformed access token payload")
        if not isinstance(payload, dict):
            raise InvalidSignatureError("malformed access token payload")
        if payload.get("iss") != self.issuer:
            raise InvalidSignatureError("access token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidSignatureError("access token audience mismatch")
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise InvalidSignatureError("not an access token")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidSignatureError("access token has no usable exp claim")
        if self.clock().timestamp() >= exp_ts + self.leeway.total_seconds():
            raise TokenExpiredError("access token expired")
        return payload

    def _encode(self, payload: dict[str, Any]) -> str:
        header_enc = self._encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)
