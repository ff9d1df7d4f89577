from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from taskvault.config import Settings
from taskvault.logging import get_logger
from taskvault.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}

REFRESH_TOKEN_BYTES = 32


@dataclass(frozen=True)
class RefreshToken:
    """A freshly minted refresh token; ``value`` is only ever seen once."""

    value: str
    digest: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def hash_refresh_token(token: str) -> str:
    """Deterministic SHA-256 hex digest used to look refresh tokens up."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """Signs access tokens and mints opaque refresh tokens.

    Access tokens are compact JWS strings carrying ``{"id", "iat", "exp"}``
    signed with HMAC. They hold no server-side state, so rotating
    ``JWT_SECRET`` invalidates every outstanding token at once.
    """

    def __init__(self, settings: Settings) -> None:
        if not settings.jwt_secret:
            raise ValueError("TokenIssuer requires a JWT secret")
        self._secret = settings.jwt_secret.encode("utf-8")
        self._algorithm = settings.jwt_algorithm
        self._digest = _DIGESTS[self._algorithm]
        self._access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self._refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode("utf-8"), self._digest).digest()
        )

    def issue_access_token(self, user_id: str, *, now: Optional[datetime] = None) -> str:
        issued_at = now or self._now()
        payload = {
            "id": user_id,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self._access_ttl).timestamp()),
        }
        header = {"alg": self._algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _load_segment(self, segment: str) -> Any:
        try:
            return json.loads(self._decode_segment(segment))
        except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError) as exc:
            raise InvalidTokenError() from exc

    def decode_access_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> dict[str, Any]:
        """Verify signature and expiry and return the claims.

        Nothing inside the token is parsed until the signature checks out.

        Raises:
            InvalidTokenError: malformed token, unexpected algorithm, bad
                signature or missing claims.
            TokenExpiredError: signature is valid but ``exp`` has passed.
        """
        parts = token.split(".") if token else []
        if len(parts) != 3:
            raise InvalidTokenError()
        header_b64, payload_b64, sig_b64 = parts

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()

        header = self._load_segment(header_b64)
        alg = header.get("alg") if isinstance(header, dict) else None
        # only the configured algorithm is accepted, never "none" or a downgrade
        if alg != self._algorithm:
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError()

        payload = self._load_segment(payload_b64)
        if not isinstance(payload, dict) or not payload.get("id"):
            raise InvalidTokenError()
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidTokenError()
        current = now or self._now()
        if exp <= current.timestamp():
            raise TokenExpiredError()
        return payload

    def issue_refresh_token(self, *, now: Optional[datetime] = None) -> RefreshToken:
        value = secrets.token_hex(REFRESH_TOKEN_BYTES)
        return RefreshToken(
            value=value,
            digest=hash_refresh_token(value),
            expires_at=(now or self._now()) + self._refresh_ttl,
        )
