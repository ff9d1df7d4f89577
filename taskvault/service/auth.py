from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from taskvault.config import CredentialSourceOrder, Settings
from taskvault.logging import get_logger
from taskvault.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    MissingRefreshTokenError,
    TokenExpiredError,
)
from taskvault.service.passwords import PasswordService
from taskvault.service.tokens import TokenIssuer, TokenPair, hash_refresh_token
from taskvault.storage.base import CredentialStore
from taskvault.storage.models import User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """Identity of the caller, as resolved from a verified access token."""

    user_id: str
    name: str
    email: str


class AuthService:
    """Registration, login, refresh-token rotation and request authentication.

    Store and hashing calls are blocking, so they run in worker threads and
    the event loop only suspends while waiting on them.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        tokens: Optional[TokenIssuer] = None,
        passwords: Optional[PasswordService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens or TokenIssuer(settings)
        self.passwords = passwords or PasswordService(settings)
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    async def register(
        self, name: str, email: str, password: str
    ) -> Tuple[User, TokenPair]:
        existing = await asyncio.to_thread(self.store.get_user_by_email, email)
        if existing:
            raise ConflictError("User already exists", detail={"field": "email"})
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        # a concurrent signup can still win the race; the store's
        # ConstraintViolation then surfaces as DUPLICATE_VALUE
        user = await asyncio.to_thread(
            self.store.create_user, name, email, password_hash
        )
        tokens = await self._issue_tokens(user)
        self.logger.info("user_registered", user_id=user.id)
        return user, tokens

    async def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if not user:
            # unknown emails cost one verify, same as known ones
            await asyncio.to_thread(self._verify_dummy, password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(self._verify_password, user.id, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()
        tokens = await self._issue_tokens(user)
        self.logger.info("user_logged_in", user_id=user.id)
        return user, tokens

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[User, TokenPair]:
        """Exchange a refresh token for a new pair; the old token dies here."""
        if not refresh_token:
            raise MissingRefreshTokenError()
        digest = hash_refresh_token(refresh_token)
        now = self._now()
        user = await asyncio.to_thread(self.store.find_user_by_refresh_token, digest, now)
        if not user:
            self.logger.info("refresh_token_rejected")
            raise InvalidRefreshTokenError()

        replacement = self.tokens.issue_refresh_token(now=now)
        rotated = await asyncio.to_thread(
            self.store.rotate_refresh_token,
            user.id,
            digest,
            replacement.digest,
            replacement.expires_at,
            now,
        )
        if not rotated:
            self.logger.warning("refresh_token_rotation_lost", user_id=user.id)
            raise InvalidRefreshTokenError()

        access_token = self.tokens.issue_access_token(user.id, now=now)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return user, TokenPair(access_token=access_token, refresh_token=replacement.value)

    async def logout(self, user_id: str) -> None:
        await asyncio.to_thread(self.store.clear_refresh_token, user_id)
        self.logger.info("user_logged_out", user_id=user_id)

    async def get_profile(self, user_id: str) -> User:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if not user:
            raise AuthenticationError("User not found")
        return user

    async def authenticate(
        self, cookie_token: Optional[str], authorization: Optional[str]
    ) -> AuthContext:
        """Resolve the caller from the ``token`` cookie or Authorization header.

        Every rejection reaches the client as the same 401; the reason is
        only recorded in the log.
        """
        token = self._extract_token(cookie_token, authorization)
        if not token:
            raise AuthenticationError()
        try:
            payload = self.tokens.decode_access_token(token)
        except TokenExpiredError as exc:
            self.logger.info("access_token_expired")
            raise AuthenticationError() from exc
        except InvalidTokenError as exc:
            self.logger.warning("access_token_invalid")
            raise AuthenticationError() from exc

        user = await asyncio.to_thread(self.store.get_user, str(payload["id"]))
        if not user:
            self.logger.warning("access_token_user_missing", user_id=payload["id"])
            raise AuthenticationError("User not found")
        return AuthContext(user_id=user.id, name=user.name, email=user.email)

    def _extract_token(
        self, cookie_token: Optional[str], authorization: Optional[str]
    ) -> Optional[str]:
        header_token = self._extract_bearer(authorization)
        cookie_token = (cookie_token or "").strip() or None
        # logout overwrites the cookie with this placeholder
        if cookie_token == "none":
            cookie_token = None
        if self.settings.credential_source_order == CredentialSourceOrder.HEADER_FIRST:
            return header_token or cookie_token
        return cookie_token or header_token

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        """Accept both ``Bearer <token>`` and a bare token."""
        if not header:
            return None
        value = header.strip()
        if value.lower().startswith("bearer"):
            parts = value.split(None, 1)
            if parts[0].lower() == "bearer":
                return parts[1].strip() if len(parts) == 2 else None
        return value or None

    def _verify_password(self, user_id: str, password: str) -> bool:
        credential = self.store.get_credential(user_id)
        if not credential:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        return self.passwords.verify(password, credential.password_hash)

    def _verify_dummy(self, password: str) -> bool:
        return self.passwords.verify(password, self._get_dummy_hash())

    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.passwords.hash("taskvault-timing-equalizer")
        return self._dummy_hash

    async def _issue_tokens(self, user: User) -> TokenPair:
        now = self._now()
        refresh = self.tokens.issue_refresh_token(now=now)
        # replaces any earlier digest, so at most one refresh token is live
        await asyncio.to_thread(
            self.store.set_refresh_token, user.id, refresh.digest, refresh.expires_at
        )
        return TokenPair(
            access_token=self.tokens.issue_access_token(user.id, now=now),
            refresh_token=refresh.value,
        )
