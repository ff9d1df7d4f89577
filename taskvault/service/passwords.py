from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from taskvault.config import Settings
from taskvault.logging import get_logger
from taskvault.service.errors import ServerError

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing with a per-call random salt.

    The work factor comes from settings so deployments can raise it without
    touching code; existing hashes keep verifying because argon2 encodes its
    parameters in the hash string.
    """

    def __init__(self, settings: Settings) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        try:
            return self._pwd_hasher.hash(password)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError() from exc

    def verify(self, password: str, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False
