"""Password hashing and verification using Argon2id.

Hashes are produced with a fresh random salt per call and encoded in the
PHC string format, so the parameters travel with the hash. Verification is
constant-time inside argon2-cffi. A wrong password returns ``False``; only a
structurally invalid stored hash raises ``MalformedHashError``.
"""

from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import (
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)

from cobalt_auth.config import Settings
from cobalt_auth.logging import get_logger
from cobalt_auth.service.errors import MalformedHashError, WeakPasswordError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialVerifier:
    def __init__(
        self,
        *,
        min_length: int = 8,
        max_length: int = 128,
        memory_cost: int = 19456,
        time_cost: int = 2,
        parallelism: int = 1,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVerifier":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            memory_cost=settings.argon2_memory_cost_kib,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
        )

    def validate_strength(self, password: str) -> None:
        """Enforce the length range; length counts characters, not bytes."""
        length = len(password or "")
        if length < self.min_length or length > self.max_length:
            raise WeakPasswordError(
                min_length=self.min_length, max_length=self.max_length
            )

    def hash(self, password: str) -> str:
        self.validate_strength(password)
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        if not password_hash:
            raise MalformedHashError()
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            logger.warning("password_hash_malformed", error=str(exc))
            raise MalformedHashError() from exc
        except VerificationError:
            # Hash parsed but verification failed for a non-mismatch reason
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return False

    def dummy_verify(self, password: Optional[str]) -> None:
        """Burn one verification so unknown accounts cost the same as known ones."""
        try:
            self._hasher.verify(self._dummy_hash, password or "")
        except VerificationError:
            pass

    @property
    def _dummy_hash(self) -> str:
        cached = getattr(self, "_dummy_hash_value", None)
        if cached is None:
            cached = self._hasher.hash("dummy-password-for-timing")
            self._dummy_hash_value = cached
        return cached


__all__ = ["CredentialVerifier", "PASSWORD_ALGO"]
