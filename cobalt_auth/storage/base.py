from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Optional, Protocol

from cobalt_auth.storage.models import (
    REVOKED_ALL,
    REVOKED_LOGOUT,
    CredentialRecord,
    RefreshTokenRecord,
    User,
)


class RefreshTokenWriter(Protocol):
    """Operations available both standalone and inside ``transaction()``."""

    def find(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def store(
        self, token_id: str, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def revoke(
        self, token_id: str, at: datetime, reason: str = REVOKED_LOGOUT
    ) -> bool:
        """Set ``revoked_at`` and ``revoked_reason`` if unset; return True only for the call that set them."""
        ...

    def revoke_all_for_user(
        self, user_id: str, at: datetime, reason: str = REVOKED_ALL
    ) -> int: ...


class RefreshTokenStore(RefreshTokenWriter, Protocol):
    def transaction(self) -> AbstractContextManager[RefreshTokenWriter]:
        """Atomic unit: every mutation inside commits together or not at all."""
        ...


class UserStore(Protocol):
    def create_user(self, username: str, email: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[CredentialRecord]: ...


class AuthStore(RefreshTokenStore, UserStore, Protocol):
    """Combined store used by the runtime; both backends implement it."""


class EphemeralCache(Protocol):
    """Key-value cache with atomic increment-with-expiry (Redis or in-process)."""

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int: ...

    async def get_count(self, key: str) -> int: ...

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


__all__ = [
    "AuthStore",
    "EphemeralCache",
    "RefreshTokenStore",
    "RefreshTokenWriter",
    "UserStore",
]
