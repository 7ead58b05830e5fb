from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

# Why a refresh token left the active state. Only a replay of a rotated
# token counts as reuse; logout and bulk revocation are ordinary ends.
REVOKED_ROTATED = "rotated"
REVOKED_LOGOUT = "logout"
REVOKED_ALL = "revoke_all"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    created_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True


@dataclass(frozen=True)
class CredentialRecord:
    """Password hash owned by the account; ``password_hash`` may be absent."""

    user_id: str
    password_hash: Optional[str]
    password_algo: str = "argon2id"


@dataclass(frozen=True)
class RefreshTokenRecord:
    """Persisted refresh token. Only ``revoked_at`` and ``revoked_reason`` change after insert."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    revoked_reason: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)
