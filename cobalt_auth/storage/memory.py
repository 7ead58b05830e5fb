from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

from cobalt_auth.logging import get_logger
from cobalt_auth.storage.errors import ConstraintViolation, StoreError
from cobalt_auth.storage.models import (
    REVOKED_ALL,
    REVOKED_LOGOUT,
    CredentialRecord,
    RefreshTokenRecord,
    User,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    All reads take ``_data_lock``; every write runs inside ``transaction()``,
    which holds the lock for the whole block and restores a snapshot if the
    block or the state write raises, so a rotation is never half-applied.
    When ``state_path`` is set, committed state is written to a JSON file and
    reloaded on startup.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, CredentialRecord] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so store methods can be called while a transaction holds it
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self._state_path = Path(state_path) if state_path else None
        self._load_state()

    # -- users ------------------------------------------------------------

    def create_user(self, username: str, email: str) -> User:
        with self.transaction():
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), username=username, email=email)
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self.transaction():
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = CredentialRecord(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )

    def get_password_record(self, user_id: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- refresh tokens ---------------------------------------------------

    def find(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(token_id)

    def store(
        self, token_id: str, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self.transaction():
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for refresh token", {"user_id": user_id}
                )
            if token_id in self.refresh_tokens:
                raise ConstraintViolation("refresh token id exists", {"field": "id"})
            if any(r.token_hash == token_hash for r in self.refresh_tokens.values()):
                raise ConstraintViolation(
                    "refresh token hash exists", {"field": "token_hash"}
                )
            record = RefreshTokenRecord(
                id=token_id,
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.refresh_tokens[token_id] = record
            return record

    def revoke(
        self, token_id: str, at: datetime, reason: str = REVOKED_LOGOUT
    ) -> bool:
        with self.transaction():
            record = self.refresh_tokens.get(token_id)
            if record is None or record.revoked_at is not None:
                return False
            self.refresh_tokens[token_id] = replace(
                record, revoked_at=at, revoked_reason=reason
            )
            return True

    def revoke_all_for_user(
        self, user_id: str, at: datetime, reason: str = REVOKED_ALL
    ) -> int:
        with self.transaction():
            active = [
                r
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.revoked_at is None
            ]
            for record in active:
                self.refresh_tokens[record.id] = replace(
                    record, revoked_at=at, revoked_reason=reason
                )
            return len(active)

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = (
                dict(self.users),
                dict(self.credentials),
                dict(self.refresh_tokens),
            )
            self._tx_depth += 1
            try:
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                # Nested blocks defer the write to the outermost one
                self._persist_state()
            except BaseException:
                self.users, self.credentials, self.refresh_tokens = snapshot
                self.logger.info("memory_store_transaction_rolled_back")
                raise

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        if self._state_path is None or self._tx_depth > 0:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": c.user_id,
                    "password_hash": c.password_hash,
                    "password_algo": c.password_algo,
                }
                for c in self.credentials.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if self._state_path is None:
            return False
        try:
            data = json.loads(self._state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: CredentialRecord(
                user_id=c["user_id"],
                password_hash=c.get("password_hash"),
                password_algo=c.get("password_algo", ""),
            )
            for c in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "revoked_reason": record.revoked_reason,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked_reason=data.get("revoked_reason"),
        )


__all__ = ["MemoryStore"]
