"""Refresh-token rotation.

A refresh token is ``Active`` until it is revoked (by rotation, logout or
bulk revocation) or its expiry passes; neither terminal state ever returns
to ``Active``. ``rotate`` validates the presented token against its stored
record and then, in one store transaction, revokes it and stores its
successor. Inside that transaction the record is re-read under a row lock
and the revoke is a conditional update, so when two callers race on the
same token exactly one of them wins and the other gets ``TokenReusedError``.

Only a token retired by rotation signals reuse when presented again. A token
ended by logout or bulk revocation is simply invalid, so a client retrying
after logout cannot trigger reuse escalation.

Store calls run in a worker thread behind ``asyncio.shield``: a caller that
is cancelled mid-rotation stops waiting, but the transaction still commits
or rolls back as a unit.
"""

from __future__ import annotations

import asyncio
import hmac
from datetime import datetime
from typing import Callable, Optional, TypeVar

from cobalt_auth.logging import get_logger
from cobalt_auth.service.clock import Clock
from cobalt_auth.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenReusedError,
    infrastructure_error,
)
from cobalt_auth.service.tokens import TokenCodec, TokenPair, hash_token
from cobalt_auth.storage.base import RefreshTokenStore, RefreshTokenWriter
from cobalt_auth.storage.errors import StoreError
from cobalt_auth.storage.models import (
    REVOKED_ALL,
    REVOKED_LOGOUT,
    REVOKED_ROTATED,
    RefreshTokenRecord,
)

logger = get_logger(__name__)

T = TypeVar("T")

DisplayNameResolver = Callable[[str], Optional[str]]


async def run_store_call(operation: str, fn: Callable[..., T], *args) -> T:
    """Run a blocking store call off the event loop; cancellation cannot interrupt it."""
    try:
        return await asyncio.shield(asyncio.to_thread(fn, *args))
    except StoreError as exc:
        logger.error("refresh_store_failed", operation=operation, error=exc.message)
        raise infrastructure_error(exc, operation) from exc


class RotationEngine:
    def __init__(
        self,
        store: RefreshTokenStore,
        codec: TokenCodec,
        *,
        clock: Optional[Clock] = None,
        resolve_display_name: Optional[DisplayNameResolver] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.clock: Clock = clock or codec.clock
        # Rotation only sees the refresh token, which carries no display name
        self.resolve_display_name: DisplayNameResolver = (
            resolve_display_name or (lambda user_id: user_id)
        )

    def _mint(
        self, writer: RefreshTokenWriter, user_id: str, display_name: str
    ) -> TokenPair:
        access = self.codec.issue_access(user_id, display_name)
        refresh = self.codec.issue_refresh(user_id)
        writer.store(
            refresh.token_id, user_id, hash_token(refresh.token), refresh.expires_at
        )
        return TokenPair(access=access, refresh=refresh, user_id=user_id)

    def _issue_sync(self, user_id: str, display_name: str) -> TokenPair:
        with self.store.transaction() as tx:
            return self._mint(tx, user_id, display_name)

    def _revoked_error(
        self, record: RefreshTokenRecord, *, concurrent: bool = False
    ) -> Exception:
        if record.revoked_reason in (REVOKED_LOGOUT, REVOKED_ALL):
            logger.info(
                "refresh_token_revoked_presented",
                user_id=record.user_id,
                token_id=record.id,
                reason=record.revoked_reason,
            )
            return TokenInvalidError()
        # Rotated, or revoked before reasons were recorded
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            token_id=record.id,
            concurrent=concurrent,
        )
        return TokenReusedError(user_id=record.user_id, token_id=record.id)

    def _rotate_sync(
        self, record: RefreshTokenRecord, display_name: str, now: datetime
    ) -> TokenPair:
        with self.store.transaction() as tx:
            # Locks the row until commit on stores that support it
            current = tx.find(record.id)
            if current is None:
                raise TokenInvalidError()
            if current.is_revoked:
                # Lost the race: another caller revoked this record first
                raise self._revoked_error(current, concurrent=True)
            if not tx.revoke(record.id, now, REVOKED_ROTATED):
                raise self._revoked_error(tx.find(record.id) or current, concurrent=True)
            return self._mint(tx, record.user_id, display_name)

    async def issue(self, user_id: str, display_name: str) -> TokenPair:
        """Mint and persist a fresh pair (login, registration)."""
        pair = await run_store_call(
            "issue_refresh_token", self._issue_sync, user_id, display_name
        )
        logger.info(
            "refresh_token_issued", user_id=user_id, token_id=pair.refresh.token_id
        )
        return pair

    async def rotate(self, old_token: str) -> TokenPair:
        claims = self.codec.verify_refresh(old_token)
        record = await run_store_call("find_refresh_token", self.store.find, claims.jti)
        if record is None or record.user_id != claims.sub:
            logger.info("refresh_token_unknown", token_id=claims.jti)
            raise TokenInvalidError()
        if record.is_revoked:
            raise self._revoked_error(record)
        now = self.clock.now()
        if record.is_expired(now):
            raise TokenExpiredError()
        if not hmac.compare_digest(record.token_hash, hash_token(old_token)):
            logger.warning("refresh_token_hash_mismatch", token_id=record.id)
            raise TokenInvalidError()

        display_name = await run_store_call(
            "resolve_display_name", self.resolve_display_name, record.user_id
        )
        if display_name is None:
            logger.info("refresh_token_user_unavailable", user_id=record.user_id)
            raise TokenInvalidError()

        pair = await run_store_call(
            "rotate_refresh_token", self._rotate_sync, record, display_name, now
        )
        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            token_id=record.id,
            new_token_id=pair.refresh.token_id,
        )
        return pair


__all__ = ["RotationEngine", "run_store_call"]
