from __future__ import annotations

from typing import Optional

from cobalt_auth.logging import get_logger
from cobalt_auth.service.blacklist import AccessTokenBlacklist
from cobalt_auth.service.clock import Clock, SystemClock
from cobalt_auth.service.rotation import run_store_call
from cobalt_auth.service.tokens import AccessClaims
from cobalt_auth.storage.base import RefreshTokenStore
from cobalt_auth.storage.models import REVOKED_ALL, REVOKED_LOGOUT

logger = get_logger(__name__)


class RevocationService:
    """Logout and security-event revocation.

    Revoking a refresh token does not stop an access token that is already in
    the wild, so both entry points also blacklist the caller's current access
    token when its claims are supplied. Refresh records are revoked first; if
    the blacklist write then fails the call raises and can be retried, since
    revocation is idempotent.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        blacklist: AccessTokenBlacklist,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.blacklist = blacklist
        self.clock: Clock = clock or SystemClock()

    async def _blacklist_access(self, access_claims: Optional[AccessClaims]) -> None:
        if access_claims is None:
            return
        await self.blacklist.add_until(access_claims.jti, access_claims.expires_at)

    async def invalidate_session(
        self,
        token_id: Optional[str],
        access_claims: Optional[AccessClaims] = None,
    ) -> bool:
        """Revoke one refresh record and blacklist its live access token.

        Returns True when this call moved the record from active to revoked;
        an unknown or already-revoked id is not an error.
        """
        revoked = False
        if token_id:
            revoked = await run_store_call(
                "revoke_refresh_token",
                self.store.revoke,
                token_id,
                self.clock.now(),
                REVOKED_LOGOUT,
            )
        await self._blacklist_access(access_claims)
        logger.info(
            "session_invalidated",
            token_id=token_id,
            access_jti=access_claims.jti if access_claims else None,
            newly_revoked=revoked,
        )
        return revoked

    async def logout(
        self, token_id: Optional[str], access_claims: Optional[AccessClaims] = None
    ) -> None:
        await self.invalidate_session(token_id, access_claims)

    async def revoke_all(
        self, user_id: str, access_claims: Optional[AccessClaims] = None
    ) -> int:
        count = await run_store_call(
            "revoke_all_refresh_tokens",
            self.store.revoke_all_for_user,
            user_id,
            self.clock.now(),
            REVOKED_ALL,
        )
        await self._blacklist_access(access_claims)
        logger.warning("user_sessions_revoked", user_id=user_id, revoked=count)
        return count


__all__ = ["RevocationService"]
