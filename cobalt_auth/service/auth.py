from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from cobalt_auth.config import Settings
from cobalt_auth.logging import get_logger
from cobalt_auth.service.blacklist import AccessTokenBlacklist
from cobalt_auth.service.clock import Clock, SystemClock
from cobalt_auth.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    ServiceError,
    TokenExpiredError,
    TokenInvalidError,
    TokenReusedError,
    TokenRevokedError,
    ValidationError,
)
from cobalt_auth.service.passwords import PASSWORD_ALGO, CredentialVerifier
from cobalt_auth.service.rate_limit import RateLimiter
from cobalt_auth.service.revocation import RevocationService
from cobalt_auth.service.rotation import RotationEngine, run_store_call
from cobalt_auth.service.tokens import (
    REFRESH_TOKEN_TYPE,
    AccessClaims,
    TokenCodec,
    TokenConfig,
    TokenPair,
)
from cobalt_auth.storage.base import AuthStore, EphemeralCache
from cobalt_auth.storage.errors import ConstraintViolation
from cobalt_auth.storage.models import User

logger = get_logger(__name__)

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,64}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Credentials:
    """Login input. ``identifier`` is a username or an email address."""

    identifier: str
    password: str
    origin: str = "unknown"

    def __repr__(self) -> str:
        return f"Credentials(identifier={self.identifier!r}, origin={self.origin!r})"


class AuthService:
    """Entry points consumed by request handlers.

    Every method either returns its result or raises a ``ServiceError``
    subclass; authentication failures share one public message so callers
    cannot tell an unknown account from a wrong password.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: EphemeralCache,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.verifier = CredentialVerifier.from_settings(settings)
        self.codec = TokenCodec(TokenConfig.from_settings(settings), clock=self.clock)
        self.blacklist = AccessTokenBlacklist(
            cache, clock=self.clock, fail_open=settings.blacklist_fail_open
        )
        self.rate_limiter = RateLimiter.from_settings(cache, settings, clock=self.clock)
        self.rotation = RotationEngine(
            store,
            self.codec,
            clock=self.clock,
            resolve_display_name=self._display_name_for,
        )
        self.revocation = RevocationService(store, self.blacklist, clock=self.clock)

    def _display_name_for(self, user_id: str) -> Optional[str]:
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            return None
        return user.username

    def lookup_user(self, identifier: str) -> Optional[User]:
        identifier = (identifier or "").strip()
        if "@" in identifier:
            return self.store.get_user_by_email(identifier.lower())
        return self.store.get_user_by_username(identifier)

    def _create_user(self, username: str, email: str) -> Optional[User]:
        if self.store.get_user_by_username(username) is not None:
            return None
        if self.store.get_user_by_email(email) is not None:
            return None
        try:
            return self.store.create_user(username, email)
        except ConstraintViolation:
            # Lost a race with a concurrent registration
            return None

    # -- login / registration -------------------------------------------

    async def login(self, credentials: Credentials) -> TokenPair:
        scope = self.rate_limiter.scope_key(credentials.origin, credentials.identifier)
        window = self.settings.login_rate_window_seconds
        # Throttled attempts never reach password hashing
        await self.rate_limiter.enforce(
            scope, self.settings.login_rate_limit, window, bucket="login"
        )

        user = await run_store_call(
            "lookup_user", self.lookup_user, credentials.identifier
        )
        record = None
        if user is not None and user.is_active:
            record = await run_store_call(
                "get_password_record", self.store.get_password_record, user.id
            )
        if record is None or not record.password_hash:
            await asyncio.to_thread(self.verifier.dummy_verify, credentials.password)
            logger.info(
                "login_failed",
                reason="unknown_user"
                if user is None or not user.is_active
                else "no_local_password",
                origin=credentials.origin,
            )
            raise InvalidCredentialsError()

        if not await asyncio.to_thread(
            self.verifier.verify, credentials.password, record.password_hash
        ):
            logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()

        if self.verifier.needs_rehash(record.password_hash):
            await self._upgrade_hash(user.id, credentials.password)

        if self.rate_limiter.keys_on_account:
            # Origin-wide counters span accounts and only expire with the window
            await self.rate_limiter.reset(scope, window, bucket="login")
        pair = await self.rotation.issue(user.id, user.username)
        logger.info(
            "login_succeeded", user_id=user.id, token_id=pair.refresh.token_id
        )
        return pair

    async def _upgrade_hash(self, user_id: str, password: str) -> None:
        try:
            new_hash = await asyncio.to_thread(self.verifier.hash, password)
            await run_store_call(
                "save_password",
                self.store.save_password,
                user_id,
                new_hash,
                PASSWORD_ALGO,
            )
        except ServiceError as exc:
            # Login already succeeded; the old hash stays valid until the next attempt
            logger.warning(
                "password_rehash_failed", user_id=user_id, error=exc.message
            )
            return
        logger.info("password_rehashed", user_id=user_id)

    async def register(
        self, username: str, email: str, password: str, origin: str = "unknown"
    ) -> Tuple[User, TokenPair]:
        username = (username or "").strip()
        email = (email or "").strip().lower()
        scope = self.rate_limiter.scope_key(origin, email)
        await self.rate_limiter.enforce(
            scope,
            self.settings.register_rate_limit,
            self.settings.register_rate_window_seconds,
            bucket="register",
        )
        if not _USERNAME_RE.match(username):
            raise ValidationError(
                "username must be 3-64 characters of letters, digits, '.', '_' or '-'",
                detail={"field": "username"},
            )
        if not _EMAIL_RE.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        self.verifier.validate_strength(password)

        password_hash = await asyncio.to_thread(self.verifier.hash, password)
        user = await run_store_call("create_user", self._create_user, username, email)
        if user is None:
            logger.info("registration_conflict", origin=origin)
            raise ConflictError("account already exists")
        await run_store_call(
            "save_password",
            self.store.save_password,
            user.id,
            password_hash,
            PASSWORD_ALGO,
        )
        pair = await self.rotation.issue(user.id, user.username)
        logger.info("user_registered", user_id=user.id)
        return user, pair

    # -- tokens ---------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            return await self.rotation.rotate(refresh_token)
        except TokenReusedError as exc:
            if self.settings.escalate_on_refresh_reuse and exc.user_id:
                count = await self.revocation.revoke_all(exc.user_id)
                logger.warning(
                    "refresh_reuse_escalated", user_id=exc.user_id, revoked=count
                )
            raise

    async def authorize(self, access_token: str) -> AccessClaims:
        claims = self.codec.verify_access(access_token)
        if await self.blacklist.contains(claims.jti):
            logger.info("access_token_rejected_blacklisted", token_id=claims.jti)
            raise TokenRevokedError()
        return claims

    def _live_access_claims(self, access_token: Optional[str]) -> Optional[AccessClaims]:
        """Claims of a still-valid access token; expired ones need no blacklisting."""
        if not access_token:
            return None
        try:
            return self.codec.verify_access(access_token)
        except TokenExpiredError:
            return None

    async def logout(
        self, refresh_token: str, access_token: Optional[str] = None
    ) -> None:
        token_id = self.codec.peek_token_id(refresh_token, REFRESH_TOKEN_TYPE)
        if token_id is None:
            raise TokenInvalidError()
        await self.revocation.logout(token_id, self._live_access_claims(access_token))

    async def revoke_all(self, user_id: str, access_token: Optional[str] = None) -> int:
        return await self.revocation.revoke_all(
            user_id, self._live_access_claims(access_token)
        )

    async def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        access_token: Optional[str] = None,
    ) -> int:
        """Replace the password and revoke every session; returns the revoked count."""
        record = await run_store_call(
            "get_password_record", self.store.get_password_record, user_id
        )
        if record is None or not record.password_hash:
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(
            self.verifier.verify, old_password, record.password_hash
        ):
            logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCredentialsError()
        new_hash = await asyncio.to_thread(self.verifier.hash, new_password)
        await run_store_call(
            "save_password", self.store.save_password, user_id, new_hash, PASSWORD_ALGO
        )
        logger.info("password_changed", user_id=user_id)
        return await self.revoke_all(user_id, access_token)


__all__ = ["AuthService", "Credentials"]
