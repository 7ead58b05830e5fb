"""Signed access and refresh tokens (compact JWS, HS256).

Both token kinds share one signing key held by a ``TokenCodec`` instance;
they differ in lifetime and claim shape. Verification is stateless: it
checks the header algorithm, the signature, the claim shape, issuer,
audience and expiry, and never consults the refresh-token store.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cobalt_auth.config import Settings
from cobalt_auth.logging import get_logger
from cobalt_auth.service.clock import Clock, SystemClock
from cobalt_auth.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
_ALGORITHM = "HS256"


def hash_token(token: str) -> str:
    """One-way SHA-256 digest (64 hex chars) used to persist refresh tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenConfig:
    """Signing key and lifetimes; passed explicitly, never held globally."""

    secret: str
    issuer: str = "cobalt-auth"
    audience: str = "cobalt-clients"
    access_ttl: timedelta = timedelta(minutes=15)
    refresh_ttl: timedelta = timedelta(days=7)
    leeway: timedelta = timedelta(0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            leeway=timedelta(seconds=settings.clock_skew_leeway_seconds),
        )


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    username: str
    iat: int
    exp: int
    jti: str

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass(frozen=True)
class RefreshClaims:
    sub: str
    iat: int
    exp: int
    jti: str

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    issued_at: datetime
    expires_at: datetime
    token_type: str = ACCESS_TOKEN_TYPE

    def __repr__(self) -> str:
        # Keep raw token strings out of reprs and tracebacks
        return (
            f"IssuedToken(token_id={self.token_id!r}, token_type={self.token_type!r}, "
            f"expires_at={self.expires_at.isoformat()!r})"
        )


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken
    user_id: str = field(default="")

    @property
    def access_token(self) -> str:
        return self.access.token

    @property
    def refresh_token(self) -> str:
        return self.refresh.token


class TokenCodec:
    def __init__(self, config: TokenConfig, clock: Optional[Clock] = None) -> None:
        if not config.secret:
            raise ValueError("token signing secret is required")
        self.config = config
        self.clock: Clock = clock or SystemClock()
        self._key = config.secret.encode("utf-8")

    # -- issuing --------------------------------------------------------

    def issue_access(self, user_id: str, display_name: str) -> IssuedToken:
        now = self.clock.now()
        exp = now + self.config.access_ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": str(user_id),
            "username": display_name,
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
            "jti": jti,
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            token_id=jti,
            issued_at=now,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_type=ACCESS_TOKEN_TYPE,
        )

    def issue_refresh(self, user_id: str) -> IssuedToken:
        now = self.clock.now()
        exp = now + self.config.refresh_ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": str(user_id),
            "token_type": REFRESH_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
            "jti": jti,
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            token_id=jti,
            issued_at=now,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_type=REFRESH_TOKEN_TYPE,
        )

    # -- verification ---------------------------------------------------

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._verify(token, ACCESS_TOKEN_TYPE)
        username = payload.get("username")
        if not isinstance(username, str):
            raise TokenInvalidError()
        return AccessClaims(
            sub=payload["sub"],
            username=username,
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            jti=payload["jti"],
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._verify(token, REFRESH_TOKEN_TYPE)
        return RefreshClaims(
            sub=payload["sub"],
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            jti=payload["jti"],
        )

    def peek_token_id(
        self, token: str, expected_type: str = ACCESS_TOKEN_TYPE
    ) -> Optional[str]:
        """Return the jti of a correctly signed token, ignoring expiry.

        Used where an expired token is still a valid handle, e.g. logout.
        """
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != expected_type:
            return None
        jti = payload.get("jti")
        return jti if isinstance(jti, str) and jti else None

    def _verify(self, token: str, expected_type: str) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload is None:
            raise TokenInvalidError()
        if payload.get("token_type") != expected_type:
            logger.info("token_type_mismatch", expected=expected_type)
            raise TokenInvalidError()
        for claim in ("sub", "jti"):
            if not isinstance(payload.get(claim), str) or not payload.get(claim):
                raise TokenInvalidError()
        for claim in ("iat", "exp"):
            value = payload.get(claim)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TokenInvalidError()
        if payload.get("iss") != self.config.issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = aud == self.config.audience
        if not valid_aud:
            raise TokenInvalidError()
        now_ts = self.clock.now().timestamp()
        if float(payload["exp"]) <= now_ts - self.config.leeway.total_seconds():
            raise TokenExpiredError()
        return payload

    # -- compact JWS ----------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion ("none", RS/HS swaps)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.info("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload


__all__ = [
    "ACCESS_TOKEN_TYPE",
    "REFRESH_TOKEN_TYPE",
    "AccessClaims",
    "IssuedToken",
    "RefreshClaims",
    "TokenCodec",
    "TokenConfig",
    "TokenPair",
    "hash_token",
]
