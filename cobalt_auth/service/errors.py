from __future__ import annotations

from typing import Optional

from cobalt_auth.storage.errors import CacheTimeout, StoreTimeout

# Message shown to clients for every authentication failure so responses
# cannot be used to enumerate accounts or distinguish failure modes.
UNIFORM_AUTH_MESSAGE = "authentication failed"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code``, a stable
    ``error_code`` used in the response envelope, and a ``kind`` naming the
    precise internal failure. ``kind`` is for logs and tests; clients only
    ever see ``public_message``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: str = "validation_error"
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def client_message(self) -> str:
        return self.public_message or self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate username or email (409)."""
    status_code = 409
    error_code = "conflict"
    kind = "conflict"


class AuthError(ServiceError):
    """Authentication failed (401); always rendered with the uniform message."""
    status_code = 401
    error_code = "unauthorized"
    kind = "unauthorized"
    public_message = UNIFORM_AUTH_MESSAGE


class InvalidCredentialsError(AuthError):
    kind = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MalformedHashError(AuthError):
    """The stored password hash is structurally invalid."""
    kind = "malformed_hash"

    def __init__(self, message: str = "stored password hash is malformed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class WeakPasswordError(ValidationError):
    """Password length is outside the enforced range (400)."""
    kind = "weak_password"

    def __init__(
        self,
        message: str = "password does not meet length requirements",
        *,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        if min_length is not None:
            detail.setdefault("min_length", min_length)
        if max_length is not None:
            detail.setdefault("max_length", max_length)
        super().__init__(message, detail=detail, **kwargs)
        self.min_length = min_length
        self.max_length = max_length


class RotationError(AuthError):
    """Base for token verification and rotation failures.

    Callers treat every subclass as "re-authenticate"; only
    ``TokenReusedError`` carries data for security alerting.
    """


class TokenInvalidError(RotationError):
    kind = "invalid"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(RotationError):
    kind = "expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenReusedError(RotationError):
    """An already-revoked refresh token was presented again."""
    kind = "reused"

    def __init__(
        self,
        message: str = "refresh token reused",
        *,
        user_id: Optional[str] = None,
        token_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.user_id = user_id
        self.token_id = token_id


class TokenRevokedError(AuthError):
    """Access token is on the blacklist."""
    kind = "revoked"

    def __init__(self, message: str = "token revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    kind = "rate_limited"
    public_message = "too many requests"

    def __init__(
        self, message: str = "rate limit exceeded", *, retry_after: int = 0, **kwargs
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class InfrastructureError(ServiceError):
    """Store or cache failure, surfaced to clients as an opaque retryable error (503)."""
    status_code = 503
    error_code = "service_unavailable"
    kind = "infrastructure"
    public_message = "service temporarily unavailable"
    retryable = True


class InfrastructureTimeout(InfrastructureError):
    """A bounded store or cache timeout expired."""
    kind = "timeout"


def infrastructure_error(exc: Exception, operation: str) -> InfrastructureError:
    """Wrap a store or cache failure; the original stays on ``__cause__`` for logs."""
    if isinstance(exc, (StoreTimeout, CacheTimeout)):
        err: InfrastructureError = InfrastructureTimeout(
            f"{operation} timed out", detail={"operation": operation}
        )
    else:
        err = InfrastructureError(f"{operation} failed", detail={"operation": operation})
    err.__cause__ = exc
    return err


__all__ = [
    "UNIFORM_AUTH_MESSAGE",
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthError",
    "InvalidCredentialsError",
    "MalformedHashError",
    "WeakPasswordError",
    "RotationError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenReusedError",
    "TokenRevokedError",
    "RateLimitedError",
    "InfrastructureError",
    "InfrastructureTimeout",
    "infrastructure_error",
]
