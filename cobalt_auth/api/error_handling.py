from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from cobalt_auth.api.schemas import Envelope, ErrorBody
from cobalt_auth.logging import get_logger
from cobalt_auth.service.errors import (
    AuthError,
    InfrastructureError,
    RateLimitedError,
    ServiceError,
)
from cobalt_auth.storage.errors import CacheError, StoreError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    409: "conflict",
    429: "rate_limited",
    503: "service_unavailable",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers mapping service and storage errors onto the error envelope.

    Authentication failures of every kind render the same 401 body; the
    precise ``kind`` is only logged. Infrastructure failures render an opaque
    503 so store and cache internals never reach the client.
    """

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        logger.warning(
            "authentication_failed",
            path=request.url.path,
            method=request.method,
            kind=exc.kind,
        )
        return _error_response(
            exc.status_code,
            exc.client_message(),
            code=exc.error_code,
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        logger.warning(
            "rate_limited",
            path=request.url.path,
            method=request.method,
            retry_after=exc.retry_after,
        )
        return _error_response(
            429,
            exc.client_message(),
            {"retry_after": exc.retry_after},
            code="rate_limited",
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(InfrastructureError)
    async def handle_infrastructure_error(request: Request, exc: InfrastructureError):
        cause = exc.__cause__
        logger.error(
            "infrastructure_error",
            path=request.url.path,
            method=request.method,
            kind=exc.kind,
            message=exc.message,
            cause_type=type(cause).__name__ if cause else None,
            cause=getattr(cause, "message", None),
        )
        return _error_response(503, exc.client_message(), code="service_unavailable")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            exc.status_code, exc.client_message(), exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(StoreError)
    @app.exception_handler(CacheError)
    async def handle_backend_error(request: Request, exc: Exception):
        # Reached only when a caller bypassed the service layer's translation
        logger.error(
            "backend_error_unwrapped",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(
            503, "service temporarily unavailable", code="service_unavailable"
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
