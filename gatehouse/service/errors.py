from __future__ import annotations

from typing import Optional

from gatehouse.service.outcome import AuthFailure, ErrorKind


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    The core returns :class:`~gatehouse.service.outcome.Outcome` values; the
    HTTP layer converts a failed outcome with :meth:`from_failure` and raises.
    """

    status_code: int = 400
    error_code: str = "validation_error"

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

    @staticmethod
    def from_failure(failure: AuthFailure) -> "ServiceError":
        error_cls = _KIND_TO_ERROR.get(failure.kind, ServerError)
        return error_cls(failure.message, detail=dict(failure.detail))


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    pass


class TokenExpiredError(BadRequestError):
    """A time-boxed token was presented after its TTL (400)."""
    error_code = "token_expired"


class OAuthExchangeError(BadRequestError):
    """The provider rejected the authorization code (400)."""
    error_code = "oauth_exchange_failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCodeError(AuthenticationError):
    """Two-factor code did not match the issued one (401)."""
    error_code = "invalid_code"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class UpstreamError(ServiceError):
    """OAuth provider profile endpoint unreachable or rejecting (502)."""
    status_code = 502
    error_code = "upstream_failure"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


_KIND_TO_ERROR: dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.UNAUTHORIZED: AuthenticationError,
    ErrorKind.INVALID_CODE: InvalidCodeError,
    ErrorKind.EXPIRED: TokenExpiredError,
    ErrorKind.EXCHANGE_FAILED: OAuthExchangeError,
    ErrorKind.UPSTREAM_FAILURE: UpstreamError,
    ErrorKind.INTERNAL: ServerError,
}


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "TokenExpiredError",
    "OAuthExchangeError",
    "AuthenticationError",
    "InvalidCodeError",
    "NotFoundError",
    "ConflictError",
    "UpstreamError",
    "ServerError",
]
