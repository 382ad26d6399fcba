from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from uniportal.service.otp import OtpCheck


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - otp_incorrect / otp_used / otp_expired (400)
    - unauthorized (401)
    - account_disabled (401)
    - forbidden (403)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session or pending-MFA token is absent or expired (401)."""

    def __init__(self, message: str = "Session expired. Please login again.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong password; the two are indistinguishable."""

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDisabledError(AuthenticationError):
    error_code = "account_disabled"

    def __init__(self, message: str = "Account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OtpVerificationError(ValidationError):
    """A submitted one-time code was rejected by the ledger (400)."""

    def __init__(self, check: "OtpCheck") -> None:
        super().__init__(
            check.message or "Invalid code.",
            error_code=check.reason or "otp_invalid",
        )
        self.check = check


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "Too many attempts. Please wait and try again.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamUnavailableError(ServerError):
    """Database pool exhausted or a dependency timed out (503)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(
        self,
        message: str = "Service temporarily unavailable. Please try again.",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "InvalidCredentialsError",
    "AccountDisabledError",
    "OtpVerificationError",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "UpstreamUnavailableError",
]
