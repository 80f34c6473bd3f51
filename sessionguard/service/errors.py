from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception carries a stable ``error_code`` and an HTTP ``status_code``
    hint so the transport layer can map it without inspecting the type:
    - unauthorized (401)
    - validation_error (400)
    - server_error (500)
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
    """Caller passed an unusable argument (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class Unauthorized(AuthenticationError):
    """Opaque public failure for refresh and request authorization.

    Never carries the internal reason; that is only logged.
    """

    def __init__(self) -> None:
        super().__init__("Unauthorized")


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuthError(AuthenticationError):
    """Internal token/session failure with a stable ``reason`` for diagnostics."""

    reason: str = "unauthorized"


class MalformedTokenError(AuthError):
    reason = "malformed"


class SignatureMismatchError(AuthError):
    reason = "signature_mismatch"


class TokenExpiredError(AuthError):
    reason = "expired"


class WrongTokenTypeError(AuthError):
    reason = "wrong_type"


class SessionNotFoundError(AuthError):
    reason = "session_not_found"


class SessionRevokedError(AuthError):
    reason = "session_revoked"


class SessionExpiredError(AuthError):
    reason = "session_expired"


class SessionMismatchError(AuthError):
    reason = "session_mismatch"


class BlacklistedTokenError(AuthError):
    reason = "blacklisted"


class SessionRotationError(AuthError):
    """Old session was revoked but its replacement could not be created.

    The old refresh token stays unusable; the subject has to log in again.
    """

    status_code = 500
    error_code = "server_error"
    reason = "rotation_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "Unauthorized",
    "ServerError",
    "AuthError",
    "MalformedTokenError",
    "SignatureMismatchError",
    "TokenExpiredError",
    "WrongTokenTypeError",
    "SessionNotFoundError",
    "SessionRevokedError",
    "SessionExpiredError",
    "SessionMismatchError",
    "BlacklistedTokenError",
    "SessionRotationError",
]
