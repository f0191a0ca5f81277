from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can switch on:
    - invalid_credentials (401)
    - invalid_mfa_code (401)
    - unauthorized (401)
    - insufficient_privilege (403)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    - mfa_enrollment_failed (502)
    - transport_error (503)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Session missing, expired or not yet MFA-verified (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Identifier/secret pair rejected by the identity provider (401)."""
    error_code = "invalid_credentials"


class InvalidMfaCodeError(AuthenticationError):
    """TOTP code or challenge rejected (401)."""
    error_code = "invalid_mfa_code"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class InsufficientPrivilegeError(ForbiddenError):
    """Authenticated identity holds no console role; its session is already torn down."""
    error_code = "insufficient_privilege"


class UnauthorizedError(ForbiddenError):
    """Privileged operation invoked by a session lacking the required role.

    Fatal to the operation only; the caller's session stays intact.
    """


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class InvalidStepError(ConflictError):
    """Login operation not valid in the current step (409)."""


class OperationInProgressError(ConflictError):
    """Another login operation is still resolving for this session (409)."""


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class MfaEnrollmentFailedError(ServiceError):
    """The MFA backend could not create a factor (502)."""
    status_code = 502
    error_code = "mfa_enrollment_failed"


class TransportError(ServiceError):
    """Backend or realtime channel unreachable (503)."""
    status_code = 503
    error_code = "transport_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidMfaCodeError",
    "ForbiddenError",
    "InsufficientPrivilegeError",
    "UnauthorizedError",
    "NotFoundError",
    "ConflictError",
    "InvalidStepError",
    "OperationInProgressError",
    "ServerError",
    "MfaEnrollmentFailedError",
    "TransportError",
]
