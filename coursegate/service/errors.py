from __future__ import annotations

from typing import Optional, Union


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` rendered into the error envelope. Subclasses carry a
    default message so call sites can raise them without arguments.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Union[dict, list]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail


class ValidationError(ServiceError):
    """Request payload failed validation (400); ``detail`` lists field messages."""
    status_code = 400
    error_code = "VALIDATION_ERROR"
    default_message = "Request validation failed."


class MissingIdempotencyKey(ServiceError):
    status_code = 400
    error_code = "IDEMPOTENCY_KEY_REQUIRED"
    default_message = "Idempotency-Key header is required for this operation."


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Authentication failed."


class AuthenticationRequired(AuthenticationError):
    error_code = "AUTHENTICATION_REQUIRED"
    default_message = "Authentication is required."


class InvalidCredentials(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"
    default_message = "Email or password is incorrect."


class InvalidRefreshToken(AuthenticationError):
    error_code = "INVALID_REFRESH_TOKEN"
    default_message = "Refresh token is invalid."


class RefreshTokenExpired(AuthenticationError):
    error_code = "REFRESH_TOKEN_EXPIRED"
    default_message = "Refresh token has expired."


class SessionNotActive(AuthenticationError):
    error_code = "SESSION_NOT_ACTIVE"
    default_message = "Session is no longer active."


class AccessTokenExpired(AuthenticationError):
    error_code = "ACCESS_TOKEN_EXPIRED"
    default_message = "Access token has expired."


class AccountNotFound(AuthenticationError):
    error_code = "ACCOUNT_NOT_FOUND"
    default_message = "Account no longer exists."


class InvalidToken(AuthenticationError):
    """Token could not be decoded or its signature did not verify."""
    error_code = "INVALID_TOKEN"
    default_message = "Token is invalid."


class InvalidTokenFormat(InvalidToken):
    error_code = "INVALID_TOKEN_FORMAT"
    default_message = "Token format is invalid."


class InvalidTokenSignature(InvalidToken):
    error_code = "INVALID_TOKEN_SIGNATURE"
    default_message = "Token signature is invalid."


class InvalidTokenPayload(InvalidToken):
    error_code = "INVALID_TOKEN_PAYLOAD"
    default_message = "Token payload is invalid."


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "Access denied."


class RoleMismatch(ForbiddenError):
    error_code = "ROLE_MISMATCH"
    default_message = "You do not have permission to perform this action."


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "Resource not found."


class SessionNotFound(NotFoundError):
    error_code = "SESSION_NOT_FOUND"
    default_message = "Session not found."


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "CONFLICT"
    default_message = "Request conflicts with the current state."


class IdempotencyInProgress(ConflictError):
    error_code = "IDEMPOTENCY_IN_PROGRESS"
    default_message = "A request with this Idempotency-Key is still being processed."


class RateLimitExceeded(ServiceError):
    """Rate limit exceeded (429); the client should wait ``retry_after_seconds``."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests. Please retry later."

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None) -> None:
        super().__init__(message, detail={"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"
    default_message = "Internal server error."


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingIdempotencyKey",
    "AuthenticationError",
    "AuthenticationRequired",
    "InvalidCredentials",
    "InvalidRefreshToken",
    "RefreshTokenExpired",
    "SessionNotActive",
    "AccessTokenExpired",
    "AccountNotFound",
    "InvalidToken",
    "InvalidTokenFormat",
    "InvalidTokenSignature",
    "InvalidTokenPayload",
    "ForbiddenError",
    "RoleMismatch",
    "NotFoundError",
    "SessionNotFound",
    "ConflictError",
    "IdempotencyInProgress",
    "RateLimitExceeded",
    "ServerError",
]
