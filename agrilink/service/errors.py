from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error carries an HTTP status_code and a stable error_code so clients
    can decide whether to re-authenticate, show a permissions error or treat
    the response as a bug:
    - unauthorized, token_invalid, token_expired, user_not_found,
      authentication_required (401)
    - second_factor_required, second_factor_invalid (401)
    - forbidden (403)
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - configuration_error, server_error (500)
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


class InvalidPasswordError(ValidationError):
    """Password re-proof failed for a sensitive account operation (400)."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class MissingCredentialsError(AuthenticationError):
    """No Authorization header, or not of the form ``Bearer <token>``."""
    pass


class TokenInvalidError(AuthenticationError):
    """Token failed signature, structure or claim verification."""
    error_code = "token_invalid"


class TokenExpiredError(AuthenticationError):
    """Token is well formed and signed but past its expiry."""
    error_code = "token_expired"


class UserNotFoundError(AuthenticationError):
    """Token is valid but its user no longer exists."""
    error_code = "user_not_found"


class AuthenticationRequiredError(AuthenticationError):
    """An access check ran without a resolved identity."""
    error_code = "authentication_required"


class SecondFactorRequiredError(AuthenticationError):
    """A second-factor proof is outstanding for this identity (401)."""
    error_code = "second_factor_required"


class SecondFactorInvalidError(AuthenticationError):
    """A submitted one-time or backup code was rejected (401)."""
    error_code = "second_factor_invalid"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role or permission (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InternalError(ServerError):
    """A collaborator (store, signer, renderer) failed while serving the request."""
    pass


class ConfigurationError(ServerError):
    """The server is misconfigured, e.g. a permission name is not registered."""
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidPasswordError",
    "AuthenticationError",
    "MissingCredentialsError",
    "TokenInvalidError",
    "TokenExpiredError",
    "UserNotFoundError",
    "AuthenticationRequiredError",
    "SecondFactorRequiredError",
    "SecondFactorInvalidError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InternalError",
    "ConfigurationError",
]
