from __future__ import annotations

import math
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines an HTTP status_code and a stable error_code
    so an outer HTTP layer can map failures without inspecting messages:
    - validation_error (400)
    - unauthorized / invalid_credentials / invalid_token / token_expired /
      token_already_used / token_reused (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - transient (503)
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

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "details": dict(self.detail),
            "status_code": self.status_code,
        }


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account, wrong password, or an account that may not log in."""
    error_code = "invalid_credentials"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class TokenAlreadyUsedError(AuthenticationError):
    error_code = "token_already_used"


class TokenReusedError(AuthenticationError):
    """A refresh token was presented after it had been rotated."""
    error_code = "token_reused"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: float, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, math.ceil(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class TransientError(ServiceError):
    """A dependency timed out or was unreachable; safe to retry (503)."""
    status_code = 503
    error_code = "transient"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenAlreadyUsedError",
    "TokenReusedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "TransientError",
]
