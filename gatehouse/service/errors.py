from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
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


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Bearer or reset token failed structure, signature or expiry checks."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFoundError(AuthenticationError):
    """Token was valid but the referenced session is gone (expired or revoked)."""

    def __init__(self, message: str = "session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Throttling triggered (429); ``retry_after`` is in whole seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InfrastructureError(ServerError):
    """A backing store could not be reached (503). Never attributable to input."""
    status_code = 503
    error_code = "service_unavailable"


@contextlib.contextmanager
def store_errors(
    operation: str, message: str = "backing store unavailable"
) -> Iterator[None]:
    """Re-raise ``StoreUnavailable`` from the wrapped block as ``InfrastructureError``."""
    try:
        yield
    except StoreUnavailable as exc:
        logger.error("store_unavailable", operation=operation, error=str(exc))
        raise InfrastructureError(message) from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "SessionNotFoundError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InfrastructureError",
    "store_errors",
]
