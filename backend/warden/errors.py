"""Service-layer exceptions.

Each class carries the HTTP status and a stable error code; the boundary
layer translates them, services only raise them.
"""
from typing import Any


class ServiceError(Exception):
    """Base class for domain errors raised by the auth and RBAC services."""

    status_code: int = 400
    error_code: str = "bad_request"
    retryable: bool = False

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Request cannot be applied in the current state (400)."""

    status_code = 400
    error_code = "bad_request"


class UnauthorizedError(ServiceError):
    """Bad credentials or an invalid, expired or revoked token (401)."""

    status_code = 401
    error_code = "unauthorized"


class TokenReplayError(UnauthorizedError):
    """A refresh token that was already rotated has been presented again."""

    error_code = "refresh_token_reuse"

    def __init__(self, message: str, *, user_id: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message, detail=detail)
        self.user_id = user_id


class ForbiddenError(ServiceError):
    """Authenticated but missing a required role or permission (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Entity absent or inactive (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Uniqueness or duplicate-state violation (409)."""

    status_code = 409
    error_code = "conflict"


class StoreUnavailableError(ServiceError):
    """The database timed out or went away; safe to retry (503)."""

    status_code = 503
    error_code = "store_unavailable"
    retryable = True
