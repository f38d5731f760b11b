"""Shared FastAPI dependencies."""
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from warden.database import get_db
from warden.errors import UnauthorizedError
from warden.models.user import User
from warden.services.authenticator import authenticate_access_token
from warden.services.roles import RequestContext

bearer_scheme = HTTPBearer(auto_error=False)

__all__ = ["get_db", "get_current_user", "get_request_ip", "get_request_context"]


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer access token to an active user."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthorizedError("Not authenticated")
    return authenticate_access_token(db, credentials.credentials)


def get_request_ip(request: Request) -> str | None:
    """Extract best-effort client IP for session metadata."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def get_request_context(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> RequestContext:
    return RequestContext(
        actor_id=current_user.id,
        ip_address=get_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
