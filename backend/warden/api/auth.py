"""Authentication API endpoints."""
from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from warden.api.deps import get_current_user, get_db, get_request_ip
from warden.config import get_settings
from warden.database import transaction
from warden.errors import UnauthorizedError
from warden.models.user import User
from warden.schemas.auth import (
    MeResponse,
    MessageResponse,
    Token,
    UserLogin,
    UserProfileUpdate,
    UserRegister,
    UserResponse,
)
from warden.services import access, authenticator, credentials
from warden.services.authenticator import AuthResult

router = APIRouter(prefix="/auth", tags=["auth"])
settings = get_settings()


def set_refresh_cookie(response: Response, refresh_token: str) -> None:
    """Issue secure HttpOnly refresh-token cookie."""
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
        path=settings.refresh_cookie_path,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
    )


def clear_refresh_cookie(response: Response) -> None:
    """Clear refresh-token cookie."""
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def _token_response(response: Response, result: AuthResult) -> Token:
    set_refresh_cookie(response, result.tokens.refresh_token)
    return Token(access_token=result.tokens.access_token, expires_in=result.tokens.expires_in)


@router.post("/register", response_model=Token, status_code=status.HTTP_201_CREATED)
def register(
    user_data: UserRegister,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """Register a new user and start a session."""
    result = authenticator.register(
        db,
        user_data.email,
        user_data.password,
        profile=user_data.model_dump(include={"first_name", "last_name"}),
        user_agent=request.headers.get("user-agent"),
        ip_address=get_request_ip(request),
    )
    return _token_response(response, result)


@router.post("/login", response_model=Token)
def login(
    user_data: UserLogin,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """Login and get tokens."""
    result = authenticator.login(
        db,
        user_data.email,
        user_data.password,
        user_agent=request.headers.get("user-agent"),
        ip_address=get_request_ip(request),
    )
    return _token_response(response, result)


@router.post("/refresh", response_model=Token)
def refresh_tokens(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """Rotate the refresh cookie and issue a new access token."""
    refresh_cookie = request.cookies.get(settings.refresh_cookie_name)
    if not refresh_cookie:
        raise UnauthorizedError("Missing refresh token")

    result = authenticator.refresh(
        db,
        refresh_cookie,
        user_agent=request.headers.get("user-agent"),
        ip_address=get_request_ip(request),
    )
    return _token_response(response, result)


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """Revoke the refresh session held in the cookie."""
    refresh_cookie = request.cookies.get(settings.refresh_cookie_name)
    if refresh_cookie:
        authenticator.logout(
            db,
            refresh_cookie,
            user_agent=request.headers.get("user-agent"),
            ip_address=get_request_ip(request),
        )
    clear_refresh_cookie(response)
    return MessageResponse(message="Successfully logged out")


@router.post("/logout-all", response_model=MessageResponse)
def logout_all(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Logout and revoke all refresh sessions for the current user."""
    revoked = authenticator.logout_all(
        db,
        current_user.id,
        user_agent=request.headers.get("user-agent"),
        ip_address=get_request_ip(request),
    )
    clear_refresh_cookie(response)
    return MessageResponse(message=f"Revoked {revoked} sessions")


@router.get("/me", response_model=MeResponse)
def me(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Current user with freshly resolved roles and permissions."""
    resolved = access.get_user_permissions(db, current_user.id)
    return MeResponse(
        user=UserResponse.model_validate(current_user),
        roles=sorted(resolved.roles),
        permissions=sorted(resolved.permissions),
    )


@router.patch("/me", response_model=UserResponse)
def update_me(
    profile: UserProfileUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Update the current user's profile fields."""
    with transaction(db):
        credentials.update_profile(db, current_user, profile.model_dump(exclude_unset=True))
    return current_user
