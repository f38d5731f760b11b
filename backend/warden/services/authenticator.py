"""Authenticator: register, login, refresh rotation and logout.

Each operation is one unit of work. The token pair, the session row and the
audit entry are committed together or not at all.
"""
from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.orm import Session

from warden.config import get_settings
from warden.database import transaction
from warden.errors import BadRequestError, TokenReplayError, UnauthorizedError
from warden.models.auth import RevokeReason
from warden.models.user import User
from warden.services import access, audit, credentials, sessions
from warden.services.audit import AuditAction, AuditResource
from warden.services.roles import RequestContext, assign_default_role
from warden.services.tokens import TokenPair, create_access_token, decode_access_token, hash_refresh_token

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


def _issue_tokens(
    db: Session,
    user: User,
    user_agent: str | None,
    ip_address: str | None,
    rotated_from_id: str | None = None,
) -> TokenPair:
    resolved = access.get_user_permissions(db, user.id)
    access_token, access_expires_at = create_access_token(
        user.id,
        roles=resolved.roles,
        permissions=resolved.permissions,
    )
    session, refresh_token = sessions.create_session(
        db,
        user.id,
        user_agent=user_agent,
        ip_address=ip_address,
        rotated_from_id=rotated_from_id,
    )
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        access_expires_at=access_expires_at,
        refresh_expires_at=session.expires_at,
    )


def _record(
    db: Session,
    action: AuditAction,
    user_id: str,
    user_agent: str | None,
    ip_address: str | None,
    details: dict[str, Any] | None = None,
) -> None:
    audit.record(
        db,
        action,
        AuditResource.AUTH,
        user_id,
        target_user_id=user_id,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def register(
    db: Session,
    email: str,
    password: str,
    profile: dict[str, Any] | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> AuthResult:
    """Create an account, grant the default role and open a first session."""
    with transaction(db):
        user = credentials.create_user(db, email, password, profile)
        _record(db, AuditAction.REGISTER, user.id, user_agent, ip_address)
        assign_default_role(
            db,
            user.id,
            context=RequestContext(actor_id=user.id, ip_address=ip_address, user_agent=user_agent),
        )
        tokens = _issue_tokens(db, user, user_agent, ip_address)

    logger.info("User %s registered", user.id)
    return AuthResult(user=user, tokens=tokens)


def login(
    db: Session,
    email: str,
    password: str,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> AuthResult:
    """Verify credentials and open a new session.

    Unknown email, inactive account and wrong password all fail with the
    same error.
    """
    user = credentials.get_user_by_email(db, email)
    password_ok = credentials.verify_password(password, user.password_hash if user else None)
    if not user or not user.is_active or not password_ok:
        logger.warning("Failed login attempt from %s", ip_address or "unknown address")
        raise UnauthorizedError(INVALID_CREDENTIALS)

    with transaction(db):
        credentials.mark_login(db, user)
        tokens = _issue_tokens(db, user, user_agent, ip_address)
        _record(db, AuditAction.LOGIN, user.id, user_agent, ip_address)

    logger.info("User %s logged in", user.id)
    return AuthResult(user=user, tokens=tokens)


def refresh(
    db: Session,
    refresh_token: str,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> AuthResult:
    """Rotate a refresh token: consume it and issue a fresh pair.

    Presenting a token that was already rotated raises ``TokenReplayError``
    and, by default, revokes every session of its owner.
    """
    token_hash = hash_refresh_token(refresh_token)

    with transaction(db):
        claimed = sessions.claim_session(db, token_hash, reason=RevokeReason.ROTATED)
        if claimed is not None:
            user = credentials.get_active_user(db, claimed.user_id)
            if user is None:
                raise UnauthorizedError("User not found or inactive")
            tokens = _issue_tokens(db, user, user_agent, ip_address, rotated_from_id=claimed.id)
            _record(
                db,
                AuditAction.TOKEN_REFRESH,
                user.id,
                user_agent,
                ip_address,
                details={"session_id": claimed.id},
            )
            return AuthResult(user=user, tokens=tokens)

    _reject_refresh(db, token_hash, user_agent, ip_address)


def _reject_refresh(
    db: Session,
    token_hash: str,
    user_agent: str | None,
    ip_address: str | None,
) -> None:
    existing = sessions.find_session(db, token_hash)
    if existing is None or existing.revoke_reason != RevokeReason.ROTATED:
        raise UnauthorizedError("Invalid or expired refresh token")

    settings = get_settings()
    with transaction(db):
        revoked = 0
        if settings.refresh_reuse_revokes_all:
            revoked = sessions.revoke_all_user_sessions(db, existing.user_id, reason=RevokeReason.REUSE_DETECTED)
        _record(
            db,
            AuditAction.REFRESH_TOKEN_REUSE,
            existing.user_id,
            user_agent,
            ip_address,
            details={"session_id": existing.id, "sessions_revoked": revoked},
        )

    logger.warning(
        "Rotated refresh token reused for user %s from %s; %d sessions revoked",
        existing.user_id,
        ip_address or "unknown address",
        revoked,
    )
    raise TokenReplayError(
        "Refresh token has already been used",
        user_id=existing.user_id,
        detail={"sessions_revoked": revoked},
    )


def logout(
    db: Session,
    refresh_token: str,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> bool:
    """Revoke the session behind one refresh token. Idempotent."""
    token_hash = hash_refresh_token(refresh_token)
    with transaction(db):
        session = sessions.claim_session(db, token_hash, reason=RevokeReason.LOGOUT)
        if session is None:
            return False
        _record(
            db,
            AuditAction.LOGOUT,
            session.user_id,
            user_agent,
            ip_address,
            details={"session_id": session.id},
        )

    logger.info("User %s logged out one session", session.user_id)
    return True


def logout_all(
    db: Session,
    user_id: str,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> int:
    """Revoke every live session of a user, on all devices."""
    credentials.require_user(db, user_id)
    with transaction(db):
        revoked = sessions.revoke_all_user_sessions(db, user_id, reason=RevokeReason.LOGOUT_ALL)
        _record(
            db,
            AuditAction.LOGOUT_ALL,
            user_id,
            user_agent,
            ip_address,
            details={"sessions_revoked": revoked},
        )

    logger.info("User %s logged out of %d sessions", user_id, revoked)
    return revoked


def set_user_status(
    db: Session,
    user_id: str,
    is_active: bool,
    context: RequestContext,
    reason: str | None = None,
) -> User:
    """Activate or deactivate an account.

    Deactivation cuts off every session of the account. An admin cannot
    deactivate their own account.
    """
    if not is_active and context.actor_id == user_id:
        raise BadRequestError("Cannot deactivate your own account")
    user = credentials.require_user(db, user_id)
    with transaction(db):
        user.is_active = is_active
        db.flush()
        details: dict[str, Any] = {"reason": reason}
        if is_active:
            action = AuditAction.USER_ACTIVATED
        else:
            action = AuditAction.USER_DEACTIVATED
            details["sessions_revoked"] = sessions.revoke_all_user_sessions(
                db, user_id, reason=RevokeReason.USER_DEACTIVATED
            )
        audit.record(
            db,
            action,
            AuditResource.USER,
            context.actor_id,
            target_user_id=user_id,
            details=details,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

    logger.info("User %s %s by %s", user_id, "activated" if is_active else "deactivated", context.actor_id)
    return user


def set_user_verification(
    db: Session,
    user_id: str,
    is_verified: bool,
    context: RequestContext,
    reason: str | None = None,
) -> User:
    user = credentials.require_user(db, user_id)
    with transaction(db):
        previous = user.is_verified
        user.is_verified = is_verified
        db.flush()
        audit.record(
            db,
            AuditAction.USER_VERIFICATION_CHANGED,
            AuditResource.USER,
            context.actor_id,
            target_user_id=user_id,
            details={"is_verified": is_verified, "previous": previous, "reason": reason},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

    logger.info("User %s verification set to %s by %s", user_id, is_verified, context.actor_id)
    return user


def authenticate_access_token(db: Session, token: str) -> User:
    """Resolve a bearer access token to an active user."""
    claims = decode_access_token(token)
    user = credentials.get_active_user(db, claims.subject)
    if user is None:
        raise UnauthorizedError("User not found or inactive")
    return user
