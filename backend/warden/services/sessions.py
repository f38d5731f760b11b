"""Session registry: one row per issued refresh token."""
from datetime import datetime
import logging

from sqlalchemy.orm import Session

from warden import clock
from warden.models.auth import RefreshSession, RevokeReason
from warden.services.tokens import generate_refresh_token, hash_refresh_token, refresh_token_expiry

logger = logging.getLogger(__name__)


def create_session(
    db: Session,
    user_id: str,
    user_agent: str | None = None,
    ip_address: str | None = None,
    rotated_from_id: str | None = None,
) -> tuple[RefreshSession, str]:
    """Persist a new refresh session and return it with the raw token.

    The raw token is returned once and never stored.
    """
    refresh_token = generate_refresh_token()
    session = RefreshSession(
        user_id=user_id,
        token_hash=hash_refresh_token(refresh_token),
        expires_at=refresh_token_expiry(),
        rotated_from_id=rotated_from_id,
        user_agent=user_agent[:255] if user_agent else None,
        ip_address=ip_address,
    )
    db.add(session)
    db.flush()
    return session, refresh_token


def find_session(db: Session, token_hash: str) -> RefreshSession | None:
    return db.query(RefreshSession).filter(RefreshSession.token_hash == token_hash).first()


def claim_session(
    db: Session,
    token_hash: str,
    reason: str = RevokeReason.ROTATED,
    now: datetime | None = None,
) -> RefreshSession | None:
    """Atomically revoke a live session and return it, or ``None``.

    The conditional UPDATE is the single point of truth for single use: of
    two concurrent claims on the same hash exactly one sees a row count of 1.
    """
    now = now or clock.utcnow()
    claimed = (
        db.query(RefreshSession)
        .filter(
            RefreshSession.token_hash == token_hash,
            RefreshSession.revoked_at.is_(None),
            RefreshSession.expires_at > now,
        )
        .update(
            {"revoked_at": now, "revoke_reason": reason, "last_used_at": now},
            synchronize_session=False,
        )
    )
    if claimed != 1:
        return None
    session = find_session(db, token_hash)
    db.refresh(session)
    return session


def revoke_all_user_sessions(db: Session, user_id: str, reason: str = RevokeReason.LOGOUT_ALL) -> int:
    """Revoke all active refresh sessions for a user."""
    now = clock.utcnow()
    return (
        db.query(RefreshSession)
        .filter(
            RefreshSession.user_id == user_id,
            RefreshSession.revoked_at.is_(None),
        )
        .update(
            {"revoked_at": now, "revoke_reason": reason, "last_used_at": now},
            synchronize_session=False,
        )
    )


def list_active_sessions(db: Session, user_id: str) -> list[RefreshSession]:
    now = clock.utcnow()
    return (
        db.query(RefreshSession)
        .filter(
            RefreshSession.user_id == user_id,
            RefreshSession.revoked_at.is_(None),
            RefreshSession.expires_at > now,
        )
        .order_by(RefreshSession.created_at.desc())
        .all()
    )


def purge_expired_sessions(db: Session, now: datetime | None = None) -> int:
    """Delete session rows past their expiry.

    Revoked-but-unexpired rows are kept so a replayed token is still
    recognised as such.
    """
    now = now or clock.utcnow()
    purged = (
        db.query(RefreshSession)
        .filter(RefreshSession.expires_at <= now)
        .delete(synchronize_session=False)
    )
    logger.info("Purged %d expired refresh sessions", purged)
    return purged
