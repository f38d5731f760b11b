"""Credential store: user identities and password hashes."""
import logging
from typing import Any

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from warden import clock
from warden.config import get_settings
from warden.errors import BadRequestError, ConflictError, NotFoundError
from warden.models.user import User

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name")

# bcrypt only looks at the first 72 bytes and rejects longer input outright.
MAX_PASSWORD_BYTES = 72

# Compared against when the email is unknown so a miss costs the same as a hit.
_DUMMY_HASH = bcrypt.hashpw(b"warden-dummy-password", bcrypt.gensalt(rounds=4)).decode("utf-8")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def get_password_hash(password: str) -> str:
    """Hash a password. Raises ``BadRequestError`` past bcrypt's byte limit."""
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise BadRequestError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    settings = get_settings()
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(rounds=settings.bcrypt_rounds),
    ).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Verify a password against its hash.

    A missing hash never matches, and neither does a password too long to
    have been hashed. Both still pay for one bcrypt comparison.
    """
    encoded = plain_password.encode("utf-8")
    if hashed_password is None or len(encoded) > MAX_PASSWORD_BYTES:
        bcrypt.checkpw(encoded[:MAX_PASSWORD_BYTES], _DUMMY_HASH.encode("utf-8"))
        return False
    return bcrypt.checkpw(encoded, hashed_password.encode("utf-8"))


def get_user(db: Session, user_id: str) -> User | None:
    return db.query(User).filter(User.id == user_id).first()


def get_active_user(db: Session, user_id: str) -> User | None:
    return db.query(User).filter(User.id == user_id, User.is_active.is_(True)).first()


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def require_user(db: Session, user_id: str) -> User:
    user = get_user(db, user_id)
    if user is None:
        raise NotFoundError(f'User with ID "{user_id}" not found')
    return user


def create_user(db: Session, email: str, password: str, profile: dict[str, Any] | None = None) -> User:
    """Add a new user to the current transaction.

    The pre-check gives a clean error; the unique index on ``email`` is what
    actually rejects a concurrent duplicate.
    """
    normalized = normalize_email(email)
    if get_user_by_email(db, normalized):
        raise ConflictError("User with this email already exists")

    user = User(
        email=normalized,
        password_hash=get_password_hash(password),
        **_profile_values(profile),
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError("User with this email already exists") from exc
    logger.debug("Created user %s", user.id)
    return user


def update_profile(db: Session, user: User, profile: dict[str, Any]) -> User:
    """Apply profile-only changes. Credentials and flags are not touched here."""
    for field, value in _profile_values(profile).items():
        setattr(user, field, value)
    db.flush()
    return user


def mark_login(db: Session, user: User) -> None:
    user.last_login_at = clock.utcnow()
    db.flush()


def _profile_values(profile: dict[str, Any] | None) -> dict[str, Any]:
    if not profile:
        return {}
    return {field: profile[field] for field in PROFILE_FIELDS if field in profile}
