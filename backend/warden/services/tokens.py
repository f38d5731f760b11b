"""Token issuer.

Access tokens are signed JWTs validated without touching the database.
Refresh tokens are opaque random strings; only their sha256 digest is ever
persisted, and their liveness lives in the session registry.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import secrets
import uuid

from jose import ExpiredSignatureError, JWTError, jwt

from warden import clock
from warden.config import get_settings
from warden.errors import UnauthorizedError

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_BYTES = 48


@dataclass(frozen=True)
class AccessTokenClaims:
    subject: str
    roles: frozenset[str]
    permissions: frozenset[str]
    issued_at: datetime
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = field(default="bearer")

    @property
    def expires_in(self) -> int:
        """Seconds until the access token expires."""
        return max(0, int((self.access_expires_at - clock.utcnow()).total_seconds()))


def create_access_token(
    user_id: str,
    roles: set[str] | frozenset[str] = frozenset(),
    permissions: set[str] | frozenset[str] = frozenset(),
    expires_delta: timedelta | None = None,
) -> tuple[str, datetime]:
    """Create a signed access token and return it with its expiry."""
    settings = get_settings()
    issued_at = clock.utcnow()
    expires_at = issued_at + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    claims = {
        "sub": user_id,
        "roles": sorted(roles),
        "permissions": sorted(permissions),
        "iat": issued_at,
        "exp": expires_at,
        "jti": str(uuid.uuid4()),
        "type": ACCESS_TOKEN_TYPE,
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm), expires_at


def decode_access_token(token: str) -> AccessTokenClaims:
    """Validate signature, type and expiry. Raises ``UnauthorizedError``."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"leeway": settings.clock_skew_seconds},
        )
    except ExpiredSignatureError as exc:
        raise UnauthorizedError("Access token expired") from exc
    except JWTError as exc:
        raise UnauthorizedError("Invalid access token") from exc

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise UnauthorizedError("Invalid token type")
    subject = payload.get("sub")
    if not subject:
        raise UnauthorizedError("Invalid access token")

    return AccessTokenClaims(
        subject=subject,
        roles=frozenset(payload.get("roles", [])),
        permissions=frozenset(payload.get("permissions", [])),
        issued_at=_from_timestamp(payload["iat"]),
        expires_at=_from_timestamp(payload["exp"]),
        token_id=payload.get("jti", ""),
    )


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


def hash_refresh_token(refresh_token: str) -> str:
    """Hash refresh token before persisting or looking it up."""
    return hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()


def refresh_token_expiry(now: datetime | None = None) -> datetime:
    settings = get_settings()
    return (now or clock.utcnow()) + timedelta(days=settings.refresh_token_expire_days)


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, timezone.utc).replace(tzinfo=None)
