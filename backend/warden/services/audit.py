"""Audit recorder.

Entries are written inside the caller's transaction: if the entry cannot be
flushed the exception propagates and the mutation it documents rolls back
with it.
"""
from datetime import datetime
from enum import Enum
import logging
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from warden import clock
from warden.models.audit import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    REGISTER = "REGISTER"
    LOGIN = "LOGIN"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    USER_ACTIVATED = "USER_ACTIVATED"
    USER_DEACTIVATED = "USER_DEACTIVATED"
    USER_VERIFICATION_CHANGED = "USER_VERIFICATION_CHANGED"
    ROLE_CREATED = "ROLE_CREATED"
    ROLE_UPDATED = "ROLE_UPDATED"
    ROLE_DELETED = "ROLE_DELETED"
    ROLE_ASSIGNED = "ROLE_ASSIGNED"
    ROLE_REVOKED = "ROLE_REVOKED"
    ROLE_EXPIRED = "ROLE_EXPIRED"
    PERMISSION_CREATED = "PERMISSION_CREATED"
    PERMISSION_UPDATED = "PERMISSION_UPDATED"
    PERMISSION_DELETED = "PERMISSION_DELETED"
    PERMISSION_ASSIGNED = "PERMISSION_ASSIGNED"
    PERMISSION_REVOKED = "PERMISSION_REVOKED"


class AuditResource(str, Enum):
    AUTH = "AUTH"
    USER = "USER"
    ROLE = "ROLE"
    PERMISSION = "PERMISSION"


def record(
    db: Session,
    action: AuditAction,
    resource: AuditResource,
    actor_id: str | None = None,
    *,
    target_user_id: str | None = None,
    role_id: str | None = None,
    permission_id: str | None = None,
    details: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLogEntry:
    """Append an audit entry to the current transaction and flush it."""
    entry = AuditLogEntry(
        action=AuditAction(action).value,
        resource=AuditResource(resource).value,
        actor_id=actor_id,
        target_user_id=target_user_id,
        role_id=role_id,
        permission_id=permission_id,
        details=_jsonable(details or {}),
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=clock.utcnow(),
    )
    db.add(entry)
    db.flush()
    logger.debug("Audit %s on %s by %s", entry.action, entry.resource, actor_id or "system")
    return entry


def list_entries(
    db: Session,
    *,
    actor_id: str | None = None,
    user_id: str | None = None,
    role_id: str | None = None,
    action: AuditAction | str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int | None = 100,
) -> list[AuditLogEntry]:
    """Chronological audit history, oldest first.

    ``user_id`` matches entries where the user is either the actor or the
    target.
    """
    query = db.query(AuditLogEntry)
    if actor_id:
        query = query.filter(AuditLogEntry.actor_id == actor_id)
    if user_id:
        query = query.filter(
            or_(AuditLogEntry.actor_id == user_id, AuditLogEntry.target_user_id == user_id)
        )
    if role_id:
        query = query.filter(AuditLogEntry.role_id == role_id)
    if action:
        query = query.filter(AuditLogEntry.action == getattr(action, "value", action))
    if since:
        query = query.filter(AuditLogEntry.created_at >= clock.as_utc(since))
    if until:
        query = query.filter(AuditLogEntry.created_at < clock.as_utc(until))

    query = query.order_by(AuditLogEntry.created_at.asc(), AuditLogEntry.id.asc())
    if limit:
        query = query.limit(limit)
    return query.all()


def user_history(db: Session, user_id: str, limit: int | None = 100) -> list[AuditLogEntry]:
    return list_entries(db, user_id=user_id, limit=limit)


def role_history(db: Session, role_id: str, limit: int | None = 100) -> list[AuditLogEntry]:
    return list_entries(db, role_id=role_id, limit=limit)


def _jsonable(details: dict[str, Any]) -> dict[str, Any]:
    cleaned = {}
    for key, value in details.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        cleaned[key] = value
    return cleaned
