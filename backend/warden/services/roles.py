"""Role administration: role CRUD and user <-> role assignments.

Every mutation runs as one unit of work together with its audit entry.
Bulk calls collect per-item domain errors instead of raising them.
"""
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from warden import clock
from warden.database import transaction
from warden.errors import BadRequestError, ConflictError, NotFoundError
from warden.models.rbac import DEFAULT_ROLE_INDEX, Role, RoleAssignment, UserRole
from warden.models.user import User
from warden.services import audit
from warden.services.access import assignment_is_live
from warden.services.audit import AuditAction, AuditResource
from warden.services.credentials import get_user

logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass(frozen=True)
class BulkFailure:
    id: str
    reason: str


@dataclass
class BulkResult:
    success_count: int = 0
    failures: list[BulkFailure] = field(default_factory=list)


@dataclass(frozen=True)
class RequestContext:
    """Who is acting, and from where."""

    actor_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


SYSTEM = RequestContext()


def _audit(db: Session, context: RequestContext, action: AuditAction, **kwargs: Any) -> None:
    audit.record(
        db,
        action,
        AuditResource.ROLE,
        context.actor_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        **kwargs,
    )


# Role CRUD


def get_role(db: Session, role_id: str) -> Role:
    role = db.query(Role).filter(Role.id == role_id).first()
    if not role:
        raise NotFoundError(f'Role with ID "{role_id}" not found')
    return role


def get_role_by_name(db: Session, name: str) -> Role:
    role = db.query(Role).filter(Role.name == name).first()
    if not role:
        raise NotFoundError(f'Role with name "{name}" not found')
    return role


def get_active_role(db: Session, role_id: str) -> Role:
    role = db.query(Role).filter(Role.id == role_id).first()
    if not role or not role.is_active:
        raise NotFoundError(f'Active role with ID "{role_id}" not found')
    return role


def list_roles(db: Session, include_inactive: bool = False) -> list[Role]:
    query = db.query(Role)
    if not include_inactive:
        query = query.filter(Role.is_active.is_(True))
    return query.order_by(Role.name.asc()).all()


def get_default_role(db: Session) -> Role | None:
    return db.query(Role).filter(Role.is_default.is_(True), Role.is_active.is_(True)).first()


def count_active_assignments(db: Session, role_id: str) -> int:
    return (
        db.query(func.count(UserRole.id))
        .filter(UserRole.role_id == role_id, *assignment_is_live())
        .scalar()
    )


def _clear_default(db: Session, keep_role_id: str | None = None) -> None:
    query = db.query(Role).filter(Role.is_default.is_(True))
    if keep_role_id:
        query = query.filter(Role.id != keep_role_id)
    query.update({"is_default": False}, synchronize_session="fetch")


def _name_taken(db: Session, name: str) -> bool:
    return db.query(Role.id).filter(Role.name == name).first() is not None


def _flush_role(db: Session, name: str) -> None:
    """Flush role changes, mapping unique-index violations to conflicts."""
    try:
        db.flush()
    except IntegrityError as exc:
        if DEFAULT_ROLE_INDEX in str(exc.orig) or "roles.is_default" in str(exc.orig):
            raise ConflictError("Another role is already the default") from exc
        raise ConflictError(f'Role with name "{name}" already exists') from exc


def create_role(
    db: Session,
    name: str,
    description: str | None = None,
    is_active: bool = True,
    is_default: bool = False,
    context: RequestContext = SYSTEM,
) -> Role:
    """Create a role. Making it the default clears the previous default atomically."""
    if _name_taken(db, name):
        raise ConflictError(f'Role with name "{name}" already exists')

    with transaction(db):
        if is_default:
            _clear_default(db)
        role = Role(name=name, description=description, is_active=is_active, is_default=is_default)
        db.add(role)
        _flush_role(db, name)
        _audit(
            db,
            context,
            AuditAction.ROLE_CREATED,
            role_id=role.id,
            details={"name": name, "is_default": is_default, "is_active": is_active},
        )

    logger.info('Role "%s" created by user %s', name, context.actor_id)
    return role


def update_role(
    db: Session,
    role_id: str,
    name: str | None = None,
    description: str | None = _UNSET,
    is_active: bool | None = None,
    is_default: bool | None = None,
    context: RequestContext = SYSTEM,
) -> Role:
    role = get_role(db, role_id)

    if name and name != role.name:
        if _name_taken(db, name):
            raise ConflictError(f'Role with name "{name}" already exists')

    changes: dict[str, Any] = {}
    with transaction(db):
        if is_default:
            _clear_default(db, keep_role_id=role.id)
        if name and name != role.name:
            changes["name"] = name
            role.name = name
        if description is not _UNSET:
            changes["description"] = description
            role.description = description
        if is_active is not None:
            changes["is_active"] = is_active
            role.is_active = is_active
        if is_default is not None:
            changes["is_default"] = is_default
            role.is_default = is_default
        _flush_role(db, role.name)
        _audit(db, context, AuditAction.ROLE_UPDATED, role_id=role.id, details=changes)

    logger.info('Role "%s" updated by user %s', role.name, context.actor_id)
    return role


def delete_role(db: Session, role_id: str, context: RequestContext = SYSTEM) -> Role:
    """Soft-delete a role that is neither the default nor assigned to anyone."""
    role = get_role(db, role_id)

    if role.is_default:
        raise BadRequestError("Cannot delete a default role")

    with transaction(db):
        if count_active_assignments(db, role_id) > 0:
            raise BadRequestError(
                "Cannot delete role that is assigned to users. Remove all assignments first."
            )
        role.is_active = False
        db.flush()
        _audit(db, context, AuditAction.ROLE_DELETED, role_id=role.id, details={"name": role.name})

    logger.info('Role "%s" deleted by user %s', role.name, context.actor_id)
    return role


# User <-> role assignments


def _require_user(db: Session, user_id: str) -> User:
    user = get_user(db, user_id)
    if not user:
        raise NotFoundError(f'User with ID "{user_id}" not found')
    return user


def _find_user_role(db: Session, user_id: str, role_id: str) -> UserRole | None:
    return (
        db.query(UserRole)
        .filter(UserRole.user_id == user_id, UserRole.role_id == role_id)
        .first()
    )


def _is_live(user_role: UserRole, now: datetime) -> bool:
    return user_role.is_active and (user_role.expires_at is None or user_role.expires_at > now)


def _close_assignment(
    db: Session,
    user_id: str,
    role_id: str,
    now: datetime,
    revoked_by: str | None,
    reason: str | None,
) -> None:
    (
        db.query(RoleAssignment)
        .filter(
            RoleAssignment.user_id == user_id,
            RoleAssignment.role_id == role_id,
            RoleAssignment.is_active.is_(True),
        )
        .update(
            {
                "is_active": False,
                "revoked_at": now,
                "revoked_by": revoked_by,
                "revoke_reason": reason,
            },
            synchronize_session=False,
        )
    )


def assign_role(
    db: Session,
    user_id: str,
    role_id: str,
    reason: str | None = None,
    expires_at: datetime | None = None,
    context: RequestContext = SYSTEM,
) -> UserRole:
    """Grant a role to a user.

    A previously revoked (or expired) pairing is reactivated in place, so
    there is never more than one row per (user, role).
    """
    now = clock.utcnow()
    expires_at = clock.as_utc(expires_at)
    if expires_at is not None and expires_at <= now:
        raise BadRequestError("Role assignment expiry must be in the future")

    _require_user(db, user_id)
    role = get_active_role(db, role_id)

    with transaction(db):
        user_role = _find_user_role(db, user_id, role_id)
        if user_role and _is_live(user_role, now):
            raise ConflictError("User already has this role")

        if user_role:
            # Expired-but-unflipped rows still carry an open history record.
            _close_assignment(db, user_id, role_id, now, None, "expired")
            user_role.is_active = True
            user_role.expires_at = expires_at
        else:
            user_role = UserRole(user_id=user_id, role_id=role_id, is_active=True, expires_at=expires_at)
            db.add(user_role)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConflictError("User already has this role") from exc

        db.add(
            RoleAssignment(
                user_id=user_id,
                role_id=role_id,
                assigned_by=context.actor_id,
                reason=reason,
                expires_at=expires_at,
                is_active=True,
            )
        )
        _audit(
            db,
            context,
            AuditAction.ROLE_ASSIGNED,
            target_user_id=user_id,
            role_id=role_id,
            details={"role_name": role.name, "reason": reason, "expires_at": expires_at},
        )

    logger.info('Role "%s" assigned to user %s by user %s', role.name, user_id, context.actor_id)
    return user_role


def revoke_role(
    db: Session,
    user_id: str,
    role_id: str,
    reason: str | None = None,
    context: RequestContext = SYSTEM,
) -> UserRole:
    now = clock.utcnow()
    with transaction(db):
        user_role = _find_user_role(db, user_id, role_id)
        if not user_role or not _is_live(user_role, now):
            raise NotFoundError("User does not have this role")

        user_role.is_active = False
        db.flush()
        _close_assignment(db, user_id, role_id, now, context.actor_id, reason)
        _audit(
            db,
            context,
            AuditAction.ROLE_REVOKED,
            target_user_id=user_id,
            role_id=role_id,
            details={"role_name": user_role.role.name, "reason": reason},
        )

    logger.info('Role "%s" revoked from user %s by user %s', user_role.role.name, user_id, context.actor_id)
    return user_role


def bulk_assign_roles(
    db: Session,
    role_id: str,
    user_ids: list[str],
    reason: str | None = None,
    expires_at: datetime | None = None,
    context: RequestContext = SYSTEM,
) -> BulkResult:
    """Assign one role to many users; each user succeeds or fails on its own."""
    role = get_active_role(db, role_id)

    result = BulkResult()
    for user_id in user_ids:
        try:
            assign_role(db, user_id, role_id, reason=reason, expires_at=expires_at, context=context)
        except (BadRequestError, ConflictError, NotFoundError) as exc:
            result.failures.append(BulkFailure(id=user_id, reason=exc.message))
        else:
            result.success_count += 1

    logger.info(
        'Bulk role assignment of "%s": %d successful, %d failed',
        role.name,
        result.success_count,
        len(result.failures),
    )
    return result


def assign_default_role(db: Session, user_id: str, context: RequestContext = SYSTEM) -> UserRole | None:
    """Give a newly registered user the default role, if one is configured."""
    default_role = get_default_role(db)
    if default_role is None:
        logger.warning("No default role configured; user %s has no roles", user_id)
        return None
    return assign_role(db, user_id, default_role.id, reason="Default role", context=context)


def expire_role_assignments(db: Session, now: datetime | None = None) -> int:
    """Flip expired UserRole rows to inactive and close their history.

    Resolution already treats them as inactive; this only makes the stored
    flags agree.
    """
    now = now or clock.utcnow()
    expired_count = 0
    with transaction(db):
        expired = (
            db.query(UserRole)
            .filter(
                UserRole.is_active.is_(True),
                UserRole.expires_at.isnot(None),
                UserRole.expires_at <= now,
            )
            .all()
        )
        for user_role in expired:
            user_role.is_active = False
            _close_assignment(db, user_role.user_id, user_role.role_id, now, None, "expired")
            _audit(
                db,
                SYSTEM,
                AuditAction.ROLE_EXPIRED,
                target_user_id=user_role.user_id,
                role_id=user_role.role_id,
                details={"expires_at": user_role.expires_at},
            )
            expired_count += 1

    if expired_count:
        logger.info("Expired %d role assignments", expired_count)
    return expired_count


# Read paths


def get_user_roles(db: Session, user_id: str) -> list[Role]:
    """Live roles held by a user, active roles only."""
    _require_user(db, user_id)
    return (
        db.query(Role)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id, Role.is_active.is_(True), *assignment_is_live())
        .order_by(Role.name.asc())
        .all()
    )


def get_users_with_role(db: Session, role_id: str) -> list[User]:
    get_role(db, role_id)
    return (
        db.query(User)
        .join(UserRole, UserRole.user_id == User.id)
        .filter(UserRole.role_id == role_id, *assignment_is_live())
        .order_by(User.email.asc())
        .all()
    )


def get_role_assignment_history(db: Session, user_id: str) -> list[RoleAssignment]:
    """Every assignment lifetime for a user, newest first."""
    return (
        db.query(RoleAssignment)
        .filter(RoleAssignment.user_id == user_id)
        .order_by(RoleAssignment.created_at.desc(), RoleAssignment.id.desc())
        .all()
    )
