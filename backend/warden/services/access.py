"""Permission resolver.

A permission reaches a user only through an unbroken chain of active
links: UserRole (active and unexpired) -> Role -> RolePermission ->
Permission. Any inactive link removes it.
"""
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from warden import clock
from warden.models.rbac import Permission, Role, RolePermission, UserRole
from warden.services.credentials import require_user

GENERAL_RESOURCE = "GENERAL"


@dataclass(frozen=True)
class ResolvedPermissions:
    user_id: str
    permissions: frozenset[str]
    roles: frozenset[str]
    permissions_by_resource: dict[str, list[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class PermissionCheck:
    granted: bool
    permission: str
    resource: str | None
    granted_by_roles: tuple[str, ...]


def assignment_is_live(now: datetime | None = None):
    """SQL criterion for a UserRole that counts: active and not expired."""
    now = now or clock.utcnow()
    return (
        UserRole.is_active.is_(True),
        or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
    )


def _active_roles_query(db: Session, user_id: str, now: datetime | None = None) -> Query:
    return (
        db.query(Role)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(
            UserRole.user_id == user_id,
            Role.is_active.is_(True),
            *assignment_is_live(now),
        )
    )


def _granted_query(db: Session, user_id: str, now: datetime | None = None) -> Query:
    return (
        db.query(Permission, Role.name)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(Role, Role.id == RolePermission.role_id)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(
            UserRole.user_id == user_id,
            Role.is_active.is_(True),
            RolePermission.is_active.is_(True),
            Permission.is_active.is_(True),
            *assignment_is_live(now),
        )
    )


def get_user_roles(db: Session, user_id: str) -> frozenset[str]:
    return frozenset(role.name for role in _active_roles_query(db, user_id).all())


def get_user_permissions(db: Session, user_id: str) -> ResolvedPermissions:
    """Effective permissions and roles of a user. Raises NotFound for unknown users."""
    require_user(db, user_id)

    roles = get_user_roles(db, user_id)
    names: set[str] = set()
    by_resource: dict[str, list[str]] = {}
    for permission, _role_name in _granted_query(db, user_id).order_by(Permission.name).all():
        if permission.name in names:
            continue
        names.add(permission.name)
        by_resource.setdefault(permission.resource or GENERAL_RESOURCE, []).append(permission.name)

    return ResolvedPermissions(
        user_id=user_id,
        permissions=frozenset(names),
        roles=roles,
        permissions_by_resource=by_resource,
    )


def check_permission(
    db: Session,
    user_id: str,
    permission_name: str,
    resource: str | None = None,
) -> PermissionCheck:
    """Point check without materialising the full permission set."""
    query = _granted_query(db, user_id).filter(Permission.name == permission_name)
    if resource:
        query = query.filter(Permission.resource == resource)
    granted_by = sorted({role_name for _permission, role_name in query.all()})
    return PermissionCheck(
        granted=bool(granted_by),
        permission=permission_name,
        resource=resource,
        granted_by_roles=tuple(granted_by),
    )


def has_role(db: Session, user_id: str, role_name: str) -> bool:
    return _active_roles_query(db, user_id).filter(Role.name == role_name).first() is not None


def has_any_role(db: Session, user_id: str, role_names: Iterable[str]) -> bool:
    role_names = list(role_names)
    if not role_names:
        return False
    return _active_roles_query(db, user_id).filter(Role.name.in_(role_names)).first() is not None


def has_all_roles(db: Session, user_id: str, role_names: Iterable[str]) -> bool:
    return set(role_names) <= get_user_roles(db, user_id)


def has_any_permission(
    db: Session,
    user_id: str,
    permission_names: Iterable[str],
    resource: str | None = None,
) -> bool:
    permission_names = list(permission_names)
    if not permission_names:
        return False
    query = _granted_query(db, user_id).filter(Permission.name.in_(permission_names))
    if resource:
        query = query.filter(Permission.resource == resource)
    return query.first() is not None


def has_all_permissions(
    db: Session,
    user_id: str,
    permission_names: Iterable[str],
    resource: str | None = None,
) -> bool:
    required = set(permission_names)
    query = _granted_query(db, user_id).filter(Permission.name.in_(required))
    if resource:
        query = query.filter(Permission.resource == resource)
    held = {permission.name for permission, _role_name in query.all()}
    return required <= held
