"""Permission administration: permission CRUD and role <-> permission grants."""
import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from warden.database import transaction
from warden.errors import BadRequestError, ConflictError, NotFoundError
from warden.models.rbac import Permission, Role, RolePermission
from warden.services import audit
from warden.services.access import GENERAL_RESOURCE
from warden.services.audit import AuditAction, AuditResource
from warden.services.roles import (
    SYSTEM,
    BulkFailure,
    BulkResult,
    RequestContext,
    get_active_role,
    get_role,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _audit(db: Session, context: RequestContext, action: AuditAction, **kwargs: Any) -> None:
    audit.record(
        db,
        action,
        AuditResource.PERMISSION,
        context.actor_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        **kwargs,
    )


def _flush_permission(db: Session, name: str) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError(f'Permission with name "{name}" already exists') from exc


def _name_taken(db: Session, name: str) -> bool:
    return db.query(Permission.id).filter(Permission.name == name).first() is not None


def get_permission(db: Session, permission_id: str) -> Permission:
    permission = db.query(Permission).filter(Permission.id == permission_id).first()
    if not permission:
        raise NotFoundError(f'Permission with ID "{permission_id}" not found')
    return permission


def get_permission_by_name(db: Session, name: str) -> Permission:
    permission = db.query(Permission).filter(Permission.name == name).first()
    if not permission:
        raise NotFoundError(f'Permission with name "{name}" not found')
    return permission


def list_permissions(
    db: Session,
    include_inactive: bool = False,
    resource: str | None = None,
) -> list[Permission]:
    query = db.query(Permission)
    if not include_inactive:
        query = query.filter(Permission.is_active.is_(True))
    if resource:
        query = query.filter(Permission.resource == resource)
    return query.order_by(Permission.resource.asc(), Permission.name.asc()).all()


def get_permissions_by_resource(db: Session) -> dict[str, list[Permission]]:
    """Active permissions grouped by resource for browsing."""
    grouped: dict[str, list[Permission]] = {}
    for permission in list_permissions(db):
        grouped.setdefault(permission.resource or GENERAL_RESOURCE, []).append(permission)
    return grouped


def count_active_grants(db: Session, permission_id: str) -> int:
    return (
        db.query(func.count(RolePermission.id))
        .filter(RolePermission.permission_id == permission_id, RolePermission.is_active.is_(True))
        .scalar()
    )


def create_permission(
    db: Session,
    name: str,
    resource: str | None = None,
    action: str | None = None,
    description: str | None = None,
    is_active: bool = True,
    context: RequestContext = SYSTEM,
) -> Permission:
    if _name_taken(db, name):
        raise ConflictError(f'Permission with name "{name}" already exists')

    with transaction(db):
        permission = Permission(
            name=name,
            resource=resource,
            action=action,
            description=description,
            is_active=is_active,
        )
        db.add(permission)
        _flush_permission(db, name)
        _audit(
            db,
            context,
            AuditAction.PERMISSION_CREATED,
            permission_id=permission.id,
            details={"name": name, "resource": resource, "action": action},
        )

    logger.info('Permission "%s" created by user %s', name, context.actor_id)
    return permission


def update_permission(
    db: Session,
    permission_id: str,
    name: str | None = None,
    resource: str | None = _UNSET,
    action: str | None = _UNSET,
    description: str | None = _UNSET,
    is_active: bool | None = None,
    context: RequestContext = SYSTEM,
) -> Permission:
    permission = get_permission(db, permission_id)

    if name and name != permission.name:
        if _name_taken(db, name):
            raise ConflictError(f'Permission with name "{name}" already exists')

    changes: dict[str, Any] = {}
    if name and name != permission.name:
        changes["name"] = name
    for field_name, value in (("resource", resource), ("action", action), ("description", description)):
        if value is not _UNSET:
            changes[field_name] = value
    if is_active is not None:
        changes["is_active"] = is_active

    with transaction(db):
        for field_name, value in changes.items():
            setattr(permission, field_name, value)
        _flush_permission(db, permission.name)
        _audit(db, context, AuditAction.PERMISSION_UPDATED, permission_id=permission.id, details=changes)

    logger.info('Permission "%s" updated by user %s', permission.name, context.actor_id)
    return permission


def delete_permission(db: Session, permission_id: str, context: RequestContext = SYSTEM) -> Permission:
    """Soft-delete a permission no role currently holds."""
    permission = get_permission(db, permission_id)

    with transaction(db):
        if count_active_grants(db, permission_id) > 0:
            raise BadRequestError(
                "Cannot delete permission that is assigned to roles. Remove all assignments first."
            )
        permission.is_active = False
        db.flush()
        _audit(
            db,
            context,
            AuditAction.PERMISSION_DELETED,
            permission_id=permission.id,
            details={"name": permission.name},
        )

    logger.info('Permission "%s" deleted by user %s', permission.name, context.actor_id)
    return permission


def _get_active_permission(db: Session, permission_id: str) -> Permission:
    permission = db.query(Permission).filter(Permission.id == permission_id).first()
    if not permission or not permission.is_active:
        raise NotFoundError(f'Active permission with ID "{permission_id}" not found')
    return permission


def _find_grant(db: Session, role_id: str, permission_id: str) -> RolePermission | None:
    return (
        db.query(RolePermission)
        .filter(RolePermission.role_id == role_id, RolePermission.permission_id == permission_id)
        .first()
    )


def assign_permission_to_role(
    db: Session,
    role_id: str,
    permission_id: str,
    context: RequestContext = SYSTEM,
) -> RolePermission:
    role = get_active_role(db, role_id)
    permission = _get_active_permission(db, permission_id)

    with transaction(db):
        grant = _find_grant(db, role_id, permission_id)
        if grant and grant.is_active:
            raise ConflictError("Role already has this permission")

        if grant:
            grant.is_active = True
        else:
            grant = RolePermission(role_id=role_id, permission_id=permission_id, is_active=True)
            db.add(grant)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConflictError("Role already has this permission") from exc

        _audit(
            db,
            context,
            AuditAction.PERMISSION_ASSIGNED,
            role_id=role_id,
            permission_id=permission_id,
            details={"role_name": role.name, "permission_name": permission.name},
        )

    logger.info(
        'Permission "%s" assigned to role "%s" by user %s',
        permission.name,
        role.name,
        context.actor_id,
    )
    return grant


def revoke_permission_from_role(
    db: Session,
    role_id: str,
    permission_id: str,
    context: RequestContext = SYSTEM,
) -> RolePermission:
    with transaction(db):
        grant = _find_grant(db, role_id, permission_id)
        if not grant or not grant.is_active:
            raise NotFoundError("Role does not have this permission")

        grant.is_active = False
        db.flush()
        _audit(
            db,
            context,
            AuditAction.PERMISSION_REVOKED,
            role_id=role_id,
            permission_id=permission_id,
            details={"role_name": grant.role.name, "permission_name": grant.permission.name},
        )

    logger.info('Permission %s revoked from role %s by user %s', permission_id, role_id, context.actor_id)
    return grant


def bulk_assign_permissions(
    db: Session,
    role_id: str,
    permission_ids: list[str],
    context: RequestContext = SYSTEM,
) -> BulkResult:
    """Grant many permissions to one role; each id succeeds or fails on its own."""
    role = get_active_role(db, role_id)

    result = BulkResult()
    for permission_id in permission_ids:
        try:
            assign_permission_to_role(db, role_id, permission_id, context=context)
        except (ConflictError, NotFoundError) as exc:
            result.failures.append(BulkFailure(id=permission_id, reason=exc.message))
        else:
            result.success_count += 1

    logger.info(
        'Bulk permission assignment to role "%s": %d successful, %d failed',
        role.name,
        result.success_count,
        len(result.failures),
    )
    return result


def get_role_permissions(db: Session, role_id: str) -> list[Permission]:
    """Permissions currently granted to a role through active grants."""
    get_role(db, role_id)
    return (
        db.query(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .filter(
            RolePermission.role_id == role_id,
            RolePermission.is_active.is_(True),
            Permission.is_active.is_(True),
        )
        .order_by(Permission.name.asc())
        .all()
    )


def get_roles_with_permission(db: Session, permission_id: str) -> list[Role]:
    get_permission(db, permission_id)
    return (
        db.query(Role)
        .join(RolePermission, RolePermission.role_id == Role.id)
        .filter(RolePermission.permission_id == permission_id, RolePermission.is_active.is_(True))
        .order_by(Role.name.asc())
        .all()
    )
