"""Load baseline roles and permissions from YAML into the database."""
import logging
from pathlib import Path

import yaml
from sqlalchemy.orm import Session

from warden.config import get_settings
from warden.database import transaction
from warden.models.rbac import Permission, Role, RolePermission
from warden.services import audit
from warden.services.audit import AuditAction, AuditResource

logger = logging.getLogger(__name__)


def load_rbac_config(db: Session, path: Path | None = None) -> dict[str, int]:
    """Upsert the permissions and roles described in the RBAC YAML file.

    Existing rows are only ever added to: a permission or grant an
    administrator deactivated stays deactivated.
    Returns counts of created permissions, roles and grants.
    """
    path = path or get_settings().rbac_config_path
    if not path.exists():
        logger.warning(f"RBAC config not found: {path}")
        return {"permissions": 0, "roles": 0, "grants": 0}

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    counts = {"permissions": 0, "roles": 0, "grants": 0}
    with transaction(db):
        permissions = {}
        for item in data.get("permissions", []):
            permission, created = _upsert_permission(db, item)
            permissions[permission.name] = permission
            if created:
                counts["permissions"] += 1
                audit.record(
                    db,
                    AuditAction.PERMISSION_CREATED,
                    AuditResource.PERMISSION,
                    permission_id=permission.id,
                    details={"name": permission.name, "source": str(path)},
                )

        for item in data.get("roles", []):
            role, created = _upsert_role(db, item)
            if created:
                counts["roles"] += 1
                audit.record(
                    db,
                    AuditAction.ROLE_CREATED,
                    AuditResource.ROLE,
                    role_id=role.id,
                    details={"name": role.name, "is_default": role.is_default, "source": str(path)},
                )
            for permission_name in item.get("permissions", []):
                permission = permissions.get(permission_name) or (
                    db.query(Permission).filter(Permission.name == permission_name).first()
                )
                if permission is None:
                    logger.warning(f"Role {role.name} references unknown permission {permission_name}")
                    continue
                if _ensure_grant(db, role, permission):
                    counts["grants"] += 1
                    audit.record(
                        db,
                        AuditAction.PERMISSION_ASSIGNED,
                        AuditResource.PERMISSION,
                        role_id=role.id,
                        permission_id=permission.id,
                        details={"role_name": role.name, "permission_name": permission.name},
                    )

    logger.info(
        "Loaded RBAC config: %d permissions, %d roles, %d grants created",
        counts["permissions"],
        counts["roles"],
        counts["grants"],
    )
    return counts


def _upsert_permission(db: Session, item: dict) -> tuple[Permission, bool]:
    name = item["name"]
    existing = db.query(Permission).filter(Permission.name == name).first()
    if existing:
        existing.description = item.get("description", existing.description)
        existing.resource = item.get("resource", existing.resource)
        existing.action = item.get("action", existing.action)
        return existing, False

    permission = Permission(
        name=name,
        description=item.get("description"),
        resource=item.get("resource"),
        action=item.get("action"),
    )
    db.add(permission)
    db.flush()
    logger.debug(f"Created permission: {name}")
    return permission, True


def _upsert_role(db: Session, item: dict) -> tuple[Role, bool]:
    name = item["name"]
    existing = db.query(Role).filter(Role.name == name).first()
    # Never steal the default from a role an administrator chose.
    wants_default = bool(item.get("default")) and (
        db.query(Role).filter(Role.is_default.is_(True)).first() is None
    )
    if existing:
        existing.description = item.get("description", existing.description)
        if wants_default:
            existing.is_default = True
        db.flush()
        return existing, False

    role = Role(name=name, description=item.get("description"), is_default=wants_default)
    db.add(role)
    db.flush()
    logger.debug(f"Created role: {name}")
    return role, True


def _ensure_grant(db: Session, role: Role, permission: Permission) -> bool:
    existing = (
        db.query(RolePermission)
        .filter(RolePermission.role_id == role.id, RolePermission.permission_id == permission.id)
        .first()
    )
    if existing:
        return False
    db.add(RolePermission(role_id=role.id, permission_id=permission.id))
    db.flush()
    return True
