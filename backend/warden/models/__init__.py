"""SQLAlchemy models package."""
from warden.models.user import User
from warden.models.auth import RefreshSession, RevokeReason
from warden.models.rbac import Permission, Role, RoleAssignment, RolePermission, UserRole
from warden.models.audit import AuditLogEntry

__all__ = [
    "User",
    "RefreshSession",
    "RevokeReason",
    "Role",
    "Permission",
    "RolePermission",
    "UserRole",
    "RoleAssignment",
    "AuditLogEntry",
]
