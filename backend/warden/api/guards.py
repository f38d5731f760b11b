"""Authorization guards.

Each guard holds a fixed requirement and is attached to a route as a
dependency; it asks the permission resolver on every request, so a
revocation takes effect immediately.
"""
import logging

from fastapi import Depends
from sqlalchemy.orm import Session

from warden.api.deps import get_current_user, get_db
from warden.errors import ForbiddenError
from warden.models.user import User
from warden.services import access

logger = logging.getLogger(__name__)


class RequirePermissions:
    """Require all (or, with ``any_of=True``, at least one) of ``permissions``."""

    def __init__(self, *permissions: str, any_of: bool = False, resource: str | None = None) -> None:
        if not permissions:
            raise ValueError("RequirePermissions needs at least one permission")
        self.permissions = frozenset(permissions)
        self.any_of = any_of
        self.resource = resource

    def is_satisfied(self, db: Session, user_id: str) -> bool:
        if self.any_of:
            return access.has_any_permission(db, user_id, self.permissions, self.resource)
        return access.has_all_permissions(db, user_id, self.permissions, self.resource)

    def __call__(
        self,
        db: Session = Depends(get_db),
        current_user: User = Depends(get_current_user),
    ) -> User:
        if not self.is_satisfied(db, current_user.id):
            logger.warning(
                "User %s denied: requires %s of permissions [%s]",
                current_user.id,
                "any" if self.any_of else "all",
                ", ".join(sorted(self.permissions)),
            )
            raise ForbiddenError(
                f"Insufficient permissions. Required permissions: {', '.join(sorted(self.permissions))}"
            )
        return current_user


class RequireRoles:
    """Require all (or, with ``any_of=True``, at least one) of ``roles``."""

    def __init__(self, *roles: str, any_of: bool = False) -> None:
        if not roles:
            raise ValueError("RequireRoles needs at least one role")
        self.roles = frozenset(roles)
        self.any_of = any_of

    def is_satisfied(self, db: Session, user_id: str) -> bool:
        if self.any_of:
            return access.has_any_role(db, user_id, self.roles)
        return access.has_all_roles(db, user_id, self.roles)

    def __call__(
        self,
        db: Session = Depends(get_db),
        current_user: User = Depends(get_current_user),
    ) -> User:
        if not self.is_satisfied(db, current_user.id):
            logger.warning(
                "User %s denied: requires %s of roles [%s]",
                current_user.id,
                "any" if self.any_of else "all",
                ", ".join(sorted(self.roles)),
            )
            raise ForbiddenError(f"Insufficient permissions. Required roles: {', '.join(sorted(self.roles))}")
        return current_user
