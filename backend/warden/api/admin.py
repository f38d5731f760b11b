"""Role, permission and assignment administration endpoints."""
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from warden.api.deps import get_db, get_request_context
from warden.api.guards import RequirePermissions
from warden.schemas.auth import UserResponse
from warden.schemas.rbac import (
    AssignRole,
    AuditEntryResponse,
    BulkAssignPermissions,
    BulkAssignRoles,
    BulkResultResponse,
    PermissionCheckResponse,
    PermissionCreate,
    PermissionResponse,
    PermissionUpdate,
    RevokeRole,
    RoleAssignmentResponse,
    RoleCreate,
    RoleResponse,
    RoleUpdate,
    UserPermissionsResponse,
    UserStatusUpdate,
    UserVerificationUpdate,
)
from warden.services import access, audit, permissions, roles
from warden.services.authenticator import set_user_status, set_user_verification
from warden.services.roles import RequestContext

router = APIRouter(prefix="/admin", tags=["admin"])


# Roles


@router.get("/roles", response_model=list[RoleResponse], dependencies=[Depends(RequirePermissions("VIEW_ROLE"))])
def list_roles(include_inactive: bool = False, db: Session = Depends(get_db)):
    return roles.list_roles(db, include_inactive=include_inactive)


@router.post(
    "/roles",
    response_model=RoleResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(RequirePermissions("CREATE_ROLE"))],
)
def create_role(
    role_data: RoleCreate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return roles.create_role(db, context=context, **role_data.model_dump())


@router.patch(
    "/roles/{role_id}",
    response_model=RoleResponse,
    dependencies=[Depends(RequirePermissions("UPDATE_ROLE"))],
)
def update_role(
    role_id: str,
    role_data: RoleUpdate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return roles.update_role(db, role_id, context=context, **role_data.model_dump(exclude_unset=True))


@router.delete(
    "/roles/{role_id}",
    response_model=RoleResponse,
    dependencies=[Depends(RequirePermissions("DELETE_ROLE"))],
)
def delete_role(
    role_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return roles.delete_role(db, role_id, context=context)


@router.get(
    "/roles/{role_id}/permissions",
    response_model=list[PermissionResponse],
    dependencies=[Depends(RequirePermissions("VIEW_ROLE"))],
)
def get_role_permissions(role_id: str, db: Session = Depends(get_db)):
    return permissions.get_role_permissions(db, role_id)


@router.post(
    "/roles/{role_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(RequirePermissions("UPDATE_ROLE"))],
)
def assign_permission(
    role_id: str,
    permission_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    permissions.assign_permission_to_role(db, role_id, permission_id, context=context)


@router.delete(
    "/roles/{role_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(RequirePermissions("UPDATE_ROLE"))],
)
def revoke_permission(
    role_id: str,
    permission_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    permissions.revoke_permission_from_role(db, role_id, permission_id, context=context)


@router.post(
    "/roles/{role_id}/permissions",
    response_model=BulkResultResponse,
    dependencies=[Depends(RequirePermissions("UPDATE_ROLE"))],
)
def bulk_assign_permissions(
    role_id: str,
    payload: BulkAssignPermissions,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return permissions.bulk_assign_permissions(db, role_id, payload.permission_ids, context=context)


@router.post(
    "/roles/{role_id}/users",
    response_model=BulkResultResponse,
    dependencies=[Depends(RequirePermissions("ASSIGN_ROLE"))],
)
def bulk_assign_roles(
    role_id: str,
    payload: BulkAssignRoles,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return roles.bulk_assign_roles(
        db,
        role_id,
        payload.user_ids,
        reason=payload.reason,
        expires_at=payload.expires_at,
        context=context,
    )


# Permissions


@router.get(
    "/permissions",
    response_model=list[PermissionResponse],
    dependencies=[Depends(RequirePermissions("VIEW_PERMISSION"))],
)
def list_permissions(
    include_inactive: bool = False,
    resource: str | None = None,
    db: Session = Depends(get_db),
):
    return permissions.list_permissions(db, include_inactive=include_inactive, resource=resource)


@router.get(
    "/permissions/by-resource",
    response_model=dict[str, list[PermissionResponse]],
    dependencies=[Depends(RequirePermissions("VIEW_PERMISSION"))],
)
def permissions_by_resource(db: Session = Depends(get_db)):
    return permissions.get_permissions_by_resource(db)


@router.get(
    "/permissions/{permission_id}/roles",
    response_model=list[RoleResponse],
    dependencies=[Depends(RequirePermissions("VIEW_PERMISSION"))],
)
def permission_roles(permission_id: str, db: Session = Depends(get_db)):
    return permissions.get_roles_with_permission(db, permission_id)


@router.post(
    "/permissions",
    response_model=PermissionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(RequirePermissions("CREATE_PERMISSION"))],
)
def create_permission(
    permission_data: PermissionCreate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return permissions.create_permission(db, context=context, **permission_data.model_dump())


@router.patch(
    "/permissions/{permission_id}",
    response_model=PermissionResponse,
    dependencies=[Depends(RequirePermissions("UPDATE_PERMISSION"))],
)
def update_permission(
    permission_id: str,
    permission_data: PermissionUpdate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return permissions.update_permission(
        db,
        permission_id,
        context=context,
        **permission_data.model_dump(exclude_unset=True),
    )


@router.delete(
    "/permissions/{permission_id}",
    response_model=PermissionResponse,
    dependencies=[Depends(RequirePermissions("DELETE_PERMISSION"))],
)
def delete_permission(
    permission_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return permissions.delete_permission(db, permission_id, context=context)


# Users


@router.post(
    "/users/{user_id}/roles",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(RequirePermissions("ASSIGN_ROLE"))],
)
def assign_role(
    user_id: str,
    payload: AssignRole,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    roles.assign_role(
        db,
        user_id,
        payload.role_id,
        reason=payload.reason,
        expires_at=payload.expires_at,
        context=context,
    )


@router.delete(
    "/users/{user_id}/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(RequirePermissions("REVOKE_ROLE"))],
)
def revoke_role(
    user_id: str,
    role_id: str,
    payload: RevokeRole | None = None,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    roles.revoke_role(db, user_id, role_id, reason=payload.reason if payload else None, context=context)


@router.get(
    "/users/{user_id}/permissions",
    response_model=UserPermissionsResponse,
    dependencies=[Depends(RequirePermissions("VIEW_USER"))],
)
def user_permissions(user_id: str, db: Session = Depends(get_db)):
    resolved = access.get_user_permissions(db, user_id)
    return UserPermissionsResponse(
        user_id=resolved.user_id,
        roles=sorted(resolved.roles),
        permissions=sorted(resolved.permissions),
        permissions_by_resource=resolved.permissions_by_resource,
    )


@router.get(
    "/users/{user_id}/permissions/{permission_name}",
    response_model=PermissionCheckResponse,
    dependencies=[Depends(RequirePermissions("VIEW_USER"))],
)
def check_user_permission(
    user_id: str,
    permission_name: str,
    resource: str | None = None,
    db: Session = Depends(get_db),
):
    return access.check_permission(db, user_id, permission_name, resource)


@router.get(
    "/users/{user_id}/role-history",
    response_model=list[RoleAssignmentResponse],
    dependencies=[Depends(RequirePermissions("VIEW_USER"))],
)
def role_history(user_id: str, db: Session = Depends(get_db)):
    return roles.get_role_assignment_history(db, user_id)


@router.patch(
    "/users/{user_id}/status",
    response_model=UserResponse,
    dependencies=[Depends(RequirePermissions("UPDATE_USER"))],
)
def update_user_status(
    user_id: str,
    status_data: UserStatusUpdate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return set_user_status(db, user_id, status_data.is_active, context, reason=status_data.reason)


@router.patch(
    "/users/{user_id}/verification",
    response_model=UserResponse,
    dependencies=[Depends(RequirePermissions("UPDATE_USER"))],
)
def update_user_verification(
    user_id: str,
    verification_data: UserVerificationUpdate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return set_user_verification(
        db,
        user_id,
        verification_data.is_verified,
        context,
        reason=verification_data.reason,
    )


# Audit


@router.get(
    "/audit",
    response_model=list[AuditEntryResponse],
    dependencies=[Depends(RequirePermissions("VIEW_AUDIT_LOGS"))],
)
def audit_log(
    user_id: str | None = None,
    role_id: str | None = None,
    action: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return audit.list_entries(
        db,
        user_id=user_id,
        role_id=role_id,
        action=action,
        since=since,
        until=until,
        limit=limit,
    )
