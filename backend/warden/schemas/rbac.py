"""Role, permission and audit schemas."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: str | None = None
    is_active: bool = True
    is_default: bool = False


class RoleUpdate(BaseModel):
    name: str | None = Field(None, min_length=2, max_length=100)
    description: str | None = None
    is_active: bool | None = None
    is_default: bool | None = None


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    is_active: bool
    is_default: bool
    created_at: datetime


class PermissionCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    resource: str | None = Field(None, max_length=50)
    action: str | None = Field(None, max_length=50)
    description: str | None = None
    is_active: bool = True


class PermissionUpdate(BaseModel):
    name: str | None = Field(None, min_length=2, max_length=100)
    resource: str | None = Field(None, max_length=50)
    action: str | None = Field(None, max_length=50)
    description: str | None = None
    is_active: bool | None = None


class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    resource: str | None = None
    action: str | None = None
    description: str | None = None
    is_active: bool


class AssignRole(BaseModel):
    role_id: str
    reason: str | None = None
    expires_at: datetime | None = None


class RevokeRole(BaseModel):
    reason: str | None = None


class UserStatusUpdate(BaseModel):
    is_active: bool
    reason: str | None = None


class UserVerificationUpdate(BaseModel):
    is_verified: bool
    reason: str | None = None


class BulkAssignRoles(BaseModel):
    user_ids: list[str] = Field(..., min_length=1)
    reason: str | None = None
    expires_at: datetime | None = None


class BulkAssignPermissions(BaseModel):
    permission_ids: list[str] = Field(..., min_length=1)


class BulkFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    reason: str


class BulkResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success_count: int
    failures: list[BulkFailureResponse]


class UserPermissionsResponse(BaseModel):
    user_id: str
    roles: list[str]
    permissions: list[str]
    permissions_by_resource: dict[str, list[str]]


class PermissionCheckResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    granted: bool
    permission: str
    resource: str | None = None
    granted_by_roles: list[str]


class RoleAssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    role_id: str
    assigned_by: str | None = None
    reason: str | None = None
    expires_at: datetime | None = None
    is_active: bool
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    revoke_reason: str | None = None
    created_at: datetime


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    resource: str
    actor_id: str | None = None
    target_user_id: str | None = None
    role_id: str | None = None
    permission_id: str | None = None
    details: dict[str, Any] = {}
    created_at: datetime
