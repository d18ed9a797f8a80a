"""
Pydantic schemas for role requests and responses.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator

from authz.features.claims.schemas import BatchItemResult
from authz.features.roles.models import RoleType


class RoleScope(BaseModel):
    """Both fields set for an organization role, both empty for a global role."""
    organization_kind: Optional[str] = Field(None, max_length=50)
    organization_uuid: Optional[str] = Field(None, max_length=26)

    @model_validator(mode="after")
    def check_pairing(self):
        if (self.organization_kind is None) != (self.organization_uuid is None):
            raise ValueError("organization_kind and organization_uuid must be given together")
        return self


class RoleCreate(RoleScope):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    order: int = Field(..., ge=0)


class RoleUpdate(BaseModel):
    """Only provided fields are changed."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: Optional[List[str]] = None
    order: Optional[int] = Field(None, ge=0)


class RoleReorderItem(BaseModel):
    uuid: str
    order: int = Field(..., ge=0)


class RoleReorder(RoleScope):
    roles: List[RoleReorderItem] = Field(..., min_length=1)


class RoleFilters(RoleScope):
    type: Optional[RoleType] = None
    search: Optional[str] = Field(None, max_length=100)


class RoleResponse(BaseModel):
    uuid: str
    name: str
    description: Optional[str] = None
    type: RoleType
    permissions: List[str]
    order: int
    organization_kind: Optional[str] = None
    organization_uuid: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class RoleMember(BaseModel):
    user_id: str
    email: str
    name: str
    assigned_at: datetime


class RoleAssignment(BaseModel):
    role_uuids: List[str] = Field(..., min_length=1)


class RoleMembersSync(BaseModel):
    user_ids: List[str] = Field(default_factory=list)


class RoleMembersSyncResult(BaseModel):
    added: int
    removed: int
    failed: int
    results: List[BatchItemResult]
