"""
Pydantic schemas for organization membership requests and responses.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from authz.features.roles.models import RoleType


class MemberRole(BaseModel):
    uuid: str
    name: str
    type: RoleType
    order: int
    assigned_at: Optional[datetime] = None


class OrganizationMember(BaseModel):
    user_id: str
    email: str
    name: str
    is_active: bool
    is_admin: bool
    is_owner: bool
    joined_at: datetime
    membership_updated_at: datetime
    roles: List[MemberRole] = Field(default_factory=list)


class MemberAdd(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=26)
    role_uuids: List[str] = Field(..., min_length=1, description="At least one role is required")


class MemberRolesUpdate(BaseModel):
    role_uuids: List[str] = Field(..., min_length=1)


class OrganizationSummary(BaseModel):
    kind: str
    uuid: str
    name: str
    logo_src: Optional[str] = None


class MembershipSummary(BaseModel):
    organization: OrganizationSummary
    is_admin: bool
    is_owner: bool
    joined_at: datetime
    membership_updated_at: datetime
    roles: List[MemberRole] = Field(default_factory=list)


class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    logo_src: Optional[str] = Field(None, max_length=500)
    owner_id: Optional[str] = Field(None, max_length=26, description="Defaults to the current user")


class CompanyResponse(BaseModel):
    uuid: str
    name: str
    logo_src: Optional[str] = None
    owner_id: Optional[str] = None
    members_count: int
    created_at: datetime

    model_config = {"from_attributes": True}
