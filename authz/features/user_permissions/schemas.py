"""
Pydantic schemas for direct permission grants.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from authz.features.roles.schemas import RoleScope


class DirectPermissionCreate(RoleScope):
    permission: str = Field(..., min_length=1, max_length=150)


class DirectPermissionResponse(BaseModel):
    permission: str
    organization_kind: Optional[str] = None
    organization_uuid: Optional[str] = None
    created_at: datetime
