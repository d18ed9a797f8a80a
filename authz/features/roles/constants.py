"""
Default role definitions seeded for the global hierarchy and for every new company.
"""
from dataclasses import dataclass, field
from typing import List

from authz.features.permissions.catalog import USERS_BASIC_SHOW, WILDCARD
from authz.features.roles.models import RoleType


@dataclass(frozen=True)
class DefaultRoleDefinition:
    type: RoleType
    name: str
    description: str
    order: int
    permissions: List[str] = field(default_factory=list)


GLOBAL_DEFAULT_ROLES = {
    RoleType.BASIC: DefaultRoleDefinition(
        type=RoleType.BASIC,
        name="User",
        description="Default role every user receives",
        order=1,
        permissions=[USERS_BASIC_SHOW],
    ),
    RoleType.ADMIN: DefaultRoleDefinition(
        type=RoleType.ADMIN,
        name="System Owner",
        description="Full access to the whole system",
        order=1000,
        permissions=[WILDCARD],
    ),
}

COMPANY_DEFAULT_ROLES = {
    RoleType.BASIC: DefaultRoleDefinition(
        type=RoleType.BASIC,
        name="Member",
        description="Basic company member",
        order=1,
        permissions=[],
    ),
    RoleType.ADMIN: DefaultRoleDefinition(
        type=RoleType.ADMIN,
        name="Company Admin",
        description="Full access inside the company",
        order=100,
        permissions=[WILDCARD],
    ),
}

# Fallback for adapters that do not declare their own defaults
ORGANIZATION_DEFAULT_ROLES = {
    RoleType.BASIC: DefaultRoleDefinition(
        type=RoleType.BASIC,
        name="Member",
        description="Basic member with limited permissions",
        order=1,
    ),
    RoleType.ADMIN: DefaultRoleDefinition(
        type=RoleType.ADMIN,
        name="Admin",
        description="Administrator with full permissions",
        order=100,
    ),
}
