"""
Static permission catalog.

Every grantable capability is declared here with the scopes it may be used in
(``global`` and/or an organization kind), an optional ``depends_on`` expression
and an optional UI visibility flag. The catalog is immutable at runtime.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from authz.features.organizations.constants import OrganizationKind


GLOBAL = "global"
COMPANY = OrganizationKind.COMPANY.value
WILDCARD = "*"

ALL_SCOPES: Tuple[str, ...] = (GLOBAL,) + tuple(kind.value for kind in OrganizationKind)


@dataclass(frozen=True)
class PermissionDefinition:
    key: str
    description: str
    scopes: Tuple[str, ...]
    # str | list (AND) | {"and": [...]} | {"or": [...]} | {scope: expr}
    depends_on: Optional[Any] = None
    # True hides everywhere, a tuple hides only in the listed scopes
    hidden_on: Union[bool, Tuple[str, ...]] = False

    @property
    def group(self) -> str:
        return self.key.split(":", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "description": self.description,
            "scopes": list(self.scopes),
            "depends_on": self.depends_on,
            "hidden_on": self.hidden_on if isinstance(self.hidden_on, bool) else list(self.hidden_on),
        }


@dataclass(frozen=True)
class PermissionGroup:
    key: str
    description: str
    permissions: Tuple[PermissionDefinition, ...]


def _perm(key, description, scopes, depends_on=None, hidden_on=False) -> PermissionDefinition:
    return PermissionDefinition(
        key=key,
        description=description,
        scopes=tuple(scopes),
        depends_on=depends_on,
        hidden_on=hidden_on,
    )


# ============================================================================
# Permission Keys
# ============================================================================

USERS_BASIC_LIST = "users-basic:list"
USERS_BASIC_SHOW = "users-basic:show"
USERS_BASIC_CREATE = "users-basic:create"
USERS_BASIC_UPDATE_PROFILE = "users-basic:update-profile"
USERS_BASIC_UPDATE_PASSWORD = "users-basic:update-password"
USERS_BASIC_UPDATE_STATUS = "users-basic:update-status"

USERS_PERMISSIONS_ASSIGN = "users-permissions:assign"

USERS_ROLES_ASSIGN_GLOBAL = "users-roles:assign-global"
USERS_ROLES_ASSIGN_OWN_ORGANIZATION = "users-roles:assign-own-organization"
USERS_ROLES_ASSIGN_ALL_ORGANIZATIONS = "users-roles:assign-all-organizations"

USERS_MEMBERS_ADD_OWN_ORGANIZATION = "users-members:add-own-organization"
USERS_MEMBERS_ADD_ALL_ORGANIZATIONS = "users-members:add-all-organizations"
USERS_MEMBERS_REMOVE_OWN_ORGANIZATION = "users-members:remove-own-organization"
USERS_MEMBERS_REMOVE_ALL_ORGANIZATIONS = "users-members:remove-all-organizations"

ROLE_VIEW_SHOW_GLOBALS = "role-view:show-globals"
ROLE_VIEW_LIST_GLOBALS = "role-view:list-globals"
ROLE_VIEW_SHOW_ALL_ORGANIZATIONS = "role-view:show-all-organizations"
ROLE_VIEW_LIST_ALL_ORGANIZATIONS = "role-view:list-all-organizations"

ROLE_MANAGE_GLOBAL_CREATE = "role-manage-global:create"
ROLE_MANAGE_GLOBAL_UPDATE = "role-manage-global:update"
ROLE_MANAGE_GLOBAL_REORDER = "role-manage-global:reorder"
ROLE_MANAGE_GLOBAL_DELETE = "role-manage-global:delete"

ROLE_MANAGE_ORGANIZATION_CREATE = "role-manage-organization:create"
ROLE_MANAGE_ORGANIZATION_UPDATE = "role-manage-organization:update"
ROLE_MANAGE_ORGANIZATION_REORDER = "role-manage-organization:reorder"
ROLE_MANAGE_ORGANIZATION_DELETE = "role-manage-organization:delete"

ROLE_MANAGE_ALL_ORGANIZATIONS_CREATE = "role-manage-all-organizations:create"
ROLE_MANAGE_ALL_ORGANIZATIONS_UPDATE = "role-manage-all-organizations:update"
ROLE_MANAGE_ALL_ORGANIZATIONS_REORDER = "role-manage-all-organizations:reorder"
ROLE_MANAGE_ALL_ORGANIZATIONS_DELETE = "role-manage-all-organizations:delete"

SYSTEM_ADMINISTRATION_SHOW_LOGS = "system-administration:show-logs"
SYSTEM_ADMINISTRATION_RESET_DATABASE = "system-administration:reset-database"
SYSTEM_ADMINISTRATION_SEED_DATA = "system-administration:seed-data"
SYSTEM_ADMINISTRATION_MANAGE_CACHE = "system-administration:manage-cache"


# ============================================================================
# Permission Groups
# ============================================================================

PERMISSION_GROUPS: Tuple[PermissionGroup, ...] = (
    PermissionGroup("users-basic", "Basic user operations", (
        _perm(USERS_BASIC_LIST, "List users", [GLOBAL, COMPANY]),
        _perm(USERS_BASIC_SHOW, "Show user details", [GLOBAL, COMPANY]),
        _perm(USERS_BASIC_CREATE, "Create users", [GLOBAL, COMPANY]),
        _perm(USERS_BASIC_UPDATE_PROFILE, "Update user profile (name, email)", [GLOBAL, COMPANY],
              depends_on=USERS_BASIC_SHOW),
        _perm(USERS_BASIC_UPDATE_PASSWORD, "Update user password", [GLOBAL, COMPANY],
              depends_on=USERS_BASIC_SHOW),
        _perm(USERS_BASIC_UPDATE_STATUS, "Activate or deactivate users", [GLOBAL, COMPANY],
              depends_on=USERS_BASIC_SHOW),
    )),
    PermissionGroup("users-permissions", "Direct user permissions", (
        _perm(USERS_PERMISSIONS_ASSIGN, "Grant or revoke direct permissions", [GLOBAL],
              depends_on=USERS_BASIC_SHOW),
    )),
    PermissionGroup("users-roles", "User role assignment", (
        _perm(USERS_ROLES_ASSIGN_GLOBAL, "Assign or unassign global roles", [GLOBAL],
              depends_on=[USERS_BASIC_SHOW, ROLE_VIEW_SHOW_GLOBALS]),
        _perm(USERS_ROLES_ASSIGN_OWN_ORGANIZATION, "Assign roles inside own organization", [COMPANY],
              depends_on=[USERS_BASIC_SHOW]),
        _perm(USERS_ROLES_ASSIGN_ALL_ORGANIZATIONS, "Assign roles in any organization", [GLOBAL],
              depends_on=[USERS_BASIC_SHOW, ROLE_VIEW_SHOW_ALL_ORGANIZATIONS]),
    )),
    PermissionGroup("users-members", "Organization membership", (
        _perm(USERS_MEMBERS_ADD_OWN_ORGANIZATION, "Add members to own organization", [COMPANY]),
        _perm(USERS_MEMBERS_ADD_ALL_ORGANIZATIONS, "Add members to any organization", [GLOBAL],
              depends_on=USERS_BASIC_SHOW),
        _perm(USERS_MEMBERS_REMOVE_OWN_ORGANIZATION, "Remove members from own organization", [COMPANY],
              depends_on=USERS_BASIC_SHOW),
        _perm(USERS_MEMBERS_REMOVE_ALL_ORGANIZATIONS, "Remove members from any organization", [GLOBAL],
              depends_on=USERS_BASIC_SHOW),
    )),
    PermissionGroup("users-admin", "User administration", (
        _perm("users-admin:destroy", "Delete users", [GLOBAL], depends_on=USERS_BASIC_SHOW),
        _perm("users-admin:ban", "Ban users", [GLOBAL], depends_on=USERS_BASIC_SHOW, hidden_on=True),
        _perm("users-admin:unban", "Lift user bans", [GLOBAL], depends_on=USERS_BASIC_SHOW, hidden_on=True),
        _perm("users-admin:impersonate", "Impersonate users", [GLOBAL],
              depends_on=USERS_BASIC_SHOW, hidden_on=True),
    )),
    PermissionGroup("users-system", "User system operations", (
        _perm("users-system:unlink", "Unlink user accounts", [GLOBAL],
              depends_on=USERS_BASIC_SHOW, hidden_on=True),
        _perm("users-system:link", "Link user accounts", [GLOBAL],
              depends_on=USERS_BASIC_SHOW, hidden_on=True),
        _perm("users-system:list-sessions", "List sessions", [GLOBAL],
              depends_on=[USERS_BASIC_SHOW], hidden_on=True),
        _perm("users-system:revoke-sessions", "Revoke sessions", [GLOBAL],
              depends_on=USERS_BASIC_SHOW, hidden_on=True),
    )),
    PermissionGroup("role-view", "Role viewing", (
        _perm(ROLE_VIEW_SHOW_GLOBALS, "Show a global role", [GLOBAL]),
        _perm(ROLE_VIEW_LIST_GLOBALS, "List global roles", [GLOBAL]),
        _perm(ROLE_VIEW_SHOW_ALL_ORGANIZATIONS, "Show any organization role", [GLOBAL]),
        _perm(ROLE_VIEW_LIST_ALL_ORGANIZATIONS, "List every organization role", [GLOBAL]),
    )),
    PermissionGroup("role-manage-global", "Global role management", (
        _perm(ROLE_MANAGE_GLOBAL_CREATE, "Create global roles", [GLOBAL]),
        _perm(ROLE_MANAGE_GLOBAL_UPDATE, "Update global roles", [GLOBAL]),
        _perm(ROLE_MANAGE_GLOBAL_REORDER, "Reorder the global role hierarchy", [GLOBAL]),
        _perm(ROLE_MANAGE_GLOBAL_DELETE, "Delete global roles", [GLOBAL]),
    )),
    PermissionGroup("role-manage-organization", "Own organization role management", (
        _perm(ROLE_MANAGE_ORGANIZATION_CREATE, "Create roles in own organization", [COMPANY]),
        _perm(ROLE_MANAGE_ORGANIZATION_UPDATE, "Update roles in own organization", [COMPANY]),
        _perm(ROLE_MANAGE_ORGANIZATION_REORDER, "Reorder roles in own organization", [COMPANY]),
        _perm(ROLE_MANAGE_ORGANIZATION_DELETE, "Delete roles in own organization", [COMPANY]),
    )),
    PermissionGroup("role-manage-all-organizations", "Role management across organizations", (
        _perm(ROLE_MANAGE_ALL_ORGANIZATIONS_CREATE, "Create roles in any organization", [GLOBAL]),
        _perm(ROLE_MANAGE_ALL_ORGANIZATIONS_UPDATE, "Update roles in any organization", [GLOBAL]),
        _perm(ROLE_MANAGE_ALL_ORGANIZATIONS_REORDER, "Reorder roles in any organization", [GLOBAL]),
        _perm(ROLE_MANAGE_ALL_ORGANIZATIONS_DELETE, "Delete roles in any organization", [GLOBAL]),
    )),
    PermissionGroup("system-administration", "System administration", (
        _perm(SYSTEM_ADMINISTRATION_SHOW_LOGS, "Show logs", [GLOBAL]),
        _perm(SYSTEM_ADMINISTRATION_RESET_DATABASE, "Reset the database", [GLOBAL], hidden_on=True),
        _perm(SYSTEM_ADMINISTRATION_SEED_DATA, "Seed the database", [GLOBAL], hidden_on=True),
        _perm(SYSTEM_ADMINISTRATION_MANAGE_CACHE, "Clear authorization caches", [GLOBAL], hidden_on=True),
    )),
    PermissionGroup("posts", "Posts", (
        _perm("posts:show", "Show posts", [GLOBAL]),
        _perm("posts:create", "Create posts", [GLOBAL]),
        _perm("posts:update", "Update posts", [GLOBAL]),
        _perm("posts:destroy", "Delete posts", [GLOBAL]),
    )),
    PermissionGroup("projects", "Projects", (
        _perm("projects:list-all", "List every project", [GLOBAL]),
        _perm("projects:show-all", "Show any project", [GLOBAL]),
        _perm("projects:update-all", "Update any project", [GLOBAL]),
        _perm("projects:delete-all", "Delete any project", [GLOBAL]),
        _perm("projects:list-own-company", "List projects of member companies", [COMPANY]),
        _perm("projects:show-own-company", "Show projects of member companies", [COMPANY]),
        _perm("projects:create", "Create projects in a company", [COMPANY]),
        _perm("projects:update-own-company", "Update projects of member companies", [COMPANY]),
        _perm("projects:delete-own-company", "Delete projects of member companies", [COMPANY]),
    )),
    PermissionGroup("companies", "Companies", (
        _perm("companies:show", "Show companies", [GLOBAL]),
        _perm("companies:create", "Create companies", [GLOBAL]),
        _perm("companies:update", "Update company details", [GLOBAL, COMPANY]),
        _perm("companies:destroy", "Delete companies", [GLOBAL]),
    )),
    PermissionGroup("file-library-assets", "File library", (
        _perm("file-library-assets:show", "Show files", [GLOBAL, COMPANY], hidden_on=True),
        _perm("file-library-assets:create", "Upload files", [GLOBAL, COMPANY], hidden_on=True),
        _perm("file-library-assets:update", "Update files", [GLOBAL, COMPANY], hidden_on=True),
        _perm("file-library-assets:destroy", "Delete files", [GLOBAL, COMPANY], hidden_on=True),
    )),
)

GROUPS_BY_KEY: Dict[str, PermissionGroup] = {group.key: group for group in PERMISSION_GROUPS}

PERMISSIONS_BY_KEY: Dict[str, PermissionDefinition] = {
    permission.key: permission
    for group in PERMISSION_GROUPS
    for permission in group.permissions
}

PERMISSION_KEYS: List[str] = list(PERMISSIONS_BY_KEY)


def get_permission(key: str) -> Optional[PermissionDefinition]:
    return PERMISSIONS_BY_KEY.get(key)


def get_group(key: str) -> Optional[PermissionGroup]:
    return GROUPS_BY_KEY.get(key)


def is_group_wildcard(key: str) -> bool:
    return len(key) > 2 and key.endswith(":*")
