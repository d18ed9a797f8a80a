"""
Process-scoped container for the authorization components.

One context is created per process (at FastAPI startup, or by a test fixture)
and shared by every request. Nothing in it holds a database session.
"""
from dataclasses import dataclass
from typing import Optional

from authz.core import config
from authz.core.cache import MemoryCache
from authz.core.kv_store import KVStore
from authz.features.admin.service import AdminService
from authz.features.claims.calculator import ClaimsCalculator
from authz.features.claims.overrides import default_override_strategies
from authz.features.claims.service import ClaimsService
from authz.features.organizations.registry import OrganizationAdapterRegistry, initialize_organization_adapters
from authz.features.organizations.service import OrganizationsService
from authz.features.permissions.checks import PermissionChecks
from authz.features.permissions.wildcards import WildcardExpander
from authz.features.roles.assignment import RoleAssignmentService
from authz.features.roles.service import RolesService
from authz.features.roles.validation import RoleValidationService
from authz.features.user_memberships.service import UserMembershipsService
from authz.features.user_permissions.service import UserPermissionsService
from authz.utils import get_logger


log = get_logger(__name__)


@dataclass
class AuthorizationContext:
    cache: MemoryCache
    kv_store: KVStore
    registry: OrganizationAdapterRegistry
    wildcards: WildcardExpander
    claims: ClaimsService
    memberships: UserMembershipsService
    checks: PermissionChecks
    validation: RoleValidationService
    roles: RolesService
    assignments: RoleAssignmentService
    organizations: OrganizationsService
    user_permissions: UserPermissionsService
    admin: AdminService


def create_context(cache: Optional[MemoryCache] = None, bypass: Optional[bool] = None) -> AuthorizationContext:
    """Wire every component. ``bypass`` defaults to ``AUTH_BYPASS_ENABLED``."""
    bypass = config.AUTH_BYPASS_ENABLED if bypass is None else bypass
    if cache is None:
        cache = MemoryCache(prefix=config.CACHE_KEY_PREFIX)

    kv_store = KVStore(cache)
    registry = OrganizationAdapterRegistry()
    initialize_organization_adapters(registry, cache)
    wildcards = WildcardExpander()

    calculator = ClaimsCalculator(registry, default_override_strategies(kv_store, registry))
    claims = ClaimsService(cache, calculator)
    memberships = UserMembershipsService(cache, registry)
    checks = PermissionChecks(claims, wildcards, bypass)
    validation = RoleValidationService(claims, registry, bypass)
    assignments = RoleAssignmentService(claims, memberships, registry, validation, bypass)

    if bypass:
        log.warning("AUTH_BYPASS_ENABLED is on: every permission check is granted")
    log.info(f"Authorization context ready with organization kinds {registry.kinds()}")

    return AuthorizationContext(
        cache=cache,
        kv_store=kv_store,
        registry=registry,
        wildcards=wildcards,
        claims=claims,
        memberships=memberships,
        checks=checks,
        validation=validation,
        roles=RolesService(claims, registry, validation, bypass),
        assignments=assignments,
        organizations=OrganizationsService(claims, memberships, registry, assignments),
        user_permissions=UserPermissionsService(claims, checks, registry, bypass),
        admin=AdminService(claims, wildcards, kv_store),
    )
