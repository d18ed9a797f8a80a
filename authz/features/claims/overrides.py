"""
Claims override strategies.

Overrides run in a fixed order before the role/permission union:

    1. SystemOwnerOverride        -> replaces the whole claims value
    2. OrganizationOwnerOverride  -> replaces the scope of every owned organization

A strategy returns None when it does not apply. An exclusive result ends the
computation; a non-exclusive one pins the listed organization scopes and the
normal union fills in everything else.
"""
import abc
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core.kv_store import AUTH_KV_NAMESPACE, SYSTEM_OWNER_KEY, KVStore
from authz.features.organizations.registry import OrganizationAdapterRegistry
from authz.features.permissions.catalog import WILDCARD
from authz.utils import get_logger


log = get_logger(__name__)


@dataclass
class ClaimsOverride:
    # Replaces the global scope when not None
    global_permissions: Optional[List[str]] = None
    # kind -> org uuid -> permissions, each entry replaces that organization's scope
    organizations: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    # Stop evaluating and return this value as the user's claims
    exclusive: bool = False

    def to_claims(self) -> Dict:
        return {
            "global": list(self.global_permissions or []),
            "organizations": {kind: dict(orgs) for kind, orgs in self.organizations.items()},
        }


class ClaimsOverrideStrategy(abc.ABC):
    @abc.abstractmethod
    async def resolve(
        self,
        db: AsyncSession,
        user_id: str,
        touched: Dict[str, Set[str]],
    ) -> Optional[ClaimsOverride]:
        """``touched`` maps kind -> organization UUIDs reached by roles or direct grants."""


class SystemOwnerOverride(ClaimsOverrideStrategy):
    """The user recorded under ``system:owner`` holds ``*`` globally and nothing else."""

    def __init__(self, kv_store: KVStore):
        self.kv_store = kv_store

    async def resolve(self, db, user_id, touched):
        owner_id = await self.kv_store.get(db, SYSTEM_OWNER_KEY, AUTH_KV_NAMESPACE)
        if owner_id is None or owner_id != user_id:
            return None
        log.debug(f"User {user_id} is the system owner")
        return ClaimsOverride(global_permissions=[WILDCARD], exclusive=True)


class OrganizationOwnerOverride(ClaimsOverrideStrategy):
    """An organization's owner holds exactly ``*`` in that organization."""

    def __init__(self, registry: OrganizationAdapterRegistry):
        self.registry = registry

    async def resolve(self, db, user_id, touched):
        owned: Dict[str, Dict[str, List[str]]] = {}
        for kind, uuids in touched.items():
            adapter = self.registry.get(kind)
            if adapter is None:
                continue
            for uuid in sorted(uuids):
                try:
                    is_owner = await adapter.is_owner(db, user_id, uuid)
                except SQLAlchemyError:
                    log.exception(f"Owner check failed for {kind}:{uuid}")
                    continue
                if is_owner:
                    owned.setdefault(kind, {})[uuid] = [WILDCARD]

        if not owned:
            return None
        return ClaimsOverride(organizations=owned)


def default_override_strategies(kv_store: KVStore, registry: OrganizationAdapterRegistry) -> List[ClaimsOverrideStrategy]:
    return [SystemOwnerOverride(kv_store), OrganizationOwnerOverride(registry)]
