"""
Base class for organization adapters.

An adapter is the only place that knows how one organization kind stores its
organizations and members. Subclasses get cached UUID <-> id translation,
default-role bootstrap, membership-limit checks and the remove-member template
for free, and implement the storage-specific fetches.

Cache keys:
    org:{kind}:uuid2id:{uuid}
    org:{kind}:id2uuid:{id}
"""
import abc
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core import config
from authz.core.cache import MemoryCache
from authz.core.database.base import utcnow
from authz.errors import ConflictError
from authz.features.roles.constants import ORGANIZATION_DEFAULT_ROLES, DefaultRoleDefinition
from authz.features.roles.models import Role, RoleType, UserRole
from authz.features.users.models import User
from authz.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class MembershipConfig:
    # Soft-delete the user once their last membership of this kind is removed
    delete_user_on_removal: bool = False
    # None means unlimited
    max_memberships_per_user: Optional[int] = None


@dataclass
class MemberData:
    is_admin: bool
    created_at: datetime
    updated_at: datetime


@dataclass
class OrganizationDetails:
    uuid: str
    name: str
    logo_src: Optional[str]
    owner_uuid: Optional[str]


class BaseOrganizationAdapter(abc.ABC):
    """
    Storage strategy for one organization kind.

    Every method takes the caller's session as first argument and never commits;
    transaction boundaries belong to the services.

    Role hooks are optional. A subclass opts in by defining any of
    ``before_add_role``, ``after_add_role``, ``before_remove_role`` or
    ``after_remove_role`` as a coroutine method with the signature
    ``(db, user_id, role_id, organization_id, actor_id)``. The batch variants
    loop over the single hook when one is defined and may be overridden to do
    the work once per organization.
    """

    kind: str
    membership_config: MembershipConfig = MembershipConfig()
    default_roles: Mapping[RoleType, DefaultRoleDefinition] = ORGANIZATION_DEFAULT_ROLES

    before_add_role = None
    after_add_role = None
    before_remove_role = None
    after_remove_role = None

    def __init__(self, cache: MemoryCache, cache_ttl: int = config.ORGANIZATION_ID_CACHE_TTL):
        self.cache = cache
        self.cache_ttl = cache_ttl

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(kind={self.kind!r})>"

    # ========================================================================
    # UUID <-> id translation (cached)
    # ========================================================================

    def _uuid_to_id_key(self, uuid: str) -> str:
        return f"org:{self.kind}:uuid2id:{uuid}"

    def _id_to_uuid_key(self, organization_id: int) -> str:
        return f"org:{self.kind}:id2uuid:{organization_id}"

    async def _cache_pair(self, uuid: str, organization_id: int) -> None:
        await asyncio.gather(
            self.cache.set(self._uuid_to_id_key(uuid), organization_id, self.cache_ttl),
            self.cache.set(self._id_to_uuid_key(organization_id), uuid, self.cache_ttl),
        )

    async def get_organization_id(self, db: AsyncSession, uuid: str) -> Optional[int]:
        cached = await self.cache.get(self._uuid_to_id_key(uuid))
        if cached is not None:
            return int(cached)

        organization_id = await self._fetch_organization_id(db, uuid)
        if organization_id is not None:
            await self._cache_pair(uuid, organization_id)
        return organization_id

    async def get_organization_uuid(self, db: AsyncSession, organization_id: int) -> Optional[str]:
        cached = await self.cache.get(self._id_to_uuid_key(organization_id))
        if cached is not None:
            return cached

        uuid = await self._fetch_organization_uuid(db, organization_id)
        if uuid is not None:
            await self._cache_pair(uuid, organization_id)
        return uuid

    async def get_organization_ids(self, db: AsyncSession, uuids: Iterable[str]) -> Dict[str, int]:
        """Batch translation. Unknown UUIDs are missing from the result."""
        uuids = list(dict.fromkeys(uuids))
        cached = await asyncio.gather(*(self.cache.get(self._uuid_to_id_key(u)) for u in uuids))

        result: Dict[str, int] = {}
        missing: List[str] = []
        for uuid, value in zip(uuids, cached):
            if value is None:
                missing.append(uuid)
            else:
                result[uuid] = int(value)

        if missing:
            fetched = await self._fetch_organization_ids(db, missing)
            await asyncio.gather(*(self._cache_pair(u, i) for u, i in fetched.items()))
            result.update(fetched)
        return result

    async def get_organization_uuids(self, db: AsyncSession, organization_ids: Iterable[int]) -> Dict[int, str]:
        """Batch translation. Unknown ids are missing from the result."""
        organization_ids = list(dict.fromkeys(organization_ids))
        cached = await asyncio.gather(*(self.cache.get(self._id_to_uuid_key(i)) for i in organization_ids))

        result: Dict[int, str] = {}
        missing: List[int] = []
        for organization_id, value in zip(organization_ids, cached):
            if value is None:
                missing.append(organization_id)
            else:
                result[organization_id] = value

        if missing:
            fetched = await self._fetch_organization_uuids(db, missing)
            await asyncio.gather(*(self._cache_pair(u, i) for i, u in fetched.items()))
            result.update(fetched)
        return result

    async def invalidate_organization_cache(self, uuid: str, organization_id: int) -> None:
        await asyncio.gather(
            self.cache.delete(self._uuid_to_id_key(uuid)),
            self.cache.delete(self._id_to_uuid_key(organization_id)),
        )

    @abc.abstractmethod
    async def _fetch_organization_id(self, db: AsyncSession, uuid: str) -> Optional[int]:
        ...

    @abc.abstractmethod
    async def _fetch_organization_uuid(self, db: AsyncSession, organization_id: int) -> Optional[str]:
        ...

    async def _fetch_organization_ids(self, db: AsyncSession, uuids: List[str]) -> Dict[str, int]:
        result = {}
        for uuid in uuids:
            organization_id = await self._fetch_organization_id(db, uuid)
            if organization_id is not None:
                result[uuid] = organization_id
        return result

    async def _fetch_organization_uuids(self, db: AsyncSession, organization_ids: List[int]) -> Dict[int, str]:
        result = {}
        for organization_id in organization_ids:
            uuid = await self._fetch_organization_uuid(db, organization_id)
            if uuid is not None:
                result[organization_id] = uuid
        return result

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def create_default_roles(self, db: AsyncSession, organization_id: int) -> List[Role]:
        roles = [
            Role(
                type=definition.type,
                name=definition.name,
                description=definition.description,
                permissions=list(definition.permissions),
                order=definition.order,
                organization_kind=self.kind,
                organization_id=organization_id,
            )
            for definition in self.default_roles.values()
        ]
        db.add_all(roles)
        await db.flush()
        return roles

    @abc.abstractmethod
    async def initialize(self, db: AsyncSession, organization_uuid: str, owner_id: str) -> None:
        """Create default roles and record ownership. Called once per organization."""

    # ========================================================================
    # Organization data
    # ========================================================================

    @abc.abstractmethod
    async def get_owner_uuid(self, db: AsyncSession, organization_uuid: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def get_organization_name(self, db: AsyncSession, organization_uuid: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def get_organization_logo_src(self, db: AsyncSession, organization_uuid: str) -> Optional[str]:
        ...

    async def get_organization_details(self, db: AsyncSession, organization_uuid: str) -> Optional[OrganizationDetails]:
        name = await self.get_organization_name(db, organization_uuid)
        if name is None:
            return None
        return OrganizationDetails(
            uuid=organization_uuid,
            name=name,
            logo_src=await self.get_organization_logo_src(db, organization_uuid),
            owner_uuid=await self.get_owner_uuid(db, organization_uuid),
        )

    @abc.abstractmethod
    async def is_owner(self, db: AsyncSession, user_id: str, organization_uuid: str) -> bool:
        ...

    # ========================================================================
    # Membership
    # ========================================================================

    @abc.abstractmethod
    async def is_member(self, db: AsyncSession, user_id: str, organization_id: int) -> bool:
        ...

    @abc.abstractmethod
    async def add_member(
        self,
        db: AsyncSession,
        user_id: str,
        organization_id: int,
        actor_id: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    @abc.abstractmethod
    async def _do_remove_member(self, db: AsyncSession, user_id: str, organization_id: int, actor_id: str) -> None:
        """Storage-specific removal, called by ``remove_member``."""

    async def remove_member(self, db: AsyncSession, user_id: str, organization_id: int, actor_id: str) -> None:
        """Remove the membership, then apply the soft-delete policy."""
        await self._do_remove_member(db, user_id, organization_id, actor_id)
        await self._handle_user_deletion_after_removal(db, user_id, organization_id)

    async def get_user_membership_count(
        self,
        db: AsyncSession,
        user_id: str,
        exclude_organization_id: Optional[int] = None,
    ) -> int:
        """Distinct organizations of this kind the user holds a role in."""
        stmt = select(func.count(func.distinct(UserRole.organization_id))).where(
            UserRole.user_id == user_id,
            UserRole.organization_kind == self.kind,
        )
        if exclude_organization_id is not None:
            stmt = stmt.where(UserRole.organization_id != exclude_organization_id)
        result = await db.execute(stmt)
        return result.scalar_one()

    async def validate_membership_constraints(self, db: AsyncSession, user_id: str, organization_id: int) -> None:
        limit = self.membership_config.max_memberships_per_user
        if limit is None:
            return
        count = await self.get_user_membership_count(db, user_id, exclude_organization_id=organization_id)
        if count >= limit:
            raise ConflictError(f"A user can be a member of at most {limit} {self.kind} organization(s)")

    async def _handle_user_deletion_after_removal(self, db: AsyncSession, user_id: str, organization_id: int) -> None:
        if not self.membership_config.delete_user_on_removal:
            return
        remaining = await self.get_user_membership_count(db, user_id, exclude_organization_id=organization_id)
        if remaining == 0:
            await db.execute(update(User).where(User.id == user_id).values(deleted_at=utcnow()))
            log.info(f"Soft-deleted user {user_id} after last {self.kind} membership was removed")

    @abc.abstractmethod
    async def get_all_members_data(self, db: AsyncSession, organization_id: int) -> Dict[str, MemberData]:
        ...

    @abc.abstractmethod
    async def get_member_user_ids(self, db: AsyncSession, organization_id: int) -> List[str]:
        """Every user with a membership row, active or not."""

    @abc.abstractmethod
    async def get_user_memberships(self, db: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
        """
        This kind's contribution to the user's membership list.

        Items carry ``organization_kind``, ``organization_uuid`` and
        ``joined_at``; ``is_admin`` and ``is_owner`` appear only when true.
        """

    async def get_member_data(self, db: AsyncSession, user_id: str, organization_id: int) -> MemberData:
        """Default: admin flag and join time derived from the user's roles."""
        batch = await self.get_batch_member_data(db, [user_id], organization_id)
        return batch[user_id]

    async def get_batch_member_data(
        self,
        db: AsyncSession,
        user_ids: Iterable[str],
        organization_id: int,
    ) -> Dict[str, MemberData]:
        user_ids = list(user_ids)
        result = await db.execute(
            select(UserRole.user_id, UserRole.created_at, Role.type)
            .join(Role, Role.id == UserRole.role_id)
            .where(
                UserRole.user_id.in_(user_ids),
                UserRole.organization_kind == self.kind,
                UserRole.organization_id == organization_id,
            )
            .order_by(UserRole.created_at)
        )
        rows = result.all()

        data: Dict[str, MemberData] = {}
        now = utcnow()
        for user_id in user_ids:
            own = [row for row in rows if row.user_id == user_id]
            joined = own[0].created_at if own else now
            data[user_id] = MemberData(
                is_admin=any(row.type == RoleType.ADMIN for row in own),
                created_at=joined,
                updated_at=joined,
            )
        return data

    # ========================================================================
    # Role hooks
    # ========================================================================

    async def before_add_roles(self, db, user_id: str, role_ids: List[int], organization_id: int, actor_id: str) -> None:
        if self.before_add_role is not None:
            for role_id in role_ids:
                await self.before_add_role(db, user_id, role_id, organization_id, actor_id)

    async def after_add_roles(self, db, user_id: str, role_ids: List[int], organization_id: int, actor_id: str) -> None:
        if self.after_add_role is not None:
            for role_id in role_ids:
                await self.after_add_role(db, user_id, role_id, organization_id, actor_id)

    async def before_remove_roles(self, db, user_id: str, role_ids: List[int], organization_id: int, actor_id: str) -> None:
        if self.before_remove_role is not None:
            for role_id in role_ids:
                await self.before_remove_role(db, user_id, role_id, organization_id, actor_id)

    async def after_remove_roles(self, db, user_id: str, role_ids: List[int], organization_id: int, actor_id: str) -> None:
        if self.after_remove_role is not None:
            for role_id in role_ids:
                await self.after_remove_role(db, user_id, role_id, organization_id, actor_id)
