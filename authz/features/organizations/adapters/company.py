"""
Company adapter, backed by the ``companies`` and ``company_members`` tables.
"""
from typing import Any, Dict, List, Optional
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core.database.base import utcnow
from authz.errors import ForbiddenError, NotFoundError
from authz.features.organizations.base_adapter import BaseOrganizationAdapter, MemberData, OrganizationDetails
from authz.features.organizations.constants import OrganizationKind
from authz.features.organizations.models import Company, CompanyMember
from authz.features.roles.constants import COMPANY_DEFAULT_ROLES
from authz.features.roles.models import Role, RoleType, UserRole
from authz.utils import get_logger


log = get_logger(__name__)


class CompanyAdapter(BaseOrganizationAdapter):
    kind = OrganizationKind.COMPANY.value
    default_roles = COMPANY_DEFAULT_ROLES

    # ========================================================================
    # isAdmin bookkeeping
    # ========================================================================

    async def _calculate_is_admin(self, db: AsyncSession, user_id: str, company_id: int) -> bool:
        result = await db.execute(
            select(func.count(UserRole.id))
            .join(Role, Role.id == UserRole.role_id)
            .where(
                UserRole.user_id == user_id,
                UserRole.organization_kind == self.kind,
                UserRole.organization_id == company_id,
                Role.type == RoleType.ADMIN,
            )
        )
        return result.scalar_one() > 0

    async def _update_is_admin(self, db: AsyncSession, user_id: str, company_id: int) -> None:
        is_admin = await self._calculate_is_admin(db, user_id, company_id)
        await db.execute(
            update(CompanyMember)
            .where(CompanyMember.user_id == user_id, CompanyMember.company_id == company_id)
            .values(is_admin=is_admin)
        )

    async def after_add_role(self, db, user_id, role_id, organization_id, actor_id):
        await self._update_is_admin(db, user_id, organization_id)

    async def after_remove_role(self, db, user_id, role_id, organization_id, actor_id):
        await self._update_is_admin(db, user_id, organization_id)

    # Role hooks only touch one member row, so the batch variants run once
    async def after_add_roles(self, db, user_id, role_ids, organization_id, actor_id):
        await self._update_is_admin(db, user_id, organization_id)

    async def after_remove_roles(self, db, user_id, role_ids, organization_id, actor_id):
        await self._update_is_admin(db, user_id, organization_id)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def initialize(self, db: AsyncSession, organization_uuid: str, owner_id: str) -> None:
        company_id = await self.get_organization_id(db, organization_uuid)
        if company_id is None:
            raise NotFoundError(f"Company not found: {organization_uuid}")

        roles = await self.create_default_roles(db, company_id)

        await db.execute(update(Company).where(Company.id == company_id).values(owner_id=owner_id))
        await self.add_member(db, owner_id, company_id, owner_id)

        admin_role = next((role for role in roles if role.type == RoleType.ADMIN), None)
        if admin_role is not None:
            db.add(UserRole(
                user_id=owner_id,
                role_id=admin_role.id,
                organization_kind=self.kind,
                organization_id=company_id,
            ))
            await db.flush()
            await self._update_is_admin(db, owner_id, company_id)

        log.info(f"Initialized company {organization_uuid} with owner {owner_id}")

    # ========================================================================
    # Organization data
    # ========================================================================

    async def _get_company(self, db: AsyncSession, organization_uuid: str) -> Optional[Company]:
        result = await db.execute(select(Company).where(Company.uuid == organization_uuid))
        return result.scalars().first()

    async def get_owner_uuid(self, db: AsyncSession, organization_uuid: str) -> Optional[str]:
        company = await self._get_company(db, organization_uuid)
        return company.owner_id if company else None

    async def get_organization_name(self, db: AsyncSession, organization_uuid: str) -> Optional[str]:
        company = await self._get_company(db, organization_uuid)
        return company.name if company else None

    async def get_organization_logo_src(self, db: AsyncSession, organization_uuid: str) -> Optional[str]:
        company = await self._get_company(db, organization_uuid)
        return company.logo_src if company else None

    async def get_organization_details(self, db: AsyncSession, organization_uuid: str) -> Optional[OrganizationDetails]:
        # Single query instead of three
        company = await self._get_company(db, organization_uuid)
        if company is None:
            return None
        return OrganizationDetails(
            uuid=company.uuid,
            name=company.name,
            logo_src=company.logo_src,
            owner_uuid=company.owner_id,
        )

    async def is_owner(self, db: AsyncSession, user_id: str, organization_uuid: str) -> bool:
        owner_id = await self.get_owner_uuid(db, organization_uuid)
        return owner_id is not None and owner_id == user_id

    async def _fetch_organization_id(self, db: AsyncSession, uuid: str) -> Optional[int]:
        result = await db.execute(select(Company.id).where(Company.uuid == uuid))
        return result.scalar_one_or_none()

    async def _fetch_organization_uuid(self, db: AsyncSession, organization_id: int) -> Optional[str]:
        result = await db.execute(select(Company.uuid).where(Company.id == organization_id))
        return result.scalar_one_or_none()

    async def _fetch_organization_ids(self, db: AsyncSession, uuids: List[str]) -> Dict[str, int]:
        result = await db.execute(select(Company.uuid, Company.id).where(Company.uuid.in_(uuids)))
        return {row.uuid: row.id for row in result.all()}

    async def _fetch_organization_uuids(self, db: AsyncSession, organization_ids: List[int]) -> Dict[int, str]:
        result = await db.execute(select(Company.id, Company.uuid).where(Company.id.in_(organization_ids)))
        return {row.id: row.uuid for row in result.all()}

    # ========================================================================
    # Membership
    # ========================================================================

    async def _get_member_row(self, db: AsyncSession, user_id: str, company_id: int) -> Optional[CompanyMember]:
        result = await db.execute(
            select(CompanyMember).where(
                CompanyMember.user_id == user_id,
                CompanyMember.company_id == company_id,
            )
        )
        return result.scalars().first()

    async def is_member(self, db: AsyncSession, user_id: str, organization_id: int) -> bool:
        result = await db.execute(
            select(CompanyMember.id).where(
                CompanyMember.user_id == user_id,
                CompanyMember.company_id == organization_id,
                CompanyMember.deleted_at.is_(None),
            )
        )
        return result.first() is not None

    async def add_member(
        self,
        db: AsyncSession,
        user_id: str,
        organization_id: int,
        actor_id: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        existing = await self._get_member_row(db, user_id, organization_id)
        if existing is not None:
            was_deleted = existing.deleted_at is not None
            existing.deleted_at = None
            # Recomputed by the role hooks
            existing.is_admin = False
            if was_deleted:
                await self._change_members_count(db, organization_id, 1)
        else:
            db.add(CompanyMember(user_id=user_id, company_id=organization_id, is_admin=False))
            await self._change_members_count(db, organization_id, 1)
        await db.flush()

    async def _do_remove_member(self, db: AsyncSession, user_id: str, organization_id: int, actor_id: str) -> None:
        result = await db.execute(select(Company.owner_id).where(Company.id == organization_id))
        if result.scalar_one_or_none() == user_id:
            raise ForbiddenError("Cannot remove the owner from the organization. Transfer ownership first.")

        result = await db.execute(
            update(CompanyMember)
            .where(
                CompanyMember.user_id == user_id,
                CompanyMember.company_id == organization_id,
                CompanyMember.deleted_at.is_(None),
            )
            .values(deleted_at=utcnow())
        )
        if not result.rowcount:
            raise NotFoundError(f"User is not a member of this {self.kind}")

        await self._change_members_count(db, organization_id, -1)

    async def _change_members_count(self, db: AsyncSession, company_id: int, delta: int) -> None:
        await db.execute(
            update(Company)
            .where(Company.id == company_id)
            .values(members_count=Company.members_count + delta)
        )

    async def get_all_members_data(self, db: AsyncSession, organization_id: int) -> Dict[str, MemberData]:
        result = await db.execute(
            select(CompanyMember).where(
                CompanyMember.company_id == organization_id,
                CompanyMember.deleted_at.is_(None),
            )
        )
        return {
            member.user_id: MemberData(
                is_admin=member.is_admin,
                created_at=member.created_at,
                updated_at=member.updated_at,
            )
            for member in result.scalars().all()
        }

    async def get_member_data(self, db: AsyncSession, user_id: str, organization_id: int) -> MemberData:
        batch = await self.get_batch_member_data(db, [user_id], organization_id)
        return batch[user_id]

    async def get_batch_member_data(self, db: AsyncSession, user_ids, organization_id: int) -> Dict[str, MemberData]:
        user_ids = list(user_ids)
        result = await db.execute(
            select(CompanyMember).where(
                CompanyMember.user_id.in_(user_ids),
                CompanyMember.company_id == organization_id,
                CompanyMember.deleted_at.is_(None),
            )
        )
        data = {
            member.user_id: MemberData(
                is_admin=member.is_admin,
                created_at=member.created_at,
                updated_at=member.updated_at,
            )
            for member in result.scalars().all()
        }
        now = utcnow()
        for user_id in user_ids:
            data.setdefault(user_id, MemberData(is_admin=False, created_at=now, updated_at=now))
        return data

    async def get_member_user_ids(self, db: AsyncSession, organization_id: int) -> List[str]:
        result = await db.execute(
            select(CompanyMember.user_id).where(CompanyMember.company_id == organization_id)
        )
        return list(result.scalars().all())

    async def get_user_memberships(self, db: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
        result = await db.execute(
            select(CompanyMember, Company.uuid, Company.owner_id)
            .join(Company, Company.id == CompanyMember.company_id)
            .where(CompanyMember.user_id == user_id, CompanyMember.deleted_at.is_(None))
            .order_by(CompanyMember.created_at)
        )

        memberships = []
        for member, company_uuid, owner_id in result.all():
            membership: Dict[str, Any] = {
                "organization_kind": self.kind,
                "organization_uuid": company_uuid,
                "joined_at": member.created_at.isoformat(),
            }
            # Flags only when true
            if member.is_admin:
                membership["is_admin"] = True
            if owner_id == user_id:
                membership["is_owner"] = True
            memberships.append(membership)
        return memberships
