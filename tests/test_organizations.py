import pytest
from sqlalchemy import select

from authz.core.cache import MemoryCache
from authz.errors import BadRequestError, ConflictError, ForbiddenError, InternalError, NotFoundError
from authz.features.organizations.adapters.company import CompanyAdapter
from authz.features.organizations.base_adapter import MembershipConfig
from authz.features.organizations.constants import OrganizationKind
from authz.features.organizations.models import Company, CompanyMember
from authz.features.organizations.registry import OrganizationAdapterRegistry, initialize_organization_adapters
from authz.features.organizations.schemas import CompanyCreate
from authz.features.roles.models import Role, RoleType, UserRole
from authz.features.user_memberships.service import filter_memberships_by_kind, organization_uuids
from authz.features.users.models import User
from tests.factories import make_role, make_user, snapshot


async def member_row(db, user, company) -> CompanyMember:
    result = await db.execute(
        select(CompanyMember)
        .where(CompanyMember.user_id == user.id, CompanyMember.company_id == company.id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def members_count(db, company) -> int:
    result = await db.execute(select(Company.members_count).where(Company.id == company.id))
    return result.scalar_one()


class TestRegistry:
    def test_company_is_the_default(self):
        registry = OrganizationAdapterRegistry()
        initialize_organization_adapters(registry, MemoryCache())
        initialize_organization_adapters(registry, MemoryCache())

        assert registry.kinds() == ["company"]
        assert isinstance(registry.get_default(), CompanyAdapter)
        assert registry.get(OrganizationKind.COMPANY) is registry.get("company")
        assert registry.has(OrganizationKind.COMPANY)
        assert not registry.has("team")
        assert registry.get("team") is None
        assert len(registry.get_all()) == 1

    def test_require_unknown_kind(self):
        registry = OrganizationAdapterRegistry()
        with pytest.raises(BadRequestError):
            registry.require("team")
        with pytest.raises(InternalError):
            registry.require_registered("team")
        with pytest.raises(InternalError):
            registry.get_default()


class TestCompanyAdapter:
    @pytest.mark.asyncio
    async def test_uuid_translation_is_cached_both_ways(self, db, context, world):
        adapter = context.registry.get("company")
        await adapter.invalidate_organization_cache(world.acme.uuid, world.acme.id)

        assert await adapter.get_organization_id(db, world.acme.uuid) == world.acme.id
        assert await context.cache.get(f"org:company:uuid2id:{world.acme.uuid}") == world.acme.id
        assert await context.cache.get(f"org:company:id2uuid:{world.acme.id}") == world.acme.uuid
        assert await adapter.get_organization_uuid(db, world.acme.id) == world.acme.uuid
        assert await adapter.get_organization_id(db, "01ARZ3NDEKTSV4RRFFQ69G5FAV") is None

    @pytest.mark.asyncio
    async def test_batch_translation_skips_unknown(self, db, context, world):
        adapter = context.registry.get("company")
        assert await adapter.get_organization_uuids(db, [world.acme.id, 999]) == {world.acme.id: world.acme.uuid}
        assert await adapter.get_organization_ids(db, [world.acme.uuid, "missing"]) == {world.acme.uuid: world.acme.id}

    @pytest.mark.asyncio
    async def test_initialize_records_owner_and_admin(self, db, context, world):
        adapter = context.registry.get("company")
        assert await adapter.is_owner(db, world.alice.id, world.acme.uuid)
        assert not await adapter.is_owner(db, world.bob.id, world.acme.uuid)
        assert await adapter.get_owner_uuid(db, world.acme.uuid) == world.alice.id
        assert set(world.acme_roles) == {RoleType.BASIC, RoleType.ADMIN}
        assert world.acme_roles[RoleType.ADMIN].permissions == ["*"]

        alice = await adapter.get_member_data(db, world.alice.id, world.acme.id)
        bob = await adapter.get_member_data(db, world.bob.id, world.acme.id)
        assert alice.is_admin
        assert not bob.is_admin

        details = await adapter.get_organization_details(db, world.acme.uuid)
        assert (details.name, details.owner_uuid) == ("Acme", world.alice.id)
        assert await adapter.get_organization_details(db, "missing") is None

    @pytest.mark.asyncio
    async def test_membership(self, db, context, world):
        adapter = context.registry.get("company")
        assert await adapter.is_member(db, world.bob.id, world.acme.id)
        assert not await adapter.is_member(db, world.carol.id, world.acme.id)
        assert set(await adapter.get_all_members_data(db, world.acme.id)) == {world.alice.id, world.bob.id}
        assert await members_count(db, world.acme) == 2

        data = await adapter.get_batch_member_data(db, [world.bob.id, world.carol.id], world.acme.id)
        assert not data[world.carol.id].is_admin

    @pytest.mark.asyncio
    async def test_remove_is_a_soft_delete_and_readd_restores(self, db, context, world):
        adapter = context.registry.get("company")
        await adapter.remove_member(db, world.bob.id, world.acme.id, world.alice.id)
        await db.commit()

        assert not await adapter.is_member(db, world.bob.id, world.acme.id)
        assert (await member_row(db, world.bob, world.acme)).deleted_at is not None
        assert await members_count(db, world.acme) == 1
        assert world.bob.id in await adapter.get_member_user_ids(db, world.acme.id)

        with pytest.raises(NotFoundError):
            await adapter.remove_member(db, world.bob.id, world.acme.id, world.alice.id)

        await adapter.add_member(db, world.bob.id, world.acme.id, world.alice.id)
        await db.commit()
        assert await adapter.is_member(db, world.bob.id, world.acme.id)
        assert await members_count(db, world.acme) == 2

    @pytest.mark.asyncio
    async def test_owner_cannot_be_removed(self, db, context, world):
        adapter = context.registry.get("company")
        with pytest.raises(ForbiddenError):
            await adapter.remove_member(db, world.alice.id, world.acme.id, world.root.id)

    @pytest.mark.asyncio
    async def test_admin_flag_follows_role_hooks(self, db, context, world):
        await context.assignments.assign_role(db, world.acme_roles[RoleType.ADMIN].uuid, world.bob.id, world.root.id)
        assert (await member_row(db, world.bob, world.acme)).is_admin

        await context.assignments.unassign_role(db, world.acme_roles[RoleType.ADMIN].uuid, world.bob.id, world.root.id)
        assert not (await member_row(db, world.bob, world.acme)).is_admin

    @pytest.mark.asyncio
    async def test_membership_limit(self, db, context, world):
        adapter = context.registry.get("company")
        adapter.membership_config = MembershipConfig(max_memberships_per_user=1)
        await context.organizations.create_company(db, CompanyCreate(name="Globex"), world.carol.id)

        with pytest.raises(ConflictError):
            await adapter.validate_membership_constraints(db, world.carol.id, world.acme.id)
        await adapter.validate_membership_constraints(db, world.bob.id, world.acme.id)
        assert await adapter.get_user_membership_count(db, world.carol.id) == 1

    @pytest.mark.asyncio
    async def test_user_soft_deleted_after_last_membership(self, db, context, world):
        adapter = context.registry.get("company")
        adapter.membership_config = MembershipConfig(delete_user_on_removal=True)

        await context.organizations.remove_member(db, "company", world.acme.uuid, world.bob.id, world.alice.id)

        result = await db.execute(select(User.deleted_at).where(User.id == world.bob.id))
        assert result.scalar_one() is not None


class TestOrganizationsService:
    @pytest.mark.asyncio
    async def test_create_company(self, db, context, world):
        company = await context.organizations.create_company(
            db, CompanyCreate(name="Globex", logo_src="https://example.com/logo.png"), world.root.id
        )
        assert company.owner_id == world.root.id
        assert company.members_count == 1

        result = await db.execute(
            select(Role).where(Role.organization_kind == "company", Role.organization_id == company.id)
        )
        assert {role.type for role in result.scalars().all()} == {RoleType.BASIC, RoleType.ADMIN}

    @pytest.mark.asyncio
    async def test_create_company_for_another_owner(self, db, context, world):
        company = await context.organizations.create_company(
            db, CompanyCreate(name="Globex", owner_id=world.carol.id), world.root.id
        )
        assert company.owner_id == world.carol.id
        claims = await context.claims.get_claims(db, world.carol.id)
        assert claims["organizations"]["company"][company.uuid] == ["*"]

    @pytest.mark.asyncio
    async def test_create_company_unknown_owner(self, db, context, world):
        with pytest.raises(NotFoundError):
            await context.organizations.create_company(
                db, CompanyCreate(name="Globex", owner_id="01ARZ3NDEKTSV4RRFFQ69G5FAV"), world.root.id
            )

    @pytest.mark.asyncio
    async def test_get_members(self, db, context, world):
        members = {m.user_id: m for m in await context.organizations.get_members(db, "company", world.acme.uuid)}
        assert set(members) == {world.alice.id, world.bob.id}
        assert members[world.alice.id].is_owner
        assert members[world.alice.id].is_admin
        assert [role.type for role in members[world.bob.id].roles] == [RoleType.BASIC]

        member = await context.organizations.get_member(db, "company", world.acme.uuid, world.bob.id)
        assert member.email == "bob@example.com"
        with pytest.raises(NotFoundError):
            await context.organizations.get_member(db, "company", world.acme.uuid, world.carol.id)
        with pytest.raises(InternalError):
            await context.organizations.get_members(db, "team", world.acme.uuid)

    @pytest.mark.asyncio
    async def test_add_member(self, db, context, world):
        basic = world.acme_roles[RoleType.BASIC]
        await context.organizations.add_member(db, "company", world.acme.uuid, world.carol.id, [basic.uuid], world.alice.id)

        assert await context.registry.get("company").is_member(db, world.carol.id, world.acme.id)
        memberships = await context.memberships.get_user_memberships(db, world.carol.id)
        assert organization_uuids(memberships, "company") == [world.acme.uuid]

    @pytest.mark.asyncio
    async def test_add_member_rejections(self, db, context, world):
        basic = world.acme_roles[RoleType.BASIC]
        service = context.organizations

        with pytest.raises(BadRequestError):
            await service.add_member(db, "company", world.acme.uuid, world.carol.id, [], world.alice.id)
        with pytest.raises(ConflictError):
            await service.add_member(db, "company", world.acme.uuid, world.bob.id, [basic.uuid], world.alice.id)
        with pytest.raises(NotFoundError):
            await service.add_member(
                db, "company", world.acme.uuid, "01ARZ3NDEKTSV4RRFFQ69G5FAV", [basic.uuid], world.alice.id
            )
        # carol is neither a member nor holds an all-organizations permission
        with pytest.raises(ForbiddenError):
            await service.add_member(db, "company", world.acme.uuid, world.carol.id, [basic.uuid], world.carol.id)

        globex = await service.create_company(db, CompanyCreate(name="Globex"), world.root.id)
        globex_role = (await db.execute(
            select(Role).where(Role.organization_id == globex.id, Role.type == RoleType.BASIC)
        )).scalar_one()
        with pytest.raises(BadRequestError):
            await service.add_member(db, "company", world.acme.uuid, world.carol.id, [globex_role.uuid], world.alice.id)

        assert not await context.registry.get("company").is_member(db, world.carol.id, world.acme.id)

    @pytest.mark.asyncio
    async def test_add_member_guardrail_rolls_back(self, db, context, world):
        builders = await make_role(db, "Builders", ["projects:create"], 50, organization=world.acme)
        # alice holds nothing globally beyond users-basic:show
        with pytest.raises(ForbiddenError):
            await context.organizations.add_member(
                db, "company", world.acme.uuid, world.carol.id, [builders.uuid], world.alice.id
            )
        assert not await context.registry.get("company").is_member(db, world.carol.id, world.acme.id)
        assert await members_count(db, world.acme) == 2

    @pytest.mark.asyncio
    async def test_update_member_roles_applies_the_difference(self, db, context, world):
        basic = world.acme_roles[RoleType.BASIC]
        viewers = await make_role(db, "Viewers", ["users-basic:show"], 50, organization=world.acme)

        await context.organizations.update_member_roles(
            db, "company", world.acme.uuid, world.bob.id, [basic.uuid, viewers.uuid], world.alice.id
        )
        member = await context.organizations.get_member(db, "company", world.acme.uuid, world.bob.id)
        assert [role.uuid for role in member.roles] == [viewers.uuid, basic.uuid]

        await context.organizations.update_member_roles(
            db, "company", world.acme.uuid, world.bob.id, [viewers.uuid], world.alice.id
        )
        member = await context.organizations.get_member(db, "company", world.acme.uuid, world.bob.id)
        assert [role.uuid for role in member.roles] == [viewers.uuid]

        claims = await context.claims.get_claims(db, world.bob.id)
        assert claims["organizations"]["company"][world.acme.uuid] == ["users-basic:show"]

    @pytest.mark.asyncio
    async def test_update_member_roles_rejections(self, db, context, world):
        admin = world.acme_roles[RoleType.ADMIN]
        basic = world.acme_roles[RoleType.BASIC]
        with pytest.raises(ForbiddenError, match="your own roles"):
            await context.organizations.update_member_roles(
                db, "company", world.acme.uuid, world.alice.id, [admin.uuid, basic.uuid], world.alice.id
            )
        with pytest.raises(NotFoundError):
            await context.organizations.update_member_roles(
                db, "company", world.acme.uuid, world.carol.id, [basic.uuid], world.alice.id
            )
        # Company Admin has the same order as alice's highest role
        with pytest.raises(ForbiddenError):
            await context.organizations.update_member_roles(
                db, "company", world.acme.uuid, world.bob.id, [admin.uuid], world.alice.id
            )

    @pytest.mark.asyncio
    async def test_remove_member(self, db, context, world):
        await context.organizations.remove_member(db, "company", world.acme.uuid, world.bob.id, world.alice.id)

        assert not await context.registry.get("company").is_member(db, world.bob.id, world.acme.id)
        result = await db.execute(select(UserRole.id).where(UserRole.user_id == world.bob.id, UserRole.organization_id == world.acme.id))
        assert result.first() is None
        assert await context.memberships.get_user_memberships(db, world.bob.id) == []

    @pytest.mark.asyncio
    async def test_owner_is_never_removed(self, db, context, world):
        with pytest.raises(ForbiddenError, match="owner cannot be removed"):
            await context.organizations.remove_member(db, "company", world.acme.uuid, world.alice.id, world.root.id)

    @pytest.mark.asyncio
    async def test_members_cannot_remove_without_permission(self, db, context, world):
        dave = await make_user(db, "dave@example.com")
        await context.organizations.add_member(
            db, "company", world.acme.uuid, dave.id, [world.acme_roles[RoleType.BASIC].uuid], world.alice.id
        )
        with pytest.raises(ForbiddenError):
            await context.organizations.remove_member(db, "company", world.acme.uuid, dave.id, world.bob.id)

    @pytest.mark.asyncio
    async def test_current_user_memberships(self, db, context, world):
        await context.organizations.create_company(db, CompanyCreate(name="Globex"), world.bob.id)

        summaries = await context.organizations.get_current_user_memberships(db, world.bob.id)
        assert [s.organization.name for s in summaries] == ["Acme", "Globex"]
        acme, globex = summaries
        assert not acme.is_owner and not acme.is_admin
        assert globex.is_owner and globex.is_admin
        assert [role.type for role in globex.roles] == [RoleType.ADMIN]


class TestUserMemberships:
    @pytest.mark.asyncio
    async def test_memberships_are_computed_and_persisted(self, db, context, world):
        memberships = await context.memberships.get_user_memberships(db, world.alice.id)
        assert len(memberships) == 1
        assert memberships[0]["organization_uuid"] == world.acme.uuid
        assert memberships[0]["is_owner"] and memberships[0]["is_admin"]
        await db.commit()
        assert (await snapshot(db, world.alice)).memberships == memberships

        bob = await context.memberships.get_user_memberships(db, world.bob.id)
        assert "is_admin" not in bob[0] and "is_owner" not in bob[0]

    @pytest.mark.asyncio
    async def test_invalidation(self, db, context, world):
        await context.memberships.get_user_memberships(db, world.bob.id)
        await db.commit()

        await context.memberships.invalidate_user_memberships(db, world.bob.id)
        assert (await snapshot(db, world.bob)).memberships is None
        assert await context.cache.get(f"user:{world.bob.id}:memberships") is None

    @pytest.mark.asyncio
    async def test_invalidate_for_organization(self, db, context, world):
        for user in (world.alice, world.bob):
            await context.memberships.get_user_memberships(db, user.id)
        await db.commit()

        await context.memberships.invalidate_memberships_for_organization(db, "company", world.acme.id)
        for user in (world.alice, world.bob):
            assert (await snapshot(db, user)).memberships is None

    def test_filters(self):
        memberships = [
            {"organization_kind": "company", "organization_uuid": "a"},
            {"organization_kind": "team", "organization_uuid": "b"},
        ]
        assert filter_memberships_by_kind(memberships, OrganizationKind.COMPANY) == memberships[:1]
        assert organization_uuids(memberships, "team") == ["b"]
