import pytest
from sqlalchemy import delete, update

from authz.core.cache import MemoryCache
from authz.features.claims.overrides import OrganizationOwnerOverride, SystemOwnerOverride
from authz.features.claims.service import ClaimsService, claims_cache_key, has_permission
from authz.features.organizations.constants import OrganizationKind
from authz.features.organizations.schemas import CompanyCreate
from authz.features.roles.models import RoleType, UserRole
from authz.features.roles.schemas import RoleUpdate
from authz.features.user_permissions.models import UserPermission
from authz.features.users.models import User
from tests.factories import give_role, make_role, make_user, snapshot


class BrokenDeleteCache(MemoryCache):
    async def delete(self, key):
        raise RuntimeError("cache down")


class TestHasPermission:
    def test_global_claims(self):
        claims = {"global": ["users-basic:*"], "organizations": {}}
        assert has_permission(claims, "users-basic:show")
        assert not has_permission(claims, "posts:create")

    def test_global_group_wildcard_does_not_reach_organization_only_keys(self):
        claims = {"global": ["users-roles:*"], "organizations": {}}
        assert has_permission(claims, "users-roles:assign-global")
        assert not has_permission(claims, "users-roles:assign-own-organization", "org-1", "company")

    def test_universal_wildcard_reaches_everything(self):
        claims = {"global": ["*"], "organizations": {}}
        assert has_permission(claims, "users-roles:assign-own-organization", "org-1", "company")
        assert has_permission(claims, "anything:at-all")

    def test_organization_claims(self):
        claims = {"global": [], "organizations": {"company": {"org-1": ["projects:*"]}}}
        assert has_permission(claims, "projects:create", "org-1", "company")
        assert has_permission(claims, "projects:create", "org-1", OrganizationKind.COMPANY)
        assert not has_permission(claims, "projects:create", "org-2", "company")
        assert not has_permission(claims, "projects:create")

    def test_organization_claim_respects_catalog_scope(self):
        claims = {"global": [], "organizations": {"company": {"org-1": ["posts:*"]}}}
        assert not has_permission(claims, "posts:create", "org-1", "company")


class TestClaimsComputation:
    @pytest.mark.asyncio
    async def test_global_group_wildcard_role(self, db, context, world):
        role = await make_role(db, "Directory", ["users-basic:*"], 10)
        await give_role(db, world.carol, role)
        await context.claims.invalidate_user_claims_and_roles(db, world.carol.id)

        assert await context.checks.is_granted(db, world.carol.id, "users-basic:show")
        assert not await context.checks.is_granted(db, world.carol.id, "posts:create")
        claims = await context.claims.get_claims(db, world.carol.id)
        assert claims["global"] == ["users-basic:*"]

    @pytest.mark.asyncio
    async def test_organization_admin_wildcard_stays_in_its_organization(self, db, context, world):
        dave = await make_user(db, "dave@example.com")
        await context.organizations.add_member(
            db, "company", world.acme.uuid, dave.id, [world.acme_roles[RoleType.ADMIN].uuid], world.root.id
        )
        globex = await context.organizations.create_company(db, CompanyCreate(name="Globex"), world.carol.id)

        assert await context.checks.is_granted(db, dave.id, "anything:at-all", world.acme.uuid, "company")
        assert not await context.checks.is_granted(db, dave.id, "anything:at-all", globex.uuid, "company")
        assert not await context.checks.is_granted(db, dave.id, "anything:at-all")

    @pytest.mark.asyncio
    async def test_empty_organization_scope_is_dropped(self, db, context, world):
        # bob only holds the permissionless BASIC role in acme
        claims = await context.claims.get_claims(db, world.bob.id)
        assert claims == {"global": ["users-basic:show"], "organizations": {}}

    @pytest.mark.asyncio
    async def test_owner_holds_wildcard_regardless_of_roles(self, db, context, world):
        await db.execute(
            delete(UserRole).where(
                UserRole.user_id == world.alice.id,
                UserRole.role_id == world.acme_roles[RoleType.ADMIN].id,
            )
        )
        await db.commit()
        await give_role(db, world.alice, world.acme_roles[RoleType.BASIC])
        db.add(UserPermission(
            user_id=world.alice.id,
            permission="projects:create",
            organization_kind="company",
            organization_id=world.acme.id,
        ))
        await db.commit()
        await context.claims.invalidate_user_claims_and_roles(db, world.alice.id)

        claims = await context.claims.get_claims(db, world.alice.id)
        assert claims["organizations"] == {"company": {world.acme.uuid: ["*"]}}

    @pytest.mark.asyncio
    async def test_system_owner_short_circuit_keeps_role_summary(self, db, context, world):
        claims = await context.claims.get_claims(db, world.root.id)
        assert claims == {"global": ["*"], "organizations": {}}
        assert await context.claims.get_role_infos(db, world.root.id) == [{"uuid": world.admin_role.uuid}]

    @pytest.mark.asyncio
    async def test_direct_grants_are_merged_and_canonicalized(self, db, context, world):
        role = await make_role(db, "Readers", ["posts:show"], 10)
        await give_role(db, world.carol, role)
        db.add_all([
            UserPermission(user_id=world.carol.id, permission="posts:*"),
            UserPermission(
                user_id=world.bob.id,
                permission="projects:create",
                organization_kind="company",
                organization_id=world.acme.id,
            ),
            # Unknown organization ids are skipped
            UserPermission(
                user_id=world.bob.id,
                permission="projects:update-own-company",
                organization_kind="company",
                organization_id=999,
            ),
        ])
        await db.commit()
        await context.claims.invalidate_users(db, [world.carol.id, world.bob.id], include_roles=True)

        carol = await context.claims.get_claims(db, world.carol.id)
        assert carol == {"global": ["posts:*", "users-basic:show"], "organizations": {}}
        bob = await context.claims.get_claims(db, world.bob.id)
        assert bob["organizations"] == {"company": {world.acme.uuid: ["projects:create"]}}

    @pytest.mark.asyncio
    async def test_role_summary(self, db, context, world):
        roles = await context.claims.get_role_infos(db, world.bob.id)
        assert sorted(roles, key=lambda info: info["uuid"]) == sorted([
            {"uuid": world.user_role.uuid},
            {
                "uuid": world.acme_roles[RoleType.BASIC].uuid,
                "organization_kind": "company",
                "organization_uuid": world.acme.uuid,
            },
        ], key=lambda info: info["uuid"])

    @pytest.mark.asyncio
    async def test_cached_role_summary_reused_when_count_matches(self, db, context, world):
        calculator = context.claims.calculator
        result = await calculator.calculate(db, world.carol.id, cached_roles=[{"uuid": "cached"}])
        assert result.roles == [{"uuid": "cached"}]

        result = await calculator.calculate(db, world.carol.id, cached_roles=[{"uuid": "a"}, {"uuid": "b"}])
        assert result.roles == [{"uuid": world.user_role.uuid}]


class TestOverrides:
    @pytest.mark.asyncio
    async def test_system_owner_override(self, db, context, world):
        strategy = SystemOwnerOverride(context.kv_store)
        override = await strategy.resolve(db, world.root.id, {})
        assert override.exclusive
        assert override.to_claims() == {"global": ["*"], "organizations": {}}
        assert await strategy.resolve(db, world.alice.id, {}) is None

    @pytest.mark.asyncio
    async def test_organization_owner_override(self, db, context, world):
        strategy = OrganizationOwnerOverride(context.registry)
        override = await strategy.resolve(db, world.alice.id, {"company": {world.acme.uuid}})
        assert not override.exclusive
        assert override.organizations == {"company": {world.acme.uuid: ["*"]}}
        assert await strategy.resolve(db, world.bob.id, {"company": {world.acme.uuid}}) is None
        assert await strategy.resolve(db, world.alice.id, {"unknown": {"x"}}) is None


class TestClaimsCache:
    @pytest.mark.asyncio
    async def test_computed_claims_are_persisted_and_cached(self, db, context, world):
        await context.claims.invalidate_user_claims_and_roles(db, world.carol.id)
        claims = await context.claims.get_claims(db, world.carol.id)
        await db.commit()

        row = await snapshot(db, world.carol)
        assert row.claims == claims
        assert row.roles == [{"uuid": world.user_role.uuid}]
        assert await context.cache.get(claims_cache_key(world.carol.id)) == claims

    @pytest.mark.asyncio
    async def test_snapshot_served_on_cache_miss(self, db, context, world):
        await context.claims.get_claims(db, world.carol.id)
        stored = {"global": ["posts:show"], "organizations": {}}
        await db.execute(update(User).where(User.id == world.carol.id).values(claims=stored))
        await db.commit()
        await context.cache.clear()

        assert await context.claims.get_claims(db, world.carol.id) == stored
        assert await context.cache.get(claims_cache_key(world.carol.id)) == stored

    @pytest.mark.asyncio
    async def test_invalidation_beats_memory_cache(self, db, context, world):
        before = await context.claims.get_claims(db, world.carol.id)
        assert "posts:create" not in before["global"]

        db.add(UserPermission(user_id=world.carol.id, permission="posts:create"))
        await db.commit()
        assert await context.claims.get_claims(db, world.carol.id) == before

        await context.claims.invalidate_user_claims(db, world.carol.id)
        assert (await snapshot(db, world.carol)).claims is None
        after = await context.claims.get_claims(db, world.carol.id)
        assert "posts:create" in after["global"]

    @pytest.mark.asyncio
    async def test_role_permission_edit_invalidates_claims_only(self, db, context, world):
        writers = await make_role(db, "Writers", ["posts:show"], 10)
        await context.assignments.assign_role(db, writers.uuid, world.bob.id, world.root.id)
        await context.claims.get_claims(db, world.bob.id)
        await db.commit()
        roles_before = (await snapshot(db, world.bob)).roles
        assert roles_before is not None

        await context.roles.update_role(
            db, writers.uuid, RoleUpdate(permissions=["posts:show", "posts:create"]), world.root.id
        )

        row = await snapshot(db, world.bob)
        assert row.claims is None
        assert row.roles == roles_before
        assert "posts:create" in (await context.claims.get_claims(db, world.bob.id))["global"]

    @pytest.mark.asyncio
    async def test_assignment_invalidates_claims_and_roles(self, db, context, world):
        await context.claims.get_claims(db, world.carol.id)
        await db.commit()
        writers = await make_role(db, "Writers", ["posts:show"], 10)

        await context.assignments.assign_role(db, writers.uuid, world.carol.id, world.root.id)

        row = await snapshot(db, world.carol)
        assert row.claims is None
        assert row.roles is None
        assert await context.cache.get(claims_cache_key(world.carol.id)) is None

    @pytest.mark.asyncio
    async def test_cache_failure_during_invalidation_is_swallowed(self, db, context, world):
        claims = ClaimsService(BrokenDeleteCache(), context.claims.calculator)
        await claims.get_claims(db, world.carol.id)
        await db.commit()

        await claims.invalidate_user_claims(db, world.carol.id)
        assert (await snapshot(db, world.carol)).claims is None

        results = await claims.invalidate_users(db, [world.carol.id, world.bob.id])
        assert [item.ok for item in results] == [False, False]
        assert results[0].error == "cache down"

    @pytest.mark.asyncio
    async def test_refresh_users_claims(self, db, context, world):
        results = await context.claims.refresh_users_claims(db, [world.alice.id, world.bob.id, world.alice.id])
        assert [item.id for item in results] == [world.alice.id, world.bob.id]
        assert all(item.ok for item in results)

        row = await snapshot(db, world.alice)
        assert row.claims["organizations"]["company"][world.acme.uuid] == ["*"]

    @pytest.mark.asyncio
    async def test_invalidate_for_role_and_all(self, db, context, world):
        for user in (world.alice, world.bob, world.carol):
            await context.claims.get_claims(db, user.id)
        await db.commit()

        results = await context.claims.invalidate_claims_for_role(db, world.user_role.id)
        assert {item.id for item in results} == {world.alice.id, world.bob.id, world.carol.id}
        assert (await snapshot(db, world.bob)).claims is None
        assert (await snapshot(db, world.bob)).roles is not None

        await context.claims.get_claims(db, world.bob.id)
        await db.commit()
        await context.admin.invalidate_all_claims(db)
        for user in (world.alice, world.bob, world.carol):
            row = await snapshot(db, user)
            assert row.claims is None
            assert row.roles is not None
        assert await context.cache.keys("user:*:claims") == []
