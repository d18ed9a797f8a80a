import pytest

from authz.errors import NOT_PERMITTED_MESSAGE
from authz.features.roles.models import RoleType
from authz.features.users.auth import create_access_token
from tests.factories import bearer, make_user


class TestApp:
    @pytest.mark.asyncio
    async def test_health(self, client, context):
        assert (await client.get("/health")).json() == {"status": "healthy"}
        body = (await client.get("/")).json()
        assert body["status"] == "online"
        assert body["organization_kinds"] == ["company"]

    @pytest.mark.asyncio
    async def test_authentication(self, client, db, world):
        assert (await client.get("/claims/me")).status_code in (401, 403)

        response = await client.get("/claims/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid token"}

        ghost = {"Authorization": f"Bearer {create_access_token('01ARZ3NDEKTSV4RRFFQ69G5FAV')}"}
        assert (await client.get("/claims/me", headers=ghost)).status_code == 401

        inactive = await make_user(db, "eve@example.com", is_active=False)
        response = await client.get("/claims/me", headers=bearer(inactive))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_validation_errors_are_400(self, client, world):
        response = await client.post("/roles/", json={"order": 1}, headers=bearer(world.root))
        assert response.status_code == 400
        assert "name" in response.json()


class TestPermissionRoutes:
    @pytest.mark.asyncio
    async def test_catalog(self, client, world):
        headers = bearer(world.carol)
        groups = (await client.get("/permissions/", headers=headers)).json()
        assert "posts" in [group["key"] for group in groups]

        company = (await client.get("/permissions/", params={"scope": "company"}, headers=headers)).json()
        assert "posts" not in [group["key"] for group in company]
        assert "projects" in [group["key"] for group in company]

        response = await client.get("/permissions/", params={"scope": "team"}, headers=headers)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_my_permissions(self, client, world):
        headers = bearer(world.carol)
        assert (await client.get("/permissions/me", headers=headers)).json() == ["users-basic:show"]
        response = await client.get("/permissions/me", params={"organization_kind": "company"}, headers=headers)
        assert response.status_code == 400

        in_acme = await client.get(
            "/permissions/me",
            params={"organization_kind": "company", "organization_uuid": world.acme.uuid},
            headers=bearer(world.alice),
        )
        assert "projects:create" in in_acme.json()

    @pytest.mark.asyncio
    async def test_check_and_detail(self, client, world):
        headers = bearer(world.carol)
        response = await client.get("/permissions/check", params={"permission": "posts:show"}, headers=headers)
        assert response.json() == {"permission": "posts:show", "granted": False}

        response = await client.get(
            "/permissions/check",
            params={"permission": "projects:create", "organization_kind": "company", "organization_uuid": world.acme.uuid},
            headers=bearer(world.alice),
        )
        assert response.json()["granted"] is True

        detail = (await client.get("/permissions/users-basic:update-profile", headers=headers)).json()
        assert detail["depends_on"] == "users-basic:show"
        assert detail["unmet_dependencies"] == []
        assert detail["allowed_scopes"] == ["global", "company"]

        response = await client.get("/permissions/nope:nothing", headers=headers)
        assert response.status_code == 404
        assert response.json() == {"detail": "Unknown permission: nope:nothing"}


class TestClaimsRoutes:
    @pytest.mark.asyncio
    async def test_my_claims(self, client, world):
        headers = bearer(world.alice)
        body = (await client.get("/claims/me", headers=headers)).json()
        assert body == {
            "user_id": world.alice.id,
            "claims": {
                "global": ["users-basic:show"],
                "organizations": {"company": {world.acme.uuid: ["*"]}},
            },
        }

        roles = (await client.get("/claims/me/roles", headers=headers)).json()
        assert {role["uuid"] for role in roles} == {world.user_role.uuid, world.acme_roles[RoleType.ADMIN].uuid}

        memberships = (await client.get("/claims/me/memberships", headers=headers)).json()
        assert [m["organization_uuid"] for m in memberships] == [world.acme.uuid]
        assert memberships[0]["is_owner"] is True

    @pytest.mark.asyncio
    async def test_user_claims(self, client, world):
        response = await client.get(f"/claims/{world.bob.id}", headers=bearer(world.carol))
        assert response.json()["claims"]["global"] == ["users-basic:show"]

        response = await client.get("/claims/01ARZ3NDEKTSV4RRFFQ69G5FAV", headers=bearer(world.carol))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_refresh(self, client, world):
        payload = [world.alice.id, world.bob.id]
        response = await client.post("/claims/refresh", json=payload, headers=bearer(world.carol))
        assert response.status_code == 403
        assert response.json() == {"detail": NOT_PERMITTED_MESSAGE}

        response = await client.post("/claims/refresh", json=payload, headers=bearer(world.root))
        assert response.json()["succeeded"] == 2
        assert response.json()["failed"] == 0


class TestRoleRoutes:
    @pytest.mark.asyncio
    async def test_lifecycle(self, client, world):
        headers = bearer(world.root)
        response = await client.post(
            "/roles/", json={"name": "Editors", "permissions": ["posts:show"], "order": 10}, headers=headers
        )
        assert response.status_code == 201
        role = response.json()
        assert role["type"] == "custom"
        assert role["organization_uuid"] is None

        assert (await client.get(f"/roles/{role['uuid']}", headers=headers)).json()["name"] == "Editors"
        response = await client.patch(f"/roles/{role['uuid']}", json={"name": "Writers"}, headers=headers)
        assert response.json()["name"] == "Writers"

        listed = (await client.get("/roles/", params={"type": "custom"}, headers=headers)).json()
        assert [r["name"] for r in listed] == ["Writers"]

        response = await client.post(
            f"/roles/users/{world.carol.id}/assign", json={"role_uuids": [role["uuid"]]}, headers=headers
        )
        assert response.status_code == 204
        members = (await client.get(f"/roles/{role['uuid']}/members", headers=headers)).json()
        assert [m["user_id"] for m in members] == [world.carol.id]
        claims = (await client.get("/claims/me", headers=bearer(world.carol))).json()
        assert "posts:show" in claims["claims"]["global"]

        response = await client.put(f"/roles/{role['uuid']}/members", json={"user_ids": []}, headers=headers)
        assert (response.json()["added"], response.json()["removed"]) == (0, 1)

        assert (await client.delete(f"/roles/{role['uuid']}", headers=headers)).status_code == 204
        assert (await client.get(f"/roles/{role['uuid']}", headers=headers)).status_code == 404

    @pytest.mark.asyncio
    async def test_errors(self, client, world):
        response = await client.post("/roles/", json={"name": "Mine", "order": 0}, headers=bearer(world.carol))
        assert response.status_code == 403
        assert response.json() == {"detail": NOT_PERMITTED_MESSAGE}

        response = await client.delete(f"/roles/{world.user_role.uuid}", headers=bearer(world.root))
        assert response.status_code == 403

        response = await client.post(
            f"/roles/users/{world.alice.id}/unassign",
            json={"role_uuids": [world.acme_roles[RoleType.ADMIN].uuid]},
            headers=bearer(world.root),
        )
        assert response.status_code == 403
        assert response.json() == {"detail": "The organization owner must keep an admin role"}

    @pytest.mark.asyncio
    async def test_reorder(self, client, world):
        headers = bearer(world.root)
        first = (await client.post("/roles/", json={"name": "First", "order": 10}, headers=headers)).json()
        second = (await client.post("/roles/", json={"name": "Second", "order": 20}, headers=headers)).json()

        response = await client.put(
            "/roles/reorder",
            json={"roles": [{"uuid": first["uuid"], "order": 20}, {"uuid": second["uuid"], "order": 10}]},
            headers=headers,
        )
        assert response.json() == {"updated": 2}

        response = await client.put(
            "/roles/reorder", json={"roles": [{"uuid": first["uuid"], "order": 1}]}, headers=headers
        )
        assert response.status_code == 409


class TestOrganizationRoutes:
    @pytest.mark.asyncio
    async def test_create_company(self, client, world):
        response = await client.post("/organizations/companies", json={"name": "Globex"}, headers=bearer(world.carol))
        assert response.status_code == 403

        response = await client.post("/organizations/companies", json={"name": "Globex"}, headers=bearer(world.root))
        assert response.status_code == 201
        assert response.json()["owner_id"] == world.root.id
        assert response.json()["members_count"] == 1

    @pytest.mark.asyncio
    async def test_members(self, client, world):
        base = f"/organizations/company/{world.acme.uuid}/members"
        headers = bearer(world.alice)

        members = (await client.get(base, headers=headers)).json()
        assert {m["user_id"] for m in members} == {world.alice.id, world.bob.id}
        # bob's Member role grants nothing inside acme
        assert (await client.get(base, headers=bearer(world.bob))).status_code == 403

        basic = world.acme_roles[RoleType.BASIC].uuid
        response = await client.post(base, json={"user_id": world.carol.id, "role_uuids": [basic]}, headers=headers)
        assert response.status_code == 201
        assert response.json()["user_id"] == world.carol.id

        response = await client.post(base, json={"user_id": world.carol.id, "role_uuids": [basic]}, headers=headers)
        assert response.status_code == 409
        response = await client.post(base, json={"user_id": world.carol.id, "role_uuids": []}, headers=headers)
        assert response.status_code == 400

        member = (await client.get(f"{base}/{world.carol.id}", headers=headers)).json()
        assert [r["uuid"] for r in member["roles"]] == [basic]

        assert (await client.delete(f"{base}/{world.carol.id}", headers=headers)).status_code == 204
        assert (await client.get(f"{base}/{world.carol.id}", headers=headers)).status_code == 404
        assert (await client.delete(f"{base}/{world.alice.id}", headers=bearer(world.root))).status_code == 403

    @pytest.mark.asyncio
    async def test_my_organizations(self, client, world):
        body = (await client.get("/organizations/me", headers=bearer(world.alice))).json()
        assert [o["organization"]["name"] for o in body] == ["Acme"]
        assert body[0]["is_owner"] is True
        assert (await client.get("/organizations/me", headers=bearer(world.carol))).json() == []

    @pytest.mark.asyncio
    async def test_unknown_kind_is_rejected(self, client, world):
        response = await client.get(f"/organizations/team/{world.acme.uuid}/members", headers=bearer(world.root))
        assert response.status_code == 400
        assert "kind" in response.json()


class TestDirectPermissionRoutes:
    @pytest.mark.asyncio
    async def test_grant_and_revoke(self, client, world):
        base = f"/users/{world.carol.id}/permissions"
        headers = bearer(world.root)

        response = await client.post(f"{base}/", json={"permission": "posts:create"}, headers=headers)
        assert response.status_code == 201
        assert response.json()["permission"] == "posts:create"

        direct = (await client.get(f"{base}/direct", headers=headers)).json()
        assert [d["permission"] for d in direct] == ["posts:create"]
        effective = (await client.get(f"{base}/", headers=headers)).json()
        assert "posts:create" in effective["claims"]["global"]

        assert (await client.delete(f"{base}/posts:create", headers=headers)).status_code == 204
        assert (await client.delete(f"{base}/posts:create", headers=headers)).status_code == 404

    @pytest.mark.asyncio
    async def test_requires_assign_permission(self, client, world):
        response = await client.post(
            f"/users/{world.bob.id}/permissions/", json={"permission": "users-basic:show"}, headers=bearer(world.carol)
        )
        assert response.status_code == 403


class TestAdminRoutes:
    @pytest.mark.asyncio
    async def test_admin(self, client, world):
        headers = bearer(world.root)
        assert (await client.get("/admin/system-owner", headers=bearer(world.carol))).status_code == 403

        assert (await client.get("/admin/system-owner", headers=headers)).json()["user_id"] == world.root.id
        response = await client.post("/admin/cache/wildcards/clear", headers=headers)
        assert "cleared" in response.json()
        assert (await client.post("/admin/claims/invalidate", headers=headers)).status_code == 204

        response = await client.put("/admin/system-owner", json={"user_id": world.carol.id}, headers=headers)
        assert response.json() == {"user_id": world.carol.id, "previous_user_id": world.root.id}
        claims = (await client.get("/claims/me", headers=bearer(world.carol))).json()
        assert claims["claims"]["global"] == ["*"]
