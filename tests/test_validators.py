import pytest

from authz.errors import BadRequestError, InternalError, NotFoundError
from authz.features.permissions import catalog, expressions, validators
from authz.features.permissions.expressions import And, Leaf, Or
from authz.features.permissions.validators import (
    allowed_scopes,
    filtered_groups,
    is_allowed_in_scope,
    is_hidden_in_scope,
    is_organization_aware,
    permissions_for_scope,
    unmet_dependencies,
    validate_permissions_for_scope,
)


class TestIsAllowedInScope:
    def test_wildcard_allowed_everywhere(self):
        for scope in (None, catalog.GLOBAL, catalog.COMPANY):
            assert is_allowed_in_scope("*", scope)

    def test_none_means_global(self):
        assert is_allowed_in_scope("posts:create")
        assert is_allowed_in_scope("posts:create", catalog.GLOBAL)
        assert not is_allowed_in_scope("posts:create", catalog.COMPANY)

    def test_company_only_key(self):
        assert is_allowed_in_scope("projects:create", catalog.COMPANY)
        assert not is_allowed_in_scope("projects:create")

    def test_group_wildcard_accepted_when_group_exists(self):
        # Members are checked at evaluation time
        assert is_allowed_in_scope("posts:*", catalog.COMPANY)
        assert not is_allowed_in_scope("nope:*")

    def test_unknown_key(self):
        assert not is_allowed_in_scope("nope:nothing")

    def test_permissions_for_scope(self):
        company = permissions_for_scope(catalog.COMPANY)
        assert "users-roles:assign-own-organization" in company
        assert "users-roles:assign-global" not in company
        assert set(permissions_for_scope()) == set(permissions_for_scope(catalog.GLOBAL))

    def test_entry_without_scopes_is_a_configuration_error(self, monkeypatch):
        broken = catalog.PermissionDefinition(key="posts:archive", description="Archive posts", scopes=())
        monkeypatch.setitem(catalog.PERMISSIONS_BY_KEY, broken.key, broken)
        monkeypatch.setattr(validators, "PERMISSION_KEYS", catalog.PERMISSION_KEYS + [broken.key])

        with pytest.raises(InternalError):
            is_allowed_in_scope("posts:archive")
        with pytest.raises(InternalError):
            permissions_for_scope(catalog.GLOBAL)
        with pytest.raises(InternalError):
            allowed_scopes("posts:archive")


class TestValidatePermissionsForScope:
    def test_valid_keys(self):
        validate_permissions_for_scope(["posts:show", "users-basic:*"])
        validate_permissions_for_scope(["projects:create"], catalog.COMPANY)
        validate_permissions_for_scope(["*"], catalog.COMPANY)

    def test_invalid_keys_are_named(self):
        with pytest.raises(BadRequestError) as exc_info:
            validate_permissions_for_scope(["projects:create", "posts:show", "nope:nothing"], catalog.COMPANY)
        assert "posts:show" in exc_info.value.message
        assert "nope:nothing" in exc_info.value.message
        assert "projects:create" not in exc_info.value.message

    def test_wildcard_must_stand_alone(self):
        with pytest.raises(BadRequestError):
            validate_permissions_for_scope(["*", "posts:show"])


class TestScopeHelpers:
    def test_allowed_scopes(self):
        assert allowed_scopes("posts:show") == [catalog.GLOBAL]
        assert set(allowed_scopes("users-basic:show")) == {catalog.GLOBAL, catalog.COMPANY}
        assert set(allowed_scopes("projects:*")) == {catalog.GLOBAL, catalog.COMPANY}
        assert set(allowed_scopes("*")) == set(catalog.ALL_SCOPES)

    def test_allowed_scopes_unknown_key(self):
        with pytest.raises(NotFoundError):
            allowed_scopes("nope:nothing")

    def test_is_organization_aware(self):
        assert is_organization_aware("users-basic:show")
        assert not is_organization_aware("posts:show")
        assert is_organization_aware("projects:*")
        assert not is_organization_aware("posts:*")

    def test_hidden(self):
        assert is_hidden_in_scope("users-admin:ban", catalog.GLOBAL)
        assert not is_hidden_in_scope("users-admin:destroy", catalog.GLOBAL)
        assert is_hidden_in_scope("file-library-assets:*", catalog.COMPANY)
        assert not is_hidden_in_scope("*", catalog.GLOBAL)

    def test_filtered_groups(self):
        groups = {group["key"]: group for group in filtered_groups(catalog.COMPANY)}
        assert "posts" not in groups
        assert [p["key"] for p in groups["companies"]["permissions"]] == ["companies:update"]

        visible = {group["key"]: group for group in filtered_groups(catalog.GLOBAL, include_hidden=False)}
        admin_keys = [p["key"] for p in visible["users-admin"]["permissions"]]
        assert admin_keys == ["users-admin:destroy"]
        assert "file-library-assets" not in visible


class TestExpressions:
    def test_parse_shapes(self):
        assert expressions.parse(None) is None
        assert expressions.parse("a:show") == Leaf("a:show")
        assert expressions.parse(["a:show", "b:list"]) == And((Leaf("a:show"), Leaf("b:list")))
        assert expressions.parse({"or": ["a:show", {"and": ["b:list", "c:list"]}]}) == Or((
            Leaf("a:show"),
            And((Leaf("b:list"), Leaf("c:list"))),
        ))

    def test_parse_per_scope(self):
        raw = {"global": "a:show", "company": "b:show"}
        assert expressions.parse(raw, "company") == Leaf("b:show")
        assert expressions.parse(raw, None) == And((Leaf("a:show"), Leaf("b:show")))

    def test_parse_rejects_unknown_shape(self):
        with pytest.raises(ValueError):
            expressions.parse({"xor": ["a:show"]})
        with pytest.raises(ValueError):
            expressions.parse(42)

    def test_evaluate_against_is_wildcard_aware(self):
        expression = expressions.parse({"or": ["a:show", {"and": ["b:list", "c:list"]}]})
        assert expressions.evaluate_against(expression, ["a:*"])
        assert expressions.evaluate_against(expression, ["b:list", "c:list"])
        assert not expressions.evaluate_against(expression, ["b:list"])
        assert expressions.evaluate_against(None, [])

    def test_leaves(self):
        expression = expressions.parse({"or": ["a:show", {"and": ["b:list", "c:list"]}]})
        assert expressions.leaves(expression) == ["a:show", "b:list", "c:list"]


class TestUnmetDependencies:
    def test_satisfied(self):
        assert unmet_dependencies("users-basic:update-profile", ["users-basic:show"]) == []
        assert unmet_dependencies("users-basic:update-profile", ["users-basic:*"]) == []

    def test_missing(self):
        missing = unmet_dependencies("users-roles:assign-global", ["users-basic:show"])
        assert missing == ["role-view:show-globals"]

    def test_no_dependencies(self):
        assert unmet_dependencies("posts:show", []) == []
        assert unmet_dependencies("nope:nothing", []) == []
