"""
Scope validation for permission keys.

Answers setup-time questions about the catalog: may this key be used in this
scope, which keys belong to a scope, is a key hidden in the UI. Runtime grant
decisions live in ``checks``.
"""
from typing import Any, Dict, Iterable, List, Optional

from authz.errors import BadRequestError, InternalError, NotFoundError
from authz.features.permissions import expressions
from authz.features.permissions.catalog import (
    ALL_SCOPES,
    GLOBAL,
    PERMISSION_GROUPS,
    PERMISSION_KEYS,
    WILDCARD,
    PermissionDefinition,
    get_group,
    get_permission,
    is_group_wildcard,
)
from authz.features.permissions.wildcards import matches_any


def _scope_name(scope: Optional[str]) -> str:
    """``None`` stands for the global scope."""
    if scope is None:
        return GLOBAL
    return getattr(scope, "value", scope)


def _require_definition(key: str) -> PermissionDefinition:
    definition = get_permission(key)
    if definition is None:
        raise NotFoundError(f"Unknown permission: {key}")
    if not definition.scopes:
        raise InternalError(f"Permission {key} has no scopes defined")
    return definition


def is_allowed_in_scope(key: str, scope: Optional[str] = None) -> bool:
    """
    Return True if ``key`` may be used in ``scope``.

    ``*`` is valid everywhere. A group wildcard is accepted when its group
    exists; its members are checked at evaluation time. A catalog entry without
    scopes is a programming error and raises.
    """
    if key == WILDCARD:
        return True
    if is_group_wildcard(key):
        return get_group(key[:-2]) is not None

    definition = get_permission(key)
    if definition is None:
        return False
    if not definition.scopes:
        raise InternalError(f"Permission {key} has no scopes defined")
    return _scope_name(scope) in definition.scopes


def permissions_for_scope(scope: Optional[str] = None) -> List[str]:
    return [key for key in PERMISSION_KEYS if is_allowed_in_scope(key, scope)]


def filtered_groups(scope: Optional[str] = None, include_hidden: bool = True) -> List[Dict[str, Any]]:
    """Catalog groups restricted to the keys usable in ``scope``, for UI listings."""
    result = []
    for group in PERMISSION_GROUPS:
        permissions = [
            p.to_dict() for p in group.permissions
            if is_allowed_in_scope(p.key, scope)
            and (include_hidden or not is_hidden_in_scope(p.key, _scope_name(scope)))
        ]
        if permissions:
            result.append({
                "key": group.key,
                "description": group.description,
                "permissions": permissions,
            })
    return result


def allowed_scopes(key: str) -> List[str]:
    if key == WILDCARD:
        return list(ALL_SCOPES)
    if is_group_wildcard(key):
        group = get_group(key[:-2])
        if group is None:
            raise NotFoundError(f"Unknown permission group: {key[:-2]}")
        scopes: Dict[str, None] = {}
        for permission in group.permissions:
            for scope in allowed_scopes(permission.key):
                scopes[scope] = None
        return list(scopes)
    return list(_require_definition(key).scopes)


def is_organization_aware(key: str) -> bool:
    """True when ``key`` can be used in at least one organization scope."""
    if key == WILDCARD:
        return True
    if is_group_wildcard(key):
        group = get_group(key[:-2])
        if group is None:
            raise NotFoundError(f"Unknown permission group: {key[:-2]}")
        return any(is_organization_aware(p.key) for p in group.permissions)
    return any(scope != GLOBAL for scope in _require_definition(key).scopes)


def validate_permissions_for_scope(keys: Iterable[str], scope: Optional[str] = None) -> None:
    """
    Raise BadRequestError unless every key is usable in ``scope``.

    ``*`` must stand alone.
    """
    keys = list(keys)
    if WILDCARD in keys:
        if len(keys) > 1:
            raise BadRequestError("The wildcard permission (*) must be granted on its own")
        return

    invalid = [key for key in keys if not is_allowed_in_scope(key, scope)]
    if invalid:
        raise BadRequestError(
            f"These permissions cannot be used in {_scope_name(scope)} scope: {', '.join(invalid)}"
        )


def is_hidden_in_scope(key: str, scope: str) -> bool:
    if key == WILDCARD:
        return False
    if is_group_wildcard(key):
        group = get_group(key[:-2])
        if group is None:
            return False
        return all(is_hidden_in_scope(p.key, scope) for p in group.permissions)

    definition = get_permission(key)
    if definition is None or not definition.hidden_on:
        return False
    if isinstance(definition.hidden_on, bool):
        return definition.hidden_on
    return scope in definition.hidden_on


def unmet_dependencies(key: str, granted: Iterable[str], scope: Optional[str] = None) -> List[str]:
    """
    Leaf keys of ``key``'s dependency expression that ``granted`` does not cover.

    Empty when the expression is satisfied. Dependencies are advisory: callers
    use this for UI hints and warnings, not to reject grants.
    """
    definition = get_permission(key)
    if definition is None or definition.depends_on is None:
        return []
    granted = list(granted)
    expression = expressions.parse(definition.depends_on, _scope_name(scope))
    if expressions.evaluate_against(expression, granted):
        return []
    return [leaf for leaf in expressions.leaves(expression) if not matches_any(leaf, granted)]
