"""
Wildcard matching, canonicalization and expansion of permission keys.

``matches_wildcard`` is the innermost loop of every authorization check, so it
does no allocation beyond the prefix slice.
"""
from typing import Dict, Iterable, List, Optional, Set, Tuple

from authz.features.permissions.catalog import PERMISSION_KEYS, WILDCARD
from authz.utils import get_logger


log = get_logger(__name__)


def matches_wildcard(permission: str, granted: str) -> bool:
    """
    Return True when the ``granted`` token covers ``permission``.

    ``*`` covers everything, ``group:*`` covers every key starting with
    ``group:`` (the colon is kept so ``users:*`` does not cover ``users-other:x``),
    anything else must match exactly.
    """
    if granted == WILDCARD:
        return True
    if granted == permission:
        return True
    if len(granted) > 2 and granted.endswith(":*"):
        return permission.startswith(granted[:-1])
    return False


def matches_any(permission: str, granted: Iterable[str]) -> bool:
    return any(matches_wildcard(permission, grant) for grant in granted)


def optimize_permission_set(permissions: Iterable[str]) -> Set[str]:
    """
    Canonicalize a permission set.

    - ``*`` present: only ``*`` remains
    - ``g:*`` present: every other ``g:``-prefixed key is dropped
    """
    permissions = set(permissions)
    if WILDCARD in permissions:
        return {WILDCARD}

    prefixes = [p[:-1] for p in permissions if len(p) > 2 and p.endswith(":*")]
    if not prefixes:
        return permissions

    return {
        p for p in permissions
        if not any(p != prefix + "*" and p.startswith(prefix) for prefix in prefixes)
    }


class WildcardExpander:
    """
    Memoized expansion of wildcard tokens into concrete catalog keys.

    Entries are keyed by ``(token, scope)`` where scope ``None`` means the whole
    catalog. The memo is derived from static data, so it lives for the process
    and is only cleared by an explicit admin action.
    """

    def __init__(self):
        self._memo: Dict[Tuple[str, Optional[str]], List[str]] = {}

    def __len__(self) -> int:
        return len(self._memo)

    def expand_one(self, token: str, scope: Optional[str] = None) -> List[str]:
        memo_key = (token, scope)
        cached = self._memo.get(memo_key)
        if cached is not None:
            return cached

        # Imported here: validators depend on this module for matching
        from authz.features.permissions.validators import permissions_for_scope

        candidates = PERMISSION_KEYS if scope is None else permissions_for_scope(scope)
        matches = [key for key in candidates if matches_wildcard(key, token)]
        self._memo[memo_key] = matches
        return matches

    def expand(self, tokens: Iterable[str], scope: Optional[str] = None) -> List[str]:
        """Deduplicated union of the concrete keys each token expands to."""
        expanded: Dict[str, None] = {}
        for token in tokens:
            for key in self.expand_one(token, scope):
                expanded[key] = None
        return list(expanded)

    def clear(self) -> int:
        size = len(self._memo)
        self._memo.clear()
        if size:
            log.info("Wildcard expansion cache cleared (%d entries)", size)
        return size
