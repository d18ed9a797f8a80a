"""
Dependency expressions declared on catalog entries.

``depends_on`` values are parsed into a small expression tree and evaluated
against a set of granted keys (wildcard-aware). Accepted shapes:

    "a:show"                          -> Leaf
    ["a:show", "b:list"]              -> And
    {"and": [...]} / {"or": [...]}    -> And / Or (nestable)
    {"global": expr, "company": expr} -> per-scope expression
"""
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from authz.features.permissions.catalog import ALL_SCOPES
from authz.features.permissions.wildcards import matches_any


@dataclass(frozen=True)
class Leaf:
    key: str


@dataclass(frozen=True)
class And:
    items: Tuple["Expression", ...]


@dataclass(frozen=True)
class Or:
    items: Tuple["Expression", ...]


Expression = Union[Leaf, And, Or]


def parse(raw: Any, scope: Optional[str] = None) -> Optional[Expression]:
    """Parse a raw ``depends_on`` value. Returns None when there is nothing to check."""
    if raw is None:
        return None
    if isinstance(raw, str):
        return Leaf(raw)
    if isinstance(raw, (list, tuple)):
        return And(tuple(_parse_required(item, scope) for item in raw))
    if isinstance(raw, dict):
        if "and" in raw:
            return And(tuple(_parse_required(item, scope) for item in raw["and"]))
        if "or" in raw:
            return Or(tuple(_parse_required(item, scope) for item in raw["or"]))
        if set(raw).issubset(ALL_SCOPES):
            if scope is None:
                # Without a scope every per-scope branch must hold
                branches = [parse(value, s) for s, value in raw.items()]
                return And(tuple(b for b in branches if b is not None))
            return parse(raw.get(scope), scope)
    raise ValueError(f"Unsupported dependency expression: {raw!r}")


def _parse_required(raw: Any, scope: Optional[str]) -> Expression:
    parsed = parse(raw, scope)
    if parsed is None:
        raise ValueError("Empty dependency expression")
    return parsed


def evaluate(expression: Optional[Expression], is_granted: Callable[[str], bool]) -> bool:
    if expression is None:
        return True
    if isinstance(expression, Leaf):
        return is_granted(expression.key)
    if isinstance(expression, And):
        return all(evaluate(item, is_granted) for item in expression.items)
    if isinstance(expression, Or):
        return any(evaluate(item, is_granted) for item in expression.items)
    raise TypeError(f"Unknown expression node: {expression!r}")


def evaluate_against(expression: Optional[Expression], granted: Iterable[str]) -> bool:
    granted = list(granted)
    return evaluate(expression, lambda key: matches_any(key, granted))


def leaves(expression: Optional[Expression]) -> List[str]:
    if expression is None:
        return []
    if isinstance(expression, Leaf):
        return [expression.key]
    keys: List[str] = []
    for item in expression.items:
        keys.extend(leaves(item))
    return keys
