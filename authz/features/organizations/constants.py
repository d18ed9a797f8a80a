"""
Organization kinds known to the engine.

Each kind is served by one adapter registered at startup; the value doubles as
the permission scope name for that kind.
"""
import enum


class OrganizationKind(str, enum.Enum):
    COMPANY = "company"


ORGANIZATION_KINDS = tuple(kind.value for kind in OrganizationKind)
