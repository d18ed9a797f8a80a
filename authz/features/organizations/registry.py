"""
Organization adapter registry.

Maps organization kinds to adapter instances. One registry is built at startup
and handed to every component that needs it.
"""
from typing import Dict, List, Optional

from authz.core.cache import MemoryCache
from authz.errors import BadRequestError, InternalError
from authz.features.organizations.base_adapter import BaseOrganizationAdapter
from authz.utils import get_logger


log = get_logger(__name__)


class OrganizationAdapterRegistry:
    def __init__(self):
        self._adapters: Dict[str, BaseOrganizationAdapter] = {}
        self._default: Optional[BaseOrganizationAdapter] = None
        self.initialized = False

    def register(self, adapter: BaseOrganizationAdapter, is_default: bool = False) -> None:
        self._adapters[adapter.kind] = adapter
        if is_default:
            self._default = adapter
        log.info(f"Registered organization adapter {adapter!r}{' (default)' if is_default else ''}")

    def get(self, kind) -> Optional[BaseOrganizationAdapter]:
        return self._adapters.get(getattr(kind, "value", kind))

    def require(self, kind) -> BaseOrganizationAdapter:
        """Adapter for ``kind`` or BadRequestError when the kind is unknown."""
        adapter = self.get(kind)
        if adapter is None:
            raise BadRequestError(f"Unsupported organization kind: {getattr(kind, 'value', kind)}")
        return adapter

    def require_registered(self, kind) -> BaseOrganizationAdapter:
        """Adapter for a kind the engine already stored; a miss is a wiring error."""
        adapter = self.get(kind)
        if adapter is None:
            raise InternalError(f"No organization adapter registered for kind: {getattr(kind, 'value', kind)}")
        return adapter

    def get_default(self) -> BaseOrganizationAdapter:
        if self._default is None:
            raise InternalError("No default organization adapter registered")
        return self._default

    def get_all(self) -> List[BaseOrganizationAdapter]:
        return list(self._adapters.values())

    def has(self, kind) -> bool:
        return getattr(kind, "value", kind) in self._adapters

    def kinds(self) -> List[str]:
        return list(self._adapters)


def initialize_organization_adapters(registry: OrganizationAdapterRegistry, cache: MemoryCache) -> None:
    """Register every adapter shipped with the engine. Safe to call more than once."""
    if registry.initialized:
        return

    # Imported here so the registry module stays free of concrete adapters
    from authz.features.organizations.adapters.company import CompanyAdapter

    registry.register(CompanyAdapter(cache), is_default=True)
    registry.initialized = True
