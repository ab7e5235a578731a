from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from tenantidp.config import TenantConfig
from tenantidp.logging import get_logger
from tenantidp.storage.errors import UnknownTenantError
from tenantidp.storage.memory import MemoryStore

logger = get_logger(__name__)


class TenantRouter:
    """Maps a tenant id to its isolated data store and tenant settings."""

    def __init__(self, tenants: Iterable[TenantConfig]) -> None:
        self._configs: Dict[str, TenantConfig] = {}
        self._stores: Dict[str, MemoryStore] = {}
        for tenant in tenants:
            self._configs[tenant.tenant_id] = tenant
            self._stores[tenant.tenant_id] = MemoryStore(tenant.tenant_id)
        logger.info("tenant_router_ready", tenants=sorted(self._configs))

    def has_tenant(self, tenant_id: Optional[str]) -> bool:
        return bool(tenant_id) and tenant_id in self._configs

    def tenant_ids(self) -> List[str]:
        return list(self._configs)

    def config_for(self, tenant_id: str) -> TenantConfig:
        try:
            return self._configs[tenant_id]
        except KeyError:
            raise UnknownTenantError(tenant_id) from None

    def store_for(self, tenant_id: str) -> MemoryStore:
        try:
            return self._stores[tenant_id]
        except KeyError:
            raise UnknownTenantError(tenant_id) from None
