from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from tenantidp.logging import get_logger
from tenantidp.storage.errors import UnknownTenantError
from tenantidp.storage.models import LoginSession
from tenantidp.storage.tenants import TenantRouter

logger = get_logger(__name__)

# token_urlsafe(32) yields 43 characters; anything far outside that is not ours
_MAX_SESSION_ID_LENGTH = 128


class SessionStore:
    """Tenant-scoped login sessions.

    Sessions live in Redis when a cache is configured, keyed by tenant and a
    digest of the session id, and otherwise in the tenant's own MemoryStore.
    Lookups are exact keyed fetches; there is no fallback to another tenant
    or to any other session.
    """

    def __init__(self, router: TenantRouter, cache=None, *, ttl_minutes: int = 60 * 24) -> None:
        self.router = router
        self.cache = cache
        self.ttl_minutes = ttl_minutes

    async def create(self, tenant_id: str, user_id: str) -> LoginSession:
        store = self.router.store_for(tenant_id)
        if store.get_user(user_id) is None:
            raise ValueError("cannot open a session for an unknown user")
        session = LoginSession.new(tenant_id, user_id, ttl_minutes=self.ttl_minutes)
        if self.cache:
            await self.cache.set_session(
                tenant_id, session.id, session.to_record(), self.ttl_minutes * 60
            )
        else:
            store.purge_expired_sessions()
            store.save_session(session)
        logger.info("session_created", tenant_id=tenant_id, user_id=user_id)
        return session

    async def get(self, tenant_id: Optional[str], session_id: Optional[str]) -> Optional[LoginSession]:
        if not tenant_id or not session_id or len(session_id) > _MAX_SESSION_ID_LENGTH:
            return None
        if self.cache:
            record = await self.cache.get_session(tenant_id, session_id)
            session = LoginSession.from_record(session_id, record) if record else None
        else:
            try:
                store = self.router.store_for(tenant_id)
            except UnknownTenantError:
                return None
            session = store.get_session(session_id)
        if session is None:
            return None
        if session.tenant_id != tenant_id:
            logger.warning("session_tenant_mismatch", tenant_id=tenant_id)
            return None
        if session.is_expired(datetime.now(timezone.utc)):
            await self.revoke(tenant_id, session_id)
            return None
        return session

    async def revoke(self, tenant_id: str, session_id: str) -> None:
        if self.cache:
            await self.cache.revoke_session(tenant_id, session_id)
            return
        try:
            self.router.store_for(tenant_id).revoke_session(session_id)
        except UnknownTenantError:
            return
