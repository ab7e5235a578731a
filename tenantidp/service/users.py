from __future__ import annotations

import re
from typing import Optional, Tuple

from tenantidp.logging import get_logger
from tenantidp.storage.errors import UnknownTenantError
from tenantidp.storage.models import User, UserClaims
from tenantidp.storage.tenants import TenantRouter

logger = get_logger(__name__)

_HANDLE_DISALLOWED = re.compile(r"[^a-z0-9._-]")


def preferred_username_for(user: User, tenant_id: str) -> str:
    """``<clean handle>_<tenant>``, lowercase, restricted to ``[a-z0-9._-]``."""
    base = user.handle or user.email.split("@", 1)[0] or f"user-{user.id}"
    clean = _HANDLE_DISALLOWED.sub("", base.lower()) or f"user-{user.id}"
    return f"{clean}_{tenant_id.lower()}"


def display_name_for(user: User) -> str:
    full_name = " ".join(part for part in (user.first_name, user.last_name) if part)
    return full_name or user.email.split("@", 1)[0] or (user.handle or user.id)


class UserDirectory:
    """Resolves users inside one tenant's store and maps them to OIDC claims."""

    def __init__(self, router: TenantRouter) -> None:
        self.router = router

    def find_by_id(self, tenant_id: str, user_id: str) -> Optional[UserClaims]:
        try:
            user = self.router.store_for(tenant_id).get_user(user_id)
        except UnknownTenantError:
            return None
        if user is None or not user.is_active or user.tenant_id != tenant_id:
            return None
        return self.claims_for(user, tenant_id)

    @staticmethod
    def claims_for(user: User, tenant_id: str) -> UserClaims:
        return UserClaims(
            sub=user.id,
            tenant_id=tenant_id,
            email=user.email,
            name=display_name_for(user),
            preferred_username=preferred_username_for(user, tenant_id),
        )

    def find_by_email_across_tenants(self, email: str) -> Optional[Tuple[User, str]]:
        """First tenant, in configuration order, holding an active user with ``email``."""
        for tenant_id in self.router.tenant_ids():
            user = self.router.store_for(tenant_id).get_user_by_email(email)
            if user and user.is_active:
                logger.info("login_tenant_discovered", tenant_id=tenant_id)
                return user, tenant_id
        logger.info("login_tenant_not_found")
        return None
