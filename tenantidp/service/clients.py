from __future__ import annotations

from typing import Dict, Iterable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tenantidp.config import TenantConfig
from tenantidp.logging import get_logger
from tenantidp.service.errors import ClientAuthError, UnknownClientError
from tenantidp.storage.models import OAuthClient

logger = get_logger(__name__)

MISSING_SECRET_MESSAGE = "client_secret required for this client"
BAD_SECRET_MESSAGE = "Invalid client credentials"


class ClientRegistry:
    """Immutable per-tenant catalog of registered OAuth2 clients."""

    def __init__(
        self,
        clients: Iterable[OAuthClient],
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._clients: Dict[Tuple[str, str], OAuthClient] = {
            (client.tenant_id, client.client_id): client for client in clients
        }

    @classmethod
    def from_tenants(
        cls, tenants: Iterable[TenantConfig], *, hasher: Optional[PasswordHasher] = None
    ) -> "ClientRegistry":
        hasher = hasher or PasswordHasher(type=Type.ID)
        clients = []
        for tenant in tenants:
            for entry in tenant.clients:
                secret_hash = entry.secret_hash
                if entry.client_secret:
                    secret_hash = hasher.hash(entry.client_secret)
                clients.append(
                    OAuthClient(
                        client_id=entry.client_id,
                        tenant_id=tenant.tenant_id,
                        redirect_uris=frozenset(entry.redirect_uris),
                        confidential=entry.confidential,
                        secret_hash=secret_hash,
                        name=entry.name,
                    )
                )
        logger.info("client_registry_loaded", clients=len(clients))
        return cls(clients, hasher=hasher)

    def lookup(self, tenant_id: str, client_id: Optional[str]) -> OAuthClient:
        client = self._clients.get((tenant_id, client_id or ""))
        if client is None:
            logger.warning("oidc_unknown_client", tenant_id=tenant_id, client_id=client_id)
            raise UnknownClientError("Unknown client")
        return client

    @staticmethod
    def validate_redirect_uri(client: OAuthClient, uri: Optional[str]) -> bool:
        """Exact string match against the client's allowlist; no prefix or wildcard rules."""
        if not uri:
            return False
        return uri in client.redirect_uris

    def authenticate(self, client: OAuthClient, client_secret: Optional[str]) -> None:
        """Check the presented secret for confidential clients; public clients pass."""
        if not client.confidential:
            return
        if not client_secret:
            logger.warning(
                "oidc_client_auth_failed",
                tenant_id=client.tenant_id,
                client_id=client.client_id,
                reason="missing_secret",
            )
            raise ClientAuthError(MISSING_SECRET_MESSAGE)
        if not client.secret_hash or not self._verify_secret(client.secret_hash, client_secret):
            logger.warning(
                "oidc_client_auth_failed",
                tenant_id=client.tenant_id,
                client_id=client.client_id,
                reason="bad_secret",
            )
            raise ClientAuthError(BAD_SECRET_MESSAGE)

    def _verify_secret(self, secret_hash: str, client_secret: str) -> bool:
        try:
            return self._hasher.verify(secret_hash, client_secret)
        except (InvalidHash, VerificationError):
            return False
