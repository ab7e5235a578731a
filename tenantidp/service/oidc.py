from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from tenantidp.config import Settings
from tenantidp.logging import get_logger
from tenantidp.service.auth import AuthService
from tenantidp.service.clients import ClientRegistry
from tenantidp.service.codes import INVALID_CODE_MESSAGE, AuthCodeCodec
from tenantidp.service.errors import (
    CodeReplayError,
    InvalidCodeError,
    InvalidSessionError,
    InvalidTokenError,
    MalformedRequestError,
    UnknownClientError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from tenantidp.service.keys import SigningKey
from tenantidp.service.replay import ReplayGuard
from tenantidp.service.sessions import SessionStore
from tenantidp.service.tokens import TokenService, extract_bearer
from tenantidp.service.users import UserDirectory
from tenantidp.storage.tenants import TenantRouter

logger = get_logger(__name__)

SCOPES_SUPPORTED = ["openid", "profile", "email"]
USERINFO_CLAIMS = ("sub", "tenant_id", "email", "name", "preferred_username")
REDIRECT_MISMATCH_MESSAGE = "redirect_uri does not match authorization request"


def append_query(url: str, params: Dict[str, str]) -> str:
    """Add ``params`` to ``url`` while keeping any query the URL already has."""
    parts = urlsplit(url)
    extra = urlencode(params)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


@dataclass(frozen=True)
class AuthorizeOutcome:
    """Where /authorize sends the browser: back to the client, or to the login page."""

    location: str
    login_required: bool = False


class OIDCProvider:
    """Authorization, token, userinfo, and discovery operations."""

    def __init__(
        self,
        settings: Settings,
        *,
        router: TenantRouter,
        clients: ClientRegistry,
        sessions: SessionStore,
        auth: AuthService,
        codes: AuthCodeCodec,
        replay: ReplayGuard,
        tokens: TokenService,
        users: UserDirectory,
        signing_key: SigningKey,
    ) -> None:
        self.settings = settings
        self.router = router
        self.clients = clients
        self.sessions = sessions
        self.auth = auth
        self.codes = codes
        self.replay = replay
        self.tokens = tokens
        self.users = users
        self.signing_key = signing_key

    @property
    def issuer(self) -> str:
        return self.settings.issuer

    def endpoint(self, path: str) -> str:
        return f"{self.issuer}{path}"

    def discovery_document(self) -> Dict[str, Any]:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": self.endpoint("/authorize"),
            "token_endpoint": self.endpoint("/token"),
            "userinfo_endpoint": self.endpoint("/userinfo"),
            "jwks_uri": self.endpoint("/jwks"),
            "scopes_supported": list(SCOPES_SUPPORTED),
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": ["authorization_code"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [self.signing_key.algorithm],
            "token_endpoint_auth_methods_supported": [
                "none",
                "client_secret_post",
                "client_secret_basic",
            ],
            "claims_supported": ["iss", "aud", "exp", "iat", "nonce", *USERINFO_CLAIMS],
        }

    def jwks(self) -> Dict[str, Any]:
        return self.signing_key.jwks()

    def login_url(
        self,
        *,
        tenant_id: str,
        client_id: str,
        redirect_uri: str,
        scope: str,
        state: Optional[str],
        nonce: Optional[str],
    ) -> str:
        params = {
            "tenant_id": tenant_id,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scope,
        }
        if state:
            params["state"] = state
        if nonce:
            params["nonce"] = nonce
        return append_query(self.endpoint("/login"), params)

    async def authorize(
        self,
        *,
        tenant_id: Optional[str],
        client_id: Optional[str],
        redirect_uri: Optional[str],
        response_type: Optional[str],
        scope: Optional[str] = None,
        state: Optional[str] = None,
        nonce: Optional[str] = None,
        session_id: Optional[str] = None,
        bootstrap_token: Optional[str] = None,
    ) -> AuthorizeOutcome:
        if not client_id or not redirect_uri:
            raise MalformedRequestError("client_id and redirect_uri are required")
        if response_type != "code":
            raise UnsupportedResponseTypeError("Unsupported response_type; only 'code' is allowed")
        if not tenant_id:
            raise MalformedRequestError("tenant_id is required")
        if not self.router.has_tenant(tenant_id):
            raise MalformedRequestError("Unknown tenant")

        # Client and redirect binding are settled before any session is looked at
        client = self.clients.lookup(tenant_id, client_id)
        if not self.clients.validate_redirect_uri(client, redirect_uri):
            logger.warning(
                "oidc_redirect_uri_rejected", tenant_id=tenant_id, client_id=client_id
            )
            raise UnknownClientError("redirect_uri is not registered for this client")

        scope = scope or self.settings.default_scope
        # An explicit empty state or nonce is treated as absent
        state = state or None
        nonce = nonce or None

        if bootstrap_token:
            session = await self.auth.consume_bootstrap_token(tenant_id, bootstrap_token)
            if session is None:
                raise InvalidSessionError("Invalid or expired bootstrap token")
        else:
            session = await self.sessions.get(tenant_id, session_id)
            if session is None:
                logger.info(
                    "oidc_login_required",
                    tenant_id=tenant_id,
                    client_id=client_id,
                    had_session=bool(session_id),
                )
                return AuthorizeOutcome(
                    location=self.login_url(
                        tenant_id=tenant_id,
                        client_id=client_id,
                        redirect_uri=redirect_uri,
                        scope=scope,
                        state=state,
                        nonce=nonce,
                    ),
                    login_required=True,
                )

        code = self.codes.issue(
            tenant_id=tenant_id,
            user_id=session.user_id,
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            nonce=nonce,
        )
        params = {"code": code}
        if state is not None:
            params["state"] = state
        logger.info(
            "oidc_code_issued",
            tenant_id=tenant_id,
            client_id=client_id,
            user_id=session.user_id,
        )
        return AuthorizeOutcome(location=append_query(redirect_uri, params))

    async def exchange_code(
        self,
        *,
        grant_type: Optional[str],
        code: Optional[str],
        redirect_uri: Optional[str],
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Redeem an authorization code for access and id tokens.

        Every check runs before the code is consumed; the ReplayGuard insert
        is the final step ahead of token issuance, so a rejected request never
        burns a code.
        """
        if grant_type != "authorization_code":
            raise UnsupportedGrantTypeError("Unsupported grant_type")
        if not code or not redirect_uri:
            raise MalformedRequestError("code and redirect_uri are required")

        auth_code = self.codes.verify(code)
        if client_id and client_id != auth_code.client_id:
            logger.warning(
                "oidc_code_client_mismatch",
                tenant_id=auth_code.tenant_id,
                client_id=client_id,
            )
            raise UnknownClientError("client_id does not match authorization code")
        if await self.replay.is_consumed(auth_code.tenant_id, auth_code.code_id):
            logger.warning(
                "oidc_code_replay",
                tenant_id=auth_code.tenant_id,
                client_id=auth_code.client_id,
            )
            raise CodeReplayError()
        if redirect_uri != auth_code.redirect_uri:
            logger.warning(
                "oidc_redirect_uri_mismatch",
                tenant_id=auth_code.tenant_id,
                client_id=auth_code.client_id,
            )
            raise InvalidCodeError(REDIRECT_MISMATCH_MESSAGE)

        client = self.clients.lookup(auth_code.tenant_id, auth_code.client_id)
        self.clients.authenticate(client, client_secret)

        claims = self.users.find_by_id(auth_code.tenant_id, auth_code.user_id)
        if claims is None:
            logger.warning("oidc_code_subject_missing", tenant_id=auth_code.tenant_id)
            raise InvalidCodeError(INVALID_CODE_MESSAGE)

        if not await self.replay.consume(
            auth_code.tenant_id, auth_code.code_id, client_id=auth_code.client_id
        ):
            raise CodeReplayError()

        tokens = self.tokens.issue(
            claims,
            client_id=auth_code.client_id,
            scope=auth_code.scope,
            nonce=auth_code.nonce,
        )
        logger.info(
            "oidc_tokens_issued",
            tenant_id=auth_code.tenant_id,
            client_id=auth_code.client_id,
            user_id=auth_code.user_id,
        )
        return tokens

    def userinfo(self, authorization: Optional[str]) -> Dict[str, Any]:
        """Claims read only from the presented access token; never from ambient state."""
        payload = self.tokens.verify_access_token(extract_bearer(authorization))
        claims: Dict[str, Any] = {}
        for name in USERINFO_CLAIMS:
            value = payload.get(name)
            if not isinstance(value, str):
                raise InvalidTokenError("Invalid or expired access token")
            claims[name] = value
        return claims
