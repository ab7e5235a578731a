from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from tenantidp.logging import get_logger
from tenantidp.service.errors import ExpiredCodeError, InvalidCodeError
from tenantidp.service.tokens import JWTCodec

logger = get_logger(__name__)

AUTH_CODE_TOKEN_TYPE = "auth_code"
AUTH_CODE_LIFETIME_SECONDS = 60
INVALID_CODE_MESSAGE = "Invalid or expired authorization code"

_REQUIRED_STRING_CLAIMS = ("jti", "tenant_id", "sub", "client_id", "redirect_uri", "scope")


@dataclass(frozen=True)
class AuthorizationCode:
    """Decoded authorization code; its whole state travels inside the signed code."""

    code_id: str
    tenant_id: str
    user_id: str
    client_id: str
    redirect_uri: str
    scope: str
    issued_at: int
    expires_at: int
    state: Optional[str] = None
    nonce: Optional[str] = None


class AuthCodeCodec:
    """Signs and verifies self-contained, short-lived authorization codes.

    A code is an RS256 JWT with ``token_type=auth_code``. Validity needs no
    server-side table; single use is enforced separately by the ReplayGuard
    keyed on the code's ``jti``.
    """

    def __init__(self, codec: JWTCodec, *, lifetime_seconds: int = AUTH_CODE_LIFETIME_SECONDS) -> None:
        self.codec = codec
        self.lifetime_seconds = lifetime_seconds

    def issue(
        self,
        *,
        tenant_id: str,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        scope: str,
        state: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> str:
        now = self.codec.now()
        payload = {
            "iss": self.codec.issuer,
            "jti": secrets.token_urlsafe(16),
            "tenant_id": tenant_id,
            "sub": user_id,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "iat": now,
            "exp": now + self.lifetime_seconds,
            "token_type": AUTH_CODE_TOKEN_TYPE,
        }
        # Optional values are omitted rather than stored as empty strings
        if state is not None:
            payload["state"] = state
        if nonce is not None:
            payload["nonce"] = nonce
        return self.codec.encode(payload)

    def verify(self, code: Optional[str]) -> AuthorizationCode:
        """Decode ``code`` or raise InvalidCodeError / ExpiredCodeError."""
        if not code:
            raise InvalidCodeError(INVALID_CODE_MESSAGE)
        payload = self.codec.decode(code, token_type=AUTH_CODE_TOKEN_TYPE, verify_exp=False)
        if payload is None:
            logger.warning("oidc_code_rejected", reason="signature_or_structure")
            raise InvalidCodeError(INVALID_CODE_MESSAGE)
        for claim in _REQUIRED_STRING_CLAIMS:
            if not isinstance(payload.get(claim), str) or not payload[claim]:
                logger.warning("oidc_code_rejected", reason="missing_claim", claim=claim)
                raise InvalidCodeError(INVALID_CODE_MESSAGE)
        for claim in ("state", "nonce"):
            if claim in payload and not isinstance(payload[claim], str):
                raise InvalidCodeError(INVALID_CODE_MESSAGE)
        issued_at, expires_at = payload["iat"], payload["exp"]
        if expires_at - issued_at != self.lifetime_seconds:
            logger.warning("oidc_code_rejected", reason="lifetime", lifetime=expires_at - issued_at)
            raise InvalidCodeError(INVALID_CODE_MESSAGE)
        if self.codec.now() >= expires_at:
            logger.info(
                "oidc_code_expired",
                tenant_id=payload["tenant_id"],
                client_id=payload["client_id"],
                age_seconds=self.codec.now() - issued_at,
            )
            raise ExpiredCodeError(INVALID_CODE_MESSAGE)
        return AuthorizationCode(
            code_id=payload["jti"],
            tenant_id=payload["tenant_id"],
            user_id=payload["sub"],
            client_id=payload["client_id"],
            redirect_uri=payload["redirect_uri"],
            scope=payload["scope"],
            issued_at=issued_at,
            expires_at=expires_at,
            state=payload.get("state"),
            nonce=payload.get("nonce"),
        )
