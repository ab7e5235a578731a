from __future__ import annotations

import base64
import json
import secrets
import time
from typing import Any, Callable, Optional

from tenantidp.logging import get_logger
from tenantidp.service.errors import InvalidTokenError
from tenantidp.service.keys import SigningKey
from tenantidp.storage.models import UserClaims

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
ID_TOKEN_TYPE = "id"


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class JWTCodec:
    """Compact RS256 JWS encoding bound to one issuer and one signing key."""

    def __init__(
        self,
        key: SigningKey,
        issuer: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key = key
        self.issuer = issuer
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.key.algorithm, "typ": "JWT", "kid": self.key.kid}
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self.key.sign(signing_input.encode())
        return f"{signing_input}.{encode_segment(signature)}"

    def decode(
        self, token: str, *, token_type: str, verify_exp: bool = True
    ) -> Optional[dict[str, Any]]:
        """Return the payload when signature, issuer, type, and expiry all check out."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm and key id to rule out alg=none and key confusion
        try:
            header = json.loads(decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        if header.get("alg") != self.key.algorithm:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None
        if header.get("kid") != self.key.kid:
            logger.warning("jwt_unknown_kid", kid=header.get("kid"))
            return None

        try:
            signature = decode_segment(sig_b64)
        except (ValueError, TypeError):
            return None
        if not self.key.verify(signature, f"{header_b64}.{payload_b64}".encode()):
            return None
        try:
            payload = json.loads(decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            logger.warning("jwt_issuer_mismatch", iss=payload.get("iss"))
            return None
        if payload.get("token_type") != token_type:
            return None
        exp = payload.get("exp")
        iat = payload.get("iat")
        if type(exp) is not int or type(iat) is not int:
            return None
        if verify_exp and self.now() >= exp:
            return None
        return payload


class TokenService:
    """Issues access and id tokens and verifies presented access tokens."""

    def __init__(
        self,
        codec: JWTCodec,
        *,
        access_token_ttl_seconds: int = 3600,
        id_token_ttl_seconds: int = 3600,
    ) -> None:
        self.codec = codec
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.id_token_ttl_seconds = id_token_ttl_seconds

    def issue(
        self,
        claims: UserClaims,
        *,
        client_id: str,
        scope: str,
        nonce: Optional[str] = None,
    ) -> dict[str, Any]:
        now = self.codec.now()
        identity = claims.as_dict()
        access_payload = {
            **identity,
            "iss": self.codec.issuer,
            "aud": client_id,
            "client_id": client_id,
            "scope": scope,
            "iat": now,
            "exp": now + self.access_token_ttl_seconds,
            "jti": secrets.token_urlsafe(16),
            "token_type": ACCESS_TOKEN_TYPE,
        }
        id_payload = {
            **identity,
            "iss": self.codec.issuer,
            "aud": client_id,
            "iat": now,
            "exp": now + self.id_token_ttl_seconds,
            "token_type": ID_TOKEN_TYPE,
        }
        if nonce:
            id_payload["nonce"] = nonce
        return {
            "access_token": self.codec.encode(access_payload),
            "token_type": "Bearer",
            "expires_in": self.access_token_ttl_seconds,
            "id_token": self.codec.encode(id_payload),
            "scope": scope,
        }

    def verify_access_token(self, token: Optional[str]) -> dict[str, Any]:
        if not token:
            raise InvalidTokenError("Missing bearer token")
        payload = self.codec.decode(token, token_type=ACCESS_TOKEN_TYPE)
        if payload is None:
            raise InvalidTokenError("Invalid or expired access token")
        for claim in ("sub", "tenant_id"):
            if not isinstance(payload.get(claim), str) or not payload[claim]:
                raise InvalidTokenError("Invalid or expired access token")
        return payload


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
