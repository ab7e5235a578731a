from __future__ import annotations

import base64
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from tenantidp.config import Settings
from tenantidp.logging import get_logger

logger = get_logger(__name__)


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class SigningKey:
    """RSA key pair used for RS256 signatures on codes and tokens."""

    algorithm = "RS256"

    def __init__(self, private_key: rsa.RSAPrivateKey, kid: str) -> None:
        if private_key.key_size < 2048:
            raise ValueError("RS256 signing key must be at least 2048 bits")
        self.kid = kid
        self._private_key = private_key
        self._public_key = private_key.public_key()

    @classmethod
    def from_pem(cls, pem: str, kid: str) -> "SigningKey":
        key = serialization.load_pem_private_key(pem.encode(), password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError("OIDC_RSA_PRIVATE_KEY must be an RSA private key")
        return cls(key, kid)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKey":
        key = cls.from_pem(settings.rsa_private_key, settings.signing_key_id)
        logger.info("signing_key_loaded", kid=key.kid, key_size=key._private_key.key_size)
        return key

    @classmethod
    def generate(cls, kid: str) -> "SigningKey":
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=2048), kid)

    def sign(self, data: bytes) -> bytes:
        return self._private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    def verify(self, signature: bytes, data: bytes) -> bool:
        try:
            self._public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True

    def public_jwk(self) -> Dict[str, Any]:
        numbers = self._public_key.public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": self.algorithm,
            "kid": self.kid,
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }

    def jwks(self) -> Dict[str, Any]:
        return {"keys": [self.public_jwk()]}
