import base64
import json

import pytest

from tenantidp.service.errors import InvalidTokenError
from tenantidp.service.keys import SigningKey
from tenantidp.service.tokens import (
    JWTCodec,
    TokenService,
    decode_segment,
    encode_segment,
    extract_bearer,
)
from tenantidp.storage.models import UserClaims

ISSUER = "https://idp.example.com"


@pytest.fixture(scope="module")
def signing_key():
    return SigningKey.generate("kid-1")


@pytest.fixture
def token_service(signing_key):
    return TokenService(JWTCodec(signing_key, ISSUER))


@pytest.fixture
def claims():
    return UserClaims(
        sub="user-1",
        tenant_id="acme",
        email="alice@acme.example.com",
        name="Alice Doe",
        preferred_username="alice_acme",
    )


def _segment(token, index):
    return json.loads(decode_segment(token.split(".")[index]))


def test_public_jwk_shape(signing_key):
    jwks = signing_key.jwks()

    assert len(jwks["keys"]) == 1
    jwk = jwks["keys"][0]
    assert jwk["kty"] == "RSA"
    assert jwk["use"] == "sig"
    assert jwk["alg"] == "RS256"
    assert jwk["kid"] == "kid-1"
    assert jwk["e"] == "AQAB"
    modulus = base64.urlsafe_b64decode(jwk["n"] + "=" * (-len(jwk["n"]) % 4))
    assert len(modulus) * 8 >= 2048
    assert "d" not in jwk


def test_small_keys_refused():
    from cryptography.hazmat.primitives.asymmetric import rsa

    weak = rsa.generate_private_key(public_exponent=65537, key_size=1024)
    with pytest.raises(ValueError):
        SigningKey(weak, "weak")


def test_sign_and_verify(signing_key):
    signature = signing_key.sign(b"payload")
    assert signing_key.verify(signature, b"payload")
    assert not signing_key.verify(signature, b"other")


def test_issue_returns_bearer_token_response(token_service, claims):
    tokens = token_service.issue(claims, client_id="acme-web", scope="openid", nonce="n-1")

    assert tokens["token_type"] == "Bearer"
    assert tokens["expires_in"] == 3600
    assert tokens["scope"] == "openid"
    header = _segment(tokens["id_token"], 0)
    assert header == {"alg": "RS256", "typ": "JWT", "kid": "kid-1"}

    id_claims = _segment(tokens["id_token"], 1)
    assert id_claims["iss"] == ISSUER
    assert id_claims["aud"] == "acme-web"
    assert id_claims["sub"] == "user-1"
    assert id_claims["nonce"] == "n-1"
    assert id_claims["exp"] - id_claims["iat"] == 3600


def test_id_token_omits_nonce_when_absent(token_service, claims):
    tokens = token_service.issue(claims, client_id="acme-web", scope="openid")
    assert "nonce" not in _segment(tokens["id_token"], 1)


def test_verify_access_token_returns_identity(token_service, claims):
    tokens = token_service.issue(claims, client_id="acme-web", scope="openid")

    payload = token_service.verify_access_token(tokens["access_token"])

    assert payload["sub"] == "user-1"
    assert payload["tenant_id"] == "acme"
    assert payload["client_id"] == "acme-web"


def test_id_token_is_not_an_access_token(token_service, claims):
    tokens = token_service.issue(claims, client_id="acme-web", scope="openid")
    with pytest.raises(InvalidTokenError):
        token_service.verify_access_token(tokens["id_token"])


def test_missing_token_rejected(token_service):
    with pytest.raises(InvalidTokenError) as exc_info:
        token_service.verify_access_token(None)
    assert exc_info.value.status_code == 401
    assert exc_info.value.error_code == "invalid_token"


def test_expired_access_token_rejected(signing_key, claims):
    now = [1_700_000_000.0]
    service = TokenService(JWTCodec(signing_key, ISSUER, clock=lambda: now[0]))
    tokens = service.issue(claims, client_id="acme-web", scope="openid")
    now[0] += 3600
    with pytest.raises(InvalidTokenError):
        service.verify_access_token(tokens["access_token"])


def test_unknown_kid_rejected(signing_key, claims):
    other = TokenService(JWTCodec(SigningKey.generate("kid-2"), ISSUER))
    tokens = other.issue(claims, client_id="acme-web", scope="openid")
    with pytest.raises(InvalidTokenError):
        TokenService(JWTCodec(signing_key, ISSUER)).verify_access_token(tokens["access_token"])


@pytest.mark.parametrize("alg", ["none", "HS256"])
def test_downgraded_algorithm_rejected(signing_key, token_service, claims, alg):
    tokens = token_service.issue(claims, client_id="acme-web", scope="openid")
    _, payload, signature = tokens["access_token"].split(".")
    header = encode_segment(
        json.dumps({"alg": alg, "typ": "JWT", "kid": signing_key.kid}).encode()
    )
    forged = f"{header}.{payload}.{signature if alg != 'none' else ''}"
    with pytest.raises(InvalidTokenError):
        token_service.verify_access_token(forged)


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, None),
        ("", None),
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected
