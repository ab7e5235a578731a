import pytest

from tenantidp.config import ClientConfig, TenantConfig
from tenantidp.service.clients import (
    BAD_SECRET_MESSAGE,
    MISSING_SECRET_MESSAGE,
    ClientRegistry,
)
from tenantidp.service.errors import ClientAuthError, UnknownClientError


@pytest.fixture(scope="module")
def registry():
    tenants = [
        TenantConfig(
            tenant_id="acme",
            clients=[
                ClientConfig(
                    client_id="acme-web",
                    redirect_uris=["https://app.acme.example.com/callback"],
                    client_secret="acme-web-secret",
                ),
                ClientConfig(
                    client_id="acme-spa",
                    redirect_uris=["http://localhost:5173/callback"],
                    confidential=False,
                ),
            ],
        ),
        TenantConfig(
            tenant_id="globex",
            clients=[
                ClientConfig(
                    client_id="globex-web",
                    redirect_uris=["https://globex.example.com/callback"],
                    client_secret="globex-web-secret",
                )
            ],
        ),
    ]
    return ClientRegistry.from_tenants(tenants)


def test_secrets_are_stored_hashed(registry):
    client = registry.lookup("acme", "acme-web")
    assert client.secret_hash.startswith("$argon2id$")
    assert "acme-web-secret" not in client.secret_hash


def test_lookup_is_tenant_scoped(registry):
    assert registry.lookup("globex", "globex-web").tenant_id == "globex"
    with pytest.raises(UnknownClientError):
        registry.lookup("acme", "globex-web")


@pytest.mark.parametrize("client_id", [None, "", "nope"])
def test_unknown_client(registry, client_id):
    with pytest.raises(UnknownClientError) as exc_info:
        registry.lookup("acme", client_id)
    assert exc_info.value.status_code == 401
    assert exc_info.value.error_code == "invalid_client"


@pytest.mark.parametrize(
    "uri,allowed",
    [
        ("https://app.acme.example.com/callback", True),
        ("https://app.acme.example.com/callback/", False),
        ("https://app.acme.example.com/callback?x=1", False),
        ("https://app.acme.example.com/CALLBACK", False),
        ("https://app.acme.example.com/callbackx", False),
        ("https://evil.example.com/callback", False),
        ("", False),
        (None, False),
    ],
)
def test_redirect_uri_exact_match(registry, uri, allowed):
    client = registry.lookup("acme", "acme-web")
    assert registry.validate_redirect_uri(client, uri) is allowed


def test_public_client_needs_no_secret(registry):
    registry.authenticate(registry.lookup("acme", "acme-spa"), None)


def test_confidential_client_missing_secret(registry):
    with pytest.raises(ClientAuthError) as exc_info:
        registry.authenticate(registry.lookup("acme", "acme-web"), None)
    assert exc_info.value.message == MISSING_SECRET_MESSAGE
    assert exc_info.value.status_code == 401


def test_confidential_client_wrong_secret(registry):
    with pytest.raises(ClientAuthError) as exc_info:
        registry.authenticate(registry.lookup("acme", "acme-web"), "wrong-secret")
    assert exc_info.value.message == BAD_SECRET_MESSAGE


def test_secret_of_other_client_rejected(registry):
    with pytest.raises(ClientAuthError):
        registry.authenticate(registry.lookup("acme", "acme-web"), "globex-web-secret")


def test_confidential_client_correct_secret(registry):
    registry.authenticate(registry.lookup("acme", "acme-web"), "acme-web-secret")


def test_clients_are_immutable(registry):
    client = registry.lookup("acme", "acme-web")
    with pytest.raises(AttributeError):
        client.confidential = False
