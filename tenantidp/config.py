from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urlparse

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from tenantidp.logging import get_logger

logger = get_logger(__name__)

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def validate_redirect_uri(redirect_uri: str) -> str:
    """Accept absolute http(s) redirect URIs; plain http only for loopback hosts."""
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("redirect URI must be http(s)")
    if not parsed.netloc:
        raise ValueError("redirect URI must include host")
    if parsed.scheme == "http" and parsed.hostname not in _LOCAL_HOSTS:
        raise ValueError("insecure redirect URI not allowed outside localhost")
    if parsed.fragment:
        raise ValueError("redirect URI must not contain a fragment")
    return redirect_uri


class ClientConfig(BaseModel):
    """One registered OAuth2 client as written in tenant configuration."""

    client_id: str = Field(..., min_length=1, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    redirect_uris: List[str] = Field(..., min_length=1)
    confidential: bool = True
    client_secret: Optional[str] = Field(default=None, min_length=8)
    secret_hash: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("redirect_uris")
    @classmethod
    def _validate_redirect_uris(cls, value: List[str]) -> List[str]:
        return [validate_redirect_uri(uri) for uri in value]

    @model_validator(mode="after")
    def _check_secret_material(self):
        if self.client_secret and self.secret_hash:
            raise ValueError("provide either client_secret or secret_hash, not both")
        if self.confidential and not (self.client_secret or self.secret_hash):
            raise ValueError(f"confidential client {self.client_id} requires a secret")
        if not self.confidential and (self.client_secret or self.secret_hash):
            raise ValueError(f"public client {self.client_id} must not carry a secret")
        return self


class TenantConfig(BaseModel):
    tenant_id: str = Field(..., pattern=r"^[A-Za-z0-9_-]{1,64}$")
    name: Optional[str] = None
    frontend_login_url: Optional[str] = None
    clients: List[ClientConfig] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _unique_client_ids(self):
        seen: set[str] = set()
        for client in self.clients:
            if client.client_id in seen:
                raise ValueError(
                    f"duplicate client_id {client.client_id} in tenant {self.tenant_id}"
                )
            seen.add(client.client_id)
        return self


class TenantsDocument(BaseModel):
    tenants: List[TenantConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_tenant_ids(self):
        ids = [tenant.tenant_id for tenant in self.tenants]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate tenant_id in tenant configuration")
        return self


class Settings(BaseModel):
    """Runtime settings for the authorization server."""

    issuer: str = env_field("http://localhost:8000", "OIDC_ISSUER")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantidp", "SHARED_FS_ROOT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows in-process fallbacks and runtime resets for the test suite.",
    )
    rsa_private_key: Optional[str] = env_field(
        None,
        "OIDC_RSA_PRIVATE_KEY",
        validate_default=True,
        description="PEM-encoded RSA private key used for RS256 signing",
    )
    signing_key_id: str = env_field("tenantidp-rsa-key", "OIDC_SIGNING_KEY_ID")
    auth_code_ttl_seconds: int = env_field(60, "AUTH_CODE_TTL_SECONDS", ge=1, le=600)
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS", ge=60)
    id_token_ttl_seconds: int = env_field(3600, "ID_TOKEN_TTL_SECONDS", ge=60)
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES", ge=1)
    bootstrap_token_ttl_seconds: int = env_field(60, "BOOTSTRAP_TOKEN_TTL_SECONDS", ge=1)
    token_rate_limit_per_minute: int = env_field(10, "TOKEN_RATE_LIMIT_PER_MINUTE")
    token_rate_limit_window_seconds: int = env_field(60, "TOKEN_RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    tenants_config_path: Optional[str] = env_field(None, "TENANTS_CONFIG")
    tenants_json: Optional[str] = env_field(None, "TENANTS_JSON")
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")
    default_scope: str = env_field("openid", "DEFAULT_SCOPE")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("issuer")
    @classmethod
    def _normalize_issuer(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("OIDC_ISSUER must be an absolute http(s) URL")
        return value.rstrip("/")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("rsa_private_key")
    @classmethod
    def _ensure_rsa_private_key(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value.replace("\\n", "\n")
        # Persist a generated key so issued tokens stay verifiable across restarts
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/tenantidp")
        key_path = fs_root / ".oidc_rsa_key.pem"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("signing_key_dir_setup", error=str(exc), path=str(fs_root))

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text()
                if persisted.lstrip().startswith("-----BEGIN"):
                    return persisted
            except OSError as exc:
                logger.error("signing_key_read_failed", error=str(exc), path=str(key_path))

        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        generated = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".oidc_rsa_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("signing_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist signing key; set OIDC_RSA_PRIVATE_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("signing_key_generated", path=str(key_path))
        return generated

    def load_tenants(self) -> List[TenantConfig]:
        """Read tenant and client configuration from TENANTS_JSON or TENANTS_CONFIG."""
        raw: Optional[str] = None
        source = "default"
        if self.tenants_json:
            raw = self.tenants_json
            source = "env"
        elif self.tenants_config_path:
            raw = Path(self.tenants_config_path).read_text()
            source = self.tenants_config_path
        if raw is None:
            logger.warning(
                "tenants_config_missing",
                default_tenant_id=self.default_tenant_id,
                message="No tenant configuration; serving a single tenant with no clients",
            )
            return [TenantConfig(tenant_id=self.default_tenant_id)]
        document = TenantsDocument.model_validate(json.loads(raw))
        logger.info(
            "tenants_config_loaded",
            source=source,
            tenants=[tenant.tenant_id for tenant in document.tenants],
        )
        return document.tenants


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
