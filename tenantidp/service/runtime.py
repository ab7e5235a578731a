from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tenantidp.config import get_settings, reset_settings_cache
from tenantidp.logging import get_logger
from tenantidp.service.auth import AuthService
from tenantidp.service.clients import ClientRegistry
from tenantidp.service.codes import AuthCodeCodec
from tenantidp.service.keys import SigningKey
from tenantidp.service.oidc import OIDCProvider
from tenantidp.service.replay import ReplayGuard
from tenantidp.service.sessions import SessionStore
from tenantidp.service.tokens import JWTCodec, TokenService
from tenantidp.service.users import UserDirectory
from tenantidp.storage.redis_cache import RedisCache, SyncRedisCache
from tenantidp.storage.tenants import TenantRouter

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            issuer=self.settings.issuer,
            test_mode=self.settings.test_mode,
        )

        self.tenants = self.settings.load_tenants()
        self.router = TenantRouter(self.tenants)

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, consumed codes, and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, consumed codes, "
                    "and rate limits are process-local only."
                ),
                mode=fallback_mode,
            )

        self.signing_key = SigningKey.from_settings(self.settings)
        self.codec = JWTCodec(self.signing_key, self.settings.issuer)
        self.tokens = TokenService(
            self.codec,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
            id_token_ttl_seconds=self.settings.id_token_ttl_seconds,
        )
        self.codes = AuthCodeCodec(
            self.codec, lifetime_seconds=self.settings.auth_code_ttl_seconds
        )
        self.clients = ClientRegistry.from_tenants(self.tenants)
        self.sessions = SessionStore(
            self.router, self.cache, ttl_minutes=self.settings.session_ttl_minutes
        )
        self.replay = ReplayGuard(self.cache, ttl_seconds=self.settings.auth_code_ttl_seconds)
        self.users = UserDirectory(self.router)
        self.auth = AuthService(self.router, self.sessions, self.cache, self.settings)
        self.oidc = OIDCProvider(
            self.settings,
            router=self.router,
            clients=self.clients,
            sessions=self.sessions,
            auth=self.auth,
            codes=self.codes,
            replay=self.replay,
            tokens=self.tokens,
            users=self.users,
            signing_key=self.signing_key,
        )

        # key -> (window_index, count, window_end)
        self._local_rate_limits: Dict[str, Tuple[int, int, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            tenants=self.router.tenant_ids(),
            redis_enabled=self.cache is not None,
            signing_kid=self.signing_key.kid,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check guards first construction.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _purge_stale_windows(counters: Dict[str, Tuple[int, int, float]], now: float) -> None:
    stale = [key for key, (_, _, window_end) in counters.items() if window_end <= now]
    for key in stale:
        counters.pop(key, None)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    tenant_id: Optional[str] = None,
) -> Union[bool, Tuple[bool, int, int]]:
    """Fixed-window rate limit, enforced even when Redis is unavailable.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key, e.g. ``token:{client_id}:{ip}``
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return (allowed, remaining, reset_seconds)
        tenant_id: Optional tenant prefix for the Redis key

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key,
            limit,
            window_seconds,
            return_remaining=return_remaining,
            tenant_id=tenant_id,
        )
    now = time.time()
    window_index = int(now // window_seconds)
    local_key = f"{tenant_id}:{key}" if tenant_id else key
    window_end = (window_index + 1) * window_seconds
    async with runtime._local_rate_limit_lock:
        _purge_stale_windows(runtime._local_rate_limits, now)
        stored_index, count, _ = runtime._local_rate_limits.get(
            local_key, (window_index, 0, window_end)
        )
        if stored_index != window_index:
            count = 0
        count += 1
        runtime._local_rate_limits[local_key] = (window_index, count, window_end)
        allowed = count <= limit
        remaining = max(0, limit - count)
        reset_seconds = int(window_end - now)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
