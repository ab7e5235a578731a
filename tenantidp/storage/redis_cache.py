from __future__ import annotations

import hashlib
import json
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def _session_key(tenant_id: str, session_id: str) -> str:
    # Session ids are bearer secrets; only their digest appears in the keyspace
    return f"auth:session:{tenant_id}:{_digest(session_id)}"


def _bootstrap_key(tenant_id: str, token: str) -> str:
    return f"auth:bootstrap:{tenant_id}:{_digest(token)}"


def _consumed_code_key(tenant_id: str, code_id: str) -> str:
    return f"oidc:code:{tenant_id}:{code_id}"


def _load_json(raw: Optional[str]) -> Optional[dict]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def _rate_limit_result(
    count: int, ttl: int, limit: int, window_seconds: int, return_remaining: bool
) -> Union[bool, Tuple[bool, int, int]]:
    allowed = int(count) <= limit
    if not return_remaining:
        return allowed
    reset_seconds = int(ttl) if int(ttl) > 0 else window_seconds
    return (allowed, max(0, limit - int(count)), reset_seconds)


class RedisCache:
    """Redis wrapper for sessions, consumed codes, bootstrap tokens, and rate limits."""

    # Atomic fixed-window counter: INCR, then arm the expiry on the first hit
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(
        key: str, tenant_id: Optional[str], window_seconds: int, now: Optional[float] = None
    ) -> str:
        """Hash the caller-supplied key and append the current window index.

        Hashing avoids delimiter injection from client ids and IPs; the window
        index rolls the counter over without a separate reset step.
        """
        window_index = int((now if now is not None else time.time()) // window_seconds)
        tenant_prefix = f"{tenant_id}:" if tenant_id else ""
        return f"rate:{tenant_prefix}{_digest(key)}:{window_index}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_session(
        self, tenant_id: str, session_id: str, record: dict, ttl_seconds: int
    ) -> None:
        await self.client.set(
            _session_key(tenant_id, session_id), json.dumps(record), ex=max(1, ttl_seconds)
        )

    async def get_session(self, tenant_id: str, session_id: str) -> Optional[dict]:
        return _load_json(await self.client.get(_session_key(tenant_id, session_id)))

    async def revoke_session(self, tenant_id: str, session_id: str) -> None:
        await self.client.delete(_session_key(tenant_id, session_id))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key, tenant_id, window_seconds)
        count, ttl = await self._fixed_window(keys=[safe_key], args=[window_seconds])
        return _rate_limit_result(count, ttl, limit, window_seconds, return_remaining)

    async def claim_code(
        self, tenant_id: str, code_id: str, record: dict, ttl_seconds: int
    ) -> bool:
        """Record a code as consumed; False when another redemption got there first.

        SET NX EX is the single atomic step; there is no read before the write.
        """
        acquired = await self.client.set(
            _consumed_code_key(tenant_id, code_id),
            json.dumps(record),
            ex=max(1, ttl_seconds),
            nx=True,
        )
        return bool(acquired)

    async def is_code_consumed(self, tenant_id: str, code_id: str) -> bool:
        return bool(await self.client.exists(_consumed_code_key(tenant_id, code_id)))

    async def set_bootstrap_token(
        self, tenant_id: str, token: str, record: dict, ttl_seconds: int
    ) -> None:
        await self.client.set(
            _bootstrap_key(tenant_id, token), json.dumps(record), ex=max(1, ttl_seconds)
        )

    async def pop_bootstrap_token(self, tenant_id: str, token: str) -> Optional[dict]:
        """Atomically get and delete a bootstrap token so it redeems at most once."""
        return _load_json(await self.client.getdel(_bootstrap_key(tenant_id, token)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes async methods so callers await it exactly like
    RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(RedisCache._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def set_session(
        self, tenant_id: str, session_id: str, record: dict, ttl_seconds: int
    ) -> None:
        self.client.set(
            _session_key(tenant_id, session_id), json.dumps(record), ex=max(1, ttl_seconds)
        )

    async def get_session(self, tenant_id: str, session_id: str) -> Optional[dict]:
        return _load_json(self.client.get(_session_key(tenant_id, session_id)))

    async def revoke_session(self, tenant_id: str, session_id: str) -> None:
        self.client.delete(_session_key(tenant_id, session_id))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key, tenant_id, window_seconds)
        count, ttl = self._fixed_window(keys=[safe_key], args=[window_seconds])
        return _rate_limit_result(count, ttl, limit, window_seconds, return_remaining)

    async def claim_code(
        self, tenant_id: str, code_id: str, record: dict, ttl_seconds: int
    ) -> bool:
        acquired = self.client.set(
            _consumed_code_key(tenant_id, code_id),
            json.dumps(record),
            ex=max(1, ttl_seconds),
            nx=True,
        )
        return bool(acquired)

    async def is_code_consumed(self, tenant_id: str, code_id: str) -> bool:
        return bool(self.client.exists(_consumed_code_key(tenant_id, code_id)))

    async def set_bootstrap_token(
        self, tenant_id: str, token: str, record: dict, ttl_seconds: int
    ) -> None:
        self.client.set(
            _bootstrap_key(tenant_id, token), json.dumps(record), ex=max(1, ttl_seconds)
        )

    async def pop_bootstrap_token(self, tenant_id: str, token: str) -> Optional[dict]:
        return _load_json(self.client.getdel(_bootstrap_key(tenant_id, token)))

    async def close(self) -> None:
        self.client.close()
