from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from tenantidp.logging import get_logger

logger = get_logger(__name__)


class ReplayGuard:
    """Records consumed authorization codes with a TTL equal to the code lifetime.

    ``consume`` is an atomic check-and-insert: Redis ``SET NX EX`` when a cache
    is configured, otherwise a check-and-set under a lock. Of any number of
    concurrent calls for the same code id exactly one returns True.
    """

    def __init__(
        self,
        cache=None,
        *,
        ttl_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._consumed: Dict[Tuple[str, str], float] = {}

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, expires_at in self._consumed.items() if expires_at <= now]
        for key in expired:
            self._consumed.pop(key, None)

    async def is_consumed(self, tenant_id: str, code_id: str) -> bool:
        """Read-only check; never a substitute for ``consume``."""
        if self.cache:
            return await self.cache.is_code_consumed(tenant_id, code_id)
        now = self._clock()
        with self._lock:
            expires_at = self._consumed.get((tenant_id, code_id))
            return expires_at is not None and expires_at > now

    async def consume(
        self, tenant_id: str, code_id: str, *, client_id: Optional[str] = None
    ) -> bool:
        record = {
            "code_id": code_id,
            "client_id": client_id,
            "consumed_at": datetime.now(timezone.utc).isoformat(),
        }
        if self.cache:
            acquired = await self.cache.claim_code(tenant_id, code_id, record, self.ttl_seconds)
        else:
            now = self._clock()
            with self._lock:
                self._purge_expired(now)
                key = (tenant_id, code_id)
                if key in self._consumed:
                    acquired = False
                else:
                    self._consumed[key] = now + self.ttl_seconds
                    acquired = True
        if not acquired:
            logger.warning("oidc_code_replay", tenant_id=tenant_id, client_id=client_id)
        return acquired
