import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, MagicMock, patch

from tenantidp.service.replay import ReplayGuard


async def test_code_consumed_once():
    guard = ReplayGuard(ttl_seconds=60)

    assert await guard.consume("acme", "code-1", client_id="acme-web") is True
    assert await guard.consume("acme", "code-1", client_id="acme-web") is False


async def test_is_consumed_is_read_only():
    guard = ReplayGuard(ttl_seconds=60)

    assert await guard.is_consumed("acme", "code-1") is False
    assert await guard.is_consumed("acme", "code-1") is False
    assert await guard.consume("acme", "code-1") is True
    assert await guard.is_consumed("acme", "code-1") is True


async def test_code_ids_are_tenant_scoped():
    guard = ReplayGuard(ttl_seconds=60)

    assert await guard.consume("acme", "code-1") is True
    assert await guard.consume("globex", "code-1") is True


async def test_concurrent_consumption_has_single_winner():
    guard = ReplayGuard(ttl_seconds=60)

    results = await asyncio.gather(*(guard.consume("acme", "code-1") for _ in range(25)))

    assert results.count(True) == 1
    assert results.count(False) == 24


def test_consume_across_threads_has_single_winner():
    guard = ReplayGuard(ttl_seconds=60)
    workers = 16
    barrier = threading.Barrier(workers)

    def redeem():
        barrier.wait()
        return asyncio.run(guard.consume("acme", "code-1", client_id="acme-web"))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: redeem(), range(workers)))

    assert results.count(True) == 1
    assert results.count(False) == workers - 1


async def test_entries_expire_with_code_lifetime():
    now = [1000.0]
    guard = ReplayGuard(ttl_seconds=60, clock=lambda: now[0])

    assert await guard.consume("acme", "code-1") is True
    now[0] += 61
    assert await guard.is_consumed("acme", "code-1") is False
    assert guard._consumed == {("acme", "code-1"): 1060.0}
    assert await guard.consume("acme", "code-2") is True
    assert ("acme", "code-1") not in guard._consumed


async def test_replay_is_logged():
    guard = ReplayGuard(ttl_seconds=60)
    await guard.consume("acme", "code-1", client_id="acme-web")

    with patch("tenantidp.service.replay.logger") as mock_logger:
        assert await guard.consume("acme", "code-1", client_id="acme-web") is False

    mock_logger.warning.assert_called_once()
    call_args = mock_logger.warning.call_args
    assert call_args[0][0] == "oidc_code_replay"
    assert call_args[1] == {"tenant_id": "acme", "client_id": "acme-web"}


async def test_redis_backed_guard_uses_atomic_claim():
    cache = MagicMock()
    cache.claim_code = AsyncMock(side_effect=[True, False])
    cache.is_code_consumed = AsyncMock(return_value=True)
    guard = ReplayGuard(cache, ttl_seconds=60)

    assert await guard.consume("acme", "code-1", client_id="acme-web") is True
    assert await guard.consume("acme", "code-1", client_id="acme-web") is False
    assert await guard.is_consumed("acme", "code-1") is True

    tenant_id, code_id, record, ttl = cache.claim_code.call_args_list[0][0]
    assert (tenant_id, code_id, ttl) == ("acme", "code-1", 60)
    assert record["client_id"] == "acme-web"
