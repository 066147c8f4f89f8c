"""
Tests for billing_sentinel/utils/dedup.py - bounded webhook event ledger.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from billing_sentinel.utils.dedup import (
    DedupLedger,
    RedisDedupLedger,
    build_ledger,
)


class TestDedupLedger:
    @pytest.mark.asyncio
    async def test_first_mark_wins(self):
        ledger = DedupLedger(capacity=10)
        assert await ledger.mark_seen("evt_1") is True
        assert await ledger.mark_seen("evt_1") is False
        assert await ledger.seen("evt_1") is True

    @pytest.mark.asyncio
    async def test_unseen_id(self):
        ledger = DedupLedger(capacity=10)
        assert await ledger.seen("evt_missing") is False

    @pytest.mark.asyncio
    async def test_capacity_plus_one_evicts_oldest(self):
        """N+1 distinct ids into capacity N drops exactly the first one."""
        ledger = DedupLedger(capacity=3)
        for i in range(4):
            assert await ledger.mark_seen(f"evt_{i}") is True

        assert len(ledger) == 3
        assert ledger.snapshot() == ["evt_1", "evt_2", "evt_3"]
        assert await ledger.seen("evt_0") is False
        # An evicted id is processed again if redelivered
        assert await ledger.mark_seen("evt_0") is True

    @pytest.mark.asyncio
    async def test_never_exceeds_capacity(self):
        ledger = DedupLedger(capacity=5)
        for i in range(50):
            await ledger.mark_seen(f"evt_{i}")
            assert len(ledger) <= 5

    @pytest.mark.asyncio
    async def test_forget_releases_id(self):
        ledger = DedupLedger(capacity=5)
        await ledger.mark_seen("evt_1")
        await ledger.forget("evt_1")
        assert await ledger.seen("evt_1") is False
        assert await ledger.mark_seen("evt_1") is True

    @pytest.mark.asyncio
    async def test_forget_unknown_id_is_noop(self):
        ledger = DedupLedger(capacity=5)
        await ledger.forget("evt_never")
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_concurrent_marks_single_winner(self):
        """Many concurrent deliveries of one id - exactly one caller wins."""
        ledger = DedupLedger(capacity=100)
        results = await asyncio.gather(*[ledger.mark_seen("evt_race") for _ in range(50)])
        assert results.count(True) == 1
        assert len(ledger) == 1

    def test_zero_capacity_rejected(self):
        with pytest.raises(ValueError):
            DedupLedger(capacity=0)


class TestRedisDedupLedger:
    @pytest.mark.asyncio
    async def test_mark_seen_runs_lua_script(self):
        redis = AsyncMock()
        redis.eval = AsyncMock(return_value=1)
        ledger = RedisDedupLedger(capacity=7, namespace="test", redis=redis)

        assert await ledger.mark_seen("evt_1") is True
        args = redis.eval.call_args.args
        assert args[1] == 2
        assert args[2:] == ("test:ids", "test:order", "evt_1", 7)

    @pytest.mark.asyncio
    async def test_duplicate_returns_false(self):
        redis = AsyncMock()
        redis.eval = AsyncMock(return_value=0)
        ledger = RedisDedupLedger(redis=redis)
        assert await ledger.mark_seen("evt_1") is False

    @pytest.mark.asyncio
    async def test_seen_uses_set_membership(self):
        redis = AsyncMock()
        redis.sismember = AsyncMock(return_value=1)
        ledger = RedisDedupLedger(namespace="ns", redis=redis)
        assert await ledger.seen("evt_1") is True
        redis.sismember.assert_awaited_once_with("ns:ids", "evt_1")

    @pytest.mark.asyncio
    async def test_redis_failure_propagates(self):
        redis = AsyncMock()
        redis.eval = AsyncMock(side_effect=ConnectionError("redis down"))
        ledger = RedisDedupLedger(redis=redis)
        with pytest.raises(ConnectionError):
            await ledger.mark_seen("evt_1")

    @pytest.mark.asyncio
    async def test_lazy_client_from_get_redis(self, mock_redis):
        mock_redis.eval = AsyncMock(return_value=1)
        ledger = RedisDedupLedger()
        assert await ledger.mark_seen("evt_1") is True
        mock_redis.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_forget(self):
        redis = AsyncMock()
        ledger = RedisDedupLedger(namespace="ns", redis=redis)
        await ledger.forget("evt_1")
        assert redis.eval.call_args.args[2:] == ("ns:ids", "ns:order", "evt_1")


class TestBuildLedger:
    def test_memory_backend(self):
        ledger = build_ledger("memory", 10)
        assert isinstance(ledger, DedupLedger)
        assert ledger.capacity == 10

    def test_redis_backend(self):
        ledger = build_ledger("redis", 10, redis=AsyncMock())
        assert isinstance(ledger, RedisDedupLedger)

    def test_unknown_backend_falls_back_to_memory(self):
        assert isinstance(build_ledger("etcd", 10), DedupLedger)
