"""
Tests for the background cache refresher.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.exceptions import NetworkFailure
from core.reconciler import StateReconciler
from core.refresher import CacheRefresher
from tests.helpers import TOKEN, LedgerStubBuilder, MemoryCache, make_state

OTHER_TOKEN = "0x" + "5" * 40


class TestRefreshOnce:

    def setup_method(self):
        self.cache = MemoryCache()

    @pytest.mark.asyncio
    async def test_reconciles_every_token_once(self, no_sleep, metrics):
        ledger = LedgerStubBuilder().with_states(
            make_state(current_supply="1200"),
            make_state(address=OTHER_TOKEN, current_supply="0"),
        ).build()
        reconciler = StateReconciler(ledger, self.cache, sleep=no_sleep)
        refresher = CacheRefresher(reconciler, lambda: [TOKEN, OTHER_TOKEN], metrics=metrics)

        committed = await refresher.refresh_once()

        assert committed == 1
        assert ledger.get_market_state.await_count == 2
        assert no_sleep.delays == []
        assert metrics.count("cache_refresh", "committed") == 1
        assert metrics.count("cache_refresh", "stale") == 1
        assert refresher.passes == 1

    @pytest.mark.asyncio
    async def test_tracks_contract_balance(self, no_sleep):
        ledger = LedgerStubBuilder().with_contract_balance("42.5").build()
        refresher = CacheRefresher(StateReconciler(ledger, self.cache, sleep=no_sleep), lambda: [])
        await refresher.refresh_once()
        assert refresher.contract_balance == Decimal("42.5")

    @pytest.mark.asyncio
    async def test_balance_failure_keeps_previous_value(self, no_sleep):
        ledger = LedgerStubBuilder().build()
        ledger.get_contract_balance.side_effect = [Decimal("7"), NetworkFailure("rpc down")]
        refresher = CacheRefresher(StateReconciler(ledger, self.cache, sleep=no_sleep), lambda: [])

        await refresher.refresh_once()
        await refresher.refresh_once()

        assert refresher.contract_balance == Decimal("7")
        assert refresher.passes == 2

    @pytest.mark.asyncio
    async def test_token_list_read_each_pass(self, no_sleep):
        ledger = LedgerStubBuilder().build()
        refresher = CacheRefresher(StateReconciler(ledger, self.cache, sleep=no_sleep),
                                   self.cache.addresses)
        assert await refresher.refresh_once() == 0

        await StateReconciler(ledger, self.cache, sleep=no_sleep).reconcile(TOKEN)
        assert await refresher.refresh_once() == 1

    @pytest.mark.asyncio
    async def test_failed_token_does_not_end_pass(self, no_sleep, metrics):
        ledger = LedgerStubBuilder().with_states(
            ValueError("bad rpc payload"),
            make_state(address=OTHER_TOKEN, current_supply="1200"),
        ).with_contract_balance("9").build()
        reconciler = StateReconciler(ledger, self.cache, sleep=no_sleep)
        refresher = CacheRefresher(reconciler, lambda: [TOKEN, OTHER_TOKEN], metrics=metrics)

        assert await refresher.refresh_once() == 1
        assert self.cache.get(OTHER_TOKEN) is not None
        assert refresher.contract_balance == Decimal("9")
        assert refresher.passes == 1

    @pytest.mark.asyncio
    async def test_raising_reconciler_counted_as_failed(self, metrics):
        reconciler = MagicMock()
        reconciler.reconcile = AsyncMock(side_effect=[RuntimeError("boom"), None])
        reconciler.ledger.get_contract_balance = AsyncMock(side_effect=ValueError("bad payload"))
        refresher = CacheRefresher(reconciler, lambda: [TOKEN, OTHER_TOKEN], metrics=metrics)

        assert await refresher.refresh_once() == 0
        assert reconciler.reconcile.await_count == 2
        assert metrics.count("cache_refresh", "failed") == 1
        assert metrics.count("cache_refresh", "stale") == 1
        assert refresher.contract_balance is None


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop_cancels(self, no_sleep):
        ledger = LedgerStubBuilder().build()
        refresher = CacheRefresher(StateReconciler(ledger, MemoryCache(), sleep=no_sleep),
                                   lambda: [TOKEN], interval_seconds=60)

        await refresher.start()
        assert refresher.running
        for _ in range(5):
            await asyncio.sleep(0)
        assert refresher.passes == 1

        await refresher.stop()
        assert not refresher.running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, no_sleep):
        refresher = CacheRefresher(StateReconciler(LedgerStubBuilder().build(), MemoryCache(), sleep=no_sleep),
                                   lambda: [], interval_seconds=60)
        await refresher.start()
        task = refresher._task
        await refresher.start()
        assert refresher._task is task
        await refresher.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        refresher = CacheRefresher(StateReconciler(LedgerStubBuilder().build(), MemoryCache()), lambda: [])
        await refresher.stop()
        assert not refresher.running

    @pytest.mark.asyncio
    async def test_context_manager(self, no_sleep):
        reconciler = StateReconciler(LedgerStubBuilder().build(), MemoryCache(), sleep=no_sleep)
        async with CacheRefresher(reconciler, lambda: [], interval_seconds=60) as refresher:
            assert refresher.running
        assert not refresher.running
