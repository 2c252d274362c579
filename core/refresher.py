"""Background cache refresh, owned by the session."""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Callable, Iterable, Optional

from core.exceptions import TradeError
from core.reconciler import StateReconciler
from infra.metrics import MetricsRecorder
from infra.retry import RetryPolicy

logger = logging.getLogger(__name__)

SINGLE_READ = RetryPolicy(max_attempts=1, delay_seconds=0.0)


class CacheRefresher:
    """
    Periodically:
      • reconciles every cached token (one read each, no freshness predicate)
      • refreshes the trading contract's settlement balance for sell previews
      • uses monotonic drift-free cadence

    Use as ``async with CacheRefresher(...)`` or call start()/stop() explicitly.
    """

    def __init__(
        self,
        reconciler: StateReconciler,
        tokens: Callable[[], Iterable[str]],
        interval_seconds: float = 15.0,
        metrics: Optional[MetricsRecorder] = None,
        stop_timeout: float = 5.0,
    ):
        self.reconciler = reconciler
        self.tokens = tokens
        self.interval = float(interval_seconds)
        self.metrics = metrics
        self.stop_timeout = stop_timeout
        self.contract_balance: Optional[Decimal] = None
        self.passes = 0
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh_once(self) -> int:
        """One pass over the cache. Returns how many tokens were committed."""
        committed = 0
        for address in list(self.tokens()):
            try:
                record = await self.reconciler.reconcile(address, policy=SINGLE_READ)
            except Exception as e:
                logger.error(f"Refresh of {address} failed, skipping: {e}", exc_info=True)
                record = None
                result = "failed"
            else:
                result = "committed" if record is not None else "stale"
            if record is not None:
                committed += 1
            if self.metrics:
                self.metrics.record_cache_refresh(result)

        try:
            self.contract_balance = await self.reconciler.ledger.get_contract_balance()
        except TradeError as e:
            logger.warning(f"Contract balance refresh failed: {e}")
        except Exception as e:
            logger.error(f"Contract balance refresh failed unexpectedly: {e}", exc_info=True)

        self.passes += 1
        logger.debug(f"Cache refresh pass {self.passes}: {committed} tokens committed")
        return committed

    async def run_loop(self) -> None:
        interval = max(0.5, self.interval)
        next_tick = time.monotonic()
        try:
            while not self._stop_event.is_set():
                await self.refresh_once()
                next_tick += interval
                now = time.monotonic()
                if next_tick > now:
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
                    except asyncio.TimeoutError:
                        pass
        except asyncio.CancelledError:
            logger.info("Cache refresher cancelled.")
            raise

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_loop(), name="settlement.cache_refresher")
        logger.info(f"Cache refresher started (interval={self.interval:.1f}s)")

    async def stop(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=self.stop_timeout)
        except asyncio.CancelledError:
            pass
        except asyncio.TimeoutError:
            logger.warning("Cache refresher did not stop within %.1fs", self.stop_timeout)
        logger.info("Cache refresher stopped")

    async def __aenter__(self) -> "CacheRefresher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
