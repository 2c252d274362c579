"""
State Reconciler

After a local trade, re-read the token's authoritative state from the ledger
and commit it to the read-cache. The ledger lags the receipt by a block or so,
so reads are retried a bounded number of times; a read counts only if it is
structurally valid (non-zero supply) and, when a freshness predicate is given,
reflects the trade. Exhausting attempts leaves the cache stale; the trade
itself is never failed from here: every read or cache-write error is logged
and absorbed.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol

from core.exceptions import TradeError
from core.models import CachedTokenRecord, TokenMarketState, TradeDirection
from infra.metrics import MetricsRecorder
from infra.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

FreshnessCheck = Callable[[TokenMarketState], bool]

RECONCILE_POLICY = RetryPolicy(max_attempts=3, delay_seconds=1.5)


class TokenCacheStore(Protocol):
    """Relational cache collaborator: one record per contract address."""

    def get(self, token_address: str) -> Optional[CachedTokenRecord]:
        ...

    def put(self, record: CachedTokenRecord) -> None:
        ...


class StaleRead(Exception):
    """Ledger answered, but not with a state worth committing."""
    retryable = True


def supply_freshness(direction: TradeDirection, pre_trade_supply: Optional[Decimal],
                     sell_reduces_supply: bool = False) -> Optional[FreshnessCheck]:
    """
    Predicate telling whether a post-trade read reflects our trade.

    Buys always mint, so supply must be strictly above the pre-trade value.
    Sells only shrink supply when the contract burns returned tokens; otherwise
    any valid read is accepted.
    """
    if pre_trade_supply is None:
        return None
    direction = TradeDirection.parse(direction)
    if direction is TradeDirection.BUY:
        return lambda state: state.current_supply > pre_trade_supply
    if sell_reduces_supply:
        return lambda state: state.current_supply < pre_trade_supply
    return None


class StateReconciler:
    def __init__(
        self,
        ledger,
        cache: TokenCacheStore,
        policy: RetryPolicy = RECONCILE_POLICY,
        metrics: Optional[MetricsRecorder] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.cache = cache
        self.policy = policy
        self.metrics = metrics
        self._sleep = sleep

    def _record(self, result: str) -> None:
        if self.metrics:
            self.metrics.record_reconcile_attempt(result)

    @staticmethod
    def _should_retry(exc: BaseException) -> bool:
        if isinstance(exc, StaleRead):
            return True
        return isinstance(exc, TradeError) and exc.recoverable

    async def reconcile(self, token_address: str, is_fresh: Optional[FreshnessCheck] = None,
                        policy: Optional[RetryPolicy] = None) -> Optional[CachedTokenRecord]:
        """
        Commit the first valid, fresh ledger read into the cache.

        Returns:
            The committed record, or None when attempts ran out or a read or
            cache write failed (cache left as-is)
        """
        async def attempt() -> TokenMarketState:
            try:
                state = await self.ledger.get_market_state(token_address)
            except Exception:
                self._record("failed")
                raise
            if state is None or state.current_supply <= 0:
                self._record("stale")
                raise StaleRead(f"{token_address} returned no supply yet")
            if is_fresh is not None and not is_fresh(state):
                self._record("stale")
                raise StaleRead(f"{token_address} supply {state.current_supply} does not reflect the trade yet")
            return state

        try:
            state = await retry_async(
                attempt,
                policy or self.policy,
                classifier=self._should_retry,
                sleep=self._sleep,
                description=f"reconcile {token_address}",
            )
        except (StaleRead, TradeError) as exc:
            self._record("gave_up")
            logger.warning(f"Cache for {token_address} left stale after reconcile: {exc}")
            return None
        except Exception as exc:
            self._record("gave_up")
            logger.error(
                f"Cache for {token_address} left stale: unexpected ledger error "
                f"({type(exc).__name__}: {exc})",
                exc_info=True,
            )
            return None

        record = CachedTokenRecord.from_state(state)
        try:
            self.cache.put(record)
        except Exception as exc:
            self._record("gave_up")
            logger.error(f"Cache write for {token_address} failed, record not committed: {exc}", exc_info=True)
            return None
        self._record("committed")
        logger.info(
            f"Reconciled {token_address}: price={state.unit_price} supply={state.current_supply} "
            f"completed={state.completed}"
        )
        return record
