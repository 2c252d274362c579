"""
Settlement Engine

Single entry point for trades. Orchestrates one trade end to end:

    fresh ledger read -> Lifecycle Gate -> funds check -> Liquidity Guard (sell)
    -> Transaction Submitter -> Settlement Event Parser -> State Reconciler
    -> audit log + metrics

The cache is never consulted for a go/no-go decision; it only seeds quotes.
Every refusal is audited, counted, and re-raised with its specific type.
When a failed trade had already been broadcast, the token is resynced too.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple
import logging

from core.audit_log import TradeAuditLogger
from core.exceptions import (
    InsufficientFunds,
    LiquidityShortfall,
    SlippageExceeded,
    TradeError,
    ZeroPayoutAnomaly,
)
from core.lifecycle import LifecycleGate, LockPolicy
from core.liquidity import DEFAULT_SELL_FEE, LiquidityAssessment, LiquidityGuard
from core.models import (
    DEFAULT_SLIPPAGE,
    CachedTokenRecord,
    TokenMarketState,
    TradeDirection,
    TradeIntent,
    TradeOutcome,
    normalize_address,
)
from core.quote import QuoteForm
from core.reconciler import StateReconciler, TokenCacheStore, supply_freshness
from core.submitter import SubmissionResult, TransactionSubmitter
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


@dataclass
class EngineSettings:
    fee_rate: Decimal = DEFAULT_SELL_FEE
    default_slippage: Decimal = DEFAULT_SLIPPAGE
    lock_policy: LockPolicy = LockPolicy.ADVISORY
    enforce_sell_slippage: bool = False
    sell_reduces_supply: bool = False
    currency_symbol: str = "TRUST"


class SettlementEngine:
    def __init__(
        self,
        ledger,
        submitter: TransactionSubmitter,
        reconciler: StateReconciler,
        cache: TokenCacheStore,
        settings: Optional[EngineSettings] = None,
        audit: Optional[TradeAuditLogger] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.ledger = ledger
        self.submitter = submitter
        self.reconciler = reconciler
        self.cache = cache
        self.settings = settings or EngineSettings()
        self.audit = audit
        self.metrics = metrics
        self.gate = LifecycleGate(self.settings.lock_policy)
        self.guard = LiquidityGuard(self.settings.fee_rate, self.settings.currency_symbol)

    # ===== Quoting =====

    async def quote_form(self, token_address: str, prefer_cache: bool = True) -> QuoteForm:
        """Linked input pair priced from the cache when present, else the ledger."""
        token_address = normalize_address(token_address, "token address")
        record = self.cache.get(token_address) if prefer_cache else None
        if record is not None and record.unit_price > 0:
            return QuoteForm(unit_price=record.unit_price)
        price = await self.ledger.get_current_price(token_address)
        return QuoteForm(unit_price=price)

    async def prepare_intent(
        self,
        token_address: str,
        wallet_address: str,
        direction: TradeDirection,
        amount: Decimal,
        slippage: Optional[Decimal] = None,
    ) -> TradeIntent:
        """
        Build a TradeIntent from the amount the user spends: settlement currency
        on buys, tokens on sells. The counter leg is quoted at the ledger's
        current price.
        """
        direction = TradeDirection.parse(direction)
        form = await self.quote_form(token_address, prefer_cache=False)
        if direction is TradeDirection.BUY:
            form.set_counter_amount(amount)
        else:
            form.set_token_amount(amount)
        input_amount, quoted_amount = form.legs(direction)
        return TradeIntent(
            token_address=token_address,
            wallet_address=wallet_address,
            direction=direction,
            input_amount=input_amount,
            quoted_amount=quoted_amount,
            slippage_tolerance=self.settings.default_slippage if slippage is None else slippage,
        )

    # ===== Trades =====

    async def buy(self, intent: TradeIntent) -> TradeOutcome:
        if intent.direction is not TradeDirection.BUY:
            raise ValueError("buy() requires a buy intent")
        try:
            state = await self._fresh_state(intent)
            await self._require_native_funds(intent)
            result = await self.submitter.submit_buy(intent)
        except TradeError as exc:
            await self._fail(intent, exc)
            raise
        return await self._settled(intent, state, result)

    async def sell(self, intent: TradeIntent, acknowledge_shortfall: bool = False) -> TradeOutcome:
        """
        Sell intent.input_amount tokens.

        A payout capped by the contract's balance raises LiquidityShortfall
        unless acknowledge_shortfall is set; the warning is then carried on the
        outcome. When an approval had to be confirmed first, the gate and the
        guard run again against a fresh read before sellTokens is built.
        """
        if intent.direction is not TradeDirection.SELL:
            raise ValueError("sell() requires a sell intent")
        assessment: Optional[LiquidityAssessment] = None

        async def recheck_after_approval() -> None:
            nonlocal state, assessment
            state = await self._fresh_state(intent)
            assessment = await self._preflight_sell(intent, state, acknowledge_shortfall, record=False)

        try:
            state = await self._fresh_state(intent)
            await self._require_token_funds(intent)
            assessment = await self._preflight_sell(intent, state, acknowledge_shortfall)
            result = await self.submitter.submit_sell(intent, before_sell=recheck_after_approval)
        except TradeError as exc:
            await self._fail(intent, exc, assessment)
            raise
        warnings: List[str] = []
        if assessment.needs_acknowledgment:
            warnings.append(assessment.warning_message(self.settings.currency_symbol))
        return await self._settled(intent, state, result, assessment, warnings)

    async def create_token(self, name: str, symbol: str, metadata: str = "") -> Tuple[str, Optional[str]]:
        """Launch a token. Returns (tx_hash, token address if the event was found)."""
        try:
            tx_hash, token_address = await self.submitter.submit_create(name, symbol, metadata)
        except TradeError as exc:
            self._reject(None, exc)
            raise
        if self.audit:
            self.audit.log_created(tx_hash, token_address, symbol)
        if token_address:
            await self.reconciler.reconcile(token_address)
        return tx_hash, token_address

    async def sync_token(self, token_address: str) -> Optional[CachedTokenRecord]:
        """Pull one token's ledger state into the cache without trading."""
        return await self.reconciler.reconcile(normalize_address(token_address, "token address"))

    # ===== Internals =====

    async def _fresh_state(self, intent: TradeIntent) -> TokenMarketState:
        state = await self.ledger.get_market_state(intent.token_address)
        self.gate.check(state, intent.direction)
        return state

    async def _require_native_funds(self, intent: TradeIntent) -> None:
        balance = await self.ledger.get_native_balance(intent.wallet_address)
        if balance < intent.input_amount:
            raise InsufficientFunds(
                f"Wallet holds {balance} {self.settings.currency_symbol}, "
                f"buy needs {intent.input_amount}",
                token_address=intent.token_address,
            )

    async def _require_token_funds(self, intent: TradeIntent) -> None:
        balance = await self.ledger.get_token_balance(intent.token_address, intent.wallet_address)
        if balance < intent.input_amount:
            raise InsufficientFunds(
                f"Wallet holds {balance} tokens, sell needs {intent.input_amount}",
                token_address=intent.token_address,
            )

    async def _current_fee_rate(self) -> Decimal:
        """The ledger's feePercent; the configured rate only when the read fails."""
        try:
            return await self.ledger.get_fee_rate()
        except TradeError as exc:
            logger.warning(f"feePercent read failed ({exc}); using configured fee {self.settings.fee_rate}")
            return self.settings.fee_rate

    async def _preflight_sell(self, intent: TradeIntent, state: TokenMarketState,
                              acknowledge_shortfall: bool, record: bool = True) -> LiquidityAssessment:
        assessment = await self._assess_liquidity(intent, state, acknowledge_shortfall, record)
        if self.settings.enforce_sell_slippage:
            self._check_sell_floor(intent, assessment)
        return assessment

    async def _assess_liquidity(self, intent: TradeIntent, state: TokenMarketState,
                                acknowledge_shortfall: bool, record: bool = True) -> LiquidityAssessment:
        contract_balance = await self.ledger.get_contract_balance()
        fee_rate = await self._current_fee_rate()
        try:
            assessment = self.guard.require(
                intent.input_amount, state.unit_price, contract_balance,
                acknowledge_shortfall=acknowledge_shortfall,
                fee_rate=fee_rate,
            )
        except LiquidityShortfall as exc:
            exc.token_address = intent.token_address
            if self.metrics:
                self.metrics.record_liquidity_shortfall()
            raise
        if record and assessment.needs_acknowledgment and self.metrics:
            self.metrics.record_liquidity_shortfall()
        return assessment

    def _check_sell_floor(self, intent: TradeIntent, assessment: LiquidityAssessment) -> None:
        floor = intent.min_counter_out
        if assessment.capped_payout < floor:
            raise SlippageExceeded(
                f"Expected payout {assessment.capped_payout} is below the "
                f"{intent.slippage_tolerance * 100}% slippage floor of {floor}",
                token_address=intent.token_address,
            )

    async def _settled(self, intent: TradeIntent, pre_state: TokenMarketState,
                       result: SubmissionResult, assessment: Optional[LiquidityAssessment] = None,
                       warnings: Optional[List[str]] = None) -> TradeOutcome:
        direction = intent.direction.value
        is_fresh = supply_freshness(intent.direction, pre_state.current_supply,
                                    self.settings.sell_reduces_supply)
        record = await self.reconciler.reconcile(intent.token_address, is_fresh=is_fresh)

        outcome = TradeOutcome(
            intent=intent,
            receipt=result.receipt,
            approval_tx_hash=result.approval_tx_hash,
            liquidity=assessment,
            reconciled=record is not None,
            warnings=list(warnings or []),
        )
        if record is None:
            outcome.warnings.append("Cache not yet reconciled; it will catch up on the next refresh")

        if self.metrics:
            self.metrics.record_trade(direction, "settled")
            self.metrics.record_confirmation(direction, result.confirmation_seconds)
        if self.audit:
            self.audit.log_settled(outcome)
        logger.info(
            f"{direction.upper()} {intent.token_address}: realized {result.receipt.realized_amount} "
            f"(tx {result.receipt.tx_hash}, reconciled={outcome.reconciled})"
        )
        return outcome

    def _reject(self, intent: Optional[TradeIntent], exc: TradeError,
                assessment: Optional[LiquidityAssessment] = None) -> None:
        direction = intent.direction.value if intent is not None else "create"
        if isinstance(exc, ZeroPayoutAnomaly):
            outcome = "zero_payout"
        elif exc.tx_hash:
            outcome = "failed"
        else:
            outcome = "rejected"

        if self.metrics:
            self.metrics.record_rejection(exc.reason)
            self.metrics.record_trade(direction, outcome)
            if isinstance(exc, ZeroPayoutAnomaly):
                self.metrics.record_zero_payout(direction)
        if self.audit:
            self.audit.log_rejected(intent, exc, liquidity=assessment or getattr(exc, "assessment", None))

        log = logger.info if exc.reason == "user_rejected" else logger.warning
        log(f"{direction} refused ({exc.reason}): {exc}")

    async def _fail(self, intent: TradeIntent, exc: TradeError,
                    assessment: Optional[LiquidityAssessment] = None) -> None:
        """Record the refusal; a transaction that reached the chain may have moved state, so resync."""
        self._reject(intent, exc, assessment)
        if exc.tx_hash:
            record = await self.reconciler.reconcile(intent.token_address)
            logger.info(
                f"Post-failure resync of {intent.token_address} after {exc.tx_hash}: "
                f"{'committed' if record is not None else 'cache left stale'}"
            )
