"""
Transaction Submitter

Builds, signs and broadcasts buy/sell/create transactions, then waits for
the confirmation receipt and hands it to the settlement parser.

Safety:
- Slippage floor on buys is computed from the quoted amount, in base units
- Sells run the token approval (exact amount by default) to confirmation first
- One in-flight submission per (wallet, token, direction)
- A confirmation timeout re-awaits the same hash; it never re-sends
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple
import logging
import time

from core.exceptions import (
    ConfirmationTimeout,
    NetworkFailure,
    TradeError,
    TradeInFlight,
    TransactionReverted,
    UserRejected,
)
from core.ledger import LedgerClient, classify_revert, translate_error
from core.models import (
    SettlementReceipt,
    TradeDirection,
    TradeIntent,
    to_base_units,
)
from core.settlement import SettlementParser

logger = logging.getLogger(__name__)

MAX_UINT256 = 2 ** 256 - 1


@dataclass
class SubmissionResult:
    receipt: SettlementReceipt
    approval_tx_hash: Optional[str] = None
    confirmation_seconds: float = 0.0


class InFlightGuard:
    """Rejects a second submission for a key that is still pending."""

    def __init__(self):
        self._active: Set[Tuple] = set()

    def is_active(self, key: Tuple) -> bool:
        return key in self._active

    @contextmanager
    def hold(self, key: Tuple):
        if key in self._active:
            wallet, token, direction = key
            raise TradeInFlight(
                f"A {direction} for {token} from {wallet} is already awaiting confirmation",
                token_address=token,
            )
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


class TransactionSubmitter:
    def __init__(
        self,
        ledger: LedgerClient,
        parser: Optional[SettlementParser] = None,
        confirmation_timeout: float = 120.0,
        confirmation_attempts: int = 2,
        in_flight: Optional[InFlightGuard] = None,
        approve_exact_amount: bool = True,
    ):
        if confirmation_attempts < 1:
            raise ValueError("confirmation_attempts must be >= 1")
        self.ledger = ledger
        self.parser = parser or SettlementParser(ledger.trading_address)
        self.confirmation_timeout = confirmation_timeout
        self.confirmation_attempts = confirmation_attempts
        self.in_flight = in_flight or InFlightGuard()
        self.approve_exact_amount = approve_exact_amount

    # ===== Public operations =====

    async def submit_buy(self, intent: TradeIntent) -> SubmissionResult:
        """
        buyTokens(token, minTokensOut) with value = input amount.

        minTokensOut = quoted tokens * (1 - slippage), so a quote of 100
        tokens at 2% slippage yields a floor of 98 * 10^18.
        """
        if intent.direction is not TradeDirection.BUY:
            raise ValueError(f"submit_buy called with a {intent.direction.value} intent")
        signer = self._signer_for(intent)
        token = intent.token_address
        min_out = to_base_units(intent.min_counter_out)
        value = to_base_units(intent.input_amount)

        with self.in_flight.hold(intent.in_flight_key):
            logger.info(
                f"Submitting buy: {intent.input_amount} -> >= {intent.min_counter_out} tokens "
                f"of {token} (slippage {intent.slippage_tolerance})"
            )
            tx = await self._guarded(
                lambda: self.ledger.build_buy(token, min_out, value, signer.address), token)
            started = time.monotonic()
            tx_hash = await self._send(signer, tx, token)
            raw_receipt = await self._await_receipt(tx_hash, token)
            receipt = await self._settle(raw_receipt, TradeDirection.BUY, token)
            return SubmissionResult(receipt=receipt, confirmation_seconds=time.monotonic() - started)

    async def submit_sell(self, intent: TradeIntent,
                          before_sell: Optional[Callable[[], Awaitable[None]]] = None) -> SubmissionResult:
        """
        Approve (if allowance is short) then sellTokens(token, amount).

        before_sell runs after a confirmed approval and before the sell is built;
        raising from it aborts the sell with the approval left in place.
        """
        if intent.direction is not TradeDirection.SELL:
            raise ValueError(f"submit_sell called with a {intent.direction.value} intent")
        signer = self._signer_for(intent)
        token = intent.token_address
        amount = to_base_units(intent.input_amount)

        with self.in_flight.hold(intent.in_flight_key):
            approval_hash = await self._ensure_allowance(signer, token, amount)
            try:
                if approval_hash and before_sell is not None:
                    await before_sell()
                logger.info(f"Submitting sell: {intent.input_amount} tokens of {token}")
                tx = await self._guarded(
                    lambda: self.ledger.build_sell(token, amount, signer.address), token)
                started = time.monotonic()
                tx_hash = await self._send(signer, tx, token)
                raw_receipt = await self._await_receipt(tx_hash, token)
                receipt = await self._settle(raw_receipt, TradeDirection.SELL, token)
            except TradeError:
                if approval_hash:
                    logger.info(
                        f"Sell of {token} failed after approval {approval_hash}; "
                        f"the allowance remains outstanding"
                    )
                raise
            return SubmissionResult(
                receipt=receipt,
                approval_tx_hash=approval_hash,
                confirmation_seconds=time.monotonic() - started,
            )

    async def submit_create(self, name: str, symbol: str, metadata: str = "") -> Tuple[str, Optional[str]]:
        """createToken(name, symbol, metadata). Returns (tx_hash, new token address or None)."""
        signer = self.ledger.ctx.require_signer()
        tx = await self._guarded(
            lambda: self.ledger.build_create(name, symbol, metadata, signer.address), None)
        tx_hash = await self._send(signer, tx, None)
        raw_receipt = await self._await_receipt(tx_hash, None)
        if raw_receipt["status"] != 1:
            raise await self._revert_error(raw_receipt, tx_hash, None)
        token_address = self.parser.created_token(raw_receipt)
        if token_address is None:
            logger.warning(f"createToken {tx_hash} confirmed without a TokenCreated event")
        else:
            logger.info(f"Token {symbol} created at {token_address} ({tx_hash})")
        return tx_hash, token_address

    # ===== Internals =====

    def _signer_for(self, intent: TradeIntent):
        signer = self.ledger.ctx.require_signer()
        if signer.address.lower() != intent.wallet_address.lower():
            raise UserRejected(
                f"Connected wallet {signer.address} does not match trade wallet {intent.wallet_address}",
                token_address=intent.token_address,
            )
        return signer

    async def _ensure_allowance(self, signer, token: str, amount: int) -> Optional[str]:
        allowance = await self.ledger.get_allowance(token, signer.address, self.ledger.trading_address)
        if allowance >= amount:
            logger.debug(f"Allowance {allowance} covers sell of {amount} for {token}")
            return None

        approve_amount = amount if self.approve_exact_amount else MAX_UINT256
        logger.info(f"Approving {approve_amount} of {token} for {self.ledger.trading_address} (current {allowance})")
        tx = await self._guarded(
            lambda: self.ledger.build_approve(token, approve_amount, signer.address), token)
        approval_hash = await self._send(signer, tx, token)
        raw_receipt = await self._await_receipt(approval_hash, token)
        if raw_receipt["status"] != 1:
            raise TransactionReverted(
                f"Approval {approval_hash} reverted; sell not submitted",
                token_address=token,
                tx_hash=approval_hash,
            )
        logger.info(f"Approval confirmed: {approval_hash}")
        return approval_hash

    async def _guarded(self, call: Callable[[], Awaitable[Any]], token: Optional[str]) -> Any:
        """Run a ledger call, translating transport and revert errors."""
        try:
            return await call()
        except TradeError:
            raise
        except Exception as exc:
            translated = translate_error(exc, token_address=token)
            if translated is None:
                raise
            raise translated from exc

    async def _send(self, signer, tx: Dict[str, Any], token: Optional[str]) -> str:
        tx_hash = await self._guarded(lambda: signer.send_transaction(tx), token)
        logger.info(f"Transaction broadcast: {tx_hash}")
        return tx_hash

    async def _await_receipt(self, tx_hash: str, token: Optional[str]) -> Any:
        for attempt in range(self.confirmation_attempts):
            try:
                return await self._guarded(
                    lambda: self.ledger.wait_for_receipt(tx_hash, self.confirmation_timeout), token)
            except (ConfirmationTimeout, NetworkFailure) as exc:
                logger.warning(
                    f"No receipt for {tx_hash} yet ({type(exc).__name__}), "
                    f"wait {attempt + 1}/{self.confirmation_attempts}"
                )

        raise ConfirmationTimeout(
            f"Transaction {tx_hash} not confirmed after "
            f"{self.confirmation_attempts} x {self.confirmation_timeout:.0f}s; "
            f"check the hash before retrying",
            token_address=token,
            tx_hash=tx_hash,
        )

    async def _revert_error(self, raw_receipt: Any, tx_hash: str, token: Optional[str]) -> TradeError:
        reason = await self.ledger.replay_revert_reason(tx_hash, raw_receipt.get("blockNumber"))
        if reason and reason.lower().startswith("execution reverted: "):
            reason = reason[len("execution reverted: "):]
        logger.error(f"Transaction {tx_hash} reverted: {reason or 'no reason recovered'}")
        return classify_revert(reason or "", token_address=token, tx_hash=tx_hash)

    async def _settle(self, raw_receipt: Any, direction: TradeDirection, token: str) -> SettlementReceipt:
        receipt = self.parser.parse(raw_receipt, direction, token_address=token)
        if not receipt.succeeded:
            raise await self._revert_error(raw_receipt, receipt.tx_hash, token)
        logger.info(
            f"{direction.value.capitalize()} settled: {receipt.tx_hash} realized "
            f"{receipt.realized_amount} (gas {receipt.gas_cost})"
        )
        return receipt
