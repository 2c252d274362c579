"""
Liquidity Guard (sell path only)

The trading contract pays sellers out of settlement currency deposited by
buyers. Before a sell is submitted we compare the expected payout with the
contract's balance. The check is advisory: the balance can move before the
transaction lands, which the settlement parser catches afterwards.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import logging

from core.exceptions import LiquidityExhausted, LiquidityShortfall
from core.quote import for_display

logger = logging.getLogger(__name__)

DEFAULT_SELL_FEE = Decimal("0.03")


class LiquidityStatus(Enum):
    SUFFICIENT = "sufficient"
    CAPPED = "capped"


@dataclass(frozen=True)
class LiquidityAssessment:
    sell_amount: Decimal
    unit_price: Decimal
    fee_rate: Decimal
    contract_balance: Decimal
    expected_payout: Decimal
    capped_payout: Decimal
    shortfall: Decimal
    status: LiquidityStatus

    @property
    def needs_acknowledgment(self) -> bool:
        return self.status is LiquidityStatus.CAPPED

    def warning_message(self, currency: str = "") -> str:
        unit = f" {currency}" if currency else ""
        return (
            f"Contract has insufficient liquidity: payout capped to "
            f"{for_display(self.capped_payout)}{unit} instead of "
            f"{for_display(self.expected_payout)}{unit} "
            f"(shortfall {for_display(self.shortfall)}{unit})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sell_amount": str(self.sell_amount),
            "unit_price": str(self.unit_price),
            "fee_rate": str(self.fee_rate),
            "contract_balance": str(self.contract_balance),
            "expected_payout": str(self.expected_payout),
            "capped_payout": str(self.capped_payout),
            "shortfall": str(self.shortfall),
            "status": self.status.value,
        }


def expected_payout(sell_amount: Decimal, unit_price: Decimal, fee_rate: Decimal) -> Decimal:
    return sell_amount * unit_price * (Decimal("1") - fee_rate)


class LiquidityGuard:
    def __init__(self, fee_rate: Decimal = DEFAULT_SELL_FEE, currency: str = ""):
        self.fee_rate = self._validated(fee_rate)
        self.currency = currency

    @staticmethod
    def _validated(fee_rate) -> Decimal:
        fee_rate = Decimal(str(fee_rate))
        if not Decimal("0") <= fee_rate < Decimal("1"):
            raise ValueError(f"Fee rate must be in [0, 1), got {fee_rate}")
        return fee_rate

    def assess(self, sell_amount: Decimal, unit_price: Decimal,
               contract_balance: Decimal, fee_rate: Optional[Decimal] = None) -> LiquidityAssessment:
        """
        fee_rate overrides the configured rate, e.g. with the ledger's current feePercent.

        Raises:
            LiquidityExhausted: contract holds nothing; never submit
        """
        fee_rate = self.fee_rate if fee_rate is None else self._validated(fee_rate)
        payout = expected_payout(sell_amount, unit_price, fee_rate)

        if contract_balance <= 0:
            logger.warning(f"Sell blocked: trading contract balance is 0, expected payout {payout}")
            raise LiquidityExhausted(
                "Cannot sell: trading contract has 0 balance. "
                "It needs buyers to deposit before sellers can withdraw."
            )

        capped = min(payout, contract_balance)
        shortfall = payout - capped
        status = LiquidityStatus.CAPPED if shortfall > 0 else LiquidityStatus.SUFFICIENT
        assessment = LiquidityAssessment(
            sell_amount=sell_amount,
            unit_price=unit_price,
            fee_rate=fee_rate,
            contract_balance=contract_balance,
            expected_payout=payout,
            capped_payout=capped,
            shortfall=shortfall,
            status=status,
        )
        if status is LiquidityStatus.CAPPED:
            logger.warning(assessment.warning_message(self.currency))
        else:
            logger.debug(f"Liquidity check passed: balance {contract_balance} >= payout {payout}")
        return assessment

    def require(self, sell_amount: Decimal, unit_price: Decimal, contract_balance: Decimal,
                acknowledge_shortfall: bool = False,
                fee_rate: Optional[Decimal] = None) -> LiquidityAssessment:
        """Assess and refuse a capped payout unless the caller acknowledged it."""
        assessment = self.assess(sell_amount, unit_price, contract_balance, fee_rate)
        if assessment.needs_acknowledgment and not acknowledge_shortfall:
            raise LiquidityShortfall(assessment.warning_message(self.currency), assessment=assessment)
        return assessment
