"""
Quote Calculator

Local linear approximation between the token leg and the settlement-currency
leg at the latest known unit price. The ledger integrates along the curve, so
realized amounts drift from these quotes for non-trivial sizes; that drift is
bounded by slippage tolerance only.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, localcontext
from typing import Optional, Union

from core.models import TradeDirection

DISPLAY_PLACES = Decimal("0.000001")
PERCENT_PRESETS = (25, 50, 75, 100)

Number = Union[Decimal, int, float, str]


def _dec(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _check_price(price: Decimal) -> None:
    if price <= 0:
        raise ValueError(f"Unit price must be positive, got {price}")


def token_to_counter(token_amount: Number, unit_price: Number) -> Decimal:
    price = _dec(unit_price)
    _check_price(price)
    with localcontext() as ctx:
        ctx.prec = 40
        return _dec(token_amount) * price


def counter_to_token(counter_amount: Number, unit_price: Number) -> Decimal:
    price = _dec(unit_price)
    _check_price(price)
    with localcontext() as ctx:
        ctx.prec = 40
        return _dec(counter_amount) / price


def for_display(amount: Decimal) -> str:
    return str(amount.quantize(DISPLAY_PLACES, rounding=ROUND_DOWN))


@dataclass
class QuoteForm:
    """
    Two linked input fields (token amount, settlement amount).

    Editing either field recomputes the other at the same unit price, so the
    pair stays consistent to six decimal places.
    """
    unit_price: Decimal
    token_amount: Optional[Decimal] = None
    counter_amount: Optional[Decimal] = None

    def __post_init__(self):
        self.unit_price = _dec(self.unit_price)
        _check_price(self.unit_price)

    def set_token_amount(self, value: Optional[Number]) -> "QuoteForm":
        if value in (None, ""):
            self.token_amount = self.counter_amount = None
            return self
        self.token_amount = _dec(value)
        self.counter_amount = token_to_counter(self.token_amount, self.unit_price)
        return self

    def set_counter_amount(self, value: Optional[Number]) -> "QuoteForm":
        if value in (None, ""):
            self.token_amount = self.counter_amount = None
            return self
        self.counter_amount = _dec(value)
        self.token_amount = counter_to_token(self.counter_amount, self.unit_price)
        return self

    def fill_percentage(self, direction: TradeDirection, percentage: int,
                        counter_balance: Number, token_balance: Number) -> "QuoteForm":
        """Fill from a share of the wallet: currency balance on buys, token balance on sells."""
        if not 0 < percentage <= 100:
            raise ValueError(f"Percentage must be in (0, 100], got {percentage}")
        share = Decimal(percentage) / Decimal(100)
        if TradeDirection.parse(direction) is TradeDirection.BUY:
            amount = _dec(counter_balance) * share
            if amount > 0:
                self.set_counter_amount(amount)
        else:
            amount = _dec(token_balance) * share
            if amount > 0:
                self.set_token_amount(amount)
        return self

    def display(self) -> dict:
        return {
            "token_amount": for_display(self.token_amount) if self.token_amount is not None else "",
            "counter_amount": for_display(self.counter_amount) if self.counter_amount is not None else "",
        }

    def legs(self, direction: TradeDirection) -> tuple:
        """(input_amount, quoted_amount) for a TradeIntent in the given direction."""
        if self.token_amount is None or self.counter_amount is None:
            raise ValueError("Quote form is empty")
        if TradeDirection.parse(direction) is TradeDirection.BUY:
            return self.counter_amount, self.token_amount
        return self.token_amount, self.counter_amount
