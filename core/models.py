"""
Settlement engine data model.

TokenMarketState is owned by the ledger and read-only here. TradeIntent is
ephemeral, SettlementReceipt immutable, and CachedTokenRecord is the only
thing the engine writes (through the State Reconciler).
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from web3 import Web3

from core.exceptions import InvalidAddressFormat

DEFAULT_SLIPPAGE = Decimal("0.02")
UNLOCK_THRESHOLD_FRACTION = Decimal("0.02")

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(value: Any, field_name: str = "address") -> str:
    """Return the checksum form of a 20-byte hex address or raise InvalidAddressFormat."""
    if not isinstance(value, str) or not _ADDRESS_RE.match(value):
        raise InvalidAddressFormat(f"Invalid {field_name} format: {value!r}")
    return Web3.to_checksum_address(value)


def to_base_units(amount: Decimal) -> int:
    """18-decimal fixed point integer for a human amount."""
    return int(Web3.to_wei(amount, "ether"))


def from_base_units(raw: int) -> Decimal:
    return Decimal(Web3.from_wei(raw, "ether"))


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class TradeDirection(Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: Any) -> "TradeDirection":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


class SettlementStatus(Enum):
    SUCCESS = "success"
    REVERTED = "reverted"


@dataclass(frozen=True)
class TokenMarketState:
    """Authoritative token state as read from the ledger."""
    address: str
    unit_price: Decimal
    current_supply: Decimal
    max_supply: Decimal
    creator_purchased: Decimal
    unlocked: bool
    completed: bool
    name: str = ""
    symbol: str = ""
    creator: str = ""
    creation_time: int = 0

    @property
    def unlock_threshold(self) -> Decimal:
        return self.max_supply * UNLOCK_THRESHOLD_FRACTION

    @property
    def market_cap(self) -> Decimal:
        return self.unit_price * self.current_supply


@dataclass
class TradeIntent:
    """
    One user action. Never persisted.

    input_amount is the leg the user spends (settlement currency on buys,
    tokens on sells); quoted_amount is the counter leg the quote promised.
    """
    token_address: str
    wallet_address: str
    direction: TradeDirection
    input_amount: Decimal
    quoted_amount: Decimal
    slippage_tolerance: Decimal = DEFAULT_SLIPPAGE

    def __post_init__(self):
        self.token_address = normalize_address(self.token_address, "token address")
        self.wallet_address = normalize_address(self.wallet_address, "wallet address")
        self.direction = TradeDirection.parse(self.direction)
        self.input_amount = _as_decimal(self.input_amount)
        self.quoted_amount = _as_decimal(self.quoted_amount)
        self.slippage_tolerance = _as_decimal(self.slippage_tolerance)
        if self.input_amount <= 0:
            raise ValueError("Trade input amount must be positive")
        if self.quoted_amount <= 0:
            raise ValueError("Quoted counter amount must be positive")
        if not (Decimal("0") <= self.slippage_tolerance < Decimal("1")):
            raise ValueError("Slippage tolerance must be in [0, 1)")

    @property
    def min_counter_out(self) -> Decimal:
        return self.quoted_amount * (Decimal("1") - self.slippage_tolerance)

    @property
    def in_flight_key(self) -> tuple:
        return (self.wallet_address, self.token_address, self.direction.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_address": self.token_address,
            "wallet_address": self.wallet_address,
            "direction": self.direction.value,
            "input_amount": str(self.input_amount),
            "quoted_amount": str(self.quoted_amount),
            "slippage_tolerance": str(self.slippage_tolerance),
        }


@dataclass(frozen=True)
class SettlementReceipt:
    tx_hash: str
    realized_amount: Decimal
    gas_cost: Decimal
    status: SettlementStatus
    block_number: Optional[int] = None
    event: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status is SettlementStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "realized_amount": str(self.realized_amount),
            "gas_cost": str(self.gas_cost),
            "status": self.status.value,
            "block_number": self.block_number,
        }


@dataclass
class CachedTokenRecord:
    """Read-cache mirror of TokenMarketState. Never authoritative."""
    address: str
    unit_price: Decimal
    current_supply: Decimal
    max_supply: Decimal = Decimal("0")
    creator_purchased: Decimal = Decimal("0")
    unlocked: bool = False
    completed: bool = False
    name: str = ""
    symbol: str = ""
    market_cap: Decimal = Decimal("0")
    last_synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_state(cls, state: TokenMarketState,
                   synced_at: Optional[datetime] = None) -> "CachedTokenRecord":
        return cls(
            address=state.address,
            unit_price=state.unit_price,
            current_supply=state.current_supply,
            max_supply=state.max_supply,
            creator_purchased=state.creator_purchased,
            unlocked=state.unlocked,
            completed=state.completed,
            name=state.name,
            symbol=state.symbol,
            market_cap=state.market_cap,
            last_synced_at=synced_at or datetime.now(timezone.utc),
        )

    def age_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.last_synced_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "unit_price": str(self.unit_price),
            "current_supply": str(self.current_supply),
            "max_supply": str(self.max_supply),
            "creator_purchased": str(self.creator_purchased),
            "unlocked": self.unlocked,
            "completed": self.completed,
            "name": self.name,
            "symbol": self.symbol,
            "market_cap": str(self.market_cap),
            "last_synced_at": self.last_synced_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedTokenRecord":
        return cls(
            address=data["address"],
            unit_price=Decimal(data["unit_price"]),
            current_supply=Decimal(data["current_supply"]),
            max_supply=Decimal(data.get("max_supply", "0")),
            creator_purchased=Decimal(data.get("creator_purchased", "0")),
            unlocked=bool(data.get("unlocked", False)),
            completed=bool(data.get("completed", False)),
            name=data.get("name", ""),
            symbol=data.get("symbol", ""),
            market_cap=Decimal(data.get("market_cap", "0")),
            last_synced_at=datetime.fromisoformat(data["last_synced_at"]),
        )


@dataclass
class TradeOutcome:
    """Everything the engine knows about one settled trade."""
    intent: TradeIntent
    receipt: SettlementReceipt
    approval_tx_hash: Optional[str] = None
    liquidity: Any = None
    reconciled: bool = False
    warnings: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.to_dict(),
            "receipt": self.receipt.to_dict(),
            "approval_tx_hash": self.approval_tx_hash,
            "liquidity": self.liquidity.to_dict() if self.liquidity is not None else None,
            "reconciled": self.reconciled,
            "warnings": list(self.warnings),
            "timestamp": self.timestamp.isoformat(),
        }
