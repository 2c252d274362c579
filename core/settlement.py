"""
Settlement Event Parser

Turns a confirmation receipt into a SettlementReceipt. Logs are matched by
emitting contract and topic0 signature hash, then decoded into one typed
variant per event kind. The realized counter leg sits at a fixed position in
the decoded arguments (who, tokenAmount, counterAmount):

    buy  -> tokenAmount   (tokens received)
    sell -> counterAmount (settlement currency received)
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union
import logging

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from core.contract_abi import (
    TOKEN_CREATED_SIGNATURE,
    TOKENS_BOUGHT_SIGNATURE,
    TOKENS_SOLD_SIGNATURE,
)
from core.exceptions import LedgerDecodeError, SettlementUnconfirmed, ZeroPayoutAnomaly
from core.models import SettlementReceipt, SettlementStatus, TradeDirection, from_base_units

logger = logging.getLogger(__name__)


class EventKind(Enum):
    TOKEN_CREATED = "TokenCreated"
    TOKENS_BOUGHT = "TokensBought"
    TOKENS_SOLD = "TokensSold"


@dataclass(frozen=True)
class TokenCreatedEvent:
    token_address: str
    kind: EventKind = EventKind.TOKEN_CREATED


@dataclass(frozen=True)
class TradeEvent:
    """TokensBought / TokensSold, arguments kept in ABI order."""
    kind: EventKind
    trader: str
    token_amount: int
    counter_amount: int

    @property
    def args(self) -> Tuple[str, int, int]:
        return (self.trader, self.token_amount, self.counter_amount)


@dataclass(frozen=True)
class NoMatchingEvent:
    kind: EventKind
    logs_scanned: int


DecodedEvent = Union[TokenCreatedEvent, TradeEvent]

EXPECTED_EVENT = {
    TradeDirection.BUY: EventKind.TOKENS_BOUGHT,
    TradeDirection.SELL: EventKind.TOKENS_SOLD,
}
REALIZED_FIELD = {
    TradeDirection.BUY: 1,
    TradeDirection.SELL: 2,
}


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return Web3.to_bytes(hexstr=value)


def event_topic(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))


class EventDecoder:
    """Decodes logs emitted by one contract, keyed by topic0."""

    def __init__(self, contract_address: str):
        self.contract_address = Web3.to_checksum_address(contract_address)
        self._topics: Dict[bytes, EventKind] = {
            event_topic(TOKEN_CREATED_SIGNATURE): EventKind.TOKEN_CREATED,
            event_topic(TOKENS_BOUGHT_SIGNATURE): EventKind.TOKENS_BOUGHT,
            event_topic(TOKENS_SOLD_SIGNATURE): EventKind.TOKENS_SOLD,
        }

    def decode_log(self, log: Any) -> Optional[DecodedEvent]:
        """Decoded event, or None when the log is not one of ours."""
        if Web3.to_checksum_address(log["address"]) != self.contract_address:
            return None
        topics = [_as_bytes(t) for t in log["topics"]]
        if not topics:
            return None
        kind = self._topics.get(topics[0])
        if kind is None:
            return None

        if len(topics) != 2:
            raise LedgerDecodeError(f"{kind.value} log has {len(topics)} topics, expected 2")
        indexed_address = Web3.to_checksum_address(topics[1][-20:])

        if kind is EventKind.TOKEN_CREATED:
            return TokenCreatedEvent(token_address=indexed_address)

        try:
            token_amount, counter_amount = abi_decode(["uint256", "uint256"], _as_bytes(log["data"]))
        except DecodingError as exc:
            raise LedgerDecodeError(f"Malformed {kind.value} data: {exc}", original=exc) from exc
        return TradeEvent(kind=kind, trader=indexed_address,
                          token_amount=token_amount, counter_amount=counter_amount)

    def find(self, receipt: Any, kind: EventKind) -> Union[DecodedEvent, NoMatchingEvent]:
        logs = receipt["logs"]
        for log in logs:
            event = self.decode_log(log)
            if event is not None and event.kind is kind:
                return event
        return NoMatchingEvent(kind=kind, logs_scanned=len(logs))


def gas_cost(receipt: Any) -> Decimal:
    used = receipt.get("gasUsed", 0) or 0
    price = receipt.get("effectiveGasPrice", 0) or 0
    return from_base_units(int(used) * int(price))


class SettlementParser:
    def __init__(self, contract_address: str):
        self.decoder = EventDecoder(contract_address)

    def parse(self, receipt: Any, direction: TradeDirection,
              token_address: Optional[str] = None) -> SettlementReceipt:
        """
        Build the SettlementReceipt for a confirmed trade.

        A reverted receipt is returned as-is with status REVERTED; the caller
        decides how to surface it.

        Raises:
            SettlementUnconfirmed: success status but no trade event
            ZeroPayoutAnomaly: trade event with a realized amount of zero
        """
        direction = TradeDirection.parse(direction)
        raw_hash = receipt["transactionHash"]
        tx_hash = raw_hash if isinstance(raw_hash, str) else Web3.to_hex(raw_hash)
        block_number = receipt.get("blockNumber")
        cost = gas_cost(receipt)

        if receipt["status"] != 1:
            return SettlementReceipt(
                tx_hash=tx_hash,
                realized_amount=Decimal("0"),
                gas_cost=cost,
                status=SettlementStatus.REVERTED,
                block_number=block_number,
            )

        expected = EXPECTED_EVENT[direction]
        event = self.decoder.find(receipt, expected)
        if isinstance(event, NoMatchingEvent):
            logger.error(
                f"{expected.value} event not found in {tx_hash} "
                f"({event.logs_scanned} logs scanned); settlement unconfirmed"
            )
            raise SettlementUnconfirmed(
                f"Transaction {tx_hash} succeeded but emitted no {expected.value} event",
                token_address=token_address,
                tx_hash=tx_hash,
            )

        realized_raw = event.args[REALIZED_FIELD[direction]]
        if realized_raw == 0:
            logger.critical(
                f"ZERO PAYOUT: {tx_hash} succeeded but {expected.value} reports 0 realized "
                f"({direction.value}, token={token_address})"
            )
            raise ZeroPayoutAnomaly(
                f"{direction.value.capitalize()} {tx_hash} confirmed but {expected.value} "
                f"reports 0 settled. The contract's liquidity snapshot was stale.",
                token_address=token_address,
                tx_hash=tx_hash,
            )

        return SettlementReceipt(
            tx_hash=tx_hash,
            realized_amount=from_base_units(realized_raw),
            gas_cost=cost,
            status=SettlementStatus.SUCCESS,
            block_number=block_number,
            event=event,
        )

    def created_token(self, receipt: Any) -> Optional[str]:
        event = self.decoder.find(receipt, EventKind.TOKEN_CREATED)
        if isinstance(event, NoMatchingEvent):
            return None
        return event.token_address
