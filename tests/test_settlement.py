"""
Tests for the settlement event parser.
"""
from decimal import Decimal

import pytest

from core.exceptions import LedgerDecodeError, SettlementUnconfirmed, ZeroPayoutAnomaly
from core.models import SettlementStatus, TradeDirection
from core.settlement import (
    EventDecoder,
    EventKind,
    NoMatchingEvent,
    SettlementParser,
    TradeEvent,
    gas_cost,
)
from tests.helpers import (
    OTHER_CONTRACT,
    TOKEN,
    TRADING_CONTRACT,
    WALLET,
    created_log,
    make_receipt,
    trade_log,
)


class TestEventDecoder:

    def setup_method(self):
        self.decoder = EventDecoder(TRADING_CONTRACT)

    def test_decodes_tokens_bought(self):
        event = self.decoder.decode_log(trade_log("TokensBought", "500", "10"))
        assert isinstance(event, TradeEvent)
        assert event.kind is EventKind.TOKENS_BOUGHT
        assert event.trader == WALLET
        assert event.token_amount == 500 * 10 ** 18
        assert event.counter_amount == 10 * 10 ** 18

    def test_decodes_token_created(self):
        event = self.decoder.decode_log(created_log(TOKEN))
        assert event.kind is EventKind.TOKEN_CREATED
        assert event.token_address == TOKEN

    def test_foreign_emitter_ignored(self):
        assert self.decoder.decode_log(trade_log("TokensSold", "1", "1", emitter=OTHER_CONTRACT)) is None

    def test_unknown_topic_ignored(self):
        log = trade_log("TokensSold", "1", "1")
        log["topics"][0] = b"\x00" * 32
        assert self.decoder.decode_log(log) is None

    def test_hex_string_topics_accepted(self):
        log = trade_log("TokensSold", "3", "4")
        log["topics"] = ["0x" + bytes(t).hex() for t in log["topics"]]
        log["data"] = "0x" + log["data"].hex()
        event = self.decoder.decode_log(log)
        assert event.counter_amount == 4 * 10 ** 18

    def test_truncated_data_fails_loudly(self):
        log = trade_log("TokensSold", "3", "4")
        log["data"] = log["data"][:40]
        with pytest.raises(LedgerDecodeError):
            self.decoder.decode_log(log)

    def test_missing_indexed_topic_fails_loudly(self):
        log = trade_log("TokensBought", "3", "4")
        log["topics"] = log["topics"][:1]
        with pytest.raises(LedgerDecodeError):
            self.decoder.decode_log(log)

    def test_find_reports_no_matching_event(self):
        receipt = make_receipt(logs=[trade_log("TokensBought", "1", "1")])
        result = self.decoder.find(receipt, EventKind.TOKENS_SOLD)
        assert result == NoMatchingEvent(kind=EventKind.TOKENS_SOLD, logs_scanned=1)


class TestSettlementParser:

    def setup_method(self):
        self.parser = SettlementParser(TRADING_CONTRACT)

    def test_buy_realizes_token_amount(self):
        receipt = make_receipt(logs=[trade_log("TokensBought", "98.5", "2")])
        settled = self.parser.parse(receipt, TradeDirection.BUY, token_address=TOKEN)
        assert settled.status is SettlementStatus.SUCCESS
        assert settled.realized_amount == Decimal("98.5")
        assert settled.tx_hash == "0x" + "0" * 63 + "1"

    def test_sell_realizes_counter_amount(self):
        receipt = make_receipt(logs=[trade_log("TokensSold", "1000", "19.4")])
        settled = self.parser.parse(receipt, TradeDirection.SELL, token_address=TOKEN)
        assert settled.realized_amount == Decimal("19.4")

    def test_matches_among_unrelated_logs(self):
        receipt = make_receipt(logs=[
            {"address": TOKEN, "topics": [b"\x11" * 32], "data": b""},
            trade_log("TokensSold", "1000", "5", emitter=OTHER_CONTRACT),
            trade_log("TokensSold", "1000", "19.4"),
        ])
        assert self.parser.parse(receipt, "sell").realized_amount == Decimal("19.4")

    def test_zero_payout_with_success_is_anomaly(self):
        receipt = make_receipt(logs=[trade_log("TokensSold", "1000", "0")])
        with pytest.raises(ZeroPayoutAnomaly) as exc_info:
            self.parser.parse(receipt, TradeDirection.SELL, token_address=TOKEN)
        assert exc_info.value.tx_hash.endswith("1")
        assert exc_info.value.recoverable is False

    def test_zero_payout_logged_critical(self, caplog):
        receipt = make_receipt(logs=[trade_log("TokensSold", "1000", "0")])
        with pytest.raises(ZeroPayoutAnomaly):
            self.parser.parse(receipt, TradeDirection.SELL)
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    def test_missing_event_is_unconfirmed(self):
        receipt = make_receipt(logs=[trade_log("TokensBought", "1", "1")])
        with pytest.raises(SettlementUnconfirmed):
            self.parser.parse(receipt, TradeDirection.SELL)

    def test_reverted_receipt_never_a_settlement(self):
        receipt = make_receipt(status=0, logs=[trade_log("TokensSold", "1000", "19.4")])
        settled = self.parser.parse(receipt, TradeDirection.SELL)
        assert settled.status is SettlementStatus.REVERTED
        assert not settled.succeeded
        assert settled.realized_amount == 0

    def test_gas_cost(self):
        receipt = make_receipt(gas_used=100_000, gas_price=2 * 10 ** 9)
        assert gas_cost(receipt) == Decimal("0.0002")

    def test_created_token(self):
        assert self.parser.created_token(make_receipt(logs=[created_log(TOKEN)])) == TOKEN
        assert self.parser.created_token(make_receipt()) is None
