"""
Tests for the ledger boundary: strict decoding, error translation, typed reads.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from core.exceptions import (
    ConfirmationTimeout,
    InsufficientFunds,
    LedgerDecodeError,
    LiquidityExhausted,
    NetworkFailure,
    SlippageExceeded,
    TokenLaunchCompleted,
    TokenLocked,
    TransactionReverted,
    UserRejected,
)
from core.ledger import (
    ChainContext,
    LedgerClient,
    NetworkParams,
    classify_revert,
    decode_token_info,
    translate_error,
)
from infra.retry import RetryPolicy
from tests.helpers import TOKEN, TRADING_CONTRACT, WALLET

E18 = 10 ** 18


def raw_token_info(**overrides):
    fields = {
        "name": "Test Token",
        "symbol": "TEST",
        "metadata": "ipfs://meta",
        "creator": WALLET,
        "creatorAllocation": 25_000 * E18,
        "heldTokens": 0,
        "maxSupply": 1_000_000 * E18,
        "currentSupply": 50_000 * E18,
        "virtualTrust": 30 * E18,
        "virtualTokens": 1_073_000_000 * E18,
        "completed": False,
        "creationTime": 1_700_000_000,
    }
    fields.update(overrides)
    return tuple(fields.values())


class TestDecodeTokenInfo:

    def test_decodes_positional_tuple(self):
        info = decode_token_info(raw_token_info())
        assert info.symbol == "TEST"
        assert info.current_supply == 50_000 * E18
        assert info.completed is False

    def test_wrong_length(self):
        with pytest.raises(LedgerDecodeError, match="11 fields"):
            decode_token_info(raw_token_info()[:-1])

    def test_wrong_type(self):
        with pytest.raises(LedgerDecodeError, match="currentSupply"):
            decode_token_info(raw_token_info(currentSupply="50000"))

    def test_bool_in_uint_slot_rejected(self):
        with pytest.raises(LedgerDecodeError, match="maxSupply"):
            decode_token_info(raw_token_info(maxSupply=True))

    def test_not_a_tuple(self):
        with pytest.raises(LedgerDecodeError):
            decode_token_info({"name": "x"})


class TestErrorTranslation:

    @pytest.mark.parametrize("reason, expected", [
        ("Slippage too high", SlippageExceeded),
        ("Token trading completed", TokenLaunchCompleted),
        ("Token is locked", TokenLocked),
        ("Insufficient TRUST in contract", LiquidityExhausted),
        ("ERC20: transfer amount exceeds balance", InsufficientFunds),
        ("Ownable: caller is not the owner", TransactionReverted),
        ("", TransactionReverted),
    ])
    def test_classify_revert(self, reason, expected):
        assert type(classify_revert(reason)) is expected

    def test_contract_logic_error_prefix_stripped(self):
        exc = ContractLogicError("execution reverted: Slippage too high")
        translated = translate_error(exc, token_address=TOKEN)
        assert isinstance(translated, SlippageExceeded)
        assert translated.token_address == TOKEN
        assert translated.original is exc

    def test_unknown_revert_keeps_reason(self):
        translated = translate_error(ContractLogicError("execution reverted: Paused"))
        assert isinstance(translated, TransactionReverted)
        assert translated.revert_reason == "Paused"

    @pytest.mark.parametrize("exc", [
        aiohttp.ClientConnectionError("refused"),
        asyncio.TimeoutError(),
        ConnectionResetError("reset"),
    ])
    def test_transport_errors_are_network_failures(self, exc):
        translated = translate_error(exc)
        assert isinstance(translated, NetworkFailure)
        assert translated.retryable

    def test_time_exhausted(self):
        assert isinstance(translate_error(TimeExhausted("120s")), ConfirmationTimeout)

    def test_user_rejection_message(self):
        assert isinstance(translate_error(Exception("User denied transaction signature")), UserRejected)

    def test_insufficient_funds_message(self):
        exc = ValueError({"code": -32000, "message": "insufficient funds for gas * price + value"})
        assert isinstance(translate_error(exc), InsufficientFunds)

    def test_unclassified_returns_none(self):
        assert translate_error(KeyError("something else")) is None


class TestChainContext:

    def test_require_signer_without_wallet(self):
        ctx = ChainContext(w3=MagicMock(), network=NetworkParams("http://x", 1, TRADING_CONTRACT))
        assert ctx.wallet_address is None
        with pytest.raises(UserRejected):
            ctx.require_signer()


class TestLedgerReads:

    def setup_method(self):
        ctx = ChainContext(w3=MagicMock(), network=NetworkParams("http://x", 1, TRADING_CONTRACT))
        self.client = LedgerClient(ctx, read_policy=RetryPolicy(max_attempts=2, delay_seconds=0))
        self.client.contract = MagicMock()
        self.fns = self.client.contract.functions

    @pytest.mark.asyncio
    async def test_market_state_combines_three_reads(self):
        self.fns.getTokenInfo.return_value.call = AsyncMock(return_value=raw_token_info())
        self.fns.getCurrentPrice.return_value.call = AsyncMock(return_value=2 * 10 ** 16)
        self.fns.tokenUnlocked.return_value.call = AsyncMock(return_value=True)

        state = await self.client.get_market_state(TOKEN)

        assert state.unit_price == Decimal("0.02")
        assert state.current_supply == Decimal("50000")
        assert state.creator_purchased == Decimal("25000")
        assert state.unlocked is True
        assert state.completed is False
        assert state.market_cap == Decimal("1000")

    @pytest.mark.asyncio
    async def test_fee_percent_as_fraction(self):
        self.fns.feePercent.return_value.call = AsyncMock(return_value=3)
        assert await self.client.get_fee_rate() == Decimal("0.03")

    @pytest.mark.asyncio
    async def test_transient_read_failure_retried(self):
        self.fns.getCurrentPrice.return_value.call = AsyncMock(
            side_effect=[aiohttp.ClientConnectionError("blip"), 10 ** 18])
        assert await self.client.get_current_price(TOKEN) == Decimal("1")

    @pytest.mark.asyncio
    async def test_revert_on_read_not_retried(self):
        call = AsyncMock(side_effect=ContractLogicError("execution reverted: Token does not exist"))
        self.fns.getCurrentPrice.return_value.call = call
        with pytest.raises(TransactionReverted):
            await self.client.get_current_price(TOKEN)
        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_decode_error_surfaces(self):
        self.fns.getTokenInfo.return_value.call = AsyncMock(return_value=raw_token_info()[:5])
        with pytest.raises(LedgerDecodeError):
            await self.client.get_token_info(TOKEN)
