"""
Ledger boundary: chain context, signer, and typed contract reads.

Everything that talks to the RPC endpoint goes through here. Reads are wrapped
in the bounded retry policy; raw web3/aiohttp failures are translated into the
engine's typed errors at this boundary.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from core.contract_abi import ERC20_ABI, TOKEN_INFO_FIELDS, TRADING_CONTRACT_ABI
from core.exceptions import (
    ConfirmationTimeout,
    InsufficientFunds,
    LedgerDecodeError,
    LiquidityExhausted,
    NetworkFailure,
    SlippageExceeded,
    TokenLaunchCompleted,
    TokenLocked,
    TradeError,
    TransactionReverted,
    UserRejected,
)
from core.models import TokenMarketState, from_base_units, normalize_address
from infra.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


# ===== Error translation =====

_REVERT_RULES = (
    (("slippage", "min tokens", "insufficient output", "minout"), SlippageExceeded),
    (("completed", "migrated"), TokenLaunchCompleted),
    (("locked",), TokenLocked),
    (("contract balance", "insufficient liquidity", "insufficient trust in contract"), LiquidityExhausted),
    (("insufficient balance", "exceeds balance", "insufficient funds"), InsufficientFunds),
)


def classify_revert(reason: str, **kwargs) -> TradeError:
    lowered = (reason or "").lower()
    for needles, error_cls in _REVERT_RULES:
        if any(needle in lowered for needle in needles):
            return error_cls(f"Ledger refused: {reason}", **kwargs)
    return TransactionReverted(f"Ledger refused: {reason or 'no reason given'}",
                               revert_reason=reason or None, **kwargs)


def translate_error(exc: BaseException, **kwargs) -> Optional[TradeError]:
    """Map a web3/transport exception to a TradeError, or None if it is not ours to classify."""
    if isinstance(exc, TradeError):
        return exc
    if isinstance(exc, TimeExhausted):
        return ConfirmationTimeout(f"No receipt before timeout: {exc}", original=exc, **kwargs)
    if isinstance(exc, ContractLogicError):
        reason = getattr(exc, "message", None) or str(exc)
        if reason.lower().startswith("execution reverted: "):
            reason = reason[len("execution reverted: "):]
        error = classify_revert(reason, **kwargs)
        error.original = exc
        return error
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
        return NetworkFailure(f"RPC request failed: {exc}", original=exc, **kwargs)

    message = str(exc).lower()
    if "user rejected" in message or "user denied" in message:
        return UserRejected("Transaction rejected by user", original=exc, **kwargs)
    if "insufficient funds" in message:
        return InsufficientFunds("Insufficient balance to cover value and gas", original=exc, **kwargs)
    return None


# ===== Session context =====

@dataclass(frozen=True)
class NetworkParams:
    rpc_url: str
    chain_id: int
    trading_contract: str
    currency_symbol: str = "TRUST"


class Signer(Protocol):
    """Supplied by the wallet session. Declining to sign raises UserRejected."""

    address: str

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        ...


class LocalAccountSigner:
    """Signs with a local key and broadcasts through the session's client."""

    def __init__(self, account: LocalAccount, w3: AsyncWeb3):
        self.account = account
        self.address = account.address
        self.w3 = w3

    @classmethod
    def from_key(cls, private_key: str, w3: AsyncWeb3) -> "LocalAccountSigner":
        return cls(Account.from_key(private_key), w3)

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        tx = dict(tx)
        tx.setdefault("from", self.address)
        if "nonce" not in tx:
            tx["nonce"] = await self.w3.eth.get_transaction_count(self.address, "pending")
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)


@dataclass
class ChainContext:
    """
    Per-session chain access: read client, signer, network parameters.

    Built once when the session starts and passed to every component.
    """
    w3: AsyncWeb3
    network: NetworkParams
    signer: Optional[Signer] = None

    @classmethod
    def connect(cls, network: NetworkParams, private_key: Optional[str] = None,
                request_timeout: float = 30.0) -> "ChainContext":
        provider = AsyncWeb3.AsyncHTTPProvider(
            network.rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
        )
        w3 = AsyncWeb3(provider)
        signer = LocalAccountSigner.from_key(private_key, w3) if private_key else None
        logger.info(
            f"Chain context for chain_id={network.chain_id} contract={network.trading_contract} "
            f"(signer={'yes' if signer else 'read-only'})"
        )
        return cls(w3=w3, network=network, signer=signer)

    @property
    def wallet_address(self) -> Optional[str]:
        return self.signer.address if self.signer else None

    def require_signer(self) -> Signer:
        if self.signer is None:
            raise UserRejected("No wallet connected: a signer is required to trade")
        return self.signer


# ===== Strict decoding =====

@dataclass(frozen=True)
class TokenInfo:
    name: str
    symbol: str
    metadata: str
    creator: str
    creator_allocation: int
    held_tokens: int
    max_supply: int
    current_supply: int
    virtual_trust: int
    virtual_tokens: int
    completed: bool
    creation_time: int


_PY_TYPES = {"string": str, "address": str, "uint256": int, "bool": bool}


def decode_token_info(raw: Any) -> TokenInfo:
    """Positional tuple -> TokenInfo. Any shape mismatch raises LedgerDecodeError."""
    if not isinstance(raw, (list, tuple)):
        raise LedgerDecodeError(f"getTokenInfo returned {type(raw).__name__}, expected a tuple")
    if len(raw) != len(TOKEN_INFO_FIELDS):
        raise LedgerDecodeError(
            f"getTokenInfo returned {len(raw)} fields, expected {len(TOKEN_INFO_FIELDS)}"
        )
    for value, (name, kind) in zip(raw, TOKEN_INFO_FIELDS):
        expected = _PY_TYPES[kind]
        # bool is an int subclass; reject it where a uint is expected
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise LedgerDecodeError(
                f"getTokenInfo field {name!r} is {type(value).__name__}, expected {kind}"
            )
    return TokenInfo(*raw)


# ===== Client =====

class LedgerClient:
    """Typed reads and transaction plumbing against the trading contract."""

    def __init__(self, ctx: ChainContext, read_policy: Optional[RetryPolicy] = None):
        self.ctx = ctx
        self.read_policy = read_policy or RetryPolicy(max_attempts=3, delay_seconds=0.5, backoff=2.0)
        self.trading_address = normalize_address(ctx.network.trading_contract, "trading contract")
        self.contract = ctx.w3.eth.contract(address=self.trading_address, abi=TRADING_CONTRACT_ABI)

    def token_contract(self, token_address: str):
        return self.ctx.w3.eth.contract(address=token_address, abi=ERC20_ABI)

    async def _read(self, description: str, call) -> Any:
        async def attempt():
            try:
                return await call()
            except TradeError:
                raise
            except Exception as exc:
                translated = translate_error(exc)
                if translated is None:
                    raise
                raise translated from exc

        return await retry_async(attempt, self.read_policy, description=description)

    async def get_token_info(self, token_address: str) -> TokenInfo:
        raw = await self._read(
            f"getTokenInfo({token_address})",
            lambda: self.contract.functions.getTokenInfo(token_address).call(),
        )
        return decode_token_info(raw)

    async def get_current_price(self, token_address: str) -> Decimal:
        raw = await self._read(
            f"getCurrentPrice({token_address})",
            lambda: self.contract.functions.getCurrentPrice(token_address).call(),
        )
        return from_base_units(raw)

    async def is_unlocked(self, token_address: str) -> bool:
        return bool(await self._read(
            f"tokenUnlocked({token_address})",
            lambda: self.contract.functions.tokenUnlocked(token_address).call(),
        ))

    async def get_fee_rate(self) -> Decimal:
        """Trade fee as a fraction (feePercent is a whole percent on-chain)."""
        raw = await self._read("feePercent()", lambda: self.contract.functions.feePercent().call())
        return Decimal(raw) / Decimal(100)

    async def get_market_state(self, token_address: str) -> TokenMarketState:
        info, price, unlocked = await asyncio.gather(
            self.get_token_info(token_address),
            self.get_current_price(token_address),
            self.is_unlocked(token_address),
        )
        return TokenMarketState(
            address=token_address,
            unit_price=price,
            current_supply=from_base_units(info.current_supply),
            max_supply=from_base_units(info.max_supply),
            creator_purchased=from_base_units(info.creator_allocation),
            unlocked=unlocked,
            completed=info.completed,
            name=info.name,
            symbol=info.symbol,
            creator=info.creator,
            creation_time=info.creation_time,
        )

    async def get_native_balance(self, address: str) -> Decimal:
        raw = await self._read(f"getBalance({address})", lambda: self.ctx.w3.eth.get_balance(address))
        return from_base_units(raw)

    async def get_contract_balance(self) -> Decimal:
        return await self.get_native_balance(self.trading_address)

    async def get_token_balance(self, token_address: str, owner: str) -> Decimal:
        raw = await self._read(
            f"balanceOf({token_address}, {owner})",
            lambda: self.token_contract(token_address).functions.balanceOf(owner).call(),
        )
        return from_base_units(raw)

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        return await self._read(
            f"allowance({token_address}, {owner})",
            lambda: self.token_contract(token_address).functions.allowance(owner, spender).call(),
        )

    # --- transactions ---

    async def build_buy(self, token_address: str, min_tokens_out: int, value: int, sender: str) -> Dict[str, Any]:
        return await self.contract.functions.buyTokens(token_address, min_tokens_out).build_transaction(
            {"from": sender, "value": value, "chainId": self.ctx.network.chain_id}
        )

    async def build_sell(self, token_address: str, amount: int, sender: str) -> Dict[str, Any]:
        return await self.contract.functions.sellTokens(token_address, amount).build_transaction(
            {"from": sender, "chainId": self.ctx.network.chain_id}
        )

    async def build_approve(self, token_address: str, amount: int, sender: str) -> Dict[str, Any]:
        return await self.token_contract(token_address).functions.approve(
            self.trading_address, amount
        ).build_transaction({"from": sender, "chainId": self.ctx.network.chain_id})

    async def build_create(self, name: str, symbol: str, metadata: str, sender: str) -> Dict[str, Any]:
        return await self.contract.functions.createToken(name, symbol, metadata).build_transaction(
            {"from": sender, "chainId": self.ctx.network.chain_id}
        )

    async def wait_for_receipt(self, tx_hash: str, timeout: float):
        return await self.ctx.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)

    async def replay_revert_reason(self, tx_hash: str, block_number: Optional[int]) -> Optional[str]:
        """Re-run a mined, reverted transaction as a call to recover its revert reason."""
        try:
            tx = await self.ctx.w3.eth.get_transaction(tx_hash)
            await self.ctx.w3.eth.call(
                {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx["value"]},
                block_number if block_number is not None else "latest",
            )
        except ContractLogicError as exc:
            return getattr(exc, "message", None) or str(exc)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning(f"Could not replay {tx_hash} for revert reason: {exc}")
        return None

