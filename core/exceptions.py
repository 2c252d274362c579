"""Shared exception types for the settlement engine.

Every failure a trade can hit has its own type so callers can react to the
specific reason instead of a generic "trade failed".
"""

from typing import Any, Dict, Optional


class TradeError(Exception):
    """Base class for all trade failures."""

    recoverable: bool = True
    retryable: bool = False
    reason: str = "trade_error"

    def __init__(self, message: str = "", *, token_address: Optional[str] = None,
                 tx_hash: Optional[str] = None, original: Optional[Exception] = None):
        super().__init__(message or self.__class__.__name__)
        self.token_address = token_address
        self.tx_hash = tx_hash
        self.original = original

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "reason": self.reason,
            "message": str(self),
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "token_address": self.token_address,
            "tx_hash": self.tx_hash,
        }


class UserRejected(TradeError):
    """The signer declined to sign. Abort silently, never retry."""

    reason = "user_rejected"


class InvalidAddressFormat(TradeError, ValueError):
    """Address is not a 0x-prefixed 20-byte hex string."""

    reason = "invalid_address"


class InsufficientFunds(TradeError):
    """Wallet cannot cover the trade value, token amount, or gas."""

    reason = "insufficient_funds"


class TokenLocked(TradeError):
    """Token is still locked and the active lock policy blocks trading."""

    reason = "token_locked"


class TokenLaunchCompleted(TradeError):
    """Token migrated off the curve; trading is permanently disabled."""

    recoverable = False
    reason = "launch_completed"


class LiquidityExhausted(TradeError):
    """Trading contract holds no settlement currency to pay sellers."""

    reason = "liquidity_exhausted"


class LiquidityShortfall(TradeError):
    """Contract balance only partially covers the expected payout.

    Non-fatal: the sell may go ahead once the caller acknowledges it.
    """

    reason = "liquidity_shortfall"

    def __init__(self, message: str = "", *, assessment: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.assessment = assessment


class SlippageExceeded(TradeError):
    """Realized output would fall below the slippage floor."""

    reason = "slippage_exceeded"


class ZeroPayoutAnomaly(TradeError):
    """Transaction succeeded on-chain but settled zero.

    Almost always a stale liquidity snapshot. Distinct from both success and
    a plain revert.
    """

    recoverable = False
    reason = "zero_payout"


class SettlementUnconfirmed(TradeError):
    """Receipt carries no trade event; outcome is indeterminate."""

    reason = "settlement_unconfirmed"


class TransactionReverted(TradeError):
    """Ledger refused the call."""

    reason = "reverted"

    def __init__(self, message: str = "", *, revert_reason: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.revert_reason = revert_reason


class TradeInFlight(TradeError):
    """A trade for the same wallet, token and direction is already running."""

    reason = "in_flight"


class ConfirmationTimeout(TradeError):
    """Transaction was sent but no receipt arrived in time."""

    retryable = True
    reason = "confirmation_timeout"


class NetworkFailure(TradeError):
    """RPC endpoint unreachable or erroring."""

    retryable = True
    reason = "network_failure"


class LedgerDecodeError(TradeError):
    """Contract return value does not match the expected shape."""

    recoverable = False
    reason = "decode_error"


__all__ = [
    "TradeError",
    "UserRejected",
    "InvalidAddressFormat",
    "InsufficientFunds",
    "TokenLocked",
    "TokenLaunchCompleted",
    "LiquidityExhausted",
    "LiquidityShortfall",
    "SlippageExceeded",
    "ZeroPayoutAnomaly",
    "SettlementUnconfirmed",
    "TransactionReverted",
    "TradeInFlight",
    "ConfirmationTimeout",
    "NetworkFailure",
    "LedgerDecodeError",
]
