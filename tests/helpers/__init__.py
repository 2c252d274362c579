"""Test helpers for the settlement engine test suite"""

from tests.helpers.ledger_stubs import (
    TOKEN,
    WALLET,
    TRADING_CONTRACT,
    OTHER_CONTRACT,
    FakeSigner,
    MemoryCache,
    LedgerStubBuilder,
    make_state,
    trade_log,
    created_log,
    make_receipt,
)

__all__ = [
    "TOKEN",
    "WALLET",
    "TRADING_CONTRACT",
    "OTHER_CONTRACT",
    "FakeSigner",
    "MemoryCache",
    "LedgerStubBuilder",
    "make_state",
    "trade_log",
    "created_log",
    "make_receipt",
]
