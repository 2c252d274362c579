"""
Settlement Engine: Operator CLI

Wires a ChainContext, the engine and its collaborators from config/engine.yaml
and runs one command against the ledger.

    python -m runner.trade_cli buy 0xToken... 10
    python -m runner.trade_cli sell 0xToken... 1000 --accept-shortfall
    python -m runner.trade_cli refresh

The signing key is read from SETTLEMENT_PRIVATE_KEY; without it only
read-only commands work.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from core.audit_log import TradeAuditLogger
from core.engine import EngineSettings, SettlementEngine
from core.exceptions import TradeError
from core.ledger import ChainContext, LedgerClient, NetworkParams
from core.lifecycle import LockPolicy
from core.models import TradeDirection
from core.quote import for_display
from core.reconciler import StateReconciler
from core.refresher import CacheRefresher
from core.submitter import TransactionSubmitter
from infra.metrics import MetricsRecorder
from infra.retry import RetryPolicy
from infra.token_cache import TokenCache
from tools.config_validator import EngineConfig, load_engine_config

logger = logging.getLogger(__name__)

PRIVATE_KEY_ENV = "SETTLEMENT_PRIVATE_KEY"


def configure_logging(config: EngineConfig) -> None:
    handlers = [logging.StreamHandler()]
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


class SettlementSession:
    """Everything one operator session needs, built once from config."""

    def __init__(self, config: EngineConfig, private_key: Optional[str] = None):
        self.config = config
        network = NetworkParams(
            rpc_url=config.network.rpc_url,
            chain_id=config.network.chain_id,
            trading_contract=config.network.trading_contract,
            currency_symbol=config.network.currency_symbol,
        )
        self.ctx = ChainContext.connect(
            network, private_key=private_key,
            request_timeout=config.network.request_timeout_seconds,
        )

        self.metrics = MetricsRecorder(enabled=config.metrics.enabled, port=config.metrics.port)
        self.metrics.start()

        read_policy = RetryPolicy(
            max_attempts=config.read_retry.max_attempts,
            delay_seconds=config.read_retry.base_delay_seconds,
            backoff=config.read_retry.backoff,
        )
        self.ledger = LedgerClient(self.ctx, read_policy=read_policy)
        self.cache = TokenCache(config.cache.path)
        self.reconciler = StateReconciler(
            self.ledger,
            self.cache,
            policy=RetryPolicy(
                max_attempts=config.reconcile.max_attempts,
                delay_seconds=config.reconcile.delay_seconds,
            ),
            metrics=self.metrics,
        )
        trading = config.trading
        self.submitter = TransactionSubmitter(
            self.ledger,
            confirmation_timeout=trading.confirmation_timeout_seconds,
            confirmation_attempts=trading.confirmation_attempts,
            approve_exact_amount=trading.approve_exact_amount,
        )
        self.engine = SettlementEngine(
            self.ledger,
            self.submitter,
            self.reconciler,
            self.cache,
            settings=EngineSettings(
                fee_rate=Decimal(str(trading.fee_pct)) / Decimal(100),
                default_slippage=Decimal(str(trading.default_slippage_pct)) / Decimal(100),
                lock_policy=LockPolicy.parse(trading.lock_policy),
                enforce_sell_slippage=trading.enforce_sell_slippage,
                sell_reduces_supply=trading.sell_reduces_supply,
                currency_symbol=network.currency_symbol,
            ),
            audit=TradeAuditLogger(config.audit.path),
            metrics=self.metrics,
        )

    def refresher(self) -> CacheRefresher:
        return CacheRefresher(
            self.reconciler,
            self.cache.addresses,
            interval_seconds=self.config.reconcile.refresh_interval_seconds,
            metrics=self.metrics,
        )


def _decimal(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if amount <= 0:
        raise argparse.ArgumentTypeError("amount must be positive")
    return amount


def _percent(value: str) -> Decimal:
    return _decimal(value) / Decimal(100)


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run_command(session: SettlementSession, args: argparse.Namespace) -> int:
    engine = session.engine

    if args.command == "quote":
        form = await engine.quote_form(args.token, prefer_cache=not args.fresh)
        if TradeDirection.parse(args.direction) is TradeDirection.BUY:
            form.set_counter_amount(args.amount)
        else:
            form.set_token_amount(args.amount)
        _emit({"unit_price": for_display(form.unit_price), **form.display()})
        return 0

    if args.command in ("buy", "sell"):
        wallet = session.ctx.require_signer().address
        intent = await engine.prepare_intent(args.token, wallet, args.command, args.amount, args.slippage)
        if args.command == "buy":
            outcome = await engine.buy(intent)
        else:
            outcome = await engine.sell(intent, acknowledge_shortfall=args.accept_shortfall)
        _emit(outcome.to_dict())
        return 0

    if args.command == "sync":
        record = await engine.sync_token(args.token)
        if record is None:
            logger.warning(f"{args.token} could not be synced; cache unchanged")
            return 1
        _emit(record.to_dict())
        return 0

    if args.command == "create":
        tx_hash, token_address = await engine.create_token(args.name, args.symbol, args.metadata)
        _emit({"tx_hash": tx_hash, "token_address": token_address})
        return 0

    if args.command == "refresh":
        refresher = session.refresher()
        if args.once:
            committed = await refresher.refresh_once()
            _emit({"committed": committed, "contract_balance": refresher.contract_balance})
            return 0
        async with refresher:
            await asyncio.Event().wait()
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bonding-curve settlement engine")
    parser.add_argument("--config", default="config/engine.yaml", help="Engine config file")
    sub = parser.add_subparsers(dest="command", required=True)

    quote = sub.add_parser("quote", help="Quote the counter leg at the latest known price")
    quote.add_argument("token")
    quote.add_argument("amount", type=_decimal, help="Currency to spend (buy) or tokens to sell")
    quote.add_argument("--direction", choices=("buy", "sell"), default="buy")
    quote.add_argument("--fresh", action="store_true", help="Price from the ledger, not the cache")

    for name in ("buy", "sell"):
        trade = sub.add_parser(name, help=f"{name.capitalize()} tokens")
        trade.add_argument("token")
        trade.add_argument("amount", type=_decimal,
                           help="Currency to spend" if name == "buy" else "Tokens to sell")
        trade.add_argument("--slippage", type=_percent, default=None, help="Slippage tolerance in percent")
        if name == "sell":
            trade.add_argument("--accept-shortfall", action="store_true",
                               help="Proceed when the contract can only pay part of the proceeds")

    sync = sub.add_parser("sync", help="Pull one token's ledger state into the cache")
    sync.add_argument("token")

    create = sub.add_parser("create", help="Launch a new token")
    create.add_argument("name")
    create.add_argument("symbol")
    create.add_argument("--metadata", default="")

    refresh = sub.add_parser("refresh", help="Keep every cached token in sync with the ledger")
    refresh.add_argument("--once", action="store_true", help="Single pass then exit")
    return parser


def main(argv=None) -> int:
    """Entry point"""
    args = build_parser().parse_args(argv)

    config = load_engine_config(args.config)
    configure_logging(config)

    session = SettlementSession(config, private_key=os.getenv(PRIVATE_KEY_ENV))
    try:
        return asyncio.run(run_command(session, args))
    except TradeError as exc:
        _emit(exc.to_dict())
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
