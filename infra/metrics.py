"""Prometheus-backed metrics hooks for trade settlement."""

from __future__ import annotations

import logging
from collections import Counter as Tally
from typing import Dict, Optional, Tuple

from prometheus_client import REGISTRY, Counter, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "settlement_"


class MetricsRecorder:
    """
    Expose settlement stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Local tallies mirror every counter so callers can inspect them without
    scraping the registry.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9110):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9110) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._tallies: Dict[str, Tally] = {
            "trades": Tally(),
            "rejections": Tally(),
            "zero_payouts": Tally(),
            "liquidity_shortfalls": Tally(),
            "reconcile": Tally(),
            "cache_refresh": Tally(),
        }
        self._last_confirmation: Optional[Tuple[str, float]] = None

        if not self._enabled:
            self._trades_counter = None
            self._rejections_counter = None
            self._zero_payout_counter = None
            self._shortfall_counter = None
            self._reconcile_counter = None
            self._refresh_counter = None
            self._confirmation_summary = None
            return

        self._trades_counter = Counter(
            "settlement_trades_total",
            "Settled trades by direction and outcome",
            labelnames=("direction", "outcome"),
        )
        self._rejections_counter = Counter(
            "settlement_rejections_total",
            "Trades refused before or during submission, by reason",
            labelnames=("reason",),
        )
        self._zero_payout_counter = Counter(
            "settlement_zero_payout_total",
            "Confirmed trades whose event reported zero realized",
            labelnames=("direction",),
        )
        self._shortfall_counter = Counter(
            "settlement_liquidity_shortfall_total",
            "Sells whose expected payout exceeded the contract balance",
        )
        self._reconcile_counter = Counter(
            "settlement_reconcile_attempts_total",
            "Post-trade cache reconcile reads by result",
            labelnames=("result",),  # result: "committed", "stale", "failed", "gave_up"
        )
        self._refresh_counter = Counter(
            "settlement_cache_refresh_total",
            "Periodic cache refresh passes per token",
            labelnames=("result",),
        )
        self._confirmation_summary = Summary(
            "settlement_confirmation_seconds",
            "Time from broadcast to confirmed receipt",
            labelnames=("direction",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_trade(self, direction: str, outcome: str) -> None:
        self._tallies["trades"][(direction, outcome)] += 1
        if self._enabled and self._trades_counter:
            self._trades_counter.labels(direction=direction, outcome=outcome).inc()

    def record_rejection(self, reason: str) -> None:
        """reason is an error's stable reason code, which keeps cardinality bounded"""
        self._tallies["rejections"][reason] += 1
        if self._enabled and self._rejections_counter:
            self._rejections_counter.labels(reason=reason).inc()

    def record_zero_payout(self, direction: str) -> None:
        self._tallies["zero_payouts"][direction] += 1
        if self._enabled and self._zero_payout_counter:
            self._zero_payout_counter.labels(direction=direction).inc()

    def record_liquidity_shortfall(self) -> None:
        self._tallies["liquidity_shortfalls"]["sell"] += 1
        if self._enabled and self._shortfall_counter:
            self._shortfall_counter.inc()

    def record_reconcile_attempt(self, result: str) -> None:
        self._tallies["reconcile"][result] += 1
        if self._enabled and self._reconcile_counter:
            self._reconcile_counter.labels(result=result).inc()

    def record_cache_refresh(self, result: str) -> None:
        self._tallies["cache_refresh"][result] += 1
        if self._enabled and self._refresh_counter:
            self._refresh_counter.labels(result=result).inc()

    def record_confirmation(self, direction: str, seconds: float) -> None:
        self._last_confirmation = (direction, seconds)
        if self._enabled and self._confirmation_summary:
            self._confirmation_summary.labels(direction=direction).observe(max(seconds, 0.0))

    def count(self, family: str, key) -> int:
        return self._tallies[family][key]

    def snapshot(self) -> Dict[str, Dict]:
        return {family: dict(tally) for family, tally in self._tallies.items()}

    def last_confirmation(self) -> Optional[Tuple[str, float]]:
        return self._last_confirmation


__all__ = ["MetricsRecorder"]
