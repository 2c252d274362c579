"""
Settlement Engine: Audit Logger

Structured record of every trade attempt, settled or refused.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.exceptions import TradeError

logger = logging.getLogger(__name__)


class TradeAuditLogger:
    """
    Structured audit trail logger.

    Logs every trade attempt including:
    - The intent (direction, amounts, slippage)
    - Liquidity assessment on sells
    - Settlement receipt or the typed refusal
    - Whether the cache was reconciled afterwards

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Args:
            audit_file: Path to audit log file (default: logs/trades.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/trades.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized TradeAuditLogger at {self.audit_file}")

    def log_settled(self, outcome: Any) -> None:
        """Record a settled trade (a TradeOutcome)."""
        entry = {
            "timestamp": outcome.timestamp.isoformat(),
            "status": "SETTLED",
            **outcome.to_dict(),
        }
        self._write(entry)

    def log_rejected(self, intent: Optional[Any], error: TradeError,
                     liquidity: Optional[Any] = None, ts: Optional[datetime] = None) -> None:
        """Record a trade refused before submission or failed during settlement."""
        entry = {
            "timestamp": (ts or datetime.now(timezone.utc)).isoformat(),
            "status": "REJECTED",
            "intent": intent.to_dict() if intent is not None else None,
            "error": error.to_dict(),
            "liquidity": liquidity.to_dict() if liquidity is not None else None,
        }
        self._write(entry)

    def log_created(self, tx_hash: str, token_address: Optional[str], symbol: str,
                    ts: Optional[datetime] = None) -> None:
        self._write({
            "timestamp": (ts or datetime.now(timezone.utc)).isoformat(),
            "status": "CREATED",
            "tx_hash": tx_hash,
            "token_address": token_address,
            "symbol": symbol,
        })

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
            logger.debug(f"Audited trade: status={entry['status']}")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries, most recent first.
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in lines[-n:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(entries))
