"""
Settlement Engine Infrastructure: Token Cache

Read-optimized mirror of ledger token state, persisted as JSON with atomic
writes. Never authoritative: the engine re-reads the ledger before every
trade and only the State Reconciler and the refresher write here.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional
import logging

from core.models import CachedTokenRecord, normalize_address

logger = logging.getLogger(__name__)


class TokenCache:
    """
    Persistent token record storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Records keyed by checksum address
    - Corrupt or missing file degrades to an empty cache
    """

    def __init__(self, cache_file: Optional[str] = None):
        """
        Args:
            cache_file: Path to cache JSON file (default: TOKEN_CACHE_FILE or data/token_cache.json)
        """
        cache_file = cache_file or os.getenv("TOKEN_CACHE_FILE", "data/token_cache.json")
        self.cache_file = Path(cache_file)
        self.cache_file.parent.mkdir(parents=True, exist_ok=True)
        self._records: Optional[Dict[str, CachedTokenRecord]] = None
        logger.info(f"Initialized TokenCache at {self.cache_file}")

    def _load(self) -> Dict[str, CachedTokenRecord]:
        if self._records is not None:
            return self._records

        records: Dict[str, CachedTokenRecord] = {}
        if not self.cache_file.exists():
            logger.debug("No cache file found, starting empty")
            self._records = records
            return records

        try:
            with open(self.cache_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load token cache: {e}")
            self._records = records
            return records

        if not isinstance(data, dict):
            logger.warning("Invalid token cache format, starting empty")
            self._records = records
            return records

        for address, raw in data.get("tokens", {}).items():
            try:
                records[address] = CachedTokenRecord.from_dict(raw)
            except (KeyError, ValueError, ArithmeticError) as e:
                logger.warning(f"Dropping unreadable cache entry for {address}: {e}")
        self._records = records
        return records

    def _save(self) -> None:
        payload = {"tokens": {addr: rec.to_dict() for addr, rec in self._load().items()}}
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.cache_file.parent,
            prefix=".token_cache_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(temp_path, self.cache_file)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug(f"Saved {len(payload['tokens'])} token records")

    def get(self, token_address: str) -> Optional[CachedTokenRecord]:
        return self._load().get(normalize_address(token_address, "token address"))

    def put(self, record: CachedTokenRecord) -> None:
        address = normalize_address(record.address, "token address")
        self._load()[address] = record
        self._save()

    def addresses(self):
        return sorted(self._load().keys())

    def all(self) -> Dict[str, CachedTokenRecord]:
        return dict(self._load())
