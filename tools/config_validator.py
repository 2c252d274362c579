"""
Configuration Validation Module

Validates engine.yaml against Pydantic schemas.
Ensures the config file is correct before the engine starts.

Usage:
    from tools.config_validator import validate_engine_config

    errors = validate_engine_config("config/engine.yaml")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ===== Engine Schema =====
class NetworkConfig(BaseModel):
    """Ledger endpoint and contract"""
    rpc_url: str = Field(min_length=1, description="JSON-RPC endpoint")
    chain_id: int = Field(gt=0, description="EIP-155 chain id")
    trading_contract: str = Field(description="Bonding-curve trading contract address")
    currency_symbol: str = Field(default="TRUST", min_length=1, description="Settlement currency ticker")
    request_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request RPC timeout")

    @field_validator('trading_contract')
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not _ADDRESS_RE.match(v):
            raise ValueError(f"trading_contract must be a 0x-prefixed 20-byte hex address, got {v!r}")
        return v

    @field_validator('rpc_url')
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"rpc_url must be an http(s) URL, got {v!r}")
        return v


class TradingConfig(BaseModel):
    """Trade submission parameters"""
    fee_pct: float = Field(default=3.0, ge=0, le=20, description="Sell fee % applied to payout previews")
    default_slippage_pct: float = Field(default=2.0, ge=0, lt=100, description="Default slippage tolerance %")
    lock_policy: str = Field(default="advisory", pattern="^(advisory|block)$", description="Locked token handling")
    enforce_sell_slippage: bool = Field(default=False, description="Refuse sells whose preview falls below the floor")
    sell_reduces_supply: bool = Field(default=False, description="Ledger burns tokens on sell")
    confirmation_timeout_seconds: float = Field(default=120.0, gt=0, description="Receipt wait per attempt")
    confirmation_attempts: int = Field(default=2, ge=1, le=10, description="Receipt waits before giving up")
    approve_exact_amount: bool = Field(default=True, description="Approve only the sell amount")


class ReconcileConfig(BaseModel):
    """Post-trade cache write-back"""
    max_attempts: int = Field(default=3, ge=1, le=20, description="Ledger re-reads after a trade")
    delay_seconds: float = Field(default=1.5, ge=0, description="Fixed delay between re-reads")
    refresh_interval_seconds: float = Field(default=15.0, ge=0.5, description="Background refresh cadence")


class ReadRetryConfig(BaseModel):
    """Retry for individual ledger reads"""
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=0.5, ge=0)
    backoff: float = Field(default=2.0, ge=1.0)


class CacheConfig(BaseModel):
    path: str = Field(default="data/token_cache.json", min_length=1)


class AuditConfig(BaseModel):
    path: str = Field(default="logs/trades.jsonl", min_length=1)


class MetricsConfig(BaseModel):
    enabled: bool = Field(default=False)
    port: int = Field(default=9110, gt=0, lt=65536)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/settlement.log")


class EngineConfig(BaseModel):
    """Complete engine configuration schema"""
    network: NetworkConfig
    trading: TradingConfig = Field(default_factory=TradingConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    read_retry: ReadRetryConfig = Field(default_factory=ReadRetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"

    start = max(mark.line - 2, 0)
    end = min(mark.line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'▶' if idx == mark.line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(start, end)
    )
    return (
        f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_sanity_checks(config: EngineConfig) -> List[str]:
    """
    Logical consistency checks the schema cannot express.
    """
    errors = []
    trading = config.trading
    reconcile = config.reconcile

    if trading.enforce_sell_slippage and trading.default_slippage_pct == 0:
        errors.append(
            "trading: enforce_sell_slippage with 0% slippage refuses every sell that pays a fee"
        )

    reconcile_window = reconcile.delay_seconds * (reconcile.max_attempts - 1)
    if reconcile_window >= reconcile.refresh_interval_seconds:
        errors.append(
            f"reconcile: post-trade window ({reconcile_window:.1f}s) must be shorter than "
            f"refresh_interval_seconds ({reconcile.refresh_interval_seconds:.1f}s)"
        )

    if Path(config.cache.path).resolve() == Path(config.audit.path).resolve():
        errors.append("cache.path and audit.path must be different files")

    if errors:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")
    return errors


def validate_engine_config(config_file: str = "config/engine.yaml") -> List[str]:
    """
    Validate engine.yaml: schema first, then sanity checks.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    path = Path(config_file)

    try:
        raw = load_yaml_file(path)
        config = EngineConfig(**raw)
    except FileNotFoundError as e:
        errors.append(f"{path.name}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{path.name}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{path.name}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{path.name}: top level must be a mapping - {e}")
    else:
        errors.extend(validate_sanity_checks(config))

    if not errors:
        logger.info(f"✅ {path.name} validation passed")
    else:
        logger.error(f"❌ {len(errors)} validation error(s) found")
    return errors


def load_engine_config(config_file: str = "config/engine.yaml") -> EngineConfig:
    """
    Load and validate engine.yaml.

    Raises:
        ValueError: listing every validation error
    """
    errors = validate_engine_config(config_file)
    if errors:
        raise ValueError("Invalid engine configuration:\n  " + "\n  ".join(errors))
    return EngineConfig(**load_yaml_file(Path(config_file)))


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_file = sys.argv[1] if len(sys.argv) > 1 else "config/engine.yaml"
    errors = validate_engine_config(config_file)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ Engine configuration is valid!\n")
        sys.exit(0)
