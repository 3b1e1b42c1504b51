"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides
  - Subsystem configs: ledger, detection, sweep, fees, pricing,
    network, storage, observability, seeded wallets
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class KnownAsset(BaseModel):
    """Catalog entry for a well-known token checked on every scan."""
    address: str
    name: str
    symbol: str


def _default_catalog() -> list[KnownAsset]:
    return [
        KnownAsset(address="0xA0b86a33E6441b56C6B15fb8b0BeaDDD8F1aF6c4", name="USD Coin", symbol="USDC"),
        KnownAsset(address="0x514910771AF9Ca656af840dff83E8264EcF986CA", name="Chainlink", symbol="LINK"),
        KnownAsset(address="0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984", name="Uniswap", symbol="UNI"),
        KnownAsset(address="0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", name="Wrapped Bitcoin", symbol="WBTC"),
        KnownAsset(address="0x7Fc66500c84A76Ad7e9c93437bFc5Ac33E2DDaE9", name="Aave", symbol="AAVE"),
    ]


class LedgerConfig(BaseModel):
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 1
    timeout_secs: float = 20.0
    requests_per_second: float = 10.0
    max_burst: int = 20
    uniswap_v2_factory: str = "0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f"
    uniswap_v3_factory: str = "0x1F98431c8aD98523631AE4a59f267346ea31F984"
    weth_address: str = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
    v3_fee_tiers: list[int] = Field(default_factory=lambda: [500, 3000, 10000])
    activity_lookback_blocks: int = 100
    activity_min_transfers: int = 5


class DetectionConfig(BaseModel):
    """Recurring wallet scan configuration."""
    scan_interval_secs: float = 15.0
    known_assets: list[KnownAsset] = Field(default_factory=_default_catalog)


class SweepConfig(BaseModel):
    """Sweep execution and confirmation polling."""
    manual_urgency: str = "medium"
    receipt_initial_delay_secs: float = 10.0
    receipt_poll_interval_secs: float = 5.0
    receipt_max_attempts: int = 60


class FeeStrategyConfig(BaseModel):
    multiplier: float
    description: str = ""


def _default_strategies() -> dict[str, FeeStrategyConfig]:
    return {
        "slow": FeeStrategyConfig(multiplier=0.8, description="20-30 gwei - Lower priority"),
        "standard": FeeStrategyConfig(multiplier=1.0, description="30-50 gwei - Normal priority"),
        "fast": FeeStrategyConfig(multiplier=1.3, description="50+ gwei - High priority"),
    }


class FeeConfig(BaseModel):
    """Fee-price optimizer presets."""
    strategies: dict[str, FeeStrategyConfig] = Field(default_factory=_default_strategies)
    default_strategy: str = "standard"
    urgency_multipliers: dict[str, float] = Field(default_factory=lambda: {
        "low": 0.9, "medium": 1.0, "high": 1.2,
    })
    # Base fee (gwei) upper bounds for low / medium / high; above → very_high
    congestion_thresholds_gwei: list[float] = Field(default_factory=lambda: [20.0, 50.0, 100.0])
    congested_load_pct: float = 80.0
    quiet_load_pct: float = 30.0
    congested_adjustment: float = 1.1
    quiet_adjustment: float = 0.95
    min_fee_gwei: float = 1.0
    fallback_fee_gwei: float = 30.0
    fallback_gas_limit: int = 21000
    sample_interval_secs: float = 60.0


class PricingConfig(BaseModel):
    """Fiat price source. Prices are estimates only."""
    source: str = "static"  # static | coingecko
    usd_prices: dict[str, float] = Field(default_factory=lambda: {
        "0xa0b86a33e6441b56c6b15fb8b0beaddd8f1af6c4": 1.00,
        "0x514910771af9ca656af840dff83e8264ecf986ca": 14.50,
        "0x1f9840a85d5af5bf1d1762f925bdaddc4201f984": 6.80,
        "0x2260fac5e5542a773aa44fbcfedf7c193bc2c599": 45000.0,
        "0x7fc66500c84a76ad7e9c93437bfc5ac33e2ddae9": 85.30,
    })
    native_usd_price: float = 2000.0
    refresh_interval_secs: float = 300.0
    coingecko_platform: str = "ethereum"
    coingecko_native_id: str = "ethereum"


class NetworkConfig(BaseModel):
    status_interval_secs: float = 30.0


class StorageConfig(BaseModel):
    sqlite_path: str = "data/sweepwatch.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/sweepwatch.log"


class WalletSeed(BaseModel):
    """Wallet configuration seeded at startup from config.yaml."""
    address: str
    safe_address: str
    private_key_env: str = ""
    fee_strategy: str = "standard"
    min_transfer_usd: float = 10.0
    auto_sweep_enabled: bool = True
    is_active: bool = True
    assets: list[str] = Field(default_factory=list)

    def resolve_private_key(self) -> str:
        if not self.private_key_env:
            return ""
        return os.environ.get(self.private_key_env, "")


class WatcherConfig(BaseModel):
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    fees: FeeConfig = Field(default_factory=FeeConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    wallets: list[WalletSeed] = Field(default_factory=list)


def load_config(path: str | Path | None = None) -> WatcherConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        cfg = WatcherConfig(**raw)
    else:
        cfg = WatcherConfig()
    return _apply_env_overrides(cfg)


def _apply_env_overrides(cfg: WatcherConfig) -> WatcherConfig:
    rpc_url = os.environ.get("SWEEPWATCH_RPC_URL", "").strip()
    if rpc_url:
        cfg.ledger.rpc_url = rpc_url
    chain_id = os.environ.get("SWEEPWATCH_CHAIN_ID", "").strip()
    if chain_id:
        cfg.ledger.chain_id = int(chain_id)
    db_path = os.environ.get("SWEEPWATCH_DB_PATH", "").strip()
    if db_path:
        cfg.storage.sqlite_path = db_path
    return cfg
