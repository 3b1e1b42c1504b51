"""Pydantic models for stored records."""

from __future__ import annotations

import datetime as dt
import json
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


# Transaction statuses
TX_PENDING = "pending"
TX_COMPLETED = "completed"
TX_FAILED = "failed"

# Activity types
ACT_TOKEN_DETECTED = "token_detected"
ACT_TRADING_ENABLED = "trading_enabled"
ACT_TRANSFER_STARTED = "transfer_started"
ACT_TRANSFER_COMPLETED = "transfer_completed"
ACT_TRANSFER_FAILED = "transfer_failed"
ACT_TRANSFER_UNCONFIRMED = "transfer_unconfirmed"
ACT_EMERGENCY_STOP = "emergency_stop"


class WalletConfigRecord(BaseModel):
    """Per-wallet sweep configuration."""
    id: int | None = None
    wallet_address: str
    private_key: str = ""
    safe_address: str
    fee_strategy: str = "standard"
    min_transfer_usd: float = 10.0
    auto_sweep_enabled: bool = True
    is_active: bool = True
    created_at: str = Field(default_factory=utc_now)


class DetectionRecord(BaseModel):
    """An asset observed with a positive balance in a watched wallet."""
    id: int | None = None
    wallet_address: str
    asset_address: str
    name: str = ""
    symbol: str = ""
    balance: float = 0.0
    usd_value: float = 0.0
    is_transferable: bool = False
    detected_at: str = Field(default_factory=utc_now)
    last_checked_at: str = Field(default_factory=utc_now)


class TransactionRecord(BaseModel):
    """One sweep attempt and, once polled, its receipt."""
    id: int | None = None
    wallet_address: str
    asset_address: str
    symbol: str = ""
    name: str = ""
    amount: float = 0.0
    usd_value: float = 0.0
    status: str = TX_PENDING
    fee_gwei: float = 0.0
    tx_hash: str | None = None
    block_number: int | None = None
    gas_used: int | None = None
    gas_cost: float | None = None
    created_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None

    @property
    def is_final(self) -> bool:
        return self.status == TX_FAILED or self.block_number is not None


class ActivityRecord(BaseModel):
    """Append-only audit entry."""
    id: int | None = None
    wallet_address: str
    type: str
    title: str
    description: str = ""
    status: str = "completed"  # active | completed | failed | pending
    metadata_json: str = "{}"
    created_at: str = Field(default_factory=utc_now)

    @classmethod
    def build(
        cls,
        wallet_address: str,
        type: str,
        title: str,
        description: str = "",
        status: str = "completed",
        **metadata: Any,
    ) -> ActivityRecord:
        return cls(
            wallet_address=wallet_address,
            type=type,
            title=title,
            description=description,
            status=status,
            metadata_json=json.dumps(metadata, default=str),
        )

    @property
    def metadata(self) -> dict[str, Any]:
        return json.loads(self.metadata_json or "{}")


class NetworkStatusRecord(BaseModel):
    """Singleton snapshot of the ledger network."""
    current_block: int = 0
    base_fee_gwei: float = 0.0
    network_load_pct: float = 0.0
    congestion: str = "unknown"
    connection_status: str = "stable"  # stable | degraded
    last_updated: str = Field(default_factory=utc_now)
