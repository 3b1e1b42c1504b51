"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sweepwatch.config import (  # noqa: E402
    DetectionConfig,
    PricingConfig,
    StorageConfig,
    SweepConfig,
    WatcherConfig,
)
from sweepwatch.connectors.ledger import AssetMetadata, LedgerClient, TxReceipt  # noqa: E402
from sweepwatch.connectors.prices import StaticPriceSource  # noqa: E402
from sweepwatch.engine.service import WatcherService  # noqa: E402
from sweepwatch.observability.events import EventBus  # noqa: E402
from sweepwatch.observability.metrics import metrics  # noqa: E402
from sweepwatch.storage.database import Database  # noqa: E402
from sweepwatch.storage.models import WalletConfigRecord  # noqa: E402

WALLET = "0x" + "11" * 20
SAFE = "0x" + "22" * 20
TOKEN = "0x" + "ab" * 20
OTHER_TOKEN = "0x" + "cd" * 20
TOKEN_PRICE = 2.0


class FakeLedger(LedgerClient):
    """In-process ledger with scriptable balances, fees and receipts."""

    def __init__(self) -> None:
        self.balances: dict[tuple[str, str], float] = {}
        self.transferable: dict[str, bool] = {}
        self.metadata: dict[str, AssetMetadata] = {}
        self.balance_errors: set[str] = set()
        self.transferable_errors: set[str] = set()
        self.base_fee: float = 40.0
        self.base_fee_error: Exception | None = None
        self.block_number: int = 1_000
        self.gas_estimate: int = 52_000
        self.gas_error: Exception | None = None
        self.submit_error: Exception | None = None
        self.submit_delay: float = 0.0
        self.transferable_delay: float = 0.0
        self.submitted: list[dict] = []
        self.receipts: dict[str, TxReceipt | None] = {}
        self.receipt_error: Exception | None = None
        self.receipt_calls: int = 0
        self.balance_calls: int = 0

    async def get_balance(self, wallet: str, asset: str) -> float:
        self.balance_calls += 1
        await asyncio.sleep(0)
        if asset in self.balance_errors:
            raise ConnectionError(f"rpc down for {asset}")
        return self.balances.get((wallet, asset), 0.0)

    async def get_asset_metadata(self, asset: str) -> AssetMetadata:
        if asset in self.balance_errors:
            raise ConnectionError(f"rpc down for {asset}")
        return self.metadata.get(asset, AssetMetadata(name="Test Token", symbol="TST"))

    async def is_transferable(self, asset: str) -> bool:
        if self.transferable_delay:
            await asyncio.sleep(self.transferable_delay)
        if asset in self.transferable_errors:
            raise ConnectionError("transferability check failed")
        return self.transferable.get(asset, False)

    async def get_base_fee(self) -> float:
        if self.base_fee_error is not None:
            raise self.base_fee_error
        return self.base_fee

    async def get_block_number(self) -> int:
        return self.block_number

    async def estimate_transfer_gas(self, asset: str, from_addr: str, to_addr: str, amount: float) -> int:
        if self.gas_error is not None:
            raise self.gas_error
        return self.gas_estimate

    async def submit_transfer(
        self, credentials: str, asset: str, to_addr: str, amount: float, fee_gwei: float
    ) -> str:
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.submit_error is not None:
            raise self.submit_error
        tx_hash = "0x" + f"{len(self.submitted) + 1:064x}"
        self.submitted.append({
            "credentials": credentials,
            "asset": asset,
            "to": to_addr,
            "amount": amount,
            "fee_gwei": fee_gwei,
            "tx_hash": tx_hash,
        })
        return tx_hash

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        self.receipt_calls += 1
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipts.get(tx_hash)


def fast_config(**sweep_overrides: float) -> WatcherConfig:
    sweep = {
        "receipt_initial_delay_secs": 0.0,
        "receipt_poll_interval_secs": 0.0,
        "receipt_max_attempts": 3,
    }
    sweep.update(sweep_overrides)
    return WatcherConfig(
        detection=DetectionConfig(scan_interval_secs=3600),
        sweep=SweepConfig(**sweep),
        storage=StorageConfig(sqlite_path=":memory:"),
    )


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def db():
    database = Database(StorageConfig(sqlite_path=":memory:"))
    database.connect()
    yield database
    database.close()


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def prices() -> StaticPriceSource:
    source = StaticPriceSource(PricingConfig())
    source.set_price(TOKEN, TOKEN_PRICE)
    source.set_price(OTHER_TOKEN, TOKEN_PRICE)
    return source


@pytest.fixture()
def service(ledger, db, prices, events) -> WatcherService:
    return WatcherService(fast_config(), ledger=ledger, db=db, prices=prices, events=events)


@pytest.fixture()
def configured(db) -> WalletConfigRecord:
    """An active wallet with auto-sweep on and a $10 threshold."""
    return db.create_wallet_config(WalletConfigRecord(
        wallet_address=WALLET,
        private_key="0x" + "99" * 32,
        safe_address=SAFE,
    ))
