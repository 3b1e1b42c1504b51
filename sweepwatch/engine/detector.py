"""Detection engine — watches wallets and triggers sweeps on launch.

Every scan walks the known-asset catalog plus the wallet's registered
assets, one asset at a time:

  1. Read the balance; zero → nothing to do
  2. First sighting → detection row + ``token_detected``
  3. Balance moved → update balance / fiat value; ``last_checked_at`` always advances
  4. Ask the ledger whether the asset can be transferred
  5. Stored false, observed true → flip the flag (never back),
     ``trading_enabled``, and sweep at high urgency when auto-sweep is on

A failure on one asset is logged and the scan moves on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sweepwatch.config import DetectionConfig
from sweepwatch.connectors.ledger import AssetMetadata, LedgerClient, require_address
from sweepwatch.connectors.prices import PriceSource
from sweepwatch.engine.scheduler import ScanDue, ScanScheduler
from sweepwatch.execution.sweeper import SweepExecutor, SweepResult
from sweepwatch.observability.events import EventBus
from sweepwatch.observability.logger import get_logger
from sweepwatch.observability.metrics import metrics
from sweepwatch.storage.database import Database
from sweepwatch.storage.models import (
    ACT_TOKEN_DETECTED,
    ACT_TRADING_ENABLED,
    ActivityRecord,
    DetectionRecord,
    utc_now,
)

log = get_logger(__name__)


@dataclass
class AssetOutcome:
    asset: str
    balance: float = 0.0
    detected: bool = False        # new detection row written
    transferable: bool = False
    newly_enabled: bool = False
    sweep: SweepResult | None = None
    error: str = ""


@dataclass
class ScanSummary:
    wallet: str
    outcomes: list[AssetOutcome] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return sum(1 for o in self.outcomes if o.error)

    @property
    def held(self) -> list[AssetOutcome]:
        return [o for o in self.outcomes if o.balance > 0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet,
            "assets_checked": len(self.outcomes),
            "assets_held": len(self.held),
            "newly_enabled": sum(1 for o in self.outcomes if o.newly_enabled),
            "errors": self.errors,
        }


class DetectionEngine:
    def __init__(
        self,
        ledger: LedgerClient,
        db: Database,
        prices: PriceSource,
        sweeper: SweepExecutor,
        events: EventBus,
        config: DetectionConfig,
    ):
        self._ledger = ledger
        self._db = db
        self._prices = prices
        self._sweeper = sweeper
        self._events = events
        self._config = config
        self._scheduler = ScanScheduler(self._on_scan_due, config.scan_interval_secs)
        self._registered: dict[str, list[str]] = {}
        self._catalog: list[str] = []
        self._metadata: dict[str, AssetMetadata] = {}
        for known in config.known_assets:
            addr = require_address(known.address, "catalog asset")
            self._catalog.append(addr)
            self._metadata[addr] = AssetMetadata(name=known.name, symbol=known.symbol)

    @property
    def scheduler(self) -> ScanScheduler:
        return self._scheduler

    # ── monitoring lifecycle ─────────────────────────────────────────

    async def start_monitoring(self, wallet: str) -> None:
        wallet = require_address(wallet, "wallet address")
        await self._scheduler.start(wallet)

    def stop_monitoring(self, wallet: str) -> bool:
        return self._scheduler.stop(require_address(wallet, "wallet address"))

    def monitored_wallets(self) -> list[str]:
        return self._scheduler.wallets()

    async def shutdown(self) -> None:
        await self._scheduler.shutdown()

    async def _on_scan_due(self, due: ScanDue) -> None:
        summary = await self.scan_wallet(due.wallet)
        log.debug("detector.scan_done", reason=due.reason, **summary.to_dict())

    # ── watch-list ───────────────────────────────────────────────────

    def register_asset(self, wallet: str, asset: str) -> bool:
        """Add ``asset`` to the wallet's watch-list. Returns False if already present."""
        wallet = require_address(wallet, "wallet address")
        asset = require_address(asset, "asset address")
        assets = self._registered.setdefault(wallet, [])
        if asset in assets:
            return False
        assets.append(asset)
        log.info("detector.asset_registered", wallet=wallet, asset=asset)
        return True

    def deregister_asset(self, wallet: str, asset: str) -> bool:
        wallet = require_address(wallet, "wallet address")
        asset = require_address(asset, "asset address")
        assets = self._registered.get(wallet, [])
        if asset not in assets:
            return False
        assets.remove(asset)
        log.info("detector.asset_deregistered", wallet=wallet, asset=asset)
        return True

    def registered_assets(self, wallet: str) -> list[str]:
        return list(self._registered.get(require_address(wallet, "wallet address"), []))

    async def register_and_probe_asset(self, wallet: str, asset: str) -> bool:
        """Register ``asset`` and evaluate it right away.

        Returns True iff the wallet holds a positive balance of it. Ledger
        errors are logged and reported as False.
        """
        wallet = require_address(wallet, "wallet address")
        asset = require_address(asset, "asset address")
        self.register_asset(wallet, asset)
        try:
            await self._metadata_for(asset)
        except Exception as e:
            log.warning("detector.probe_failed", wallet=wallet, asset=asset, error=str(e))
            return False

        outcome = await self._check_asset(wallet, asset)
        if outcome.error:
            return False
        log.info(
            "detector.probed",
            wallet=wallet,
            asset=asset,
            balance=outcome.balance,
            transferable=outcome.transferable,
        )
        return outcome.balance > 0

    # ── scanning ─────────────────────────────────────────────────────

    async def scan_wallet(self, wallet: str) -> ScanSummary:
        wallet = require_address(wallet, "wallet address")
        summary = ScanSummary(wallet=wallet)
        seen: set[str] = set()
        for asset in [*self._catalog, *self._registered.get(wallet, [])]:
            if asset in seen:
                continue
            seen.add(asset)
            summary.outcomes.append(await self._check_asset(wallet, asset))
        metrics.incr("scans.assets_checked", len(summary.outcomes))
        return summary

    async def _metadata_for(self, asset: str) -> AssetMetadata:
        meta = self._metadata.get(asset)
        if meta is None:
            meta = await self._ledger.get_asset_metadata(asset)
            self._metadata[asset] = meta
        return meta

    async def _check_asset(self, wallet: str, asset: str) -> AssetOutcome:
        outcome = AssetOutcome(asset=asset)
        try:
            await self._evaluate(wallet, asset, outcome)
        except Exception as e:
            outcome.error = str(e)
            metrics.incr("scans.asset_errors")
            log.warning("detector.asset_error", wallet=wallet, asset=asset, error=str(e))
        return outcome

    async def _evaluate(self, wallet: str, asset: str, outcome: AssetOutcome) -> None:
        balance = await self._ledger.get_balance(wallet, asset)
        outcome.balance = balance
        if balance <= 0:
            return

        meta = await self._metadata_for(asset)
        usd_value = await self._prices.usd_value(asset, balance)
        detection = self._db.get_detection_by_asset(wallet, asset)

        if detection is None:
            detection = self._record_detection(wallet, asset, meta, balance, usd_value)
            outcome.detected = True
        elif detection.balance != balance:
            self._db.update_detection(
                detection.id, balance=balance, usd_value=usd_value, last_checked_at=utc_now(),
            )
        else:
            self._db.update_detection(detection.id, last_checked_at=utc_now())

        transferable = await self._ledger.is_transferable(asset)
        outcome.transferable = transferable
        if not transferable or detection.is_transferable:
            return
        # a concurrent probe or another process may have flipped it meanwhile
        if not self._db.mark_transferable(detection.id):
            return

        outcome.newly_enabled = True
        metrics.incr("detections.trading_enabled")
        self._db.add_activity(ActivityRecord.build(
            wallet,
            ACT_TRADING_ENABLED,
            f"{meta.symbol} Trading Enabled",
            f"{meta.symbol} can now be transferred",
            status="active",
            asset=asset,
            balance=balance,
            usd_value=usd_value,
        ))
        self._events.publish(
            "trading_enabled",
            {"detection_id": detection.id, "asset": asset, "symbol": meta.symbol, "balance": balance},
            wallet=wallet,
        )
        log.info("detector.trading_enabled", wallet=wallet, asset=asset, symbol=meta.symbol)

        cfg = self._db.get_wallet_config(wallet)
        if cfg is not None and cfg.auto_sweep_enabled:
            outcome.sweep = await self._sweeper.sweep(
                wallet, asset, meta.symbol, meta.name, balance, urgency="high",
            )

    def _record_detection(
        self,
        wallet: str,
        asset: str,
        meta: AssetMetadata,
        balance: float,
        usd_value: float,
    ) -> DetectionRecord:
        detection = self._db.create_detection(DetectionRecord(
            wallet_address=wallet,
            asset_address=asset,
            name=meta.name,
            symbol=meta.symbol,
            balance=balance,
            usd_value=usd_value,
            is_transferable=False,
        ))
        metrics.incr("detections.new")
        self._db.add_activity(ActivityRecord.build(
            wallet,
            ACT_TOKEN_DETECTED,
            f"New Token Detected: {meta.symbol}",
            f"Found {balance} {meta.symbol} (${usd_value:.2f})",
            status="active",
            asset=asset,
            balance=balance,
            usd_value=usd_value,
        ))
        self._events.publish(
            "token_detected",
            {
                "detection_id": detection.id,
                "asset": asset,
                "name": meta.name,
                "symbol": meta.symbol,
                "balance": balance,
                "usd_value": usd_value,
            },
            wallet=wallet,
        )
        log.info("detector.token_detected", wallet=wallet, asset=asset, symbol=meta.symbol, balance=balance)
        return detection

    # ── manual sweep ─────────────────────────────────────────────────

    async def manual_sweep(self, wallet: str, asset: str, urgency: str = "medium") -> SweepResult | None:
        """Sweep the stored balance of a detected asset, transferable or not."""
        wallet = require_address(wallet, "wallet address")
        asset = require_address(asset, "asset address")
        detection = self._db.get_detection_by_asset(wallet, asset)
        if detection is None:
            log.info("detector.manual_sweep_no_detection", wallet=wallet, asset=asset)
            return None
        return await self._sweeper.sweep(
            wallet, asset, detection.symbol, detection.name, detection.balance, urgency=urgency,
        )
