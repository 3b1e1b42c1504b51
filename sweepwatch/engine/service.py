"""Watcher service — wires the components together and owns their lifecycle.

Startup:
  1. Open the database (runs migrations)
  2. Seed wallet configurations from config.yaml
  3. Start the fee sampler and the network monitor
  4. Resume monitoring for every active configuration

Shutdown reverses this: scan loops and receipt pollers are cancelled,
then the ledger / price clients and the database are closed.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Iterable

from sweepwatch.config import WatcherConfig, WalletSeed
from sweepwatch.connectors.ledger import LedgerClient, require_address
from sweepwatch.connectors.prices import PriceSource, build_price_source
from sweepwatch.connectors.rate_limiter import rate_limiter
from sweepwatch.engine.detector import DetectionEngine
from sweepwatch.engine.network_monitor import NetworkMonitor
from sweepwatch.execution.confirmations import ConfirmationPoller
from sweepwatch.execution.fees import FeeOptimizer
from sweepwatch.execution.sweeper import SweepExecutor
from sweepwatch.observability.events import EventBus
from sweepwatch.observability.logger import get_logger
from sweepwatch.observability.metrics import metrics
from sweepwatch.storage.database import Database
from sweepwatch.storage.models import (
    ACT_EMERGENCY_STOP,
    TX_PENDING,
    ActivityRecord,
    WalletConfigRecord,
)

log = get_logger(__name__)


class WatcherService:
    def __init__(
        self,
        config: WatcherConfig,
        ledger: LedgerClient | None = None,
        db: Database | None = None,
        prices: PriceSource | None = None,
        events: EventBus | None = None,
    ):
        self.config = config
        if ledger is None:
            from sweepwatch.connectors.web3_ledger import Web3Ledger
            ledger = Web3Ledger(config.ledger)
        self.ledger = ledger
        self.db = db or Database(config.storage)
        self.prices = prices or build_price_source(config.pricing)
        self.events = events or EventBus()

        self.fees = FeeOptimizer(self.ledger, config.fees, self.prices)
        self.poller = ConfirmationPoller(self.ledger, self.db, self.events, config.sweep)
        self.sweeper = SweepExecutor(
            self.ledger, self.db, self.fees, self.prices, self.events, self.poller,
        )
        self.detector = DetectionEngine(
            self.ledger, self.db, self.prices, self.sweeper, self.events, config.detection,
        )
        self.network = NetworkMonitor(
            self.ledger, self.db, self.events, config.network,
            config.fees.congestion_thresholds_gwei,
        )
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ── lifecycle ────────────────────────────────────────────────────

    async def start(self, background: bool = True, resume: bool = True) -> None:
        """Bring the service up.

        ``background`` starts the fee sampler and network monitor;
        ``resume`` restarts monitoring for every active configuration.
        One-shot CLI commands turn both off.
        """
        if not self.db.connected:
            self.db.connect()
        self._seed_wallets(self.config.wallets)

        if background:
            self.fees.start()
            self.network.start()
        else:
            await self.fees.sample()

        self._running = True
        if resume:
            for cfg in self.db.list_wallet_configs(active_only=True):
                await self.detector.start_monitoring(cfg.wallet_address)
        log.info(
            "service.started",
            wallets=len(self.detector.monitored_wallets()),
            interval_secs=self.config.detection.scan_interval_secs,
        )

    async def shutdown(self) -> None:
        self._running = False
        await self.detector.shutdown()
        await self.poller.shutdown()
        await self.fees.stop()
        await self.network.stop()
        await self.events.drain()
        await self.prices.close()
        await self.ledger.close()
        self.db.close()
        log.info("service.stopped")

    async def run_forever(self) -> None:
        """Start and block until SIGINT / SIGTERM."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("service.signal_received", signal=sig.name)
        self.request_stop()

    def _seed_wallets(self, seeds: Iterable[WalletSeed]) -> None:
        for seed in seeds:
            wallet = require_address(seed.address, "wallet address")
            existing = self.db.get_wallet_config(wallet)
            private_key = seed.resolve_private_key()
            if existing is None:
                self.db.create_wallet_config(WalletConfigRecord(
                    wallet_address=wallet,
                    private_key=private_key,
                    safe_address=require_address(seed.safe_address, "safe address"),
                    fee_strategy=seed.fee_strategy,
                    min_transfer_usd=seed.min_transfer_usd,
                    auto_sweep_enabled=seed.auto_sweep_enabled,
                    is_active=seed.is_active,
                ))
            elif private_key and not existing.private_key:
                self.db.update_wallet_config(wallet, private_key=private_key)
            for asset in seed.assets:
                self.detector.register_asset(wallet, asset)

    # ── wallet configuration ─────────────────────────────────────────

    async def configure_wallet(
        self,
        wallet: str,
        safe_address: str,
        private_key: str = "",
        fee_strategy: str = "standard",
        min_transfer_usd: float = 10.0,
        auto_sweep_enabled: bool = True,
        is_active: bool = True,
        assets: Iterable[str] = (),
    ) -> WalletConfigRecord:
        """Create or update a wallet configuration and (re)start monitoring when active."""
        wallet = require_address(wallet, "wallet address")
        safe_address = require_address(safe_address, "safe address")
        if safe_address == wallet:
            raise ValueError("Safe address must differ from the watched wallet")
        if fee_strategy not in self.config.fees.strategies:
            raise ValueError(f"Unknown fee strategy: {fee_strategy}")
        if min_transfer_usd < 0:
            raise ValueError("min_transfer_usd must be >= 0")

        existing = self.db.get_wallet_config(wallet)
        if existing is None:
            cfg = self.db.create_wallet_config(WalletConfigRecord(
                wallet_address=wallet,
                private_key=private_key,
                safe_address=safe_address,
                fee_strategy=fee_strategy,
                min_transfer_usd=min_transfer_usd,
                auto_sweep_enabled=auto_sweep_enabled,
                is_active=is_active,
            ))
        else:
            updates: dict[str, Any] = {
                "safe_address": safe_address,
                "fee_strategy": fee_strategy,
                "min_transfer_usd": min_transfer_usd,
                "auto_sweep_enabled": auto_sweep_enabled,
                "is_active": is_active,
            }
            if private_key:
                updates["private_key"] = private_key
            cfg = self.db.update_wallet_config(wallet, **updates)

        for asset in assets:
            self.detector.register_asset(wallet, asset)

        self.events.publish(
            "wallet_configured",
            {
                "wallet": wallet,
                "safe_address": safe_address,
                "fee_strategy": fee_strategy,
                "min_transfer_usd": min_transfer_usd,
                "auto_sweep_enabled": auto_sweep_enabled,
                "is_active": is_active,
            },
            wallet=wallet,
        )
        log.info("service.wallet_configured", wallet=wallet, is_active=is_active)

        if is_active and self._running:
            await self.detector.start_monitoring(wallet)
        elif not is_active:
            self.detector.stop_monitoring(wallet)
        return cfg

    # ── emergency stop ───────────────────────────────────────────────

    def emergency_stop(self, wallet: str | None = None) -> dict[str, Any]:
        """Stop monitoring, drop sweep locks and deactivate configurations.

        Applies to one wallet, or to every configured and monitored wallet.
        Transactions already broadcast are not recalled.
        """
        if wallet is not None:
            targets = [require_address(wallet, "wallet address")]
        else:
            targets = sorted(
                {c.wallet_address for c in self.db.list_wallet_configs()}
                | set(self.detector.monitored_wallets())
            )

        cleared = self.sweeper.emergency_stop(targets[0] if wallet is not None else None)
        for target in targets:
            self.detector.stop_monitoring(target)
            if self.db.get_wallet_config(target) is not None:
                self.db.update_wallet_config(target, is_active=False)
            self.db.add_activity(ActivityRecord.build(
                target,
                ACT_EMERGENCY_STOP,
                "Emergency Stop",
                "Monitoring halted and configuration deactivated",
                status="completed",
            ))
            self.events.publish("emergency_stop", {"wallet": target}, wallet=target)

        metrics.incr("service.emergency_stops")
        log.warning("service.emergency_stop", wallets=len(targets), locks_cleared=cleared)
        return {"wallets": targets, "locks_cleared": cleared}

    # ── reporting ────────────────────────────────────────────────────

    def sweep_status(self, wallet: str) -> dict[str, Any]:
        wallet = require_address(wallet, "wallet address")
        activities = self.db.get_activities(wallet, limit=1)
        return {
            "wallet": wallet,
            "monitoring": wallet in self.detector.monitored_wallets(),
            "active_sweeps": self.sweeper.active_sweep_count(wallet),
            "pending_transactions": len(self.db.get_transactions_by_status(wallet, TX_PENDING)),
            "awaiting_receipt": self.poller.pending_count(wallet),
            "last_activity": activities[0].model_dump() if activities else None,
        }

    def status(self) -> dict[str, Any]:
        network = self.db.get_network_status()
        return {
            "running": self._running,
            "monitored_wallets": self.detector.monitored_wallets(),
            "active_sweeps": self.sweeper.active_sweep_count(),
            "awaiting_receipt": self.poller.pending_count(),
            "congestion": self.fees.congestion,
            "recommended_strategy": self.fees.recommend_strategy(),
            "network": network.model_dump() if network else None,
            "transfers_today": self.db.get_transfer_stats_today(),
            "metrics": metrics.snapshot(),
            "rate_limits": rate_limiter.stats(),
        }
