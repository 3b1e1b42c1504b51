"""Sweep executor — moves a full asset balance to the wallet's safe address.

Guarantees at most one attempt in flight per (wallet, asset): the key is
claimed before the first await and released on every exit path.

Flow for a claimed key:
  1. Load the wallet configuration (missing / inactive → rejected)
  2. Price the balance (below the wallet threshold → below_threshold)
  3. Ask the fee optimizer for a price (wallet strategy + urgency)
  4. Write a pending transaction, then submit
  5. On success hand the hash to the confirmation poller
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from threading import Lock
from typing import Any

from sweepwatch.connectors.ledger import LedgerClient, normalize_address
from sweepwatch.connectors.prices import PriceSource
from sweepwatch.execution.confirmations import ConfirmationPoller
from sweepwatch.execution.fees import FeeOptimizer
from sweepwatch.observability.events import EventBus
from sweepwatch.observability.logger import get_logger
from sweepwatch.observability.metrics import metrics
from sweepwatch.storage.database import Database
from sweepwatch.storage.models import (
    ACT_TRANSFER_COMPLETED,
    ACT_TRANSFER_FAILED,
    ACT_TRANSFER_STARTED,
    TX_COMPLETED,
    TX_FAILED,
    TX_PENDING,
    ActivityRecord,
    TransactionRecord,
    utc_now,
)

log = get_logger(__name__)


@dataclass
class SweepResult:
    status: str  # "submitted" | "in_progress" | "below_threshold" | "rejected" | "failed"
    tx_hash: str | None = None
    sweep_id: int | None = None  # transaction record id
    error: str = ""
    usd_value: float = 0.0
    fee_gwei: float = 0.0

    @property
    def submitted(self) -> bool:
        return self.status == "submitted"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "tx_hash": self.tx_hash,
            "sweep_id": self.sweep_id,
            "error": self.error,
            "usd_value": self.usd_value,
            "fee_gwei": self.fee_gwei,
        }


class SweepLock:
    """(wallet, asset) reservations with an atomic check-and-set.

    ``acquire`` hands back a token; ``release`` only drops the entry while
    that token still owns it, so a holder whose key was cleared cannot free
    a later reservation.
    """

    def __init__(self) -> None:
        self._mutex = Lock()
        self._held: dict[tuple[str, str], int] = {}
        self._tokens = itertools.count(1)

    def acquire(self, wallet: str, asset: str) -> int | None:
        key = (wallet, asset)
        with self._mutex:
            if key in self._held:
                return None
            token = next(self._tokens)
            self._held[key] = token
            return token

    def release(self, wallet: str, asset: str, token: int) -> bool:
        key = (wallet, asset)
        with self._mutex:
            if self._held.get(key) != token:
                return False
            del self._held[key]
            return True

    def clear(self, wallet: str | None = None) -> int:
        with self._mutex:
            doomed = [k for k in self._held if wallet is None or k[0] == wallet]
            for k in doomed:
                del self._held[k]
            return len(doomed)

    def count(self, wallet: str | None = None) -> int:
        with self._mutex:
            if wallet is None:
                return len(self._held)
            return sum(1 for w, _ in self._held if w == wallet)


class SweepExecutor:
    def __init__(
        self,
        ledger: LedgerClient,
        db: Database,
        fees: FeeOptimizer,
        prices: PriceSource,
        events: EventBus,
        poller: ConfirmationPoller,
    ):
        self._ledger = ledger
        self._db = db
        self._fees = fees
        self._prices = prices
        self._events = events
        self._poller = poller
        self._lock = SweepLock()

    async def sweep(
        self,
        wallet: str,
        asset: str,
        symbol: str,
        name: str,
        amount: float,
        urgency: str = "high",
    ) -> SweepResult:
        wallet = normalize_address(wallet)
        asset = normalize_address(asset)

        token = self._lock.acquire(wallet, asset)
        if token is None:
            log.info("sweeper.in_progress", wallet=wallet, asset=asset, symbol=symbol)
            metrics.incr("sweeps.skipped", reason="in_progress")
            return SweepResult(status="in_progress")

        try:
            return await self._sweep_locked(wallet, asset, symbol, name, amount, urgency)
        except Exception as e:
            log.error("sweeper.error", wallet=wallet, asset=asset, error=str(e))
            metrics.incr("sweeps.failed")
            return SweepResult(status="failed", error=str(e))
        finally:
            self._lock.release(wallet, asset, token)

    async def _sweep_locked(
        self,
        wallet: str,
        asset: str,
        symbol: str,
        name: str,
        amount: float,
        urgency: str,
    ) -> SweepResult:
        cfg = self._db.get_wallet_config(wallet)
        if cfg is None or not cfg.is_active or not cfg.private_key:
            if cfg is None:
                reason = "wallet not configured"
            elif not cfg.is_active:
                reason = "wallet configuration inactive"
            else:
                reason = "no signing credentials configured"
            return self._reject(wallet, asset, symbol, amount, reason)

        usd_value = await self._prices.usd_value(asset, amount)
        if usd_value < cfg.min_transfer_usd:
            log.info(
                "sweeper.below_threshold",
                wallet=wallet,
                symbol=symbol,
                usd_value=usd_value,
                threshold=cfg.min_transfer_usd,
            )
            metrics.incr("sweeps.skipped", reason="below_threshold")
            return SweepResult(status="below_threshold", usd_value=usd_value)

        fee = await self._fees.optimal_fee(cfg.fee_strategy, urgency)

        tx = self._db.create_transaction(TransactionRecord(
            wallet_address=wallet,
            asset_address=asset,
            symbol=symbol,
            name=name,
            amount=amount,
            usd_value=usd_value,
            status=TX_PENDING,
            fee_gwei=fee,
        ))
        self._db.add_activity(ActivityRecord.build(
            wallet,
            ACT_TRANSFER_STARTED,
            f"{symbol} Auto-Sweep Started",
            f"Transferring {amount} {symbol} (${usd_value:.2f}) to safe wallet",
            status="pending",
            asset=asset,
            amount=amount,
            usd_value=usd_value,
            fee_strategy=cfg.fee_strategy,
            urgency=urgency,
        ))
        self._events.publish(
            "sweep_initiated",
            {"transaction_id": tx.id, "symbol": symbol, "amount": amount, "status": TX_PENDING},
            wallet=wallet,
        )

        try:
            tx_hash = await self._ledger.submit_transfer(
                cfg.private_key, asset, cfg.safe_address, amount, fee,
            )
        except Exception as e:
            return self._fail(tx.id, wallet, asset, symbol, amount, str(e), usd_value, fee)

        self._db.update_transaction(tx.id, tx_hash=tx_hash, status=TX_COMPLETED)
        self._db.add_activity(ActivityRecord.build(
            wallet,
            ACT_TRANSFER_COMPLETED,
            f"{symbol} Transfer Completed",
            f"Transferred {amount} {symbol} to safe wallet",
            status="completed",
            asset=asset,
            tx_hash=tx_hash,
            amount=amount,
        ))
        self._events.publish(
            "sweep_completed",
            {
                "transaction_id": tx.id,
                "tx_hash": tx_hash,
                "symbol": symbol,
                "amount": amount,
                "status": TX_COMPLETED,
            },
            wallet=wallet,
        )
        metrics.incr("sweeps.submitted")
        log.info(
            "sweeper.submitted",
            wallet=wallet,
            symbol=symbol,
            amount=amount,
            usd_value=usd_value,
            fee_gwei=fee,
            tx_hash=tx_hash,
        )

        self._poller.track(tx.id, tx_hash, wallet)
        return SweepResult(
            status="submitted", tx_hash=tx_hash, sweep_id=tx.id, usd_value=usd_value, fee_gwei=fee,
        )

    def _reject(self, wallet: str, asset: str, symbol: str, amount: float, reason: str) -> SweepResult:
        log.warning("sweeper.rejected", wallet=wallet, asset=asset, reason=reason)
        metrics.incr("sweeps.rejected")
        self._db.add_activity(ActivityRecord.build(
            wallet,
            ACT_TRANSFER_FAILED,
            f"{symbol} Transfer Rejected",
            f"Cannot transfer {amount} {symbol}: {reason}",
            status="failed",
            asset=asset,
            amount=amount,
            error=reason,
        ))
        self._events.publish(
            "sweep_failed",
            {"symbol": symbol, "amount": amount, "status": "rejected", "error": reason},
            wallet=wallet,
        )
        return SweepResult(status="rejected", error=reason)

    def _fail(
        self,
        tx_id: int,
        wallet: str,
        asset: str,
        symbol: str,
        amount: float,
        reason: str,
        usd_value: float,
        fee: float,
    ) -> SweepResult:
        log.error("sweeper.submit_failed", wallet=wallet, asset=asset, error=reason)
        metrics.incr("sweeps.failed")
        self._db.update_transaction(tx_id, status=TX_FAILED, completed_at=utc_now())
        self._db.add_activity(ActivityRecord.build(
            wallet,
            ACT_TRANSFER_FAILED,
            f"{symbol} Transfer Failed",
            f"Failed to transfer {amount} {symbol}: {reason}",
            status="failed",
            asset=asset,
            amount=amount,
            error=reason,
        ))
        self._events.publish(
            "sweep_failed",
            {
                "transaction_id": tx_id,
                "symbol": symbol,
                "amount": amount,
                "status": TX_FAILED,
                "error": reason,
            },
            wallet=wallet,
        )
        return SweepResult(status="failed", sweep_id=tx_id, error=reason, usd_value=usd_value, fee_gwei=fee)

    def emergency_stop(self, wallet: str | None = None) -> int:
        """Drop lock entries for one wallet, or all. In-flight submissions are not recalled."""
        cleared = self._lock.clear(normalize_address(wallet) if wallet else None)
        log.warning("sweeper.emergency_stop", wallet=wallet or "all", cleared=cleared)
        return cleared

    def active_sweep_count(self, wallet: str | None = None) -> int:
        return self._lock.count(normalize_address(wallet) if wallet else None)

    @property
    def poller(self) -> ConfirmationPoller:
        return self._poller
