"""Confirmation poller — follows submitted sweeps until a receipt lands.

Each submitted transaction gets a detached task: wait the initial delay,
then query the receipt up to ``receipt_max_attempts`` times, sleeping
``receipt_poll_interval_secs`` between attempts. A query error counts as
an attempt. When attempts run out the record is left untouched and a
``transfer_unconfirmed`` activity is written.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from sweepwatch.config import SweepConfig
from sweepwatch.connectors.ledger import LedgerClient, TxReceipt
from sweepwatch.observability.events import EventBus
from sweepwatch.observability.logger import get_logger
from sweepwatch.observability.metrics import metrics
from sweepwatch.storage.database import Database
from sweepwatch.storage.models import (
    ACT_TRANSFER_UNCONFIRMED,
    TX_COMPLETED,
    TX_FAILED,
    ActivityRecord,
    utc_now,
)

log = get_logger(__name__)


@dataclass
class PollOutcome:
    tx_id: int
    tx_hash: str
    status: str  # "completed" | "failed" | "unconfirmed"
    attempts: int
    receipt: TxReceipt | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "tx_hash": self.tx_hash,
            "status": self.status,
            "attempts": self.attempts,
        }


class ConfirmationPoller:
    def __init__(self, ledger: LedgerClient, db: Database, events: EventBus, config: SweepConfig):
        self._ledger = ledger
        self._db = db
        self._events = events
        self._config = config
        self._tasks: dict[asyncio.Task[PollOutcome], str] = {}

    def track(self, tx_id: int, tx_hash: str, wallet: str) -> asyncio.Task[PollOutcome]:
        """Start polling in the background."""
        task = asyncio.create_task(self.poll(tx_id, tx_hash, wallet))
        self._tasks[task] = wallet
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[PollOutcome]) -> None:
        self._tasks.pop(task, None)
        if not task.cancelled() and task.exception() is not None:
            log.error("confirmations.poller_crashed", error=str(task.exception()))

    def pending_count(self, wallet: str | None = None) -> int:
        if wallet is None:
            return len(self._tasks)
        return sum(1 for w in self._tasks.values() if w == wallet)

    async def poll(self, tx_id: int, tx_hash: str, wallet: str) -> PollOutcome:
        await asyncio.sleep(self._config.receipt_initial_delay_secs)

        max_attempts = self._config.receipt_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                receipt = await self._ledger.get_receipt(tx_hash)
            except Exception as e:
                log.warning("confirmations.query_failed", tx_hash=tx_hash, attempt=attempt, error=str(e))
                receipt = None

            if receipt is not None:
                return self._record(tx_id, wallet, receipt, attempt)

            if attempt < max_attempts:
                await asyncio.sleep(self._config.receipt_poll_interval_secs)

        log.warning("confirmations.unconfirmed", tx_hash=tx_hash, attempts=max_attempts)
        metrics.incr("sweeps.unconfirmed")
        self._db.add_activity(ActivityRecord.build(
            wallet,
            ACT_TRANSFER_UNCONFIRMED,
            "Transfer Unconfirmed",
            f"No receipt for {tx_hash} after {max_attempts} checks",
            status="pending",
            tx_hash=tx_hash,
            transaction_id=tx_id,
        ))
        self._events.publish(
            "sweep_unconfirmed",
            {"transaction_id": tx_id, "tx_hash": tx_hash, "attempts": max_attempts},
            wallet=wallet,
        )
        return PollOutcome(tx_id=tx_id, tx_hash=tx_hash, status="unconfirmed", attempts=max_attempts)

    def _record(self, tx_id: int, wallet: str, receipt: TxReceipt, attempt: int) -> PollOutcome:
        status = TX_COMPLETED if receipt.success else TX_FAILED
        gas_cost = round(receipt.gas_cost, 6)
        self._db.update_transaction(
            tx_id,
            status=status,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            gas_cost=gas_cost,
            completed_at=utc_now(),
        )
        self._events.publish(
            "transaction_receipt",
            {
                "transaction_id": tx_id,
                "tx_hash": receipt.tx_hash,
                "block_number": receipt.block_number,
                "gas_used": receipt.gas_used,
                "gas_cost": gas_cost,
                "status": status,
            },
            wallet=wallet,
        )
        metrics.incr("sweeps.receipts", status=status)
        log.info(
            "confirmations.receipt",
            tx_hash=receipt.tx_hash,
            block=receipt.block_number,
            gas_cost=gas_cost,
            status=status,
        )
        return PollOutcome(
            tx_id=tx_id, tx_hash=receipt.tx_hash, status=status, attempts=attempt, receipt=receipt,
        )

    async def wait_all(self) -> None:
        """Block until every tracked poller has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
