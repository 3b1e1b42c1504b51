"""Network monitor — periodic snapshot of block height, base fee and congestion."""

from __future__ import annotations

import asyncio

from sweepwatch.config import NetworkConfig
from sweepwatch.connectors.ledger import LedgerClient
from sweepwatch.execution.fees import classify_congestion
from sweepwatch.observability.events import EventBus
from sweepwatch.observability.logger import get_logger
from sweepwatch.observability.metrics import metrics
from sweepwatch.storage.database import Database
from sweepwatch.storage.models import NetworkStatusRecord, utc_now

log = get_logger(__name__)


class NetworkMonitor:
    def __init__(
        self,
        ledger: LedgerClient,
        db: Database,
        events: EventBus,
        config: NetworkConfig,
        congestion_thresholds_gwei: list[float],
    ):
        self._ledger = ledger
        self._db = db
        self._events = events
        self._config = config
        self._thresholds = congestion_thresholds_gwei
        self._task: asyncio.Task[None] | None = None

    async def update(self) -> NetworkStatusRecord:
        """Take one snapshot. A ledger failure marks the connection ``degraded``."""
        previous = self._db.get_network_status() or NetworkStatusRecord()
        try:
            block = await self._ledger.get_block_number()
            base_fee = await self._ledger.get_base_fee()
        except Exception as e:
            log.warning("network_monitor.update_failed", error=str(e))
            status = previous.model_copy(update={"connection_status": "degraded", "last_updated": utc_now()})
        else:
            congestion, load = classify_congestion(base_fee, self._thresholds)
            status = NetworkStatusRecord(
                current_block=block,
                base_fee_gwei=round(base_fee, 2),
                network_load_pct=load,
                congestion=congestion,
                connection_status="stable",
            )
            metrics.gauge("network.block", float(block))
            metrics.gauge("network.base_fee_gwei", base_fee)

        self._db.update_network_status(status)
        self._events.publish("network_status_updated", status.model_dump())
        return status

    async def _loop(self) -> None:
        while True:
            await self.update()
            await asyncio.sleep(self._config.status_interval_secs)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
