"""Per-wallet recurring scan scheduler.

Each scheduled wallet owns one asyncio task that sleeps for the scan
interval and then emits a ``ScanDue`` to the handler. Scans for one
wallet never overlap: a request that arrives while a scan is running is
skipped. Different wallets run independently.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from sweepwatch.observability.logger import get_logger
from sweepwatch.observability.metrics import metrics

log = get_logger(__name__)


@dataclass
class ScanDue:
    wallet: str
    reason: str  # "initial" | "interval" | "manual"
    due_at: float = field(default_factory=time.time)


ScanHandler = Callable[[ScanDue], Awaitable[None]]


@dataclass
class _WalletSchedule:
    reset: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    scans: int = 0
    skipped: int = 0


class ScanScheduler:
    def __init__(self, handler: ScanHandler, interval_secs: float):
        self._handler = handler
        self._interval = interval_secs
        self._schedules: dict[str, _WalletSchedule] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        # keyed by wallet so a stop/start cannot overlap an in-flight scan
        self._scanning: set[str] = set()

    @property
    def interval_secs(self) -> float:
        return self._interval

    async def start(self, wallet: str) -> None:
        """Schedule ``wallet``: scan once now, then every interval.

        For a wallet that is already scheduled this only restarts the
        countdown to its next scan.
        """
        existing = self._schedules.get(wallet)
        if existing is not None:
            existing.reset.set()
            log.debug("scheduler.countdown_reset", wallet=wallet)
            return

        schedule = _WalletSchedule()
        self._schedules[wallet] = schedule
        await self._dispatch(wallet, schedule, "initial")

        # stop() may have run while the initial scan was in flight
        if self._schedules.get(wallet) is schedule:
            schedule.task = asyncio.create_task(self._run(wallet, schedule))
            self._tasks.add(schedule.task)
            schedule.task.add_done_callback(self._tasks.discard)
            log.info("scheduler.started", wallet=wallet, interval_secs=self._interval)

    def stop(self, wallet: str) -> bool:
        """Deregister ``wallet``. A scan already running is allowed to finish."""
        schedule = self._schedules.pop(wallet, None)
        if schedule is None:
            return False
        schedule.reset.set()
        log.info("scheduler.stopped", wallet=wallet, scans=schedule.scans, skipped=schedule.skipped)
        return True

    async def trigger(self, wallet: str) -> bool:
        """Run a scan now. Returns False if the wallet is unscheduled or already scanning."""
        schedule = self._schedules.get(wallet)
        if schedule is None:
            return False
        return await self._dispatch(wallet, schedule, "manual")

    def is_scheduled(self, wallet: str) -> bool:
        return wallet in self._schedules

    def is_scanning(self, wallet: str) -> bool:
        return wallet in self._scanning

    def wallets(self) -> list[str]:
        return list(self._schedules)

    async def _run(self, wallet: str, schedule: _WalletSchedule) -> None:
        while self._schedules.get(wallet) is schedule:
            schedule.reset.clear()
            try:
                await asyncio.wait_for(schedule.reset.wait(), timeout=self._interval)
                continue
            except asyncio.TimeoutError:
                pass
            if self._schedules.get(wallet) is not schedule:
                break
            await self._dispatch(wallet, schedule, "interval")

    async def _dispatch(self, wallet: str, schedule: _WalletSchedule, reason: str) -> bool:
        if wallet in self._scanning:
            schedule.skipped += 1
            metrics.incr("scans.skipped")
            log.debug("scheduler.scan_skipped", wallet=wallet, reason=reason)
            return False

        self._scanning.add(wallet)
        try:
            with metrics.timer("scans.duration_ms"):
                await self._handler(ScanDue(wallet=wallet, reason=reason))
            schedule.scans += 1
            metrics.incr("scans.completed")
        except Exception as e:
            metrics.incr("scans.errors")
            log.error("scheduler.scan_error", wallet=wallet, reason=reason, error=str(e))
        finally:
            self._scanning.discard(wallet)
        return True

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        self._schedules.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
