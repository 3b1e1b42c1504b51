"""Tests for the sweep executor:
  - SweepLock check-and-set
  - Threshold / configuration gates
  - Submission success and failure bookkeeping
  - Duplicate suppression under concurrency
  - Emergency stop and active sweep counts
"""

from __future__ import annotations

import asyncio

import pytest

from sweepwatch.connectors.ledger import TxReceipt
from sweepwatch.execution.sweeper import SweepLock

from conftest import SAFE, TOKEN, WALLET


def _types(db, wallet=WALLET) -> list[str]:
    return [a.type for a in reversed(db.get_activities(wallet, limit=100))]


class TestSweepLock:
    def test_acquire_is_exclusive_per_key(self):
        lock = SweepLock()
        assert lock.acquire("w", "a") is not None
        assert lock.acquire("w", "a") is None
        assert lock.acquire("w", "b") is not None
        assert lock.count() == 2
        assert lock.count("w") == 2

    def test_release_allows_reacquire(self):
        lock = SweepLock()
        token = lock.acquire("w", "a")
        assert lock.release("w", "a", token) is True
        assert lock.acquire("w", "a") is not None

    def test_stale_token_does_not_release_new_holder(self):
        lock = SweepLock()
        stale = lock.acquire("w", "a")
        lock.clear("w")
        fresh = lock.acquire("w", "a")
        assert fresh != stale
        assert lock.release("w", "a", stale) is False
        assert lock.count("w") == 1
        assert lock.acquire("w", "a") is None
        assert lock.release("w", "a", fresh) is True

    def test_clear_one_wallet(self):
        lock = SweepLock()
        lock.acquire("w1", "a")
        lock.acquire("w2", "a")
        assert lock.clear("w1") == 1
        assert lock.count("w1") == 0
        assert lock.count("w2") == 1

    def test_clear_all(self):
        lock = SweepLock()
        lock.acquire("w1", "a")
        lock.acquire("w2", "b")
        assert lock.clear() == 2
        assert lock.count() == 0


class TestSweepGates:
    @pytest.mark.asyncio
    async def test_missing_config_is_rejected(self, service, db, ledger, events):
        result = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0)
        assert result.status == "rejected"
        assert result.tx_hash is None
        assert db.get_transactions(WALLET) == []
        assert ledger.submitted == []
        assert _types(db) == ["transfer_failed"]
        assert [e.type for e in events.history(wallet=WALLET)] == ["sweep_failed"]

    @pytest.mark.asyncio
    async def test_inactive_config_is_rejected(self, service, db, configured):
        db.update_wallet_config(WALLET, is_active=False)
        result = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0)
        assert result.status == "rejected"
        assert "inactive" in result.error
        assert db.get_transactions(WALLET) == []

    @pytest.mark.asyncio
    async def test_missing_credentials_is_rejected(self, service, db, configured):
        db.update_wallet_config(WALLET, private_key="")
        result = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0)
        assert result.status == "rejected"

    @pytest.mark.asyncio
    async def test_below_threshold_writes_nothing(self, service, db, ledger, configured):
        # 4 × $2 = $8 < $10
        result = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 4.0)
        assert result.status == "below_threshold"
        assert result.usd_value == 8.0
        assert db.get_transactions(WALLET) == []
        assert ledger.submitted == []
        assert _types(db) == []

    @pytest.mark.asyncio
    async def test_unknown_price_is_below_threshold(self, service, db, configured):
        result = await service.sweeper.sweep(WALLET, "0x" + "ee" * 20, "UNK", "Unknown", 1e9)
        assert result.status == "below_threshold"
        assert db.get_transactions(WALLET) == []


class TestSweepSubmission:
    @pytest.mark.asyncio
    async def test_submitted(self, service, db, ledger, events, configured):
        ledger.base_fee = 40.0
        result = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0, urgency="high")

        assert result.status == "submitted"
        assert result.tx_hash == ledger.submitted[0]["tx_hash"]
        assert result.fee_gwei == 48.0
        call = ledger.submitted[0]
        assert call["to"] == SAFE
        assert call["amount"] == 100.0
        assert call["credentials"] == configured.private_key

        tx = db.get_transaction(result.sweep_id)
        assert tx.status == "completed"
        assert tx.tx_hash == result.tx_hash
        assert tx.usd_value == 200.0
        assert tx.fee_gwei == 48.0
        assert _types(db) == ["transfer_started", "transfer_completed"]
        assert [e.type for e in events.history(wallet=WALLET)] == ["sweep_initiated", "sweep_completed"]
        await service.poller.shutdown()

    @pytest.mark.asyncio
    async def test_receipt_recorded_after_submission(self, service, db, ledger, events, configured):
        result = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0)
        ledger.receipts[result.tx_hash] = TxReceipt(
            tx_hash=result.tx_hash,
            block_number=1234,
            gas_used=50_000,
            effective_gas_price_wei=40 * 10**9,
            success=True,
        )
        await service.poller.wait_all()

        tx = db.get_transaction(result.sweep_id)
        assert tx.block_number == 1234
        assert tx.gas_used == 50_000
        assert tx.gas_cost == pytest.approx(0.002)
        assert tx.status == "completed"
        assert tx.completed_at is not None
        assert events.history("transaction_receipt", WALLET)[0].payload["block_number"] == 1234

    @pytest.mark.asyncio
    async def test_submission_failure(self, service, db, ledger, events, configured):
        ledger.submit_error = RuntimeError("insufficient funds for gas")
        result = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0)

        assert result.status == "failed"
        assert result.tx_hash is None
        assert "insufficient funds" in result.error
        tx = db.get_transaction(result.sweep_id)
        assert tx.status == "failed"
        assert tx.tx_hash is None
        assert _types(db) == ["transfer_started", "transfer_failed"]
        failed = events.history("sweep_failed", WALLET)
        assert failed and "insufficient funds" in failed[0].payload["error"]
        assert service.poller.pending_count() == 0

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, service, ledger, configured):
        ledger.submit_error = RuntimeError("boom")
        await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0)
        assert service.sweeper.active_sweep_count() == 0

        ledger.submit_error = None
        result = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0)
        assert result.status == "submitted"
        await service.poller.shutdown()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_duplicate_sweep_returns_in_progress(self, service, db, ledger, configured):
        ledger.submit_delay = 0.05
        first, second = await asyncio.gather(
            service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0),
            service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0),
        )
        statuses = sorted([first.status, second.status])
        assert statuses == ["in_progress", "submitted"]
        assert len(db.get_transactions(WALLET)) == 1
        assert len(ledger.submitted) == 1
        await service.poller.shutdown()

    @pytest.mark.asyncio
    async def test_active_count_during_submission(self, service, ledger, configured):
        ledger.submit_delay = 0.05
        task = asyncio.create_task(service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0))
        await asyncio.sleep(0.01)
        assert service.sweeper.active_sweep_count() == 1
        assert service.sweeper.active_sweep_count(WALLET) == 1
        assert service.sweeper.active_sweep_count("0x" + "33" * 20) == 0
        await task
        assert service.sweeper.active_sweep_count() == 0
        await service.poller.shutdown()

    @pytest.mark.asyncio
    async def test_emergency_stop_clears_lock(self, service, ledger, configured):
        ledger.submit_delay = 0.05
        task = asyncio.create_task(service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0))
        await asyncio.sleep(0.01)
        assert service.sweeper.emergency_stop(WALLET) == 1
        assert service.sweeper.active_sweep_count() == 0
        await task
        await service.poller.shutdown()

    @pytest.mark.asyncio
    async def test_stopped_sweep_does_not_free_later_reservation(self, service, db, ledger, configured):
        ledger.submit_delay = 0.05
        first = asyncio.create_task(service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0))
        await asyncio.sleep(0.01)
        service.sweeper.emergency_stop(WALLET)

        ledger.submit_delay = 0.3
        second = asyncio.create_task(service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0))
        await asyncio.sleep(0.01)
        assert (await first).status == "submitted"

        # second is still submitting; its reservation must survive first's exit
        assert service.sweeper.active_sweep_count(WALLET) == 1
        third = await service.sweeper.sweep(WALLET, TOKEN, "TST", "Test Token", 100.0)
        assert third.status == "in_progress"

        assert (await second).status == "submitted"
        assert len(ledger.submitted) == 2
        assert service.sweeper.active_sweep_count() == 0
        await service.poller.shutdown()
