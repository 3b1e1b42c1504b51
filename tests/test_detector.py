"""Tests for the detection engine:
  - Detection bookkeeping per scan
  - Monotonic transferability flag and single sweep trigger
  - register_and_probe_asset outcomes
  - Error isolation between assets
  - Watch-list management and manual sweeps
"""

from __future__ import annotations

import asyncio

import pytest

from sweepwatch.connectors.ledger import AssetMetadata, TxReceipt

from conftest import OTHER_TOKEN, TOKEN, WALLET

USDC = "0xa0b86a33e6441b56c6b15fb8b0beaddd8f1af6c4"


def _types(db) -> list[str]:
    return [a.type for a in reversed(db.get_activities(WALLET, limit=100))]


class TestScanBookkeeping:
    @pytest.mark.asyncio
    async def test_zero_balance_creates_nothing(self, service, db, ledger):
        service.detector.register_asset(WALLET, TOKEN)
        summary = await service.detector.scan_wallet(WALLET)
        assert summary.held == []
        assert db.get_detections(WALLET) == []
        assert _types(db) == []

    @pytest.mark.asyncio
    async def test_catalog_asset_detected_with_catalog_metadata(self, service, db, ledger, events):
        ledger.balances[(WALLET, USDC)] = 250.0
        await service.detector.scan_wallet(WALLET)

        det = db.get_detection_by_asset(WALLET, USDC)
        assert det is not None
        assert det.symbol == "USDC"
        assert det.name == "USD Coin"
        assert det.balance == 250.0
        assert det.usd_value == 250.0
        assert det.is_transferable is False
        assert _types(db) == ["token_detected"]
        assert events.history("token_detected", WALLET)[0].payload["symbol"] == "USDC"

    @pytest.mark.asyncio
    async def test_registered_asset_metadata_fetched_once(self, service, db, ledger):
        ledger.metadata[TOKEN] = AssetMetadata(name="Launch Token", symbol="LNCH", decimals=9)
        ledger.balances[(WALLET, TOKEN)] = 10.0
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)

        ledger.metadata[TOKEN] = AssetMetadata(name="Renamed", symbol="RNM")
        await service.detector.scan_wallet(WALLET)
        assert db.get_detection_by_asset(WALLET, TOKEN).symbol == "LNCH"

    @pytest.mark.asyncio
    async def test_balance_change_updates_detection(self, service, db, ledger):
        ledger.balances[(WALLET, TOKEN)] = 10.0
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        first = db.get_detection_by_asset(WALLET, TOKEN)

        ledger.balances[(WALLET, TOKEN)] = 15.0
        await service.detector.scan_wallet(WALLET)
        second = db.get_detection_by_asset(WALLET, TOKEN)

        assert second.id == first.id
        assert second.balance == 15.0
        assert second.usd_value == 30.0
        assert second.last_checked_at >= first.last_checked_at
        assert second.detected_at == first.detected_at
        assert _types(db) == ["token_detected"]

    @pytest.mark.asyncio
    async def test_unchanged_balance_advances_last_checked(self, service, db, ledger):
        ledger.balances[(WALLET, TOKEN)] = 10.0
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        first = db.get_detection_by_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        second = db.get_detection_by_asset(WALLET, TOKEN)
        assert second.last_checked_at >= first.last_checked_at
        assert second.balance == 10.0


class TestTradingEnabled:
    @pytest.mark.asyncio
    async def test_transition_triggers_one_sweep(self, service, db, ledger, events, configured):
        ledger.balances[(WALLET, TOKEN)] = 100.0
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        assert ledger.submitted == []

        first_hash = "0x" + f"{1:064x}"
        ledger.receipts[first_hash] = TxReceipt(
            tx_hash=first_hash, block_number=1001, gas_used=52_000,
            effective_gas_price_wei=48 * 10**9, success=True,
        )
        ledger.transferable[TOKEN] = True
        summary = await service.detector.scan_wallet(WALLET)
        outcome = next(o for o in summary.outcomes if o.asset == TOKEN)
        assert outcome.newly_enabled is True
        assert outcome.sweep is not None and outcome.sweep.status == "submitted"
        assert len(ledger.submitted) == 1
        assert ledger.submitted[0]["amount"] == 100.0

        await service.detector.scan_wallet(WALLET)
        await service.detector.scan_wallet(WALLET)
        assert len(ledger.submitted) == 1
        assert _types(db) == [
            "token_detected", "trading_enabled", "transfer_started", "transfer_completed",
        ]
        assert len(events.history("trading_enabled", WALLET)) == 1
        await service.poller.shutdown()

    @pytest.mark.asyncio
    async def test_sweep_uses_high_urgency(self, service, ledger, configured):
        ledger.base_fee = 40.0
        ledger.balances[(WALLET, TOKEN)] = 100.0
        ledger.transferable[TOKEN] = True
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        assert ledger.submitted[0]["fee_gwei"] == 48.0
        await service.poller.shutdown()

    @pytest.mark.asyncio
    async def test_flag_is_monotonic(self, service, db, ledger, configured):
        db.update_wallet_config(WALLET, auto_sweep_enabled=False)
        ledger.balances[(WALLET, TOKEN)] = 100.0
        ledger.transferable[TOKEN] = True
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        assert db.get_detection_by_asset(WALLET, TOKEN).is_transferable is True

        ledger.transferable[TOKEN] = False
        await service.detector.scan_wallet(WALLET)
        assert db.get_detection_by_asset(WALLET, TOKEN).is_transferable is True

        ledger.transferable[TOKEN] = True
        await service.detector.scan_wallet(WALLET)
        assert _types(db).count("trading_enabled") == 1

    @pytest.mark.asyncio
    async def test_auto_sweep_disabled(self, service, db, ledger, configured):
        db.update_wallet_config(WALLET, auto_sweep_enabled=False)
        ledger.balances[(WALLET, TOKEN)] = 100.0
        ledger.transferable[TOKEN] = True
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        assert ledger.submitted == []
        assert db.get_transactions(WALLET) == []
        assert "trading_enabled" in _types(db)

    @pytest.mark.asyncio
    async def test_no_config_flags_but_does_not_sweep(self, service, db, ledger):
        ledger.balances[(WALLET, TOKEN)] = 100.0
        ledger.transferable[TOKEN] = True
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        assert db.get_detection_by_asset(WALLET, TOKEN).is_transferable is True
        assert ledger.submitted == []


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_enabled_sweeps_once(self, service, db, ledger, configured):
        ledger.balances[(WALLET, TOKEN)] = 100.0
        ledger.transferable[TOKEN] = True
        assert await service.detector.register_and_probe_asset(WALLET, TOKEN) is True
        assert len(ledger.submitted) == 1
        assert TOKEN in service.detector.registered_assets(WALLET)

        await service.detector.scan_wallet(WALLET)
        assert len(ledger.submitted) == 1
        await service.poller.shutdown()

    @pytest.mark.asyncio
    async def test_probe_disabled_no_sweep(self, service, db, ledger, configured):
        ledger.balances[(WALLET, TOKEN)] = 100.0
        assert await service.detector.register_and_probe_asset(WALLET, TOKEN) is True
        assert ledger.submitted == []
        det = db.get_detection_by_asset(WALLET, TOKEN)
        assert det is not None and det.is_transferable is False

    @pytest.mark.asyncio
    async def test_probe_zero_balance(self, service, db, ledger, configured):
        assert await service.detector.register_and_probe_asset(WALLET, TOKEN) is False
        assert db.get_detections(WALLET) == []
        assert TOKEN in service.detector.registered_assets(WALLET)

    @pytest.mark.asyncio
    async def test_probe_ledger_error_returns_false(self, service, ledger, configured):
        ledger.balance_errors.add(TOKEN)
        assert await service.detector.register_and_probe_asset(WALLET, TOKEN) is False

    @pytest.mark.asyncio
    async def test_probe_normalizes_input(self, service, ledger):
        ledger.balances[(WALLET, TOKEN)] = 1.0
        assert await service.detector.register_and_probe_asset(
            "  " + WALLET.upper().replace("0X", "0x") + " ", TOKEN.upper().replace("0X", "0x"),
        ) is True

    @pytest.mark.asyncio
    async def test_concurrent_scan_and_probe_sweep_once(self, service, db, ledger, events, configured):
        ledger.balances[(WALLET, TOKEN)] = 100.0
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)

        ledger.transferable[TOKEN] = True
        ledger.transferable_delay = 0.02
        _, held = await asyncio.gather(
            service.detector.scan_wallet(WALLET),
            service.detector.register_and_probe_asset(WALLET, TOKEN),
        )
        assert held is True
        assert len(ledger.submitted) == 1
        assert len(db.get_transactions(WALLET)) == 1
        assert _types(db).count("trading_enabled") == 1
        assert len(events.history("trading_enabled", WALLET)) == 1
        await service.poller.shutdown()


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_failing_asset_does_not_block_others(self, service, db, ledger):
        ledger.balances[(WALLET, TOKEN)] = 10.0
        ledger.balances[(WALLET, OTHER_TOKEN)] = 20.0
        ledger.balance_errors.add(TOKEN)
        service.detector.register_asset(WALLET, TOKEN)
        service.detector.register_asset(WALLET, OTHER_TOKEN)

        summary = await service.detector.scan_wallet(WALLET)
        assert summary.errors == 1
        assert db.get_detection_by_asset(WALLET, OTHER_TOKEN) is not None
        assert db.get_detection_by_asset(WALLET, TOKEN) is None

    @pytest.mark.asyncio
    async def test_transferability_error_keeps_detection(self, service, db, ledger):
        ledger.balances[(WALLET, TOKEN)] = 10.0
        ledger.transferable_errors.add(TOKEN)
        service.detector.register_asset(WALLET, TOKEN)
        summary = await service.detector.scan_wallet(WALLET)
        assert summary.errors == 1
        det = db.get_detection_by_asset(WALLET, TOKEN)
        assert det is not None and det.is_transferable is False


class TestWatchList:
    def test_register_normalizes_and_dedupes(self, service):
        assert service.detector.register_asset(WALLET, "  " + TOKEN.upper().replace("0X", "0x")) is True
        assert service.detector.register_asset(WALLET, TOKEN) is False
        assert service.detector.registered_assets(WALLET) == [TOKEN]

    def test_deregister(self, service):
        service.detector.register_asset(WALLET, TOKEN)
        assert service.detector.deregister_asset(WALLET, TOKEN) is True
        assert service.detector.deregister_asset(WALLET, TOKEN) is False
        assert service.detector.registered_assets(WALLET) == []

    @pytest.mark.asyncio
    async def test_deregister_keeps_history(self, service, db, ledger):
        ledger.balances[(WALLET, TOKEN)] = 10.0
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        service.detector.deregister_asset(WALLET, TOKEN)
        calls = ledger.balance_calls
        await service.detector.scan_wallet(WALLET)
        assert db.get_detection_by_asset(WALLET, TOKEN) is not None
        # Only the catalog is read now
        assert ledger.balance_calls - calls == 5

    def test_invalid_addresses_raise(self, service):
        with pytest.raises(ValueError):
            service.detector.register_asset("not-a-wallet", TOKEN)
        with pytest.raises(ValueError):
            service.detector.register_asset(WALLET, "0x1234")


class TestManualSweep:
    @pytest.mark.asyncio
    async def test_no_detection_returns_none(self, service, ledger, configured):
        assert await service.detector.manual_sweep(WALLET, TOKEN) is None
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_sweeps_stored_balance_regardless_of_flag(self, service, db, ledger, configured):
        ledger.base_fee = 40.0
        ledger.balances[(WALLET, TOKEN)] = 100.0
        service.detector.register_asset(WALLET, TOKEN)
        await service.detector.scan_wallet(WALLET)
        ledger.balances[(WALLET, TOKEN)] = 0.0

        result = await service.detector.manual_sweep(WALLET, TOKEN, urgency="low")
        assert result.status == "submitted"
        assert ledger.submitted[0]["amount"] == 100.0
        assert ledger.submitted[0]["fee_gwei"] == 36.0
        await service.poller.shutdown()
