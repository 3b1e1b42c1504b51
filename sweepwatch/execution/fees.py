"""Fee optimizer — picks a gas price for a sweep.

price = base_fee × strategy × urgency × congestion, floored at
``min_fee_gwei`` and rounded to 2 decimals (gwei).

Congestion comes from a background sampler that classifies the base
fee every ``sample_interval_secs``. Until the first sample lands the
congestion adjustment is neutral.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from sweepwatch.config import FeeConfig
from sweepwatch.connectors.ledger import LedgerClient
from sweepwatch.connectors.prices import PriceSource
from sweepwatch.observability.logger import get_logger
from sweepwatch.observability.metrics import metrics

log = get_logger(__name__)

# Load percentage reported for each congestion level
_LEVEL_LOAD: list[tuple[str, float]] = [
    ("low", 25.0),
    ("medium", 50.0),
    ("high", 75.0),
    ("very_high", 95.0),
]


@dataclass
class CostEstimate:
    gas_limit: int
    fee_gwei: float
    cost_native: float
    cost_usd: float
    fallback: bool = False  # True when the ledger could not be queried

    def to_dict(self) -> dict[str, Any]:
        return {
            "gas_limit": self.gas_limit,
            "fee_gwei": self.fee_gwei,
            "cost_native": self.cost_native,
            "cost_usd": self.cost_usd,
            "fallback": self.fallback,
        }


def classify_congestion(base_fee_gwei: float, thresholds: list[float]) -> tuple[str, float]:
    """Map a base fee onto (level, load %)."""
    for (level, load), bound in zip(_LEVEL_LOAD, thresholds):
        if base_fee_gwei < bound:
            return level, load
    return _LEVEL_LOAD[-1]


class FeeOptimizer:
    def __init__(self, ledger: LedgerClient, config: FeeConfig, prices: PriceSource):
        self._ledger = ledger
        self._config = config
        self._prices = prices
        self.network_load: float | None = None
        self.congestion: str = "unknown"
        self._sampler: asyncio.Task[None] | None = None

    # ── congestion sampling ──────────────────────────────────────────

    async def sample(self) -> None:
        """Refresh congestion from the current base fee. Errors keep the previous sample."""
        try:
            base_fee = await self._ledger.get_base_fee()
        except Exception as e:
            log.warning("fees.sample_failed", error=str(e))
            return
        self.congestion, self.network_load = classify_congestion(
            base_fee, self._config.congestion_thresholds_gwei,
        )
        metrics.gauge("network.load_pct", self.network_load)
        log.debug("fees.sampled", base_fee_gwei=base_fee, congestion=self.congestion)

    async def _sample_loop(self) -> None:
        while True:
            await self.sample()
            await asyncio.sleep(self._config.sample_interval_secs)

    def start(self) -> None:
        if self._sampler is None or self._sampler.done():
            self._sampler = asyncio.create_task(self._sample_loop())

    async def stop(self) -> None:
        if self._sampler is not None:
            self._sampler.cancel()
            try:
                await self._sampler
            except asyncio.CancelledError:
                pass
            self._sampler = None

    def congestion_adjustment(self) -> float:
        if self._congested():
            return self._config.congested_adjustment
        if self._quiet():
            return self._config.quiet_adjustment
        return 1.0

    # ── pricing ──────────────────────────────────────────────────────

    def _strategy_multiplier(self, strategy: str) -> float:
        presets = self._config.strategies
        preset = presets.get(strategy) or presets[self._config.default_strategy]
        return preset.multiplier

    def _urgency_multiplier(self, urgency: str) -> float:
        return self._config.urgency_multipliers.get(
            urgency, self._config.urgency_multipliers.get("medium", 1.0),
        )

    async def optimal_fee(self, strategy: str = "standard", urgency: str = "medium") -> float:
        """Fee price in gwei for a transaction submitted now."""
        try:
            base_fee = await self._ledger.get_base_fee()
        except Exception as e:
            log.warning("fees.base_fee_unavailable", error=str(e), fallback=self._config.fallback_fee_gwei)
            return self._config.fallback_fee_gwei

        price = (
            base_fee
            * self._strategy_multiplier(strategy)
            * self._urgency_multiplier(urgency)
            * self.congestion_adjustment()
        )
        price = round(max(price, self._config.min_fee_gwei), 2)
        metrics.histogram("fees.optimal_gwei", price)
        return price

    async def estimate_cost(
        self,
        asset: str,
        from_addr: str,
        to_addr: str,
        amount: float,
        strategy: str = "standard",
    ) -> CostEstimate:
        native_usd = await self._prices.get_native_usd_price()
        try:
            gas_limit = await self._ledger.estimate_transfer_gas(asset, from_addr, to_addr, amount)
            fee = await self.optimal_fee(strategy)
            fallback = False
        except Exception as e:
            log.warning("fees.estimate_failed", asset=asset, error=str(e))
            gas_limit = self._config.fallback_gas_limit
            fee = self._config.fallback_fee_gwei
            fallback = True

        cost_native = gas_limit * fee * 1e9 / 1e18
        return CostEstimate(
            gas_limit=gas_limit,
            fee_gwei=fee,
            cost_native=round(cost_native, 6),
            cost_usd=round(cost_native * native_usd, 2),
            fallback=fallback,
        )

    # ── advice ───────────────────────────────────────────────────────

    def _congested(self) -> bool:
        return self.network_load is not None and self.network_load > self._config.congested_load_pct

    def _quiet(self) -> bool:
        return self.network_load is not None and self.network_load < self._config.quiet_load_pct

    def recommend_strategy(self) -> str:
        if self._quiet():
            return "slow"
        if self._congested():
            return "fast"
        return "standard"

    def should_delay(self, strategy: str) -> bool:
        """True for a slow transaction while the network is congested."""
        return strategy == "slow" and self._congested()

    def strategies(self) -> list[dict[str, Any]]:
        return [
            {"name": name, "multiplier": preset.multiplier, "description": preset.description}
            for name, preset in self._config.strategies.items()
        ]
