"""Fiat price sources.

Prices are estimates used for thresholds and reporting only. Unknown
assets price at 0.0, which keeps them below any positive sweep threshold.
"""

from __future__ import annotations

import abc
import time

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from sweepwatch.config import PricingConfig
from sweepwatch.connectors.ledger import normalize_address
from sweepwatch.connectors.rate_limiter import rate_limiter
from sweepwatch.observability.logger import get_logger

log = get_logger(__name__)


class PriceSource(abc.ABC):
    @abc.abstractmethod
    async def get_usd_price(self, asset: str) -> float:
        ...

    @abc.abstractmethod
    async def get_native_usd_price(self) -> float:
        ...

    async def usd_value(self, asset: str, amount: float) -> float:
        return round(amount * await self.get_usd_price(asset), 2)

    async def close(self) -> None:
        pass


class StaticPriceSource(PriceSource):
    """Fixed USD prices from configuration."""

    def __init__(self, config: PricingConfig):
        self._prices = {normalize_address(k): float(v) for k, v in config.usd_prices.items()}
        self._native = config.native_usd_price

    async def get_usd_price(self, asset: str) -> float:
        return self._prices.get(normalize_address(asset), 0.0)

    async def get_native_usd_price(self) -> float:
        return self._native

    def set_price(self, asset: str, price: float) -> None:
        self._prices[normalize_address(asset)] = float(price)


class CoinGeckoPriceSource(StaticPriceSource):
    """CoinGecko token prices, refreshed on a fixed interval.

    The configured static prices seed the table and remain the answer
    whenever a refresh fails. Every asset looked up is tracked and quoted
    on later refreshes; the first lookup of an unpriced asset refreshes
    right away instead of waiting out the interval.
    """

    _BASE_URL = "https://api.coingecko.com/api/v3"

    def __init__(self, config: PricingConfig, client: httpx.AsyncClient | None = None):
        super().__init__(config)
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=15.0)
        self._last_refresh: float | None = None
        self._tracked: set[str] = set(self._prices)

    async def close(self) -> None:
        await self._client.aclose()

    def _stale(self) -> bool:
        if self._last_refresh is None:
            return True
        return (time.monotonic() - self._last_refresh) > self._config.refresh_interval_secs

    async def _maybe_refresh(self, force: bool = False) -> None:
        if not force and not self._stale():
            return
        # Stamp first so a failing API is not hammered on every lookup
        self._last_refresh = time.monotonic()
        try:
            await self._refresh()
        except Exception as e:
            log.warning("prices.refresh_failed", error=str(e))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def _refresh(self) -> None:
        if self._tracked:
            await rate_limiter.get("coingecko").acquire()
            resp = await self._client.get(
                f"{self._BASE_URL}/simple/token_price/{self._config.coingecko_platform}",
                params={"contract_addresses": ",".join(sorted(self._tracked)), "vs_currencies": "usd"},
            )
            resp.raise_for_status()
            for addr, quote in resp.json().items():
                if isinstance(quote, dict) and "usd" in quote:
                    self._prices[normalize_address(addr)] = float(quote["usd"])

        await rate_limiter.get("coingecko").acquire()
        resp = await self._client.get(
            f"{self._BASE_URL}/simple/price",
            params={"ids": self._config.coingecko_native_id, "vs_currencies": "usd"},
        )
        resp.raise_for_status()
        native = resp.json().get(self._config.coingecko_native_id, {}).get("usd")
        if native:
            self._native = float(native)
        log.info("prices.refreshed", assets=len(self._tracked), native_usd=self._native)

    async def get_usd_price(self, asset: str) -> float:
        addr = normalize_address(asset)
        unseen = addr not in self._tracked
        self._tracked.add(addr)
        await self._maybe_refresh(force=unseen and addr not in self._prices)
        return await super().get_usd_price(addr)

    async def get_native_usd_price(self) -> float:
        await self._maybe_refresh()
        return await super().get_native_usd_price()


def build_price_source(config: PricingConfig) -> PriceSource:
    if config.source == "coingecko":
        return CoinGeckoPriceSource(config)
    return StaticPriceSource(config)
