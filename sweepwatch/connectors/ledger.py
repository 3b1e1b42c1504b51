"""Ledger client contract.

Everything the watcher needs from the chain goes through ``LedgerClient``:
balances, asset metadata, transferability, fees, gas estimates,
submission and receipts. Amounts are token units (already scaled by
decimals); fees are gwei.
"""

from __future__ import annotations

import abc
import re
from dataclasses import dataclass

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_address(value: str | None) -> str:
    return str(value or "").strip().lower()


def is_valid_address(value: str | None) -> bool:
    return bool(_ADDRESS_RE.match(normalize_address(value)))


def require_address(value: str | None, what: str = "address") -> str:
    """Normalize ``value`` or raise ValueError when it is not a 20-byte hex address."""
    addr = normalize_address(value)
    if not _ADDRESS_RE.match(addr):
        raise ValueError(f"Invalid {what}: {value!r}")
    return addr


@dataclass
class AssetMetadata:
    name: str
    symbol: str
    decimals: int = 18


@dataclass
class TxReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    effective_gas_price_wei: int
    success: bool

    @property
    def gas_cost(self) -> float:
        """Fee paid in native units."""
        return self.gas_used * self.effective_gas_price_wei / 1e18


class LedgerClient(abc.ABC):
    """Async interface to the ledger. Implementations may be slow and rate-limited."""

    @abc.abstractmethod
    async def get_balance(self, wallet: str, asset: str) -> float:
        ...

    @abc.abstractmethod
    async def get_asset_metadata(self, asset: str) -> AssetMetadata:
        ...

    @abc.abstractmethod
    async def is_transferable(self, asset: str) -> bool:
        ...

    @abc.abstractmethod
    async def get_base_fee(self) -> float:
        """Current base fee in gwei."""
        ...

    @abc.abstractmethod
    async def get_block_number(self) -> int:
        ...

    @abc.abstractmethod
    async def estimate_transfer_gas(
        self, asset: str, from_addr: str, to_addr: str, amount: float
    ) -> int:
        ...

    @abc.abstractmethod
    async def submit_transfer(
        self, credentials: str, asset: str, to_addr: str, amount: float, fee_gwei: float
    ) -> str:
        """Sign and broadcast a full-balance transfer. Returns the transaction hash."""
        ...

    @abc.abstractmethod
    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        """Receipt for ``tx_hash``, or None while it is still pending."""
        ...

    async def close(self) -> None:
        pass
