"""Web3 ledger adapter for EVM chains.

web3.py is synchronous: every call runs in a worker thread and takes a
token from the shared ``ledger`` rate-limit bucket first. Reads are
retried with exponential backoff; submission is never retried.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Callable, TypeVar

from eth_account import Account
from tenacity import retry, stop_after_attempt, wait_exponential
from web3 import HTTPProvider, Web3
from web3.contract import Contract
from web3.exceptions import TransactionNotFound

from sweepwatch.config import LedgerConfig
from sweepwatch.connectors.ledger import AssetMetadata, LedgerClient, TxReceipt
from sweepwatch.connectors.rate_limiter import rate_limiter
from sweepwatch.observability.logger import get_logger
from sweepwatch.observability.metrics import metrics

log = get_logger(__name__)

T = TypeVar("T")

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def _view(name: str, inputs: list[tuple[str, str]], outputs: list[str]) -> dict[str, Any]:
    return {
        "name": name,
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
    }


ERC20_ABI: list[dict[str, Any]] = [
    _view("name", [], ["string"]),
    _view("symbol", [], ["string"]),
    _view("decimals", [], ["uint8"]),
    _view("balanceOf", [("owner", "address")], ["uint256"]),
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

# Launch flags some tokens expose; absent on most, which reads as False.
TRADING_FLAG_ABI: list[dict[str, Any]] = [
    _view("tradingEnabled", [], ["bool"]),
    _view("tradingActive", [], ["bool"]),
    _view("launched", [], ["bool"]),
]

V2_FACTORY_ABI: list[dict[str, Any]] = [
    _view("getPair", [("tokenA", "address"), ("tokenB", "address")], ["address"]),
]
V2_PAIR_ABI: list[dict[str, Any]] = [
    _view("getReserves", [], ["uint112", "uint112", "uint32"]),
]
V3_FACTORY_ABI: list[dict[str, Any]] = [
    _view("getPool", [("tokenA", "address"), ("tokenB", "address"), ("fee", "uint24")], ["address"]),
]
V3_POOL_ABI: list[dict[str, Any]] = [
    _view("liquidity", [], ["uint128"]),
]


class Web3Ledger(LedgerClient):
    """LedgerClient over a JSON-RPC HTTP endpoint."""

    def __init__(self, config: LedgerConfig, w3: Web3 | None = None):
        self._config = config
        self.w3 = w3 or Web3(HTTPProvider(
            config.rpc_url, request_kwargs={"timeout": config.timeout_secs},
        ))
        rate_limiter.configure("ledger", config.requests_per_second, config.max_burst)
        self._weth = self.w3.to_checksum_address(config.weth_address)
        self._v2_factory: Contract = self.w3.eth.contract(
            address=self.w3.to_checksum_address(config.uniswap_v2_factory), abi=V2_FACTORY_ABI,
        )
        self._v3_factory: Contract = self.w3.eth.contract(
            address=self.w3.to_checksum_address(config.uniswap_v3_factory), abi=V3_FACTORY_ABI,
        )
        self._decimals: dict[str, int] = {}

    # ── plumbing ─────────────────────────────────────────────────────

    def _rpc(self, fn: Callable[[], T]) -> T:
        rate_limiter.get("ledger").acquire_sync()
        metrics.incr("ledger.rpc_calls")
        return fn()

    def _token(self, asset: str) -> Contract:
        return self.w3.eth.contract(address=self.w3.to_checksum_address(asset), abi=ERC20_ABI)

    def _token_decimals(self, asset: str) -> int:
        key = asset.lower()
        if key not in self._decimals:
            self._decimals[key] = int(self._rpc(self._token(asset).functions.decimals().call))
        return self._decimals[key]

    def _to_raw(self, asset: str, amount: float) -> int:
        return int(Decimal(str(amount)) * (Decimal(10) ** self._token_decimals(asset)))

    # ── reads ────────────────────────────────────────────────────────

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def get_balance(self, wallet: str, asset: str) -> float:
        def _read() -> float:
            token = self._token(asset)
            raw = self._rpc(token.functions.balanceOf(self.w3.to_checksum_address(wallet)).call)
            return float(Decimal(int(raw)) / (Decimal(10) ** self._token_decimals(asset)))
        return await asyncio.to_thread(_read)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def get_asset_metadata(self, asset: str) -> AssetMetadata:
        def _read() -> AssetMetadata:
            token = self._token(asset)
            return AssetMetadata(
                name=str(self._rpc(token.functions.name().call)),
                symbol=str(self._rpc(token.functions.symbol().call)),
                decimals=self._token_decimals(asset),
            )
        return await asyncio.to_thread(_read)

    async def is_transferable(self, asset: str) -> bool:
        """Composite heuristic: any DEX liquidity, launch flag, or recent transfer activity."""
        checks = (
            self._has_v2_liquidity,
            self._has_v3_liquidity,
            self._has_trading_flag,
            self._has_transfer_activity,
        )
        for check in checks:
            try:
                if await asyncio.to_thread(check, asset):
                    log.debug("web3_ledger.transferable", asset=asset, check=check.__name__)
                    return True
            except Exception as e:
                log.debug("web3_ledger.check_failed", asset=asset, check=check.__name__, error=str(e))
        return False

    def _has_v2_liquidity(self, asset: str) -> bool:
        token = self.w3.to_checksum_address(asset)
        pair = self._rpc(self._v2_factory.functions.getPair(token, self._weth).call)
        if not pair or int(pair, 16) == 0:
            return False
        contract = self.w3.eth.contract(address=pair, abi=V2_PAIR_ABI)
        reserve0, reserve1, _ = self._rpc(contract.functions.getReserves().call)
        return int(reserve0) > 0 and int(reserve1) > 0

    def _has_v3_liquidity(self, asset: str) -> bool:
        token = self.w3.to_checksum_address(asset)
        for fee in self._config.v3_fee_tiers:
            pool = self._rpc(self._v3_factory.functions.getPool(token, self._weth, fee).call)
            if not pool or int(pool, 16) == 0:
                continue
            contract = self.w3.eth.contract(address=pool, abi=V3_POOL_ABI)
            if int(self._rpc(contract.functions.liquidity().call)) > 0:
                return True
        return False

    def _has_trading_flag(self, asset: str) -> bool:
        contract = self.w3.eth.contract(
            address=self.w3.to_checksum_address(asset), abi=TRADING_FLAG_ABI,
        )
        for fn_name in ("tradingEnabled", "tradingActive", "launched"):
            try:
                if bool(self._rpc(contract.functions[fn_name]().call)):
                    return True
            except Exception:
                continue
        return False

    def _has_transfer_activity(self, asset: str) -> bool:
        latest = int(self._rpc(lambda: self.w3.eth.block_number))
        logs = self._rpc(lambda: self.w3.eth.get_logs({
            "address": self.w3.to_checksum_address(asset),
            "fromBlock": max(0, latest - self._config.activity_lookback_blocks),
            "toBlock": latest,
            "topics": [TRANSFER_TOPIC],
        }))
        return len(logs) > self._config.activity_min_transfers

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def get_base_fee(self) -> float:
        def _read() -> float:
            block = self._rpc(lambda: self.w3.eth.get_block("latest"))
            wei = int(block.get("baseFeePerGas") or 0)
            if wei <= 0:
                wei = int(self._rpc(lambda: self.w3.eth.gas_price))
            return float(self.w3.from_wei(wei, "gwei"))
        return await asyncio.to_thread(_read)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def get_block_number(self) -> int:
        return await asyncio.to_thread(lambda: int(self._rpc(lambda: self.w3.eth.block_number)))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def estimate_transfer_gas(
        self, asset: str, from_addr: str, to_addr: str, amount: float
    ) -> int:
        def _read() -> int:
            token = self._token(asset)
            call = token.functions.transfer(self.w3.to_checksum_address(to_addr), self._to_raw(asset, amount))
            return int(self._rpc(lambda: call.estimate_gas({"from": self.w3.to_checksum_address(from_addr)})))
        return await asyncio.to_thread(_read)

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        def _read() -> TxReceipt | None:
            try:
                receipt = self._rpc(lambda: self.w3.eth.get_transaction_receipt(tx_hash))
            except TransactionNotFound:
                return None
            if receipt is None:
                return None
            return TxReceipt(
                tx_hash=tx_hash,
                block_number=int(receipt["blockNumber"]),
                gas_used=int(receipt["gasUsed"]),
                effective_gas_price_wei=int(receipt.get("effectiveGasPrice") or 0),
                success=int(receipt["status"]) == 1,
            )
        return await asyncio.to_thread(_read)

    # ── submission ───────────────────────────────────────────────────

    async def submit_transfer(
        self, credentials: str, asset: str, to_addr: str, amount: float, fee_gwei: float
    ) -> str:
        return await asyncio.to_thread(self._submit_sync, credentials, asset, to_addr, amount, fee_gwei)

    def _submit_sync(
        self, credentials: str, asset: str, to_addr: str, amount: float, fee_gwei: float
    ) -> str:
        account = Account.from_key(credentials)
        token = self._token(asset)
        on_chain = int(self._rpc(token.functions.balanceOf(account.address).call))
        raw_amount = min(self._to_raw(asset, amount), on_chain)
        if raw_amount <= 0:
            raise RuntimeError(f"nothing_to_transfer asset={asset}")

        tx = token.functions.transfer(
            self.w3.to_checksum_address(to_addr), raw_amount,
        ).build_transaction({
            "from": account.address,
            "chainId": int(self._config.chain_id),
            "nonce": self._rpc(lambda: self.w3.eth.get_transaction_count(account.address, "pending")),
            "gasPrice": int(self.w3.to_wei(Decimal(str(fee_gwei)), "gwei")),
        })
        signed = account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise RuntimeError("signed_tx_missing_raw_bytes")
        tx_hash = self._rpc(lambda: self.w3.eth.send_raw_transaction(raw_tx))
        hex_hash = Web3.to_hex(tx_hash)
        log.info(
            "web3_ledger.submitted",
            asset=asset,
            to=to_addr,
            raw_amount=str(raw_amount),
            fee_gwei=fee_gwei,
            tx_hash=hex_hash,
        )
        return hex_hash
