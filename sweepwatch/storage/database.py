"""Database — SQLite persistence for the watcher.

Manages the connection, runs migrations, and provides record-level
operations for wallet configurations, detections, transactions,
activities and the singleton network-status row.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

from sweepwatch.config import StorageConfig
from sweepwatch.storage.migrations import run_migrations
from sweepwatch.storage.models import (
    TX_COMPLETED,
    ActivityRecord,
    DetectionRecord,
    NetworkStatusRecord,
    TransactionRecord,
    WalletConfigRecord,
)
from sweepwatch.observability.logger import get_logger

log = get_logger(__name__)

_WALLET_COLUMNS = frozenset({
    "private_key", "safe_address", "fee_strategy", "min_transfer_usd",
    "auto_sweep_enabled", "is_active",
})
_DETECTION_COLUMNS = frozenset({
    "name", "symbol", "balance", "usd_value", "is_transferable", "last_checked_at",
})
_TRANSACTION_COLUMNS = frozenset({
    "status", "fee_gwei", "tx_hash", "block_number", "gas_used", "gas_cost",
    "completed_at",
})


def _assignments(fields: dict[str, Any], allowed: frozenset[str]) -> tuple[str, list[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown columns: {sorted(unknown)}")
    cols = sorted(fields)
    values = [int(fields[c]) if isinstance(fields[c], bool) else fields[c] for c in cols]
    return ", ".join(f"{c} = ?" for c in cols), values


class Database:
    """SQLite store owned by the event-loop thread."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open the connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # ── Wallet configurations ────────────────────────────────────────

    def create_wallet_config(self, cfg: WalletConfigRecord) -> WalletConfigRecord:
        cur = self.conn.execute(
            """
            INSERT INTO wallet_configs
                (wallet_address, private_key, safe_address, fee_strategy,
                 min_transfer_usd, auto_sweep_enabled, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                cfg.wallet_address, cfg.private_key, cfg.safe_address,
                cfg.fee_strategy, cfg.min_transfer_usd,
                int(cfg.auto_sweep_enabled), int(cfg.is_active), cfg.created_at,
            ),
        )
        self.conn.commit()
        return cfg.model_copy(update={"id": cur.lastrowid})

    def get_wallet_config(self, wallet_address: str) -> WalletConfigRecord | None:
        row = self.conn.execute(
            "SELECT * FROM wallet_configs WHERE wallet_address = ?",
            (wallet_address,),
        ).fetchone()
        return WalletConfigRecord(**dict(row)) if row else None

    def update_wallet_config(self, wallet_address: str, **fields: Any) -> WalletConfigRecord | None:
        if fields:
            sql, values = _assignments(fields, _WALLET_COLUMNS)
            self.conn.execute(
                f"UPDATE wallet_configs SET {sql} WHERE wallet_address = ?",
                (*values, wallet_address),
            )
            self.conn.commit()
        return self.get_wallet_config(wallet_address)

    def list_wallet_configs(self, active_only: bool = False) -> list[WalletConfigRecord]:
        if active_only:
            rows = self.conn.execute(
                "SELECT * FROM wallet_configs WHERE is_active = 1 ORDER BY id"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM wallet_configs ORDER BY id"
            ).fetchall()
        return [WalletConfigRecord(**dict(r)) for r in rows]

    # ── Detections ───────────────────────────────────────────────────

    def create_detection(self, det: DetectionRecord) -> DetectionRecord:
        cur = self.conn.execute(
            """
            INSERT INTO detections
                (wallet_address, asset_address, name, symbol, balance,
                 usd_value, is_transferable, detected_at, last_checked_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                det.wallet_address, det.asset_address, det.name, det.symbol,
                det.balance, det.usd_value, int(det.is_transferable),
                det.detected_at, det.last_checked_at,
            ),
        )
        self.conn.commit()
        return det.model_copy(update={"id": cur.lastrowid})

    def get_detection(self, detection_id: int) -> DetectionRecord | None:
        row = self.conn.execute(
            "SELECT * FROM detections WHERE id = ?", (detection_id,)
        ).fetchone()
        return DetectionRecord(**dict(row)) if row else None

    def get_detection_by_asset(self, wallet_address: str, asset_address: str) -> DetectionRecord | None:
        row = self.conn.execute(
            "SELECT * FROM detections WHERE wallet_address = ? AND asset_address = ?",
            (wallet_address, asset_address),
        ).fetchone()
        return DetectionRecord(**dict(row)) if row else None

    def get_detections(self, wallet_address: str) -> list[DetectionRecord]:
        rows = self.conn.execute(
            "SELECT * FROM detections WHERE wallet_address = ? ORDER BY detected_at",
            (wallet_address,),
        ).fetchall()
        return [DetectionRecord(**dict(r)) for r in rows]

    def update_detection(self, detection_id: int, **fields: Any) -> None:
        if not fields:
            return
        sql, values = _assignments(fields, _DETECTION_COLUMNS)
        self.conn.execute(
            f"UPDATE detections SET {sql} WHERE id = ?", (*values, detection_id)
        )
        self.conn.commit()

    def mark_transferable(self, detection_id: int) -> bool:
        """Flip ``is_transferable`` false → true. Returns True only for the caller that flipped it."""
        cur = self.conn.execute(
            "UPDATE detections SET is_transferable = 1 WHERE id = ? AND is_transferable = 0",
            (detection_id,),
        )
        self.conn.commit()
        return cur.rowcount == 1

    # ── Transactions ─────────────────────────────────────────────────

    def create_transaction(self, tx: TransactionRecord) -> TransactionRecord:
        cur = self.conn.execute(
            """
            INSERT INTO transactions
                (wallet_address, asset_address, symbol, name, amount,
                 usd_value, status, fee_gwei, tx_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tx.wallet_address, tx.asset_address, tx.symbol, tx.name,
                tx.amount, tx.usd_value, tx.status, tx.fee_gwei, tx.tx_hash,
                tx.created_at,
            ),
        )
        self.conn.commit()
        return tx.model_copy(update={"id": cur.lastrowid})

    def get_transaction(self, tx_id: int) -> TransactionRecord | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (tx_id,)
        ).fetchone()
        return TransactionRecord(**dict(row)) if row else None

    def update_transaction(self, tx_id: int, **fields: Any) -> bool:
        """Apply ``fields`` unless the record is final.

        A record is final once it is ``failed`` or has a receipt
        (block number) recorded. Returns False when the update was refused.
        """
        current = self.get_transaction(tx_id)
        if current is None:
            return False
        if current.is_final:
            log.warning(
                "database.transaction_final",
                tx_id=tx_id,
                status=current.status,
                refused=sorted(fields),
            )
            return False
        if fields:
            sql, values = _assignments(fields, _TRANSACTION_COLUMNS)
            self.conn.execute(
                f"UPDATE transactions SET {sql} WHERE id = ?", (*values, tx_id)
            )
            self.conn.commit()
        return True

    def get_transactions(self, wallet_address: str, limit: int = 50) -> list[TransactionRecord]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE wallet_address = ? ORDER BY id DESC LIMIT ?",
            (wallet_address, limit),
        ).fetchall()
        return [TransactionRecord(**dict(r)) for r in rows]

    def get_transactions_by_status(self, wallet_address: str, status: str) -> list[TransactionRecord]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE wallet_address = ? AND status = ? ORDER BY id",
            (wallet_address, status),
        ).fetchall()
        return [TransactionRecord(**dict(r)) for r in rows]

    def get_transfer_stats_today(self, wallet_address: str | None = None) -> dict[str, Any]:
        """Completed sweeps since UTC midnight: count, USD total, distinct assets."""
        sql = """
            SELECT COUNT(*) AS cnt,
                   COALESCE(SUM(usd_value), 0) AS usd_total,
                   COUNT(DISTINCT asset_address) AS assets
            FROM transactions
            WHERE status = ? AND date(created_at) = date('now')
        """
        params: list[Any] = [TX_COMPLETED]
        if wallet_address:
            sql += " AND wallet_address = ?"
            params.append(wallet_address)
        row = self.conn.execute(sql, params).fetchone()
        return {
            "transfers_today": int(row["cnt"]),
            "usd_total": round(float(row["usd_total"]), 2),
            "asset_count": int(row["assets"]),
        }

    # ── Activities ───────────────────────────────────────────────────

    def add_activity(self, activity: ActivityRecord) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO activities
                (wallet_address, type, title, description, status,
                 metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity.wallet_address, activity.type, activity.title,
                activity.description, activity.status, activity.metadata_json,
                activity.created_at,
            ),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def get_activities(self, wallet_address: str | None = None, limit: int = 50) -> list[ActivityRecord]:
        if wallet_address:
            rows = self.conn.execute(
                "SELECT * FROM activities WHERE wallet_address = ? ORDER BY id DESC LIMIT ?",
                (wallet_address, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM activities ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [ActivityRecord(**dict(r)) for r in rows]

    # ── Network status ───────────────────────────────────────────────

    def get_network_status(self) -> NetworkStatusRecord | None:
        row = self.conn.execute(
            "SELECT * FROM network_status WHERE id = 1"
        ).fetchone()
        if not row:
            return None
        data = dict(row)
        data.pop("id", None)
        return NetworkStatusRecord(**data)

    def update_network_status(self, status: NetworkStatusRecord) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO network_status
                (id, current_block, base_fee_gwei, network_load_pct,
                 congestion, connection_status, last_updated)
            VALUES (1, ?, ?, ?, ?, ?, ?)
            """,
            (
                status.current_block, status.base_fee_gwei,
                status.network_load_pct, status.congestion,
                status.connection_status, status.last_updated,
            ),
        )
        self.conn.commit()
