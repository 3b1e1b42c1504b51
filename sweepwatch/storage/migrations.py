"""Schema creation and upgrades."""

from __future__ import annotations

import sqlite3

from sweepwatch.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS wallet_configs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            wallet_address TEXT NOT NULL UNIQUE,
            private_key TEXT NOT NULL DEFAULT '',
            safe_address TEXT NOT NULL,
            fee_strategy TEXT NOT NULL DEFAULT 'standard',
            min_transfer_usd REAL NOT NULL DEFAULT 10.0,
            auto_sweep_enabled INTEGER NOT NULL DEFAULT 1,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS detections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            wallet_address TEXT NOT NULL,
            asset_address TEXT NOT NULL,
            name TEXT,
            symbol TEXT,
            balance REAL DEFAULT 0,
            usd_value REAL DEFAULT 0,
            is_transferable INTEGER NOT NULL DEFAULT 0,
            detected_at TEXT,
            last_checked_at TEXT,
            UNIQUE (wallet_address, asset_address)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            wallet_address TEXT NOT NULL,
            asset_address TEXT NOT NULL,
            symbol TEXT,
            name TEXT,
            amount REAL DEFAULT 0,
            usd_value REAL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending',
            fee_gwei REAL DEFAULT 0,
            tx_hash TEXT,
            block_number INTEGER,
            gas_used INTEGER,
            gas_cost REAL,
            created_at TEXT,
            completed_at TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            wallet_address TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            status TEXT,
            metadata_json TEXT DEFAULT '{}',
            created_at TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS network_status (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            current_block INTEGER DEFAULT 0,
            base_fee_gwei REAL DEFAULT 0,
            network_load_pct REAL DEFAULT 0,
            congestion TEXT DEFAULT 'unknown',
            connection_status TEXT DEFAULT 'stable',
            last_updated TEXT
        );
        """,
    ],
    2: [
        "CREATE INDEX IF NOT EXISTS idx_tx_wallet_status ON transactions(wallet_address, status);",
        "CREATE INDEX IF NOT EXISTS idx_tx_created ON transactions(created_at);",
        "CREATE INDEX IF NOT EXISTS idx_activity_wallet ON activities(wallet_address, created_at);",
        "CREATE INDEX IF NOT EXISTS idx_detection_wallet ON detections(wallet_address);",
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply every migration newer than the recorded schema version."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = _current_version(conn)
    for version in sorted(_MIGRATIONS):
        if version <= current:
            continue
        for sql in _MIGRATIONS[version]:
            conn.execute(sql)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (version,),
        )
        conn.commit()
        log.info("migrations.applied", version=version)

    log.debug("migrations.complete", version=_current_version(conn))


def _current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
