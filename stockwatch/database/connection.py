"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Optional


class Database:
    """
    SQLite database connection manager.

    File databases hand each thread its own connection, so sweeps running on
    scheduler worker threads never share a transaction. An in-memory
    database only exists inside its connection and keeps a single one.
    """

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._lock = threading.Lock()
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._shared: Optional[sqlite3.Connection] = None
        self._closed = False
        self._connect()

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _connect(self) -> sqlite3.Connection:
        """Open a connection for the calling thread."""
        if not self.in_memory:
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        # close() may run on another thread than the one that opened it
        connection = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        if self.in_memory:
            self._shared = connection
        else:
            connection.execute("PRAGMA journal_mode = WAL")
            self._local.connection = connection
        with self._lock:
            self._connections.append(connection)
        return connection

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the calling thread's database connection."""
        if self._closed:
            raise sqlite3.ProgrammingError("Database connection is closed")
        if self._shared is not None:
            return self._shared
        connection = getattr(self._local, "connection", None)
        if connection is None:
            connection = self._connect()
        return connection

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        cursor = self.connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS securities (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                market TEXT NOT NULL DEFAULT 'TSE',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS watchlist (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                security_id TEXT NOT NULL,
                owner TEXT NOT NULL DEFAULT 'default',
                custom_threshold REAL,
                target_price_high REAL,
                target_price_low REAL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (security_id) REFERENCES securities(id) ON DELETE CASCADE,
                UNIQUE (security_id, owner)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS holdings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                security_id TEXT NOT NULL,
                owner TEXT NOT NULL DEFAULT 'default',
                lots INTEGER NOT NULL DEFAULT 0,
                odd_shares INTEGER NOT NULL DEFAULT 0,
                won_price REAL,
                is_won INTEGER NOT NULL DEFAULT 1,
                is_sold INTEGER NOT NULL DEFAULT 0,
                sold_price REAL,
                sold_date TEXT,
                target_price_high REAL,
                target_price_low REAL,
                notify_enabled INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (security_id) REFERENCES securities(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS condition_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                security_id TEXT NOT NULL,
                owner TEXT NOT NULL DEFAULT 'default',
                condition_type TEXT NOT NULL,
                parameter REAL,
                is_active INTEGER NOT NULL DEFAULT 1,
                last_triggered TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (security_id) REFERENCES securities(id) ON DELETE CASCADE,
                UNIQUE (security_id, owner, condition_type)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS cooldown_ledger (
                security_id TEXT NOT NULL,
                condition_type TEXT NOT NULL,
                last_fired_at TIMESTAMP NOT NULL,
                PRIMARY KEY (security_id, condition_type)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS price_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                security_id TEXT NOT NULL,
                trade_date TEXT NOT NULL,
                open_price REAL,
                high_price REAL,
                low_price REAL,
                close_price REAL NOT NULL,
                volume INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (security_id) REFERENCES securities(id) ON DELETE CASCADE,
                UNIQUE (security_id, trade_date)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS alert_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                security_id TEXT NOT NULL,
                security_name TEXT,
                condition_type TEXT NOT NULL,
                message TEXT NOT NULL,
                price REAL,
                change_percent REAL,
                commentary TEXT,
                delivered INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS institutional_trading (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                security_id TEXT NOT NULL,
                trade_date TEXT NOT NULL,
                foreign_net INTEGER NOT NULL DEFAULT 0,
                trust_net INTEGER NOT NULL DEFAULT 0,
                dealer_net INTEGER NOT NULL DEFAULT 0,
                total_net INTEGER NOT NULL DEFAULT 0,
                UNIQUE (security_id, trade_date)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_price_history_security_date
            ON price_history(security_id, trade_date DESC)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_watchlist_owner ON watchlist(owner)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_rules_security
            ON condition_rules(security_id, is_active)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_alert_logs_created ON alert_logs(created_at)
        """)

        self.connection.commit()

    def close(self) -> None:
        """Close every connection opened by any thread."""
        with self._lock:
            connections, self._connections = self._connections, []
            self._closed = True
        for connection in connections:
            connection.close()
        self._shared = None
        self._local = threading.local()
