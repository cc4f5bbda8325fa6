"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Optional


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        # Shared by all repositories; held for every read-modify-write.
        self.lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.lock:
            cursor = self.connection.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_rules (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    timeframes TEXT NOT NULL,
                    thresholds TEXT NOT NULL,
                    baseline_window INTEGER NOT NULL DEFAULT 20,
                    cooldown_seconds INTEGER NOT NULL DEFAULT 300,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS monitor_baselines (
                    user_id TEXT NOT NULL,
                    filter_signature TEXT NOT NULL,
                    member_ids TEXT NOT NULL DEFAULT '[]',
                    enabled INTEGER NOT NULL DEFAULT 1,
                    cooldown_seconds INTEGER NOT NULL DEFAULT 600,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_evaluated_at TEXT,
                    PRIMARY KEY (user_id, filter_signature)
                )
            """)

            # rule_id is not a foreign key, events outlive their rules
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_events (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    rule_id TEXT,
                    type TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    timeframe TEXT,
                    threshold REAL,
                    ratio REAL,
                    current_volume REAL,
                    baseline_volume REAL,
                    filter_context TEXT,
                    triggered_at TEXT NOT NULL,
                    delivered_channels TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'TRIGGERED'
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS channel_links (
                    user_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    destination TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, channel)
                )
            """)

            # Create indexes for common queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_rules_user ON alert_rules(user_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_user_time
                ON alert_events(user_id, triggered_at)
            """)

            self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
