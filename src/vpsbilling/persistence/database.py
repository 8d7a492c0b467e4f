"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.
Queries are written with "?" placeholders and adapted for psycopg2.
"""

import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Plan pricing (monthly prices, decimal text)
CREATE TABLE IF NOT EXISTS plans (
    plan_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    base_price TEXT NOT NULL,
    markup_price TEXT NOT NULL DEFAULT '0',
    backup_price TEXT NOT NULL DEFAULT '0',
    backup_upcharge TEXT NOT NULL DEFAULT '0',
    daily_backups_enabled INTEGER NOT NULL DEFAULT 0,
    weekly_backups_enabled INTEGER NOT NULL DEFAULT 1,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Prepaid balances (minor units)
CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    balance_minor INTEGER NOT NULL DEFAULT 0 CHECK (balance_minor >= 0),
    currency TEXT NOT NULL DEFAULT 'USD',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Append-only ledger
CREATE TABLE IF NOT EXISTS ledger_transactions (
    transaction_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('debit', 'credit')),
    amount_minor INTEGER NOT NULL,
    balance_after_minor INTEGER NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    description TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(account_id)
);

-- Billing-relevant instance fields
CREATE TABLE IF NOT EXISTS instances (
    instance_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    provider_instance_id TEXT,
    label TEXT,
    backup_tier TEXT NOT NULL DEFAULT 'none' CHECK (backup_tier IN ('none', 'weekly', 'daily')),
    lifecycle_state TEXT NOT NULL DEFAULT 'provisioning',
    state_observed_at TEXT,
    created_at TEXT NOT NULL,
    last_billed_at TEXT,
    deleted_at TEXT
);

-- Billing cycles
CREATE TABLE IF NOT EXISTS billing_cycles (
    cycle_id TEXT PRIMARY KEY,
    instance_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    hourly_rate TEXT NOT NULL,
    hours TEXT NOT NULL,
    amount_minor INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'billed', 'failed', 'refunded')),
    ledger_transaction_id TEXT,
    executor_id TEXT,
    failure_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (instance_id) REFERENCES instances(instance_id)
);

-- Executor lease / heartbeat records
CREATE TABLE IF NOT EXISTS billing_daemon_status (
    executor_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    started_at TEXT,
    heartbeat_at TEXT,
    last_run_at TEXT,
    last_run_outcome TEXT,
    instances_billed INTEGER NOT NULL DEFAULT 0,
    total_amount_minor INTEGER NOT NULL DEFAULT 0,
    total_hours TEXT NOT NULL DEFAULT '0',
    error_message TEXT,
    metadata TEXT,  -- JSON object
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes
CREATE UNIQUE INDEX IF NOT EXISTS uq_billing_cycles_pending
    ON billing_cycles(instance_id, period_start) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_billing_cycles_instance ON billing_cycles(instance_id, period_start);
CREATE INDEX IF NOT EXISTS idx_billing_cycles_account ON billing_cycles(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_billing_cycles_status ON billing_cycles(status);
CREATE INDEX IF NOT EXISTS idx_instances_watermark ON instances(last_billed_at, created_at);
CREATE INDEX IF NOT EXISTS idx_instances_account ON instances(account_id);
CREATE INDEX IF NOT EXISTS idx_ledger_account ON ledger_transactions(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_daemon_status_heartbeat ON billing_daemon_status(heartbeat_at);
"""

POSTGRES_SCHEMA_SQL = """
-- Plan pricing
CREATE TABLE IF NOT EXISTS plans (
    plan_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    base_price NUMERIC(12, 4) NOT NULL,
    markup_price NUMERIC(12, 4) NOT NULL DEFAULT 0,
    backup_price NUMERIC(12, 4) NOT NULL DEFAULT 0,
    backup_upcharge NUMERIC(12, 4) NOT NULL DEFAULT 0,
    daily_backups_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    weekly_backups_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Prepaid balances
CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    balance_minor BIGINT NOT NULL DEFAULT 0 CHECK (balance_minor >= 0),
    currency TEXT NOT NULL DEFAULT 'USD',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Append-only ledger
CREATE TABLE IF NOT EXISTS ledger_transactions (
    transaction_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(account_id),
    kind TEXT NOT NULL CHECK (kind IN ('debit', 'credit')),
    amount_minor BIGINT NOT NULL,
    balance_after_minor BIGINT NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Instances
CREATE TABLE IF NOT EXISTS instances (
    instance_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    provider_instance_id TEXT,
    label TEXT,
    backup_tier TEXT NOT NULL DEFAULT 'none' CHECK (backup_tier IN ('none', 'weekly', 'daily')),
    lifecycle_state TEXT NOT NULL DEFAULT 'provisioning',
    state_observed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    last_billed_at TIMESTAMPTZ,
    deleted_at TIMESTAMPTZ
);

-- Billing cycles
CREATE TABLE IF NOT EXISTS billing_cycles (
    cycle_id TEXT PRIMARY KEY,
    instance_id TEXT NOT NULL REFERENCES instances(instance_id),
    account_id TEXT NOT NULL,
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    hourly_rate NUMERIC(12, 6) NOT NULL,
    hours NUMERIC(18, 9) NOT NULL,
    amount_minor BIGINT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'billed', 'failed', 'refunded')),
    ledger_transaction_id TEXT,
    executor_id TEXT,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Executor lease / heartbeat records
CREATE TABLE IF NOT EXISTS billing_daemon_status (
    executor_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ,
    heartbeat_at TIMESTAMPTZ,
    last_run_at TIMESTAMPTZ,
    last_run_outcome TEXT,
    instances_billed INTEGER NOT NULL DEFAULT 0,
    total_amount_minor BIGINT NOT NULL DEFAULT 0,
    total_hours NUMERIC(18, 9) NOT NULL DEFAULT 0,
    error_message TEXT,
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE UNIQUE INDEX IF NOT EXISTS uq_billing_cycles_pending
    ON billing_cycles(instance_id, period_start) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_billing_cycles_instance ON billing_cycles(instance_id, period_start);
CREATE INDEX IF NOT EXISTS idx_billing_cycles_account ON billing_cycles(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_billing_cycles_status ON billing_cycles(status);
CREATE INDEX IF NOT EXISTS idx_instances_watermark ON instances(last_billed_at, created_at);
CREATE INDEX IF NOT EXISTS idx_instances_account ON instances(account_id);
CREATE INDEX IF NOT EXISTS idx_ledger_account ON ledger_transactions(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_daemon_status_heartbeat ON billing_daemon_status(heartbeat_at);
"""


def _rows(cursor: Any) -> List[Dict[str, Any]]:
    if cursor.description:
        return [dict(row) for row in cursor.fetchall()]
    return []


class Transaction:
    """
    A unit of work on one connection.

    Everything executed through a Transaction commits or rolls back together.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self._conn = conn
        self.is_postgres = is_postgres
        self.rowcount = 0

    @property
    def lock_clause(self) -> str:
        """Row lock suffix for SELECTs that must serialize writers (PostgreSQL only)."""
        return " FOR UPDATE" if self.is_postgres else ""

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        if self.is_postgres:
            cursor = self._conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
        else:
            cursor = self._conn.execute(query, params)
        self.rowcount = cursor.rowcount
        return _rows(cursor)


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM instances")
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///vpsbilling.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (used when DATABASE_URL changes, e.g. between tests)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "vpsbilling.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if getattr(self._local, "conn", None) is None:
            db_path = self._get_sqlite_path()
            # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            if self._local.conn.in_transaction:
                self._local.conn.commit()
        except Exception:
            if self._local.conn.in_transaction:
                self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Open a write transaction.

        SQLite takes the database write lock up front (BEGIN IMMEDIATE) so two
        writers never deadlock on lock upgrade; PostgreSQL relies on row locks
        taken with Transaction.lock_clause.
        """
        with self.connection() as conn:
            if not self.is_postgres:
                conn.execute("BEGIN IMMEDIATE")
            yield Transaction(conn, self.is_postgres)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL
            now = datetime.now(timezone.utc).isoformat()

            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single statement and return results as list of dicts."""
        with self.connection() as conn:
            return Transaction(conn, self.is_postgres).execute(query, params)

    def ping(self) -> None:
        """Raise if the database is unreachable."""
        self.execute("SELECT 1 AS ok")

    def connect_with_retry(self, max_retries: int = 5, initial_delay: float = 1.0) -> None:
        """Block until the database answers, retrying with exponential backoff."""
        delay = initial_delay
        for attempt in range(1, max_retries + 1):
            try:
                self.ping()
                logger.info("database_connected", attempt=attempt)
                return
            except Exception as e:
                logger.error(
                    "database_connect_failed",
                    attempt=attempt,
                    max_retries=max_retries,
                    error=str(e),
                )
                if attempt >= max_retries:
                    raise ConnectionError(
                        f"Failed to connect to database after {max_retries} attempts"
                    ) from e
                time.sleep(delay)
                delay *= 2

    def close(self) -> None:
        """Close the calling thread's SQLite connection."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
