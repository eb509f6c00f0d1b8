"""
Relational store for ledger, audit and funding state.

Every mutation runs inside `Database.transaction()`, which opens a fresh
connection and issues BEGIN IMMEDIATE. SQLite takes the write lock up front,
so the read-check-write sequence inside a unit of work is serialized against
every other writer, which is the guarantee `SELECT ... FOR UPDATE` gives on a
server database. Locks live only for the duration of one unit of work.
"""

from __future__ import annotations

import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .states import AuthorizationStatus, EscrowStatus, FundingStatus, SpendStatus


DEFAULT_DB_PATH = Path.home() / ".stipend" / "stipend.sqlite3"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def _in_list(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


SCHEMA = f"""
CREATE TABLE IF NOT EXISTS escrows (
    escrow_id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL,
    recipient TEXT NOT NULL,
    total_minor INTEGER NOT NULL CHECK (total_minor > 0),
    remaining_minor INTEGER NOT NULL CHECK (remaining_minor >= 0),
    spent_minor INTEGER NOT NULL DEFAULT 0 CHECK (spent_minor >= 0),
    status TEXT NOT NULL CHECK (status IN ({_in_list(EscrowStatus)})),
    memo TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    funded_at INTEGER,
    activated_at INTEGER,
    CHECK (remaining_minor = total_minor - spent_minor)
);

CREATE TABLE IF NOT EXISTS spending_categories (
    category_id TEXT PRIMARY KEY,
    escrow_id TEXT NOT NULL REFERENCES escrows(escrow_id),
    name TEXT NOT NULL,
    allocated_minor INTEGER NOT NULL CHECK (allocated_minor > 0),
    spent_minor INTEGER NOT NULL DEFAULT 0 CHECK (spent_minor >= 0),
    remaining_minor INTEGER NOT NULL CHECK (remaining_minor >= 0),
    created_at INTEGER NOT NULL,
    CHECK (remaining_minor = allocated_minor - spent_minor),
    UNIQUE (escrow_id, name)
);

CREATE TRIGGER IF NOT EXISTS spending_categories_within_total
BEFORE INSERT ON spending_categories
WHEN (
    SELECT COALESCE(SUM(allocated_minor), 0) FROM spending_categories
    WHERE escrow_id = NEW.escrow_id
) + NEW.allocated_minor > (
    SELECT total_minor FROM escrows WHERE escrow_id = NEW.escrow_id
)
BEGIN
    SELECT RAISE(ABORT, 'category allocations exceed escrow total');
END;

CREATE TABLE IF NOT EXISTS agent_authorizations (
    authorization_id TEXT PRIMARY KEY,
    escrow_id TEXT NOT NULL REFERENCES escrows(escrow_id),
    agent TEXT NOT NULL,
    max_daily_minor INTEGER NOT NULL CHECK (max_daily_minor > 0),
    spent_today_minor INTEGER NOT NULL DEFAULT 0 CHECK (spent_today_minor >= 0),
    allowed_category TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ({_in_list(AuthorizationStatus)})),
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    status_changed_at INTEGER NOT NULL,
    UNIQUE (agent, escrow_id)
);

CREATE INDEX IF NOT EXISTS idx_agent_auth_agent
ON agent_authorizations (agent) WHERE status = 'active';

CREATE TABLE IF NOT EXISTS spend_transactions (
    tx_id TEXT PRIMARY KEY,
    authorization_id TEXT NOT NULL REFERENCES agent_authorizations(authorization_id),
    merchant_id TEXT NOT NULL,
    merchant_name TEXT NOT NULL,
    item_id TEXT NOT NULL,
    amount_minor INTEGER NOT NULL CHECK (amount_minor > 0),
    local_amount_minor INTEGER NOT NULL CHECK (local_amount_minor > 0),
    external_code TEXT,
    correlation_token TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ({_in_list(SpendStatus)})),
    failure_reason TEXT,
    settlement_receipt TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    completed_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_spend_tx_auth ON spend_transactions (authorization_id, created_at);
CREATE INDEX IF NOT EXISTS idx_spend_tx_code ON spend_transactions (external_code);

CREATE TABLE IF NOT EXISTS funding_intents (
    intent_id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL,
    recipient TEXT NOT NULL,
    total_minor INTEGER NOT NULL CHECK (total_minor > 0),
    categories TEXT NOT NULL,
    memo TEXT,
    onramp_phone TEXT NOT NULL,
    exchange_rate TEXT NOT NULL,
    local_amount_minor INTEGER NOT NULL CHECK (local_amount_minor > 0),
    expected_minor INTEGER NOT NULL CHECK (expected_minor > 0),
    settlement_address TEXT NOT NULL,
    external_code TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL CHECK (status IN ({_in_list(FundingStatus)})),
    webhook_payload TEXT,
    error_message TEXT,
    escrow_id TEXT REFERENCES escrows(escrow_id),
    confirmed_at INTEGER,
    failed_at INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS topups (
    topup_id TEXT PRIMARY KEY,
    escrow_id TEXT NOT NULL REFERENCES escrows(escrow_id),
    sender_id TEXT NOT NULL,
    onramp_phone TEXT NOT NULL,
    exchange_rate TEXT NOT NULL,
    local_amount_minor INTEGER NOT NULL CHECK (local_amount_minor > 0),
    expected_minor INTEGER NOT NULL CHECK (expected_minor > 0),
    settlement_address TEXT NOT NULL,
    external_code TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL CHECK (status IN ({_in_list(FundingStatus)})),
    webhook_payload TEXT,
    error_message TEXT,
    confirmed_at INTEGER,
    failed_at INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS idempotency_keys (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


class Database:
    """
    SQLite-backed relational store.

    Connections are opened per unit of work so each request thread gets its
    own handle; the clock is shared so every component agrees on "now".
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        clock: Optional[Callable[[], float]] = None,
        busy_timeout: float = 30.0,
    ):
        self.path = Path(path) if path else DEFAULT_DB_PATH
        self.clock = clock or time.time
        self.busy_timeout = busy_timeout
        ensure_private_dir(self.path.parent)
        self._init_db()
        ensure_private_file(self.path)

    def now(self) -> int:
        return int(self.clock())

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing write unit of work holding the database write lock."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            if conn.in_transaction:
                conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection for read-only queries."""
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def unit(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Join the caller's unit of work when `conn` is given, else open a new one."""
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own
