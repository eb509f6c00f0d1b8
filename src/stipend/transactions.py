"""
Transaction log of every attempted agent spend.

Rows are written once as `pending` and then moved along the spend transition
table. The log is independent of the budget ledger: a row records what was
attempted and how it ended, the ledger records what is currently reserved.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Optional

from .db import Database
from .errors import NotFoundError
from .money import minor_to_float
from .states import SpendStatus, assert_transition


logger = logging.getLogger(__name__)


@dataclass
class SpendTransaction:
    """A single agent spend attempt."""

    tx_id: str
    authorization_id: str
    merchant_id: str
    merchant_name: str
    item_id: str
    amount_minor: int
    local_amount_minor: int
    correlation_token: str
    status: SpendStatus
    created_at: int
    updated_at: int
    external_code: Optional[str] = None
    failure_reason: Optional[str] = None
    settlement_receipt: Optional[str] = None
    completed_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "authorization_id": self.authorization_id,
            "merchant_id": self.merchant_id,
            "merchant_name": self.merchant_name,
            "item_id": self.item_id,
            "amount_usd": minor_to_float(self.amount_minor),
            "amount_kes": minor_to_float(self.local_amount_minor),
            "external_code": self.external_code,
            "correlation_token": self.correlation_token,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "settlement_receipt": self.settlement_receipt,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


def new_correlation_token() -> str:
    return f"STP{secrets.token_hex(6).upper()}"


class TransactionLog:
    def __init__(self, db: Database):
        self.db = db

    def _row_to_tx(self, row: sqlite3.Row) -> SpendTransaction:
        return SpendTransaction(
            tx_id=row["tx_id"],
            authorization_id=row["authorization_id"],
            merchant_id=row["merchant_id"],
            merchant_name=row["merchant_name"],
            item_id=row["item_id"],
            amount_minor=row["amount_minor"],
            local_amount_minor=row["local_amount_minor"],
            correlation_token=row["correlation_token"],
            status=SpendStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            external_code=row["external_code"],
            failure_reason=row["failure_reason"],
            settlement_receipt=row["settlement_receipt"],
            completed_at=row["completed_at"],
        )

    def record_pending(
        self,
        authorization_id: str,
        merchant_id: str,
        merchant_name: str,
        item_id: str,
        amount_minor: int,
        local_amount_minor: int,
    ) -> SpendTransaction:
        """Insert a new `pending` row for a spend whose budget is already reserved."""
        now = self.db.now()
        tx = SpendTransaction(
            tx_id=uuid.uuid4().hex,
            authorization_id=authorization_id,
            merchant_id=merchant_id,
            merchant_name=merchant_name,
            item_id=item_id,
            amount_minor=amount_minor,
            local_amount_minor=local_amount_minor,
            correlation_token=new_correlation_token(),
            status=SpendStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO spend_transactions (
                    tx_id, authorization_id, merchant_id, merchant_name, item_id,
                    amount_minor, local_amount_minor, external_code, correlation_token,
                    status, failure_reason, created_at, updated_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, NULL, ?, ?, NULL)
                """,
                (
                    tx.tx_id,
                    tx.authorization_id,
                    tx.merchant_id,
                    tx.merchant_name,
                    tx.item_id,
                    tx.amount_minor,
                    tx.local_amount_minor,
                    tx.correlation_token,
                    tx.status.value,
                    now,
                    now,
                ),
            )
        logger.debug("Recorded pending spend %s for %s", tx.tx_id, authorization_id)
        return tx

    def update_status(
        self,
        tx_id: str,
        status: SpendStatus,
        external_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
        receipt: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> SpendTransaction:
        """
        Move a transaction to `status`.

        Pass `conn` to join a unit of work that already holds the write lock.
        """
        status = SpendStatus(status)
        now = self.db.now()
        with self.db.unit(conn) as c:
            row = c.execute(
                "SELECT * FROM spend_transactions WHERE tx_id = ?",
                (tx_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Transaction not found: {tx_id}")
            tx = self._row_to_tx(row)
            assert_transition(tx.status, status)
            completed_at = now if status is SpendStatus.COMPLETED else None
            c.execute(
                """
                UPDATE spend_transactions
                SET status = ?,
                    external_code = COALESCE(?, external_code),
                    failure_reason = COALESCE(?, failure_reason),
                    settlement_receipt = COALESCE(?, settlement_receipt),
                    completed_at = COALESCE(?, completed_at),
                    updated_at = ?
                WHERE tx_id = ?
                """,
                (status.value, external_code, failure_reason, receipt, completed_at, now, tx_id),
            )
            refreshed = c.execute(
                "SELECT * FROM spend_transactions WHERE tx_id = ?",
                (tx_id,),
            ).fetchone()
        return self._row_to_tx(refreshed)

    def get(self, tx_id: str) -> Optional[SpendTransaction]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM spend_transactions WHERE tx_id = ?",
                (tx_id,),
            ).fetchone()
        return self._row_to_tx(row) if row else None

    def find_by_external_code(
        self,
        external_code: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[SpendTransaction]:
        query = "SELECT * FROM spend_transactions WHERE external_code = ? ORDER BY created_at DESC LIMIT 1"
        if conn is not None:
            row = conn.execute(query, (external_code,)).fetchone()
        else:
            with self.db.read() as own:
                row = own.execute(query, (external_code,)).fetchone()
        return self._row_to_tx(row) if row else None

    def recent(
        self,
        authorization_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[SpendTransaction]:
        with self.db.read() as conn:
            if authorization_id:
                rows = conn.execute(
                    """
                    SELECT * FROM spend_transactions WHERE authorization_id = ?
                    ORDER BY created_at DESC, rowid DESC LIMIT ?
                    """,
                    (authorization_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM spend_transactions ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [self._row_to_tx(r) for r in rows]

    def stuck(self, older_than: int) -> list[SpendTransaction]:
        """Transactions still `pending` or `authorized` that were created before `older_than`."""
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM spend_transactions
                WHERE status IN (?, ?) AND created_at < ?
                ORDER BY created_at ASC
                """,
                (SpendStatus.PENDING.value, SpendStatus.AUTHORIZED.value, older_than),
            ).fetchall()
        return [self._row_to_tx(r) for r in rows]
