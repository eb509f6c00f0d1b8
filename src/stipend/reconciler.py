"""
Webhook reconciliation.

Confirmation webhooks are the only thing allowed to finalize funding or
settlement state. Each handler does its lookup and every write in one
BEGIN IMMEDIATE unit of work, so a confirmation either applies completely or
not at all, and a replay that reaches the handler finds a terminal row and
changes nothing.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

from .audit import AuditTrail, EventType
from .db import Database
from .errors import IntegrityError, UnderfundedError, UnknownTransactionError, ValidationError
from .funding import insert_escrow, row_to_intent, row_to_topup
from .idempotency import IdempotencyStore
from .ledger import BudgetLedger
from .money import format_minor, received_to_minor
from .states import EscrowStatus, FundingStatus, SpendStatus, assert_transition, is_terminal
from .transactions import SpendTransaction, TransactionLog


logger = logging.getLogger(__name__)

ONRAMP_PROVIDER = "onramp"
PAYOUT_PROVIDER = "payout"

ESCROW_CREATED = "escrow_created"
ESCROW_ACTIVATED = "escrow_activated"
INTENT_FAILED = "intent_failed"
TOPUP_FAILED = "topup_failed"
SPEND_COMPLETED = "spend_completed"
SPEND_FAILED = "spend_failed"
ALREADY_PROCESSED = "already_processed"


@dataclass
class ReconcileResult:
    action: str
    external_code: str
    escrow_id: Optional[str] = None
    tx_id: Optional[str] = None


def _transaction_code(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    code = payload.get("transaction_code")
    if not code or not isinstance(code, str):
        raise ValidationError("Missing transaction_code")
    return code


class FundingConfirmationReconciler:
    """Turns on-ramp confirmations into escrows, exactly once per code."""

    provider = ONRAMP_PROVIDER

    def __init__(self, db: Database, audit: Optional[AuditTrail] = None):
        self.db = db
        self.audit = audit

    def _received_minor(self, code: str, payload: dict) -> int:
        raw = payload.get("amount_usdc")
        try:
            return received_to_minor(raw)
        except ValueError as e:
            raise IntegrityError(f"Invalid amount_usdc for {code}: {raw!r}") from e

    def handle(self, payload: dict) -> ReconcileResult:
        code = _transaction_code(payload)
        succeeded = str(payload.get("status", "")).strip().lower() == "success"
        raw_payload = json.dumps(payload, sort_keys=True)
        now = self.db.now()

        try:
            with self.db.transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM funding_intents WHERE external_code = ?", (code,)
                ).fetchone()
                if row is not None:
                    result = self._apply_intent(conn, row, code, succeeded, payload, raw_payload, now)
                else:
                    row = conn.execute(
                        "SELECT * FROM topups WHERE external_code = ?", (code,)
                    ).fetchone()
                    if row is None:
                        raise UnknownTransactionError(code)
                    result = self._apply_topup(conn, row, code, succeeded, payload, raw_payload, now)
        except IntegrityError as e:
            logger.warning("Funding webhook %s rejected: %s", code, e)
            if self.audit is not None:
                self.audit.log(
                    EventType.WEBHOOK_REJECTED,
                    external_code=code,
                    success=False,
                    reason=str(e),
                    details={"provider": self.provider},
                )
            raise

        self._record(result)
        return result

    def _apply_intent(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        code: str,
        succeeded: bool,
        payload: dict,
        raw_payload: str,
        now: int,
    ) -> ReconcileResult:
        intent = row_to_intent(row)
        if is_terminal(intent.status):
            logger.info("Funding intent %s already %s", intent.intent_id, intent.status.value)
            return ReconcileResult(ALREADY_PROCESSED, code, escrow_id=intent.escrow_id)

        if not succeeded:
            assert_transition(intent.status, FundingStatus.FAILED)
            conn.execute(
                """
                UPDATE funding_intents
                SET status = ?, webhook_payload = ?, failed_at = ?,
                    error_message = 'Provider reported failure', updated_at = ?
                WHERE intent_id = ?
                """,
                (FundingStatus.FAILED.value, raw_payload, now, now, intent.intent_id),
            )
            return ReconcileResult(INTENT_FAILED, code)

        received = self._received_minor(code, payload)
        if received < intent.expected_minor:
            raise UnderfundedError(code, intent.expected_minor, received)

        assert_transition(intent.status, FundingStatus.CONFIRMED)
        escrow_id = insert_escrow(
            conn,
            now,
            sender_id=intent.sender_id,
            recipient=intent.recipient,
            total_minor=intent.total_minor,
            allocations=intent.categories,
            status=EscrowStatus.ACTIVE,
            memo=intent.memo,
        )
        conn.execute(
            """
            UPDATE funding_intents
            SET status = ?, webhook_payload = ?, confirmed_at = ?, escrow_id = ?, updated_at = ?
            WHERE intent_id = ?
            """,
            (FundingStatus.CONFIRMED.value, raw_payload, now, escrow_id, now, intent.intent_id),
        )
        logger.info(
            "Funding intent %s confirmed (%s received); escrow %s created",
            intent.intent_id, format_minor(received), escrow_id,
        )
        return ReconcileResult(ESCROW_CREATED, code, escrow_id=escrow_id)

    def _apply_topup(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        code: str,
        succeeded: bool,
        payload: dict,
        raw_payload: str,
        now: int,
    ) -> ReconcileResult:
        topup = row_to_topup(row)
        if is_terminal(topup.status):
            logger.info("Top-up %s already %s", topup.topup_id, topup.status.value)
            return ReconcileResult(ALREADY_PROCESSED, code, escrow_id=topup.escrow_id)

        if not succeeded:
            conn.execute(
                """
                UPDATE topups
                SET status = ?, webhook_payload = ?, failed_at = ?,
                    error_message = 'Provider reported failure', updated_at = ?
                WHERE topup_id = ?
                """,
                (FundingStatus.FAILED.value, raw_payload, now, now, topup.topup_id),
            )
            return ReconcileResult(TOPUP_FAILED, code, escrow_id=topup.escrow_id)

        received = self._received_minor(code, payload)
        if received < topup.expected_minor:
            raise UnderfundedError(code, topup.expected_minor, received)

        conn.execute(
            """
            UPDATE topups
            SET status = ?, webhook_payload = ?, confirmed_at = ?, updated_at = ?
            WHERE topup_id = ?
            """,
            (FundingStatus.CONFIRMED.value, raw_payload, now, now, topup.topup_id),
        )
        cursor = conn.execute(
            """
            UPDATE escrows
            SET status = ?, funded_at = ?, activated_at = ?, updated_at = ?
            WHERE escrow_id = ? AND status = ?
            """,
            (
                EscrowStatus.ACTIVE.value, now, now, now,
                topup.escrow_id, EscrowStatus.PENDING_DEPOSIT.value,
            ),
        )
        if cursor.rowcount == 0:
            logger.warning(
                "Top-up %s confirmed but escrow %s was not pending_deposit",
                topup.topup_id, topup.escrow_id,
            )
        return ReconcileResult(ESCROW_ACTIVATED, code, escrow_id=topup.escrow_id)

    def _record(self, result: ReconcileResult) -> None:
        if self.audit is None or result.action == ALREADY_PROCESSED:
            return
        event = {
            ESCROW_CREATED: EventType.ESCROW_CREATED,
            ESCROW_ACTIVATED: EventType.ESCROW_ACTIVATED,
            INTENT_FAILED: EventType.FUNDING_FAILED,
            TOPUP_FAILED: EventType.FUNDING_FAILED,
        }[result.action]
        self.audit.log(
            event,
            escrow_id=result.escrow_id,
            external_code=result.external_code,
            success=event is not EventType.FUNDING_FAILED,
            details={"provider": self.provider},
        )


class SettlementConfirmationHandler:
    """Finalizes agent spends that were left `settling` by the settler."""

    provider = PAYOUT_PROVIDER

    def __init__(
        self,
        db: Database,
        ledger: BudgetLedger,
        transactions: TransactionLog,
        audit: Optional[AuditTrail] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.transactions = transactions
        self.audit = audit

    def handle(self, payload: dict) -> ReconcileResult:
        code = _transaction_code(payload)
        succeeded = str(payload.get("status", "")).strip().upper() == "SUCCESS"
        receipt = payload.get("receipt") or payload.get("mpesa_receipt")

        try:
            with self.db.transaction() as conn:
                tx = self.transactions.find_by_external_code(code, conn=conn)
                if tx is None:
                    raise UnknownTransactionError(code)
                if is_terminal(tx.status):
                    logger.info("Spend %s already %s", tx.tx_id, tx.status.value)
                    return ReconcileResult(ALREADY_PROCESSED, code, tx_id=tx.tx_id)
                if succeeded:
                    self.transactions.update_status(
                        tx.tx_id, SpendStatus.COMPLETED,
                        receipt=str(receipt) if receipt else None, conn=conn,
                    )
                else:
                    self.transactions.update_status(
                        tx.tx_id, SpendStatus.FAILED,
                        failure_reason="Payout reported failure", conn=conn,
                    )
                    refund = self.ledger.refund(tx.authorization_id, tx.amount_minor, conn=conn)
                    if not refund.success:
                        raise IntegrityError(
                            f"Refund for {tx.tx_id} failed: {refund.reason} ({refund.message})"
                        )
        except IntegrityError as e:
            logger.warning("Payout webhook %s rejected: %s", code, e)
            if self.audit is not None:
                self.audit.log(
                    EventType.WEBHOOK_REJECTED,
                    external_code=code,
                    success=False,
                    reason=str(e),
                    details={"provider": self.provider},
                )
            raise

        self._record(tx, succeeded, code)
        return ReconcileResult(SPEND_COMPLETED if succeeded else SPEND_FAILED, code, tx_id=tx.tx_id)

    def _record(self, tx: SpendTransaction, succeeded: bool, code: str) -> None:
        if self.audit is None:
            return
        if succeeded:
            self.audit.log(
                EventType.SETTLEMENT_COMPLETED,
                authorization_id=tx.authorization_id,
                tx_id=tx.tx_id,
                external_code=code,
                amount_minor=tx.amount_minor,
                merchant=tx.merchant_id,
            )
            return
        self.audit.log(
            EventType.SETTLEMENT_FAILED,
            authorization_id=tx.authorization_id,
            tx_id=tx.tx_id,
            external_code=code,
            amount_minor=tx.amount_minor,
            merchant=tx.merchant_id,
            success=False,
            reason="Payout reported failure",
        )
        self.audit.log(
            EventType.COMPENSATION_APPLIED,
            authorization_id=tx.authorization_id,
            tx_id=tx.tx_id,
            amount_minor=tx.amount_minor,
        )


@dataclass
class SweepReport:
    timed_out_intents: list[str] = field(default_factory=list)
    timed_out_topups: list[str] = field(default_factory=list)
    stuck_spends: list[SpendTransaction] = field(default_factory=list)
    purged_keys: int = 0

    def to_dict(self) -> dict:
        return {
            "timed_out_intents": self.timed_out_intents,
            "timed_out_topups": self.timed_out_topups,
            "stuck_spends": [tx.tx_id for tx in self.stuck_spends],
            "purged_keys": self.purged_keys,
        }


class Reconciler:
    """Periodic sweep over records whose confirmation never arrived."""

    def __init__(
        self,
        db: Database,
        transactions: TransactionLog,
        audit: Optional[AuditTrail] = None,
        idempotency: Optional[IdempotencyStore] = None,
    ):
        self.db = db
        self.transactions = transactions
        self.audit = audit
        self.idempotency = idempotency

    def sweep(self, max_age_seconds: int) -> SweepReport:
        """
        Time out pending funding requests older than `max_age_seconds`.
        Expired webhook idempotency claims are deleted as well.

        Spends stuck in pending or authorized are reported, not changed: money
        may already have moved for them.
        """
        now = self.db.now()
        cutoff = now - max_age_seconds
        report = SweepReport()
        with self.db.transaction() as conn:
            for table, id_col, bucket in (
                ("funding_intents", "intent_id", report.timed_out_intents),
                ("topups", "topup_id", report.timed_out_topups),
            ):
                rows = conn.execute(
                    f"SELECT {id_col}, external_code FROM {table} WHERE status = ? AND created_at < ?",
                    (FundingStatus.PENDING.value, cutoff),
                ).fetchall()
                for r in rows:
                    conn.execute(
                        f"""
                        UPDATE {table}
                        SET status = ?, error_message = 'No confirmation received', updated_at = ?
                        WHERE {id_col} = ?
                        """,
                        (FundingStatus.TIMEOUT.value, now, r[id_col]),
                    )
                    bucket.append(r["external_code"])

        if self.idempotency is not None:
            report.purged_keys = self.idempotency.purge_expired()
            if report.purged_keys:
                logger.info("Purged %d expired idempotency key(s)", report.purged_keys)

        report.stuck_spends = self.transactions.stuck(cutoff)
        for tx in report.stuck_spends:
            logger.warning(
                "Spend %s stuck in %s since %s (%s)",
                tx.tx_id, tx.status.value, tx.created_at, format_minor(tx.amount_minor),
            )
        if self.audit is not None:
            for code in report.timed_out_intents + report.timed_out_topups:
                self.audit.log(
                    EventType.FUNDING_TIMEOUT,
                    external_code=code,
                    success=False,
                    reason="No confirmation received",
                )
        return report
