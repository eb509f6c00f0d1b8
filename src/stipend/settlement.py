"""
Settlement of authorized spends.

A `Settler` turns one authorized spend into a payout on the disbursement
channel and records the outcome. Any failure after the budget was deducted
is compensated here: the transaction is marked failed and the full amount is
refunded to the authorization.

Dispatchers decide *when* the settler runs. The inline dispatcher settles in
the request thread; the queued dispatcher hands the job to a worker thread
and answers immediately with the spend still `authorized`.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from .audit import AuditTrail, EventType
from .channels import DisbursementChannel
from .ledger import BudgetLedger
from .states import SpendStatus
from .transactions import TransactionLog


logger = logging.getLogger(__name__)

_FAILED_PAYOUT_STATUSES = {"FAILED", "REJECTED", "CANCELLED"}


@dataclass
class SettlementJob:
    tx_id: str
    authorization_id: str
    merchant_id: str
    payee: str
    amount_minor: int
    local_amount_minor: int
    correlation_token: str


@dataclass
class SettlementOutcome:
    tx_id: str
    status: SpendStatus
    external_code: Optional[str] = None
    settled_at: Optional[int] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status is SpendStatus.FAILED


class Settler:
    def __init__(
        self,
        ledger: BudgetLedger,
        transactions: TransactionLog,
        channel: DisbursementChannel,
        audit: Optional[AuditTrail] = None,
        await_confirmation: bool = False,
    ):
        self.ledger = ledger
        self.transactions = transactions
        self.channel = channel
        self.audit = audit
        self.await_confirmation = await_confirmation

    def settle(self, job: SettlementJob) -> SettlementOutcome:
        """Pay the merchant out. Never raises for channel failures; compensates instead."""
        try:
            result = self.channel.payout(job.payee, job.local_amount_minor, job.correlation_token)
            if result.status.upper() in _FAILED_PAYOUT_STATUSES:
                raise RuntimeError(result.message or f"Payout {result.status}")
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.warning("Settlement of %s failed: %s", job.tx_id, reason)
            self.compensate(job, reason)
            return SettlementOutcome(tx_id=job.tx_id, status=SpendStatus.FAILED, error=reason)

        target = SpendStatus.SETTLING if self.await_confirmation else SpendStatus.COMPLETED
        try:
            tx = self.transactions.update_status(
                job.tx_id, target, external_code=result.external_code
            )
        except Exception:
            # Money has moved; leave the row for the stuck-spend sweep.
            logger.exception(
                "Payout %s accepted but transaction %s could not be updated",
                result.external_code, job.tx_id,
            )
            return SettlementOutcome(
                tx_id=job.tx_id, status=target, external_code=result.external_code
            )

        if self.audit is not None:
            self.audit.log(
                EventType.SETTLEMENT_COMPLETED if target is SpendStatus.COMPLETED
                else EventType.SETTLEMENT_SUBMITTED,
                authorization_id=job.authorization_id,
                tx_id=job.tx_id,
                external_code=result.external_code,
                amount_minor=job.amount_minor,
                merchant=job.merchant_id,
            )
        return SettlementOutcome(
            tx_id=job.tx_id,
            status=tx.status,
            external_code=result.external_code,
            settled_at=tx.completed_at if tx.completed_at is not None else tx.updated_at,
        )

    def compensate(self, job: SettlementJob, reason: str) -> None:
        """Mark the spend failed and return its full amount to the budget."""
        try:
            self.transactions.update_status(job.tx_id, SpendStatus.FAILED, failure_reason=reason)
        except Exception:
            logger.exception("Could not mark transaction %s failed", job.tx_id)

        refund = self.ledger.refund(job.authorization_id, job.amount_minor)
        if not refund.success:
            logger.error(
                "Refund for %s failed: %s (%s)", job.tx_id, refund.reason, refund.message
            )
        if self.audit is not None:
            self.audit.log(
                EventType.SETTLEMENT_FAILED,
                authorization_id=job.authorization_id,
                tx_id=job.tx_id,
                amount_minor=job.amount_minor,
                merchant=job.merchant_id,
                success=False,
                reason=reason,
            )
            self.audit.log(
                EventType.COMPENSATION_APPLIED,
                authorization_id=job.authorization_id,
                tx_id=job.tx_id,
                amount_minor=job.amount_minor,
                success=refund.success,
                reason=refund.reason,
            )


class SettlementDispatcher(Protocol):
    def dispatch(self, job: SettlementJob) -> SettlementOutcome: ...

    def drain(self) -> None: ...

    def close(self) -> None: ...


class InlineSettlementDispatcher:
    """Settles in the caller's thread; the outcome is final when dispatch returns."""

    def __init__(self, settler: Settler):
        self.settler = settler

    def dispatch(self, job: SettlementJob) -> SettlementOutcome:
        return self.settler.settle(job)

    def drain(self) -> None:
        pass

    def close(self) -> None:
        pass


class QueuedSettlementDispatcher:
    """Marks the spend authorized and settles it later on a worker thread."""

    def __init__(self, settler: Settler):
        self.settler = settler
        self._queue: "queue.Queue[Optional[SettlementJob]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._closed = False

    def _enqueue(self, job: SettlementJob) -> None:
        # Queued under the lock so close() cannot slip its sentinel in ahead.
        with self._lock:
            if self._closed:
                raise RuntimeError("Settlement dispatcher is closed")
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._run, name="stipend-settlement", daemon=True
                )
                self._worker.start()
            self._queue.put(job)

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                self.settler.settle(job)
            except Exception:
                logger.exception("Queued settlement of %s crashed", job.tx_id if job else None)
            finally:
                self._queue.task_done()

    def dispatch(self, job: SettlementJob) -> SettlementOutcome:
        try:
            self.settler.transactions.update_status(job.tx_id, SpendStatus.AUTHORIZED)
            self._enqueue(job)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.error("Could not enqueue settlement of %s: %s", job.tx_id, reason)
            self.settler.compensate(job, reason)
            return SettlementOutcome(tx_id=job.tx_id, status=SpendStatus.FAILED, error=reason)
        return SettlementOutcome(tx_id=job.tx_id, status=SpendStatus.AUTHORIZED)

    def drain(self) -> None:
        """Block until every queued job has been settled."""
        self._queue.join()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
            if worker is None or not worker.is_alive():
                return
            self._queue.put(None)
        worker.join()
