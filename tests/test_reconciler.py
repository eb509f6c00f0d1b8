"""Tests for webhook reconciliation of funding and payouts."""

import pytest

from stipend.audit import EventType
from stipend.errors import IntegrityError, UnderfundedError, UnknownTransactionError, ValidationError
from stipend.funding import ESCROW_LIFETIME_SECONDS
from stipend.idempotency import IdempotencyGate, SQLiteIdempotencyStore
from stipend.reconciler import (
    ALREADY_PROCESSED,
    ESCROW_ACTIVATED,
    ESCROW_CREATED,
    INTENT_FAILED,
    SPEND_COMPLETED,
    SPEND_FAILED,
    TOPUP_FAILED,
    FundingConfirmationReconciler,
    Reconciler,
    SettlementConfirmationHandler,
)
from stipend.settlement import Settler
from stipend.states import EscrowStatus, FundingStatus, SpendStatus

from conftest import reserve


PHONE = "0712345678"


@pytest.fixture
def reconciler(db, audit):
    return FundingConfirmationReconciler(db, audit=audit)


@pytest.fixture
def intent(funding):
    return funding.create_intent(
        sender_id="sender-1",
        recipient="Mama Wanjiku",
        phone=PHONE,
        total_minor=10_000,
        categories=[
            {"name": "food", "amount_minor": 6_000},
            {"name": "medical", "amount_minor": 4_000},
        ],
        memo="March support",
    )


def confirmation(code, amount="100.00", status="success"):
    return {"transaction_code": code, "status": status, "amount_usdc": amount}


class BrokenStore:
    def claim(self, key, ttl_seconds):
        raise ConnectionError("redis unavailable")


class TestFundingIntents:
    def test_underfunded_confirmation_is_rejected(self, reconciler, funding, intent, audit):
        with pytest.raises(UnderfundedError) as exc_info:
            reconciler.handle(confirmation(intent.external_code, amount="99.99"))

        assert exc_info.value.expected_minor == 10_000
        assert exc_info.value.received_minor == 9_999
        assert funding.intent_status(intent.external_code).status is FundingStatus.PENDING
        assert funding.count_escrows() == 0
        assert audit.read_events(event_type=EventType.WEBHOOK_REJECTED)

    def test_received_amount_rounds_down(self, reconciler, funding, intent):
        with pytest.raises(UnderfundedError):
            reconciler.handle(confirmation(intent.external_code, amount="99.999"))
        assert funding.count_escrows() == 0

    def test_confirmation_creates_active_escrow(self, reconciler, funding, intent, clock):
        result = reconciler.handle(confirmation(intent.external_code))

        assert result.action == ESCROW_CREATED
        stored = funding.intent_status(intent.external_code, sender_id="sender-1")
        assert stored.status is FundingStatus.CONFIRMED
        assert stored.escrow_id == result.escrow_id
        assert stored.confirmed_at == int(clock())

        escrow = funding.get_escrow(result.escrow_id)
        assert escrow.status is EscrowStatus.ACTIVE
        assert escrow.total_minor == 10_000
        assert escrow.remaining_minor == 10_000
        assert escrow.funded_at == int(clock())
        assert escrow.expires_at == int(clock()) + ESCROW_LIFETIME_SECONDS
        assert escrow.memo == "March support"
        assert {c.name: c.allocated_minor for c in escrow.categories} == {
            "food": 6_000,
            "medical": 4_000,
        }

    def test_overfunding_is_accepted(self, reconciler, intent):
        assert reconciler.handle(confirmation(intent.external_code, "100.50")).action == ESCROW_CREATED

    def test_failure_status_marks_intent_failed(self, reconciler, funding, intent):
        result = reconciler.handle(confirmation(intent.external_code, status="failed"))

        assert result.action == INTENT_FAILED
        stored = funding.intent_status(intent.external_code)
        assert stored.status is FundingStatus.FAILED
        assert stored.error_message
        assert funding.count_escrows() == 0

    def test_redelivery_through_gate_creates_one_escrow(self, db, reconciler, funding, intent, audit):
        gate = IdempotencyGate(SQLiteIdempotencyStore(db), audit=audit)
        payload = confirmation(intent.external_code)

        first = gate.guard("onramp", intent.external_code, lambda: reconciler.handle(payload))
        second = gate.guard("onramp", intent.external_code, lambda: reconciler.handle(payload))

        assert not first.duplicate
        assert first.value.action == ESCROW_CREATED
        assert second.duplicate
        assert funding.count_escrows() == 1
        assert audit.read_events(event_type=EventType.WEBHOOK_DUPLICATE)

    def test_replay_past_degraded_gate_is_a_no_op(self, reconciler, funding, intent, audit):
        gate = IdempotencyGate(BrokenStore(), audit=audit)
        payload = confirmation(intent.external_code)

        first = gate.guard("onramp", intent.external_code, lambda: reconciler.handle(payload))
        second = gate.guard("onramp", intent.external_code, lambda: reconciler.handle(payload))

        assert first.degraded and second.degraded
        assert first.value.action == ESCROW_CREATED
        assert second.value.action == ALREADY_PROCESSED
        assert second.value.escrow_id == first.value.escrow_id
        assert funding.count_escrows() == 1

    def test_invalid_amount_is_an_integrity_error(self, reconciler, funding, intent):
        with pytest.raises(IntegrityError):
            reconciler.handle(confirmation(intent.external_code, amount="lots"))
        assert funding.intent_status(intent.external_code).status is FundingStatus.PENDING

    def test_unknown_code(self, reconciler):
        with pytest.raises(UnknownTransactionError, match="NOPE123"):
            reconciler.handle(confirmation("NOPE123"))

    def test_missing_code(self, reconciler):
        with pytest.raises(ValidationError):
            reconciler.handle({"status": "success", "amount_usdc": "1"})


class TestTopUps:
    @pytest.fixture
    def pending_escrow(self, funding):
        return funding.create_escrow(
            sender_id="sender-1",
            recipient="Mama Wanjiku",
            total_minor=10_000,
            categories=[{"name": "rent", "amount_minor": 10_000}],
        )

    def test_confirmation_activates_escrow(self, reconciler, funding, pending_escrow, clock):
        topup = funding.create_topup(pending_escrow.escrow_id, "sender-1", PHONE)
        result = reconciler.handle(confirmation(topup.external_code))

        assert result.action == ESCROW_ACTIVATED
        assert result.escrow_id == pending_escrow.escrow_id
        escrow = funding.get_escrow(pending_escrow.escrow_id)
        assert escrow.status is EscrowStatus.ACTIVE
        assert escrow.activated_at == int(clock())
        assert funding.get_topup(topup.external_code).status is FundingStatus.CONFIRMED
        assert funding.count_escrows() == 1

        assert reconciler.handle(confirmation(topup.external_code)).action == ALREADY_PROCESSED

    def test_failed_topup_leaves_escrow_pending(self, reconciler, funding, pending_escrow):
        topup = funding.create_topup(pending_escrow.escrow_id, "sender-1", PHONE)
        result = reconciler.handle(confirmation(topup.external_code, status="FAILED"))

        assert result.action == TOPUP_FAILED
        assert funding.get_topup(topup.external_code).status is FundingStatus.FAILED
        assert funding.get_escrow(pending_escrow.escrow_id).status is EscrowStatus.PENDING_DEPOSIT

    def test_underfunded_topup(self, reconciler, funding, pending_escrow):
        topup = funding.create_topup(pending_escrow.escrow_id, "sender-1", PHONE)
        with pytest.raises(UnderfundedError):
            reconciler.handle(confirmation(topup.external_code, amount="50"))
        assert funding.get_escrow(pending_escrow.escrow_id).status is EscrowStatus.PENDING_DEPOSIT


class TestPayoutConfirmation:
    @pytest.fixture
    def handler(self, db, ledger, transactions, audit):
        return SettlementConfirmationHandler(db, ledger, transactions, audit=audit)

    @pytest.fixture
    def settling(self, ledger, transactions, channel, authorization):
        job = reserve(ledger, transactions, authorization)
        outcome = Settler(ledger, transactions, channel, await_confirmation=True).settle(job)
        assert outcome.status is SpendStatus.SETTLING
        return transactions.get(job.tx_id)

    def test_success_completes_spend(self, handler, ledger, transactions, settling, authorization):
        result = handler.handle(
            {"transaction_code": settling.external_code, "status": "SUCCESS", "mpesa_receipt": "QK71AB2"}
        )

        assert result.action == SPEND_COMPLETED
        tx = transactions.get(settling.tx_id)
        assert tx.status is SpendStatus.COMPLETED
        assert tx.settlement_receipt == "QK71AB2"
        assert tx.completed_at is not None
        assert ledger.get_authorization(authorization.authorization_id).spent_today_minor == 385

    def test_failure_refunds(self, handler, ledger, transactions, settling, authorization, audit):
        result = handler.handle({"transaction_code": settling.external_code, "status": "FAILED"})

        assert result.action == SPEND_FAILED
        assert transactions.get(settling.tx_id).status is SpendStatus.FAILED
        assert ledger.get_authorization(authorization.authorization_id).spent_today_minor == 0
        assert audit.read_events(event_type=EventType.COMPENSATION_APPLIED)

    def test_terminal_spend_is_not_touched_again(self, handler, ledger, settling, authorization):
        handler.handle({"transaction_code": settling.external_code, "status": "FAILED"})
        again = handler.handle({"transaction_code": settling.external_code, "status": "FAILED"})

        assert again.action == ALREADY_PROCESSED
        assert ledger.get_authorization(authorization.authorization_id).spent_today_minor == 0

    def test_unknown_payout_code(self, handler):
        with pytest.raises(UnknownTransactionError):
            handler.handle({"transaction_code": "DEMO99999999", "status": "SUCCESS"})


class TestSweep:
    def test_stale_funding_requests_time_out(self, db, transactions, funding, intent, clock, audit):
        clock.advance(2 * 3600)
        report = Reconciler(db, transactions, audit=audit).sweep(3600)

        assert report.timed_out_intents == [intent.external_code]
        assert funding.intent_status(intent.external_code).status is FundingStatus.TIMEOUT
        assert audit.read_events(event_type=EventType.FUNDING_TIMEOUT)

    def test_fresh_requests_are_left_alone(self, db, transactions, funding, intent):
        report = Reconciler(db, transactions).sweep(3600)
        assert report.timed_out_intents == []
        assert funding.intent_status(intent.external_code).status is FundingStatus.PENDING

    def test_stuck_spends_are_reported_not_changed(
        self, db, ledger, transactions, authorization, clock
    ):
        job = reserve(ledger, transactions, authorization)
        clock.advance(2 * 3600)

        report = Reconciler(db, transactions).sweep(3600)

        assert [tx.tx_id for tx in report.stuck_spends] == [job.tx_id]
        assert report.to_dict()["stuck_spends"] == [job.tx_id]
        assert transactions.get(job.tx_id).status is SpendStatus.PENDING

    def test_late_confirmation_after_timeout_is_ignored(
        self, db, transactions, reconciler, funding, intent, clock
    ):
        clock.advance(2 * 3600)
        Reconciler(db, transactions).sweep(3600)

        assert reconciler.handle(confirmation(intent.external_code)).action == ALREADY_PROCESSED
        assert funding.count_escrows() == 0

    def test_expired_idempotency_claims_are_purged(self, db, transactions, clock):
        store = SQLiteIdempotencyStore(db)
        for i in range(5):
            assert store.claim(f"webhook:onramp:CODE{i}", 60)
        clock.advance(3600)
        assert store.claim("webhook:onramp:FRESH", 86_400)

        report = Reconciler(db, transactions, idempotency=store).sweep(60)

        assert report.purged_keys == 5
        assert report.to_dict()["purged_keys"] == 5
        with db.read() as conn:
            keys = [r["key"] for r in conn.execute("SELECT key FROM idempotency_keys")]
        assert keys == ["webhook:onramp:FRESH"]
        assert not store.claim("webhook:onramp:FRESH", 86_400)
