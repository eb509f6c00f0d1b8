"""Shared fixtures: a controllable clock and a fresh store per test."""

from datetime import datetime, timedelta, timezone

import pytest
from eth_account import Account

from stipend.audit import AuditTrail
from stipend.channels import DemoChannel
from stipend.db import Database
from stipend.funding import FundingDesk
from stipend.ledger import BudgetLedger
from stipend.settlement import SettlementJob
from stipend.states import EscrowStatus
from stipend.transactions import TransactionLog


EAT = timezone(timedelta(hours=3))
PAY_TO = "0x273326453960864FbA4D2F6Cf09D65fA13E45297"
AGENT = Account.create().address


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start.timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, when: datetime) -> None:
        self.now = when.timestamp()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=EAT))


@pytest.fixture
def db(tmp_path, clock):
    return Database(tmp_path / "stipend.sqlite3", clock=clock)


@pytest.fixture
def audit(tmp_path, clock):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
        clock=clock,
    )


@pytest.fixture
def ledger(db):
    return BudgetLedger(db, utc_offset_hours=3)


@pytest.fixture
def transactions(db):
    return TransactionLog(db)


@pytest.fixture
def channel():
    return DemoChannel(rate="130")


@pytest.fixture
def funding(db, channel, audit):
    return FundingDesk(db, channel, PAY_TO, audit=audit)


@pytest.fixture
def escrow(funding):
    return funding.create_escrow(
        sender_id="sender-1",
        recipient="Mama Wanjiku",
        total_minor=20_000,
        categories=[
            {"name": "utilities", "amount_minor": 5_000},
            {"name": "electricity", "amount_minor": 5_000},
            {"name": "food", "amount_minor": 10_000},
        ],
        status=EscrowStatus.ACTIVE,
    )


@pytest.fixture
def authorization(ledger, escrow):
    return ledger.create_authorization(
        escrow_id=escrow.escrow_id,
        agent=AGENT,
        max_daily_minor=5_000,
        allowed_category="utilities",
    )


def reserve(ledger, transactions, authorization, amount=385):
    """Deduct `amount` and record the pending spend, as the protocol does before dispatch."""
    assert ledger.deduct(authorization.authorization_id, amount).success
    tx = transactions.record_pending(
        authorization_id=authorization.authorization_id,
        merchant_id="merchant_kplc_001",
        merchant_name="Kenya Power (KPLC)",
        item_id="kplc_token_500",
        amount_minor=amount,
        local_amount_minor=50_000,
    )
    return SettlementJob(
        tx_id=tx.tx_id,
        authorization_id=authorization.authorization_id,
        merchant_id=tx.merchant_id,
        payee="888880",
        amount_minor=amount,
        local_amount_minor=tx.local_amount_minor,
        correlation_token=tx.correlation_token,
    )
