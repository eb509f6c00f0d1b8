"""Tests for escrow creation and funding requests."""

import pytest

from stipend.audit import EventType
from stipend.channels import OnRampResult
from stipend.errors import ChannelError, NotFoundError, ValidationError
from stipend.funding import ESCROW_LIFETIME_SECONDS, FundingDesk, parse_categories
from stipend.states import EscrowStatus, FundingStatus

from conftest import PAY_TO


PHONE = "0712345678"


class SilentOnRamp:
    """Accepts the request but never hands back a transaction code."""

    def initiate(self, phone, local_amount_minor, settlement_address):
        return OnRampResult(external_code="")

    def exchange_rate(self):
        return 130


class TestParseCategories:
    def test_accepts_minor_and_major_amounts(self):
        allocations = parse_categories(
            [{"name": " Food ", "amount_minor": 500}, {"name": "rent", "amountUsd": "12.5"}]
        )
        assert [(a.name, a.amount_minor) for a in allocations] == [("food", 500), ("rent", 1_250)]

    @pytest.mark.parametrize(
        "raw,message",
        [
            ([], "categories are required"),
            ([{"name": "gambling", "amount_minor": 100}], "Invalid category"),
            ([{"name": "food", "amount_minor": 0}], "Invalid category amount"),
            ([{"name": "food", "amount_usd": "x"}], "Invalid category amount"),
            (
                [{"name": "food", "amount_minor": 1}, {"name": "FOOD", "amount_minor": 1}],
                "Duplicate category",
            ),
            (["food"], "Invalid category entry"),
        ],
    )
    def test_rejects(self, raw, message):
        with pytest.raises(ValidationError, match=message):
            parse_categories(raw)


class TestEscrows:
    def test_direct_escrow_starts_pending_deposit(self, funding, clock):
        escrow = funding.create_escrow(
            sender_id="sender-1",
            recipient="Mama Wanjiku",
            total_minor=10_000,
            categories=[{"name": "food", "amount_minor": 7_000}],
            memo="groceries",
        )

        assert escrow.status is EscrowStatus.PENDING_DEPOSIT
        assert escrow.remaining_minor == 10_000
        assert escrow.spent_minor == 0
        assert escrow.funded_at is None
        assert escrow.expires_at == int(clock()) + ESCROW_LIFETIME_SECONDS
        [category] = escrow.categories
        assert category.remaining_minor == 7_000

    def test_allocations_cannot_exceed_total(self, funding):
        with pytest.raises(ValidationError, match="exceed total"):
            funding.create_escrow(
                sender_id="sender-1",
                recipient="Mama Wanjiku",
                total_minor=1_000,
                categories=[{"name": "food", "amount_minor": 600}, {"name": "rent", "amount_minor": 600}],
            )
        assert funding.count_escrows() == 0

    def test_unknown_escrow(self, funding):
        assert funding.get_escrow("nope") is None


class TestFundingIntents:
    def test_intent_quotes_local_amount_and_starts_onramp(self, funding, channel, audit):
        intent = funding.create_intent(
            sender_id="sender-1",
            recipient="  Mama Wanjiku ",
            phone=PHONE,
            total_minor=10_000,
            categories=[{"name": "food", "amount_minor": 10_000}],
        )

        assert intent.status is FundingStatus.PENDING
        assert intent.recipient == "Mama Wanjiku"
        assert intent.exchange_rate == "130"
        assert intent.local_amount_minor == 1_300_000
        assert intent.expected_minor == 10_000
        assert intent.settlement_address == PAY_TO
        assert channel.onramps == [(PHONE, 1_300_000, PAY_TO)]
        assert funding.count_escrows() == 0
        assert funding.intent_status(intent.external_code).intent_id == intent.intent_id
        assert audit.read_events(event_type=EventType.FUNDING_INITIATED)

    def test_invalid_requests_do_not_reach_onramp(self, funding, channel):
        with pytest.raises(ValidationError):
            funding.create_intent("sender-1", "Mama Wanjiku", "254712345678", 10_000,
                                  [{"name": "food", "amount_minor": 10_000}])
        with pytest.raises(ValidationError):
            funding.create_intent("sender-1", " ", PHONE, 10_000,
                                  [{"name": "food", "amount_minor": 10_000}])
        with pytest.raises(ValidationError):
            funding.create_intent("sender-1", "Mama Wanjiku", PHONE, 0,
                                  [{"name": "food", "amount_minor": 1}])
        assert channel.onramps == []

    def test_missing_transaction_code_is_a_channel_error(self, db, audit):
        desk = FundingDesk(db, SilentOnRamp(), PAY_TO, audit=audit)
        with pytest.raises(ChannelError):
            desk.create_intent("sender-1", "Mama Wanjiku", PHONE, 100,
                               [{"name": "food", "amount_minor": 100}])

    def test_status_is_scoped_to_sender(self, funding):
        intent = funding.create_intent("sender-1", "Mama Wanjiku", PHONE, 100,
                                       [{"name": "food", "amount_minor": 100}])
        with pytest.raises(NotFoundError):
            funding.intent_status(intent.external_code, sender_id="sender-2")
        with pytest.raises(NotFoundError):
            funding.intent_status("NOPE")


class TestTopUps:
    def test_topup_requires_pending_deposit_escrow(self, funding, escrow):
        # the shared escrow fixture is already active
        with pytest.raises(ValidationError, match="Escrow not ready"):
            funding.create_topup(escrow.escrow_id, "sender-1", PHONE)

    def test_topup_is_scoped_to_sender(self, funding):
        pending = funding.create_escrow("sender-1", "Mama Wanjiku", 500,
                                        [{"name": "rent", "amount_minor": 500}])
        with pytest.raises(NotFoundError):
            funding.create_topup(pending.escrow_id, "sender-2", PHONE)

    def test_topup_records_request(self, funding, channel):
        pending = funding.create_escrow("sender-1", "Mama Wanjiku", 500,
                                        [{"name": "rent", "amount_minor": 500}])
        topup = funding.create_topup(pending.escrow_id, "sender-1", PHONE)

        stored = funding.get_topup(topup.external_code)
        assert stored.status is FundingStatus.PENDING
        assert stored.expected_minor == 500
        assert stored.local_amount_minor == 65_000
        assert len(channel.onramps) == 1
