"""Tests for the 402 challenge protocol."""

import json
import sqlite3

import pytest

from stipend.audit import EventType
from stipend.catalog import StaticCatalog
from stipend.challenge import ChallengeState, Order, PaymentChallengeProtocol, parse_proof
from stipend.channels import DemoChannel
from stipend.config import DEFAULT_ASSET, DEFAULT_NETWORK
from stipend.errors import (
    ChannelTimeoutError,
    InvalidProofError,
    NotFoundError,
    SettlementFailedError,
    TransactionLogError,
)
from stipend.ledger import Reason
from stipend.settlement import InlineSettlementDispatcher, QueuedSettlementDispatcher, Settler
from stipend.states import SpendStatus

from conftest import AGENT, PAY_TO


PROOF = json.dumps({"amount": 385, "network": DEFAULT_NETWORK, "asset": DEFAULT_ASSET})


def kplc_order(category="electricity", item_id="kplc_token_500"):
    return Order(merchant_id="merchant_kplc_001", item_id=item_id, agent=AGENT, category=category)


@pytest.fixture
def electricity_auth(ledger, escrow):
    return ledger.create_authorization(escrow.escrow_id, AGENT, 5_000, "electricity")


def make_protocol(ledger, transactions, audit, channel, queued=False):
    settler = Settler(ledger, transactions, channel, audit=audit)
    dispatcher = QueuedSettlementDispatcher(settler) if queued else InlineSettlementDispatcher(settler)
    return PaymentChallengeProtocol(
        StaticCatalog(),
        ledger,
        transactions,
        dispatcher,
        pay_to=PAY_TO,
        network=DEFAULT_NETWORK,
        asset=DEFAULT_ASSET,
        audit=audit,
    )


@pytest.fixture
def protocol(ledger, transactions, audit, channel):
    return make_protocol(ledger, transactions, audit, channel)


class TestChallenge:
    def test_no_proof_issues_challenge_without_side_effects(
        self, protocol, ledger, transactions, electricity_auth
    ):
        result = protocol.process(kplc_order())

        assert result.state is ChallengeState.CHALLENGE_ISSUED
        assert result.status_code == 402
        body = result.challenge.to_dict()
        assert body["x402Version"] == 2
        [requirement] = body["accepts"]
        assert requirement["scheme"] == "exact"
        assert requirement["maxAmountRequired"] == "385"
        assert requirement["payTo"] == PAY_TO
        assert requirement["network"] == DEFAULT_NETWORK
        assert requirement["resource"] == "/merchant/merchant_kplc_001/order"
        assert requirement["description"] == "Kenya Power (KPLC) - KPLC Token 500 KES (500 KES)"

        assert ledger.get_authorization(electricity_auth.authorization_id).spent_today_minor == 0
        assert transactions.recent() == []

    def test_blank_proof_is_treated_as_missing(self, protocol):
        assert protocol.process(kplc_order(), "  ").state is ChallengeState.CHALLENGE_ISSUED

    def test_challenge_is_idempotent(self, protocol):
        first = protocol.challenge(kplc_order())
        second = protocol.challenge(kplc_order())
        assert first.header_value() == second.header_value()

    def test_unknown_merchant_or_item(self, protocol):
        with pytest.raises(NotFoundError, match="Merchant not found"):
            protocol.process(Order("nope", "kplc_token_500", AGENT, "electricity"))
        with pytest.raises(NotFoundError, match="Item not found"):
            protocol.process(kplc_order(item_id="nope"))


class TestProof:
    def test_parse_proof(self):
        proof = parse_proof(PROOF)
        assert proof.amount == 385
        assert proof.network == DEFAULT_NETWORK
        assert proof.signature is None

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[1, 2]",
            json.dumps({"network": "eip155:8453", "asset": "0xabc"}),
            json.dumps({"amount": "385", "network": "eip155:8453", "asset": "0xabc"}),
            json.dumps({"amount": True, "network": "eip155:8453", "asset": "0xabc"}),
            json.dumps({"amount": 385, "network": "", "asset": "0xabc"}),
        ],
    )
    def test_malformed_proofs(self, raw):
        with pytest.raises(InvalidProofError):
            parse_proof(raw)

    def test_malformed_proof_leaves_budget_untouched(
        self, protocol, ledger, electricity_auth
    ):
        with pytest.raises(InvalidProofError):
            protocol.process(kplc_order(), "not json")
        assert ledger.get_authorization(electricity_auth.authorization_id).spent_today_minor == 0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": 1},
            {"amount": 384.99},
            {"network": "eip155:1"},
            {"asset": "0x0000000000000000000000000000000000000001"},
        ],
    )
    def test_proof_must_match_requirement(
        self, protocol, ledger, transactions, electricity_auth, overrides
    ):
        raw = json.dumps({**json.loads(PROOF), **overrides})
        with pytest.raises(InvalidProofError, match="does not match"):
            protocol.process(kplc_order(), raw)
        assert ledger.get_authorization(electricity_auth.authorization_id).spent_today_minor == 0
        assert transactions.recent() == []

    def test_asset_address_case_is_ignored(self, protocol, electricity_auth):
        raw = json.dumps({**json.loads(PROOF), "asset": DEFAULT_ASSET.lower(), "amount": 385.0})
        assert protocol.process(kplc_order(), raw).state is ChallengeState.AUTHORIZED


class TestAuthorizeAndSettle:
    def test_paid_order_settles_and_returns_receipt(
        self, protocol, ledger, transactions, channel, electricity_auth
    ):
        result = protocol.process(kplc_order(), PROOF)

        assert result.state is ChallengeState.AUTHORIZED
        assert result.status_code == 200
        receipt = result.receipt
        assert receipt.settled
        assert receipt.settlement.status is SpendStatus.COMPLETED
        assert receipt.settlement.external_code.startswith("DEMO")
        assert receipt.budget.new_spent == 385
        assert receipt.budget.remaining == 4_615

        body = receipt.to_dict()
        assert body["transactionId"] == receipt.tx_id
        assert body["merchant"]["payee"] == "888880"
        assert body["item"]["priceUsd"] == 3.85
        assert body["budget"] == {"spent": 3.85, "remaining": 46.15, "dailyLimit": 50.0}
        assert body["authorization"]["allowedCategory"] == "electricity"
        assert body["settlement"]["settledAt"] is not None

        header = json.loads(receipt.header_value())
        assert header == {
            "settled": True,
            "transactionId": receipt.tx_id,
            "externalCode": receipt.settlement.external_code,
        }

        tx = transactions.get(receipt.tx_id)
        assert tx.status is SpendStatus.COMPLETED
        assert tx.external_code == receipt.settlement.external_code
        assert channel.payouts == [("888880", 50_000, tx.correlation_token)]

    def test_item_category_must_match_order(self, protocol, ledger, audit, electricity_auth):
        result = protocol.process(kplc_order(category="food"), PROOF)

        assert result.state is ChallengeState.REJECTED
        assert result.status_code == 403
        assert result.rejection.reason == Reason.CATEGORY_MISMATCH
        assert ledger.get_authorization(electricity_auth.authorization_id).spent_today_minor == 0
        denied = audit.read_events(event_type=EventType.SPEND_DENIED)
        assert denied[-1].reason == Reason.CATEGORY_MISMATCH

    def test_authorization_category_is_enforced(self, protocol, authorization):
        # utilities-only authorization, electricity item
        result = protocol.process(kplc_order(), PROOF)
        assert result.rejection.reason == Reason.CATEGORY_MISMATCH
        assert result.rejection.body()["success"] is False

    def test_budget_exceeded_is_rejected_verbatim(self, protocol, ledger, escrow):
        ledger.create_authorization(escrow.escrow_id, AGENT, 500, "electricity")
        assert protocol.process(kplc_order(), PROOF).state is ChallengeState.AUTHORIZED

        result = protocol.process(kplc_order(), PROOF)
        assert result.state is ChallengeState.REJECTED
        assert result.rejection.reason == Reason.BUDGET_EXCEEDED
        assert "exceeds remaining daily budget" in result.rejection.message

    def test_no_authorization(self, protocol):
        result = protocol.process(kplc_order(), PROOF)
        assert result.rejection.reason == Reason.NO_AUTHORIZATION
        assert result.rejection.body() == {
            "success": False,
            "error": result.rejection.message,
            "reason": Reason.NO_AUTHORIZATION,
        }


class TestCompensation:
    def test_payout_failure_refunds_and_raises(
        self, ledger, transactions, audit, electricity_auth
    ):
        channel = DemoChannel(fail_with=ChannelTimeoutError("Request timeout"))
        protocol = make_protocol(ledger, transactions, audit, channel)

        with pytest.raises(SettlementFailedError) as exc_info:
            protocol.process(kplc_order(), PROOF)

        tx = transactions.get(exc_info.value.tx_id)
        assert tx.status is SpendStatus.FAILED
        assert "Request timeout" in tx.failure_reason
        assert ledger.get_authorization(electricity_auth.authorization_id).spent_today_minor == 0

        types = [e.event_type for e in audit.read_events()]
        assert EventType.SETTLEMENT_FAILED.value in types
        assert EventType.COMPENSATION_APPLIED.value in types

    def test_transaction_log_failure_refunds_and_raises(
        self, protocol, ledger, transactions, electricity_auth, monkeypatch
    ):
        def broken(**kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(transactions, "record_pending", broken)

        with pytest.raises(TransactionLogError):
            protocol.process(kplc_order(), PROOF)
        assert ledger.get_authorization(electricity_auth.authorization_id).spent_today_minor == 0


class TestQueuedSettlement:
    def test_queued_order_is_accepted_then_settled(
        self, ledger, transactions, audit, channel, electricity_auth
    ):
        protocol = make_protocol(ledger, transactions, audit, channel, queued=True)
        try:
            result = protocol.process(kplc_order(), PROOF)

            assert result.status_code == 202
            assert result.receipt.settlement.status is SpendStatus.AUTHORIZED
            assert not result.receipt.settled
            assert result.receipt.to_dict()["settlement"]["settledAt"] is None

            protocol.dispatcher.drain()
            assert transactions.get(result.receipt.tx_id).status is SpendStatus.COMPLETED
        finally:
            protocol.dispatcher.close()
