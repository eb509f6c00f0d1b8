"""
Pay-per-request challenge protocol (HTTP 402).

An order without payment proof gets a priced challenge and no side effects.
The same order retried with a proof is authorized against the budget ledger,
recorded as a pending spend and handed to the settlement dispatcher. The
proof is an opaque token: its shape is checked, its signature is not.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from .audit import AuditTrail, EventType
from .catalog import CatalogItem, Merchant, MerchantCatalog
from .errors import (
    InvalidProofError,
    NotFoundError,
    SettlementFailedError,
    TransactionLogError,
)
from .ledger import AgentAuthorization, BudgetLedger, BudgetResult, Reason
from .money import format_minor, minor_to_float
from .settlement import SettlementDispatcher, SettlementJob, SettlementOutcome
from .states import SpendStatus
from .transactions import TransactionLog


logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 2
SCHEME_EXACT = "exact"
PROOF_HEADERS = ("x-payment", "payment-signature")
CHALLENGE_HEADER = "payment-required"
RESPONSE_HEADER = "payment-response"


class ChallengeState(str, Enum):
    NO_CHALLENGE = "no_challenge"
    CHALLENGE_ISSUED = "challenge_issued"
    PROOF_SUBMITTED = "proof_submitted"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


@dataclass
class Order:
    merchant_id: str
    item_id: str
    agent: str
    category: str


@dataclass
class PaymentRequirement:
    network: str
    asset: str
    max_amount_required: int
    pay_to: str
    resource: str
    description: str
    scheme: str = SCHEME_EXACT

    def to_dict(self) -> dict:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "asset": self.asset,
            "maxAmountRequired": str(self.max_amount_required),
            "payTo": self.pay_to,
            "resource": self.resource,
            "description": self.description,
        }


@dataclass
class Challenge:
    merchant: Merchant
    item: CatalogItem
    accepts: list[PaymentRequirement]
    version: int = PROTOCOL_VERSION

    def to_dict(self) -> dict:
        return {
            "x402Version": self.version,
            "accepts": [req.to_dict() for req in self.accepts],
        }

    def header_value(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def body(self) -> dict:
        return {
            "success": False,
            "error": "Payment Required",
            "merchant": {"id": self.merchant.merchant_id, "name": self.merchant.name},
            "item": {
                "id": self.item.item_id,
                "name": self.item.name,
                "category": self.item.category,
                "priceKes": minor_to_float(self.item.local_price_minor),
                "priceUsd": minor_to_float(self.item.price_minor),
                "priceUsdCents": self.item.price_minor,
            },
            "paymentRequired": self.to_dict(),
        }


@dataclass
class PaymentProof:
    amount: float
    network: str
    asset: str
    signature: Optional[str] = None

    def satisfies(self, requirement: PaymentRequirement) -> bool:
        """Exact scheme: same amount in cents, same network and asset."""
        return (
            self.amount == requirement.max_amount_required
            and self.network == requirement.network
            and self.asset.lower() == requirement.asset.lower()
        )


@dataclass
class Rejection:
    reason: str
    message: str
    spent: Optional[int] = None
    remaining: Optional[int] = None

    def body(self) -> dict:
        body = {"success": False, "error": self.message, "reason": self.reason}
        if self.spent is not None and self.remaining is not None:
            body["budget"] = {
                "spent": minor_to_float(self.spent),
                "remaining": minor_to_float(self.remaining),
            }
        return body


@dataclass
class Receipt:
    tx_id: str
    merchant: Merchant
    item: CatalogItem
    settlement: SettlementOutcome
    budget: BudgetResult
    authorization: AgentAuthorization

    @property
    def settled(self) -> bool:
        return self.settlement.status in (SpendStatus.COMPLETED, SpendStatus.SETTLING)

    def to_dict(self) -> dict:
        settled_at = None
        if self.settlement.settled_at is not None:
            settled_at = datetime.fromtimestamp(
                self.settlement.settled_at, timezone.utc
            ).isoformat()
        return {
            "transactionId": self.tx_id,
            "merchant": {
                "id": self.merchant.merchant_id,
                "name": self.merchant.name,
                "payee": self.merchant.payee,
            },
            "item": {
                "id": self.item.item_id,
                "name": self.item.name,
                "category": self.item.category,
                "priceKes": minor_to_float(self.item.local_price_minor),
                "priceUsd": minor_to_float(self.item.price_minor),
            },
            "settlement": {
                "externalCode": self.settlement.external_code,
                "status": self.settlement.status.value,
                "settledAt": settled_at,
            },
            "budget": {
                "spent": minor_to_float(self.budget.new_spent),
                "remaining": minor_to_float(self.budget.remaining),
                "dailyLimit": minor_to_float(self.authorization.max_daily_minor),
            },
            "authorization": {
                "id": self.authorization.authorization_id,
                "allowedCategory": self.authorization.allowed_category,
            },
        }

    def header_value(self) -> str:
        return json.dumps(
            {
                "settled": self.settled,
                "transactionId": self.tx_id,
                "externalCode": self.settlement.external_code,
            },
            separators=(",", ":"),
        )


@dataclass
class ProtocolResult:
    state: ChallengeState
    challenge: Optional[Challenge] = None
    receipt: Optional[Receipt] = None
    rejection: Optional[Rejection] = None

    @property
    def status_code(self) -> int:
        if self.state is ChallengeState.CHALLENGE_ISSUED:
            return 402
        if self.state is ChallengeState.REJECTED:
            return 403
        if self.receipt is not None and self.receipt.settlement.status is SpendStatus.AUTHORIZED:
            return 202
        return 200


def parse_proof(raw: Union[str, bytes, dict, None]) -> PaymentProof:
    """Parse the proof header: a JSON object with amount, network and asset."""
    if raw is None:
        raise InvalidProofError("Payment proof is missing")
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise InvalidProofError("Payment header must be valid JSON") from e
    if not isinstance(data, dict):
        raise InvalidProofError("Payment header must be a JSON object")

    amount = data.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidProofError("Payment proof 'amount' must be a number")
    network = data.get("network")
    asset = data.get("asset")
    if not isinstance(network, str) or not network:
        raise InvalidProofError("Payment proof 'network' must be a string")
    if not isinstance(asset, str) or not asset:
        raise InvalidProofError("Payment proof 'asset' must be a string")
    signature = data.get("signature")
    if signature is not None and not isinstance(signature, str):
        raise InvalidProofError("Payment proof 'signature' must be a string")
    return PaymentProof(amount=amount, network=network, asset=asset, signature=signature)


class PaymentChallengeProtocol:
    """Order -> challenge -> proof -> authorize -> settle -> receipt."""

    def __init__(
        self,
        catalog: MerchantCatalog,
        ledger: BudgetLedger,
        transactions: TransactionLog,
        dispatcher: SettlementDispatcher,
        pay_to: str,
        network: str,
        asset: str,
        audit: Optional[AuditTrail] = None,
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.transactions = transactions
        self.dispatcher = dispatcher
        self.pay_to = pay_to
        self.network = network
        self.asset = asset
        self.audit = audit

    def list_merchants(self) -> list[Merchant]:
        return self.catalog.merchants()

    def _lookup(self, merchant_id: str, item_id: str) -> tuple[Merchant, CatalogItem]:
        merchant = self.catalog.get_merchant(merchant_id)
        if merchant is None:
            raise NotFoundError(f"Merchant not found: {merchant_id}")
        item = self.catalog.get_item(merchant_id, item_id)
        if item is None:
            raise NotFoundError(f"Item not found: {item_id}")
        return merchant, item

    def challenge(self, order: Order) -> Challenge:
        """Price the order. No side effects."""
        merchant, item = self._lookup(order.merchant_id, order.item_id)
        kes = minor_to_float(item.local_price_minor)
        requirement = PaymentRequirement(
            network=self.network,
            asset=self.asset,
            max_amount_required=item.price_minor,
            pay_to=self.pay_to,
            resource=f"/merchant/{merchant.merchant_id}/order",
            description=f"{merchant.name} - {item.name} ({kes:g} KES)",
        )
        return Challenge(merchant=merchant, item=item, accepts=[requirement])

    def _reject(
        self,
        order: Order,
        item: CatalogItem,
        reason: str,
        message: str,
        authorization_id: Optional[str] = None,
        budget: Optional[BudgetResult] = None,
    ) -> ProtocolResult:
        logger.info("Spend rejected for %s: %s (%s)", order.agent, reason, message)
        if self.audit is not None:
            self.audit.log(
                EventType.SPEND_DENIED,
                authorization_id=authorization_id,
                agent=order.agent,
                amount_minor=item.price_minor,
                merchant=order.merchant_id,
                success=False,
                reason=reason,
            )
        return ProtocolResult(
            state=ChallengeState.REJECTED,
            rejection=Rejection(
                reason=reason,
                message=message,
                spent=budget.new_spent if budget else None,
                remaining=budget.remaining if budget else None,
            ),
        )

    def process(self, order: Order, raw_proof: Union[str, bytes, dict, None] = None) -> ProtocolResult:
        """
        Run one order through the protocol.

        Raises NotFoundError for unknown merchant or item, InvalidProofError
        for a malformed proof or one that does not match the challenge,
        TransactionLogError when the pending spend cannot be recorded and
        SettlementFailedError when the payout fails.
        Both of the latter are raised after the budget has been refunded.
        """
        challenge = self.challenge(order)
        if raw_proof is None or (isinstance(raw_proof, (str, bytes)) and not raw_proof.strip()):
            return ProtocolResult(state=ChallengeState.CHALLENGE_ISSUED, challenge=challenge)

        merchant, item = challenge.merchant, challenge.item
        proof = parse_proof(raw_proof)
        if not any(proof.satisfies(req) for req in challenge.accepts):
            raise InvalidProofError("Payment proof does not match the payment requirements")
        price = item.price_minor

        category = (order.category or "").strip().lower()
        if category != item.category:
            return self._reject(
                order, item, Reason.CATEGORY_MISMATCH,
                f"Item category '{item.category}' does not match requested category '{category}'",
            )

        validation = self.ledger.validate(order.agent, category, price)
        if not validation.allowed or validation.authorization is None:
            return self._reject(
                order, item, validation.reason or Reason.NO_AUTHORIZATION, validation.message,
                authorization_id=(
                    validation.authorization.authorization_id if validation.authorization else None
                ),
            )
        authorization = validation.authorization

        budget = self.ledger.deduct(authorization.authorization_id, price)
        if not budget.success:
            return self._reject(
                order, item, budget.reason or Reason.BUDGET_EXCEEDED, budget.message,
                authorization_id=authorization.authorization_id,
                budget=budget,
            )

        try:
            tx = self.transactions.record_pending(
                authorization_id=authorization.authorization_id,
                merchant_id=merchant.merchant_id,
                merchant_name=merchant.name,
                item_id=item.item_id,
                amount_minor=price,
                local_amount_minor=item.local_price_minor,
            )
        except Exception as e:
            logger.error(
                "Could not record spend for %s; refunding %s",
                authorization.authorization_id, format_minor(price),
            )
            refund = self.ledger.refund(authorization.authorization_id, price)
            if self.audit is not None:
                self.audit.log(
                    EventType.COMPENSATION_APPLIED,
                    authorization_id=authorization.authorization_id,
                    amount_minor=price,
                    merchant=merchant.merchant_id,
                    success=refund.success,
                    reason="transaction_log_failed",
                )
            raise TransactionLogError(f"Transaction logging failed: {e}") from e

        if self.audit is not None:
            self.audit.log(
                EventType.SPEND_AUTHORIZED,
                authorization_id=authorization.authorization_id,
                agent=authorization.agent,
                tx_id=tx.tx_id,
                amount_minor=price,
                merchant=merchant.merchant_id,
            )

        outcome = self.dispatcher.dispatch(
            SettlementJob(
                tx_id=tx.tx_id,
                authorization_id=authorization.authorization_id,
                merchant_id=merchant.merchant_id,
                payee=merchant.payee,
                amount_minor=price,
                local_amount_minor=item.local_price_minor,
                correlation_token=tx.correlation_token,
            )
        )
        if outcome.failed:
            raise SettlementFailedError(tx.tx_id, f"Settlement failed: {outcome.error}")

        return ProtocolResult(
            state=ChallengeState.AUTHORIZED,
            challenge=challenge,
            receipt=Receipt(
                tx_id=tx.tx_id,
                merchant=merchant,
                item=item,
                settlement=outcome,
                budget=budget,
                authorization=authorization,
            ),
        )
