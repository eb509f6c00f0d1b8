"""
Escrows and the requests that fund them.

Two funding paths exist. The current one creates a funding intent and starts
an on-ramp collection before any escrow exists; the confirming webhook
creates the escrow. The legacy one creates the escrow first in
`pending_deposit` and a top-up request whose webhook activates it.

Nothing here finalizes funding: confirmations belong to the reconciler.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from .audit import AuditTrail, EventType
from .channels import OnRampChannel, validate_onramp_phone
from .db import Database
from .errors import ChannelError, NotFoundError, ValidationError
from .money import format_minor, local_amount_for, minor_to_float, price_to_minor
from .states import EscrowStatus, FundingStatus


logger = logging.getLogger(__name__)

ALLOWED_CATEGORIES = frozenset(
    {"electricity", "water", "rent", "food", "medical", "education", "other", "utilities"}
)
ESCROW_LIFETIME_SECONDS = 90 * 24 * 60 * 60


@dataclass
class CategoryAllocation:
    name: str
    amount_minor: int

    def to_dict(self) -> dict:
        return {"name": self.name, "amount_minor": self.amount_minor}


@dataclass
class SpendingCategory:
    category_id: str
    escrow_id: str
    name: str
    allocated_minor: int
    spent_minor: int
    remaining_minor: int

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "allocated_usd": minor_to_float(self.allocated_minor),
            "spent_usd": minor_to_float(self.spent_minor),
            "remaining_usd": minor_to_float(self.remaining_minor),
        }


@dataclass
class Escrow:
    escrow_id: str
    sender_id: str
    recipient: str
    total_minor: int
    remaining_minor: int
    spent_minor: int
    status: EscrowStatus
    created_at: int
    expires_at: int
    memo: Optional[str] = None
    funded_at: Optional[int] = None
    activated_at: Optional[int] = None
    categories: list[SpendingCategory] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "escrow_id": self.escrow_id,
            "sender_id": self.sender_id,
            "recipient": self.recipient,
            "total_usd": minor_to_float(self.total_minor),
            "remaining_usd": minor_to_float(self.remaining_minor),
            "spent_usd": minor_to_float(self.spent_minor),
            "status": self.status.value,
            "memo": self.memo,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "funded_at": self.funded_at,
            "activated_at": self.activated_at,
            "categories": [c.to_dict() for c in self.categories],
        }


@dataclass
class FundingIntent:
    intent_id: str
    sender_id: str
    recipient: str
    total_minor: int
    categories: list[CategoryAllocation]
    onramp_phone: str
    exchange_rate: str
    local_amount_minor: int
    expected_minor: int
    settlement_address: str
    external_code: str
    status: FundingStatus
    created_at: int
    memo: Optional[str] = None
    escrow_id: Optional[str] = None
    error_message: Optional[str] = None
    confirmed_at: Optional[int] = None
    failed_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "intentId": self.intent_id,
            "transactionCode": self.external_code,
            "status": self.status.value,
            "escrowId": self.escrow_id,
            "totalUsd": minor_to_float(self.total_minor),
            "amountKes": minor_to_float(self.local_amount_minor),
            "exchangeRate": self.exchange_rate,
        }


@dataclass
class TopUp:
    topup_id: str
    escrow_id: str
    sender_id: str
    onramp_phone: str
    exchange_rate: str
    local_amount_minor: int
    expected_minor: int
    settlement_address: str
    external_code: str
    status: FundingStatus
    created_at: int
    error_message: Optional[str] = None
    confirmed_at: Optional[int] = None
    failed_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "topupId": self.topup_id,
            "escrowId": self.escrow_id,
            "transactionCode": self.external_code,
            "status": self.status.value,
            "amountKes": minor_to_float(self.local_amount_minor),
        }


def parse_categories(raw: Iterable) -> list[CategoryAllocation]:
    """
    Validate a category allocation list.

    Accepts dicts with `name` and either `amount_minor` (cents) or
    `amount_usd` / `amountUsd` (major units).
    """
    allocations: list[CategoryAllocation] = []
    seen: set[str] = set()
    for entry in raw or []:
        if isinstance(entry, CategoryAllocation):
            name, amount = entry.name, entry.amount_minor
        elif isinstance(entry, dict):
            name = str(entry.get("name", "")).strip().lower()
            if "amount_minor" in entry:
                amount = entry["amount_minor"]
            else:
                usd = entry.get("amount_usd", entry.get("amountUsd"))
                try:
                    amount = price_to_minor(usd)
                except ValueError as e:
                    raise ValidationError(f"Invalid category amount for {name}") from e
        else:
            raise ValidationError(f"Invalid category entry: {entry!r}")

        if name not in ALLOWED_CATEGORIES:
            raise ValidationError(f"Invalid category: {name}")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError(f"Invalid category amount for {name}")
        if name in seen:
            raise ValidationError(f"Duplicate category: {name}")
        seen.add(name)
        allocations.append(CategoryAllocation(name=name, amount_minor=amount))

    if not allocations:
        raise ValidationError("categories are required")
    return allocations


def check_allocations(total_minor: int, allocations: list[CategoryAllocation]) -> None:
    if total_minor <= 0:
        raise ValidationError("Total amount must be positive")
    allocated = sum(a.amount_minor for a in allocations)
    if allocated > total_minor:
        raise ValidationError(
            f"Category allocations {format_minor(allocated)} exceed total {format_minor(total_minor)}"
        )


def insert_escrow(
    conn: sqlite3.Connection,
    now: int,
    sender_id: str,
    recipient: str,
    total_minor: int,
    allocations: list[CategoryAllocation],
    status: EscrowStatus,
    memo: Optional[str] = None,
) -> str:
    """Insert an escrow and its spending categories inside the caller's unit of work."""
    escrow_id = uuid.uuid4().hex
    funded = now if status is EscrowStatus.ACTIVE else None
    conn.execute(
        """
        INSERT INTO escrows (
            escrow_id, sender_id, recipient, total_minor, remaining_minor,
            spent_minor, status, memo, created_at, updated_at, expires_at,
            funded_at, activated_at
        ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            escrow_id,
            sender_id,
            recipient,
            total_minor,
            total_minor,
            status.value,
            memo,
            now,
            now,
            now + ESCROW_LIFETIME_SECONDS,
            funded,
            funded,
        ),
    )
    for alloc in allocations:
        conn.execute(
            """
            INSERT INTO spending_categories (
                category_id, escrow_id, name, allocated_minor, spent_minor,
                remaining_minor, created_at
            ) VALUES (?, ?, ?, ?, 0, ?, ?)
            """,
            (uuid.uuid4().hex, escrow_id, alloc.name, alloc.amount_minor, alloc.amount_minor, now),
        )
    return escrow_id


def row_to_intent(row: sqlite3.Row) -> FundingIntent:
    return FundingIntent(
        intent_id=row["intent_id"],
        sender_id=row["sender_id"],
        recipient=row["recipient"],
        total_minor=row["total_minor"],
        categories=[CategoryAllocation(**c) for c in json.loads(row["categories"])],
        onramp_phone=row["onramp_phone"],
        exchange_rate=row["exchange_rate"],
        local_amount_minor=row["local_amount_minor"],
        expected_minor=row["expected_minor"],
        settlement_address=row["settlement_address"],
        external_code=row["external_code"],
        status=FundingStatus(row["status"]),
        created_at=row["created_at"],
        memo=row["memo"],
        escrow_id=row["escrow_id"],
        error_message=row["error_message"],
        confirmed_at=row["confirmed_at"],
        failed_at=row["failed_at"],
    )


def row_to_topup(row: sqlite3.Row) -> TopUp:
    return TopUp(
        topup_id=row["topup_id"],
        escrow_id=row["escrow_id"],
        sender_id=row["sender_id"],
        onramp_phone=row["onramp_phone"],
        exchange_rate=row["exchange_rate"],
        local_amount_minor=row["local_amount_minor"],
        expected_minor=row["expected_minor"],
        settlement_address=row["settlement_address"],
        external_code=row["external_code"],
        status=FundingStatus(row["status"]),
        created_at=row["created_at"],
        error_message=row["error_message"],
        confirmed_at=row["confirmed_at"],
        failed_at=row["failed_at"],
    )


class FundingDesk:
    def __init__(
        self,
        db: Database,
        onramp: OnRampChannel,
        settlement_address: str,
        audit: Optional[AuditTrail] = None,
    ):
        self.db = db
        self.onramp = onramp
        self.settlement_address = settlement_address
        self.audit = audit

    # ── Escrows ───────────────────────────────────────────────────

    def create_escrow(
        self,
        sender_id: str,
        recipient: str,
        total_minor: int,
        categories: Iterable,
        memo: Optional[str] = None,
        status: EscrowStatus = EscrowStatus.PENDING_DEPOSIT,
    ) -> Escrow:
        """Legacy direct path: the escrow exists before any money arrives."""
        if not sender_id or not recipient:
            raise ValidationError("Sender and recipient are required")
        allocations = parse_categories(categories)
        check_allocations(total_minor, allocations)
        now = self.db.now()
        with self.db.transaction() as conn:
            escrow_id = insert_escrow(
                conn, now, sender_id, recipient, total_minor, allocations, status, memo
            )
        logger.info("Escrow %s created (%s, %s)", escrow_id, status.value, format_minor(total_minor))
        if self.audit is not None:
            self.audit.log(
                EventType.ESCROW_CREATED,
                escrow_id=escrow_id,
                amount_minor=total_minor,
                details={"status": status.value, "path": "direct"},
            )
        escrow = self.get_escrow(escrow_id)
        assert escrow is not None
        return escrow

    def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM escrows WHERE escrow_id = ?", (escrow_id,)).fetchone()
            if row is None:
                return None
            cat_rows = conn.execute(
                "SELECT * FROM spending_categories WHERE escrow_id = ? ORDER BY name ASC",
                (escrow_id,),
            ).fetchall()
        return Escrow(
            escrow_id=row["escrow_id"],
            sender_id=row["sender_id"],
            recipient=row["recipient"],
            total_minor=row["total_minor"],
            remaining_minor=row["remaining_minor"],
            spent_minor=row["spent_minor"],
            status=EscrowStatus(row["status"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            memo=row["memo"],
            funded_at=row["funded_at"],
            activated_at=row["activated_at"],
            categories=[
                SpendingCategory(
                    category_id=c["category_id"],
                    escrow_id=c["escrow_id"],
                    name=c["name"],
                    allocated_minor=c["allocated_minor"],
                    spent_minor=c["spent_minor"],
                    remaining_minor=c["remaining_minor"],
                )
                for c in cat_rows
            ],
        )

    def count_escrows(self) -> int:
        with self.db.read() as conn:
            return conn.execute("SELECT COUNT(*) AS n FROM escrows").fetchone()["n"]

    # ── On-ramp requests ──────────────────────────────────────────

    def _quote(self, total_minor: int) -> tuple[Decimal, int]:
        try:
            rate = self.onramp.exchange_rate()
            local_whole = local_amount_for(total_minor, rate)
        except ValueError as e:
            raise ValidationError(f"Invalid exchange rate: {e}") from e
        if local_whole <= 0:
            raise ValidationError("Invalid local amount")
        return rate, local_whole * 100

    def create_intent(
        self,
        sender_id: str,
        recipient: str,
        phone: str,
        total_minor: int,
        categories: Iterable,
        memo: Optional[str] = None,
    ) -> FundingIntent:
        """
        Start an on-ramp collection for an escrow that does not exist yet.

        The on-ramp call happens before the row is written and outside any
        database lock; the returned external code keys the confirming webhook.
        """
        if not sender_id:
            raise ValidationError("Sender is required")
        if not recipient or not str(recipient).strip():
            raise ValidationError("Recipient is required")
        phone = validate_onramp_phone(phone)
        allocations = parse_categories(categories)
        check_allocations(total_minor, allocations)

        rate, local_amount_minor = self._quote(total_minor)
        initiated = self.onramp.initiate(phone, local_amount_minor, self.settlement_address)
        if not initiated.external_code:
            raise ChannelError("On-ramp returned no transaction code")

        now = self.db.now()
        intent = FundingIntent(
            intent_id=uuid.uuid4().hex,
            sender_id=sender_id,
            recipient=str(recipient).strip(),
            total_minor=total_minor,
            categories=allocations,
            onramp_phone=phone,
            exchange_rate=str(rate),
            local_amount_minor=local_amount_minor,
            expected_minor=total_minor,
            settlement_address=self.settlement_address,
            external_code=initiated.external_code,
            status=FundingStatus.PENDING,
            created_at=now,
            memo=memo,
        )
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO funding_intents (
                    intent_id, sender_id, recipient, total_minor, categories, memo,
                    onramp_phone, exchange_rate, local_amount_minor, expected_minor,
                    settlement_address, external_code, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent.intent_id,
                    intent.sender_id,
                    intent.recipient,
                    intent.total_minor,
                    json.dumps([a.to_dict() for a in allocations]),
                    intent.memo,
                    intent.onramp_phone,
                    intent.exchange_rate,
                    intent.local_amount_minor,
                    intent.expected_minor,
                    intent.settlement_address,
                    intent.external_code,
                    intent.status.value,
                    now,
                    now,
                ),
            )
        logger.info(
            "Funding intent %s initiated: %s for %s (code %s)",
            intent.intent_id, format_minor(local_amount_minor, "KES"),
            format_minor(total_minor), intent.external_code,
        )
        if self.audit is not None:
            self.audit.log(
                EventType.FUNDING_INITIATED,
                external_code=intent.external_code,
                amount_minor=total_minor,
                details={"intent_id": intent.intent_id},
            )
        return intent

    def create_topup(self, escrow_id: str, sender_id: str, phone: str) -> TopUp:
        """Legacy path: collect funds for an escrow sitting in `pending_deposit`."""
        phone = validate_onramp_phone(phone)
        escrow = self.get_escrow(escrow_id)
        if escrow is None or escrow.sender_id != sender_id:
            raise NotFoundError(f"Escrow not found: {escrow_id}")
        if escrow.status is not EscrowStatus.PENDING_DEPOSIT:
            raise ValidationError("Escrow not ready")

        rate, local_amount_minor = self._quote(escrow.total_minor)
        initiated = self.onramp.initiate(phone, local_amount_minor, self.settlement_address)
        if not initiated.external_code:
            raise ChannelError("On-ramp returned no transaction code")

        now = self.db.now()
        topup = TopUp(
            topup_id=uuid.uuid4().hex,
            escrow_id=escrow_id,
            sender_id=sender_id,
            onramp_phone=phone,
            exchange_rate=str(rate),
            local_amount_minor=local_amount_minor,
            expected_minor=escrow.total_minor,
            settlement_address=self.settlement_address,
            external_code=initiated.external_code,
            status=FundingStatus.PENDING,
            created_at=now,
        )
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM escrows WHERE escrow_id = ?", (escrow_id,)
            ).fetchone()
            if row is None or row["status"] != EscrowStatus.PENDING_DEPOSIT.value:
                raise ValidationError("Escrow not ready")
            conn.execute(
                """
                INSERT INTO topups (
                    topup_id, escrow_id, sender_id, onramp_phone, exchange_rate,
                    local_amount_minor, expected_minor, settlement_address,
                    external_code, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    topup.topup_id,
                    topup.escrow_id,
                    topup.sender_id,
                    topup.onramp_phone,
                    topup.exchange_rate,
                    topup.local_amount_minor,
                    topup.expected_minor,
                    topup.settlement_address,
                    topup.external_code,
                    topup.status.value,
                    now,
                    now,
                ),
            )
        logger.info("Top-up %s initiated for escrow %s (code %s)", topup.topup_id, escrow_id, topup.external_code)
        if self.audit is not None:
            self.audit.log(
                EventType.FUNDING_INITIATED,
                escrow_id=escrow_id,
                external_code=topup.external_code,
                amount_minor=escrow.total_minor,
                details={"topup_id": topup.topup_id},
            )
        return topup

    def intent_status(self, external_code: str, sender_id: Optional[str] = None) -> FundingIntent:
        with self.db.read() as conn:
            if sender_id:
                row = conn.execute(
                    "SELECT * FROM funding_intents WHERE external_code = ? AND sender_id = ?",
                    (external_code, sender_id),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM funding_intents WHERE external_code = ?",
                    (external_code,),
                ).fetchone()
        if row is None:
            raise NotFoundError("Transaction not found")
        return row_to_intent(row)

    def get_topup(self, external_code: str) -> Optional[TopUp]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM topups WHERE external_code = ?", (external_code,)
            ).fetchone()
        return row_to_topup(row) if row else None
