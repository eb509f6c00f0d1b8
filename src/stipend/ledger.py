"""
Budget ledger for agent spending authorizations.

Each authorization caps what one agent may spend per calendar day, in one
category, against one escrow. Deduct and refund run as a single
BEGIN IMMEDIATE unit of work so concurrent spend attempts against the same
authorization serialize and the cap is never exceeded.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from eth_utils import is_hex_address, to_checksum_address

from .db import Database
from .errors import NotFoundError, ValidationError
from .money import format_minor, minor_to_float
from .states import AuthorizationStatus, assert_transition


logger = logging.getLogger(__name__)


class Reason:
    """Machine-checkable rejection reasons."""

    NO_AUTHORIZATION = "NoAuthorization"
    CATEGORY_MISMATCH = "CategoryMismatch"
    INVALID_AMOUNT = "InvalidAmount"
    BUDGET_EXCEEDED = "BudgetExceeded"
    NOT_ACTIVE = "NotActive"
    NOT_FOUND = "NotFound"


def normalize_agent(agent: str) -> str:
    """Checksum EVM addresses; strip any other identity string."""
    value = (agent or "").strip()
    if not value:
        raise ValidationError("Agent identity is required")
    if is_hex_address(value):
        return to_checksum_address(value)
    return value


@dataclass
class AgentAuthorization:
    """A standing permission for one agent to spend from one escrow."""

    authorization_id: str
    escrow_id: str
    agent: str
    max_daily_minor: int
    spent_today_minor: int
    allowed_category: str
    status: AuthorizationStatus
    created_at: int
    updated_at: int
    status_changed_at: int

    def to_dict(self) -> dict:
        return {
            "authorization_id": self.authorization_id,
            "escrow_id": self.escrow_id,
            "agent": self.agent,
            "max_daily_usd": minor_to_float(self.max_daily_minor),
            "spent_today_usd": minor_to_float(self.spent_today_minor),
            "allowed_category": self.allowed_category,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status_changed_at": self.status_changed_at,
        }


@dataclass
class ValidationResult:
    allowed: bool
    message: str
    reason: Optional[str] = None
    authorization: Optional[AgentAuthorization] = None


@dataclass
class BudgetResult:
    success: bool
    new_spent: int
    remaining: int
    message: str
    reason: Optional[str] = None


class BudgetLedger:
    """
    Per-agent daily budgets backed by the relational store.

    Calendar days are evaluated in a fixed UTC offset (no DST), so "today"
    is the same for every request regardless of the host timezone.
    """

    def __init__(self, db: Database, utc_offset_hours: int = 3):
        self.db = db
        self.tz = timezone(timedelta(hours=utc_offset_hours))

    # ── Clock ─────────────────────────────────────────────────────

    def _day(self, ts: int) -> date:
        return datetime.fromtimestamp(ts, self.tz).date()

    def is_new_day(self, updated_at: int, now: int) -> bool:
        """True when `updated_at` falls on a calendar day strictly before `now`."""
        return self._day(updated_at) < self._day(now)

    def effective_spent(self, auth: AgentAuthorization, now: Optional[int] = None) -> int:
        """Spent-today with the daily reset applied, without persisting it."""
        now = self.db.now() if now is None else now
        if self.is_new_day(auth.updated_at, now):
            return 0
        return auth.spent_today_minor

    # ── Authorizations ────────────────────────────────────────────

    def _row_to_auth(self, row: sqlite3.Row) -> AgentAuthorization:
        return AgentAuthorization(
            authorization_id=row["authorization_id"],
            escrow_id=row["escrow_id"],
            agent=row["agent"],
            max_daily_minor=row["max_daily_minor"],
            spent_today_minor=row["spent_today_minor"],
            allowed_category=row["allowed_category"],
            status=AuthorizationStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            status_changed_at=row["status_changed_at"],
        )

    def create_authorization(
        self,
        escrow_id: str,
        agent: str,
        max_daily_minor: int,
        allowed_category: str,
    ) -> AgentAuthorization:
        agent = normalize_agent(agent)
        category = (allowed_category or "").strip().lower()
        if not category:
            raise ValidationError("Allowed category is required")
        if max_daily_minor <= 0:
            raise ValidationError("Daily limit must be positive")

        now = self.db.now()
        auth_id = uuid.uuid4().hex
        with self.db.transaction() as conn:
            escrow = conn.execute(
                "SELECT escrow_id FROM escrows WHERE escrow_id = ?",
                (escrow_id,),
            ).fetchone()
            if escrow is None:
                raise NotFoundError(f"Escrow not found: {escrow_id}")
            existing = conn.execute(
                "SELECT authorization_id FROM agent_authorizations WHERE agent = ? AND escrow_id = ?",
                (agent, escrow_id),
            ).fetchone()
            if existing is not None:
                raise ValidationError(
                    f"Agent {agent} already has authorization {existing['authorization_id']} "
                    f"for escrow {escrow_id}"
                )
            conn.execute(
                """
                INSERT INTO agent_authorizations (
                    authorization_id, escrow_id, agent, max_daily_minor,
                    spent_today_minor, allowed_category, status,
                    created_at, updated_at, status_changed_at
                ) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                """,
                (
                    auth_id,
                    escrow_id,
                    agent,
                    max_daily_minor,
                    category,
                    AuthorizationStatus.ACTIVE.value,
                    now,
                    now,
                    now,
                ),
            )
        logger.info(
            "Authorization %s created: agent=%s escrow=%s cap=%s category=%s",
            auth_id, agent, escrow_id, format_minor(max_daily_minor), category,
        )
        return AgentAuthorization(
            authorization_id=auth_id,
            escrow_id=escrow_id,
            agent=agent,
            max_daily_minor=max_daily_minor,
            spent_today_minor=0,
            allowed_category=category,
            status=AuthorizationStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            status_changed_at=now,
        )

    def get_authorization(self, authorization_id: str) -> Optional[AgentAuthorization]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM agent_authorizations WHERE authorization_id = ?",
                (authorization_id,),
            ).fetchone()
        return self._row_to_auth(row) if row else None

    def active_authorization(self, agent: str) -> Optional[AgentAuthorization]:
        """Most recently created active authorization for `agent`."""
        agent = normalize_agent(agent)
        with self.db.read() as conn:
            row = conn.execute(
                """
                SELECT * FROM agent_authorizations
                WHERE agent = ? AND status = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (agent, AuthorizationStatus.ACTIVE.value),
            ).fetchone()
        return self._row_to_auth(row) if row else None

    def list_authorizations(self, agent: Optional[str] = None) -> list[AgentAuthorization]:
        with self.db.read() as conn:
            if agent:
                rows = conn.execute(
                    "SELECT * FROM agent_authorizations WHERE agent = ? ORDER BY created_at ASC",
                    (normalize_agent(agent),),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM agent_authorizations ORDER BY created_at ASC"
                ).fetchall()
        return [self._row_to_auth(r) for r in rows]

    def set_status(
        self, authorization_id: str, status: AuthorizationStatus
    ) -> AgentAuthorization:
        """Move an authorization along its transition table."""
        status = AuthorizationStatus(status)
        now = self.db.now()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM agent_authorizations WHERE authorization_id = ?",
                (authorization_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Authorization not found: {authorization_id}")
            auth = self._row_to_auth(row)
            assert_transition(auth.status, status)
            conn.execute(
                """
                UPDATE agent_authorizations
                SET status = ?, status_changed_at = ?
                WHERE authorization_id = ?
                """,
                (status.value, now, authorization_id),
            )
        logger.info(
            "Authorization %s status %s -> %s",
            authorization_id, auth.status.value, status.value,
        )
        auth.status = status
        auth.status_changed_at = now
        return auth

    # ── Budget operations ─────────────────────────────────────────

    def validate(self, agent: str, category: str, amount_minor: int) -> ValidationResult:
        """
        Read-only pre-check for a proposed spend.

        The daily reset is applied to the returned decision but not written;
        only deduct and refund persist it.
        """
        try:
            auth = self.active_authorization(agent)
        except ValidationError:
            auth = None
        if auth is None:
            return ValidationResult(
                allowed=False,
                reason=Reason.NO_AUTHORIZATION,
                message=f"No active authorization for agent {agent}",
            )

        requested = (category or "").strip().lower()
        if requested != auth.allowed_category:
            return ValidationResult(
                allowed=False,
                reason=Reason.CATEGORY_MISMATCH,
                message=(
                    f"Category '{requested}' not allowed; authorization permits "
                    f"'{auth.allowed_category}'"
                ),
                authorization=auth,
            )

        if amount_minor <= 0:
            return ValidationResult(
                allowed=False,
                reason=Reason.INVALID_AMOUNT,
                message="Amount must be positive",
                authorization=auth,
            )

        spent = self.effective_spent(auth)
        remaining = auth.max_daily_minor - spent
        if amount_minor > remaining:
            return ValidationResult(
                allowed=False,
                reason=Reason.BUDGET_EXCEEDED,
                message=(
                    f"Amount {format_minor(amount_minor)} exceeds remaining daily budget "
                    f"{format_minor(remaining)} "
                    f"(spent {format_minor(spent)} of {format_minor(auth.max_daily_minor)} today)"
                ),
                authorization=auth,
            )

        return ValidationResult(
            allowed=True,
            message="Within limits",
            authorization=auth,
        )

    def _locked_spent(
        self, conn: sqlite3.Connection, authorization_id: str, now: int
    ) -> tuple[Optional[AgentAuthorization], int]:
        row = conn.execute(
            "SELECT * FROM agent_authorizations WHERE authorization_id = ?",
            (authorization_id,),
        ).fetchone()
        if row is None:
            return None, 0
        auth = self._row_to_auth(row)
        spent = 0 if self.is_new_day(auth.updated_at, now) else auth.spent_today_minor
        return auth, spent

    def deduct(self, authorization_id: str, amount_minor: int) -> BudgetResult:
        """Atomically check the daily cap and add `amount_minor` to spent-today."""
        now = self.db.now()
        with self.db.transaction() as conn:
            auth, spent = self._locked_spent(conn, authorization_id, now)
            if auth is None:
                return BudgetResult(
                    success=False,
                    new_spent=0,
                    remaining=0,
                    reason=Reason.NOT_FOUND,
                    message=f"Authorization not found: {authorization_id}",
                )
            if auth.status is not AuthorizationStatus.ACTIVE:
                return BudgetResult(
                    success=False,
                    new_spent=spent,
                    remaining=auth.max_daily_minor - spent,
                    reason=Reason.NOT_ACTIVE,
                    message=f"Authorization is {auth.status.value}",
                )
            if amount_minor <= 0:
                return BudgetResult(
                    success=False,
                    new_spent=spent,
                    remaining=auth.max_daily_minor - spent,
                    reason=Reason.INVALID_AMOUNT,
                    message="Amount must be positive",
                )

            new_spent = spent + amount_minor
            if new_spent > auth.max_daily_minor:
                return BudgetResult(
                    success=False,
                    new_spent=spent,
                    remaining=auth.max_daily_minor - spent,
                    reason=Reason.BUDGET_EXCEEDED,
                    message=(
                        f"Amount {format_minor(amount_minor)} exceeds remaining daily budget "
                        f"{format_minor(auth.max_daily_minor - spent)}"
                    ),
                )

            conn.execute(
                """
                UPDATE agent_authorizations
                SET spent_today_minor = ?, updated_at = ?
                WHERE authorization_id = ?
                """,
                (new_spent, now, authorization_id),
            )

        logger.debug(
            "Deducted %s from %s (spent today %s)",
            format_minor(amount_minor), authorization_id, format_minor(new_spent),
        )
        return BudgetResult(
            success=True,
            new_spent=new_spent,
            remaining=auth.max_daily_minor - new_spent,
            message="Deducted",
        )

    def refund(
        self,
        authorization_id: str,
        amount_minor: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> BudgetResult:
        """
        Return `amount_minor` to today's budget, never below zero.

        A refund that lands after the day rolled over applies to the reset
        budget, so yesterday's spend is never resurrected.
        """
        now = self.db.now()
        with self.db.unit(conn) as c:
            auth, spent = self._locked_spent(c, authorization_id, now)
            if auth is None:
                return BudgetResult(
                    success=False,
                    new_spent=0,
                    remaining=0,
                    reason=Reason.NOT_FOUND,
                    message=f"Authorization not found: {authorization_id}",
                )
            if amount_minor <= 0:
                return BudgetResult(
                    success=False,
                    new_spent=spent,
                    remaining=auth.max_daily_minor - spent,
                    reason=Reason.INVALID_AMOUNT,
                    message="Refund amount must be positive",
                )
            new_spent = max(0, spent - amount_minor)
            c.execute(
                """
                UPDATE agent_authorizations
                SET spent_today_minor = ?, updated_at = ?
                WHERE authorization_id = ?
                """,
                (new_spent, now, authorization_id),
            )

        logger.info(
            "Refunded %s to %s (spent today %s)",
            format_minor(amount_minor), authorization_id, format_minor(new_spent),
        )
        return BudgetResult(
            success=True,
            new_spent=new_spent,
            remaining=auth.max_daily_minor - new_spent,
            message="Refunded",
        )

    def summary(self, authorization_id: str) -> dict:
        """Human-readable budget summary with the daily reset applied."""
        auth = self.get_authorization(authorization_id)
        if auth is None:
            raise NotFoundError(f"Authorization not found: {authorization_id}")
        spent = self.effective_spent(auth)
        return {
            "authorization_id": auth.authorization_id,
            "agent": auth.agent,
            "status": auth.status.value,
            "category": auth.allowed_category,
            "daily_limit": format_minor(auth.max_daily_minor),
            "spent_today": format_minor(spent),
            "remaining": format_minor(auth.max_daily_minor - spent),
            "utilization": f"{(spent / auth.max_daily_minor * 100):.1f}%",
        }
