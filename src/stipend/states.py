"""
Closed status enumerations with explicit transition tables.

Every persisted status column maps to one of these enums; status writes go
through `assert_transition` so an illegal move fails loudly instead of
silently overwriting a terminal state.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, TypeVar

from .errors import InvalidTransitionError


class AuthorizationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    REVOKED = "revoked"
    EXPIRED = "expired"


class SpendStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    SETTLING = "settling"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class FundingStatus(str, Enum):
    """Shared by funding intents and legacy top-ups."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class EscrowStatus(str, Enum):
    PENDING_DEPOSIT = "pending_deposit"
    ACTIVE = "active"
    DEPLETED = "depleted"
    EXPIRED = "expired"


AUTHORIZATION_TRANSITIONS: dict[AuthorizationStatus, frozenset[AuthorizationStatus]] = {
    AuthorizationStatus.ACTIVE: frozenset(
        {AuthorizationStatus.PAUSED, AuthorizationStatus.REVOKED, AuthorizationStatus.EXPIRED}
    ),
    AuthorizationStatus.PAUSED: frozenset(
        {AuthorizationStatus.ACTIVE, AuthorizationStatus.REVOKED, AuthorizationStatus.EXPIRED}
    ),
    AuthorizationStatus.REVOKED: frozenset(),
    AuthorizationStatus.EXPIRED: frozenset(),
}

SPEND_TRANSITIONS: dict[SpendStatus, frozenset[SpendStatus]] = {
    SpendStatus.PENDING: frozenset(
        {
            SpendStatus.AUTHORIZED,
            SpendStatus.SETTLING,
            SpendStatus.COMPLETED,
            SpendStatus.FAILED,
            SpendStatus.REJECTED,
        }
    ),
    SpendStatus.AUTHORIZED: frozenset(
        {SpendStatus.SETTLING, SpendStatus.COMPLETED, SpendStatus.FAILED}
    ),
    SpendStatus.SETTLING: frozenset({SpendStatus.COMPLETED, SpendStatus.FAILED}),
    SpendStatus.COMPLETED: frozenset(),
    SpendStatus.FAILED: frozenset(),
    SpendStatus.REJECTED: frozenset(),
}

FUNDING_TRANSITIONS: dict[FundingStatus, frozenset[FundingStatus]] = {
    FundingStatus.PENDING: frozenset(
        {FundingStatus.CONFIRMED, FundingStatus.FAILED, FundingStatus.TIMEOUT}
    ),
    FundingStatus.CONFIRMED: frozenset(),
    FundingStatus.FAILED: frozenset(),
    FundingStatus.TIMEOUT: frozenset(),
}

ESCROW_TRANSITIONS: dict[EscrowStatus, frozenset[EscrowStatus]] = {
    EscrowStatus.PENDING_DEPOSIT: frozenset({EscrowStatus.ACTIVE, EscrowStatus.EXPIRED}),
    EscrowStatus.ACTIVE: frozenset({EscrowStatus.DEPLETED, EscrowStatus.EXPIRED}),
    EscrowStatus.DEPLETED: frozenset(),
    EscrowStatus.EXPIRED: frozenset(),
}

_TABLES: dict[type, tuple[str, Mapping]] = {
    AuthorizationStatus: ("authorization", AUTHORIZATION_TRANSITIONS),
    SpendStatus: ("spend transaction", SPEND_TRANSITIONS),
    FundingStatus: ("funding", FUNDING_TRANSITIONS),
    EscrowStatus: ("escrow", ESCROW_TRANSITIONS),
}

S = TypeVar("S", AuthorizationStatus, SpendStatus, FundingStatus, EscrowStatus)


def can_transition(current: S, target: S) -> bool:
    _, table = _TABLES[type(current)]
    return target in table[current]


def assert_transition(current: S, target: S) -> None:
    """Raise InvalidTransitionError unless `current -> target` is allowed."""
    if type(current) is not type(target):
        raise TypeError(f"Cannot compare {type(current).__name__} with {type(target).__name__}")
    entity, table = _TABLES[type(current)]
    if target not in table[current]:
        raise InvalidTransitionError(entity, current.value, target.value)


def is_terminal(status: S) -> bool:
    _, table = _TABLES[type(status)]
    return not table[status]
