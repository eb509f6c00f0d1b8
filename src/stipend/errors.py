"""
Stipend error types.

Specific exceptions for different failure modes, so the HTTP boundary and
webhook handlers can map each one to the right response (reject, compensate,
retry, alert).
"""

from __future__ import annotations

from typing import Optional


class StipendError(Exception):
    """Base error for all Stipend operations."""
    pass


# Validation errors: surfaced immediately, no side effects
class ValidationError(StipendError):
    """Malformed input (bad amount, unknown category, bad phone, ...)."""
    pass


class NotFoundError(ValidationError):
    """Referenced merchant, item, escrow or authorization does not exist."""
    pass


class InvalidProofError(ValidationError):
    """Payment proof header is present but cannot be parsed."""
    pass


class InvalidTransitionError(StipendError):
    """A status change is not allowed by the entity's transition table."""
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")


# Compensable errors: budget already committed, refund issued before raising
class SettlementError(StipendError):
    """Base error for settlement failures."""
    pass


class TransactionLogError(SettlementError):
    """Pending transaction could not be written; reservation was refunded."""
    pass


class SettlementFailedError(SettlementError):
    """Payout dispatch failed after deduct; reservation was refunded."""
    def __init__(self, tx_id: str, message: str):
        self.tx_id = tx_id
        super().__init__(message)


# Integrity errors: never acknowledged silently
class IntegrityError(StipendError):
    """Webhook content cannot be reconciled with stored state."""
    pass


class UnderfundedError(IntegrityError):
    """Confirmed amount is below the amount the intent expects."""
    def __init__(self, external_code: str, expected_minor: int, received_minor: int):
        self.external_code = external_code
        self.expected_minor = expected_minor
        self.received_minor = received_minor
        super().__init__(
            f"Underfunded {external_code}: expected={expected_minor}, received={received_minor}"
        )


class UnknownTransactionError(IntegrityError):
    """No funding intent, top-up or spend matches the external code."""
    def __init__(self, external_code: str):
        self.external_code = external_code
        super().__init__(f"Unknown transaction_code: {external_code}")


# Channel errors
class ChannelError(StipendError):
    """External mobile-money channel failure (network, non-success reply)."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ChannelTimeoutError(ChannelError):
    """External channel call exceeded its timeout."""
    pass
