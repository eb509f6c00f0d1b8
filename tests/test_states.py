"""Tests for status transition tables."""

import pytest

from stipend.errors import InvalidTransitionError
from stipend.states import (
    AuthorizationStatus,
    EscrowStatus,
    FundingStatus,
    SpendStatus,
    assert_transition,
    can_transition,
    is_terminal,
)


@pytest.mark.parametrize(
    "status",
    [
        AuthorizationStatus.REVOKED,
        AuthorizationStatus.EXPIRED,
        SpendStatus.COMPLETED,
        SpendStatus.FAILED,
        SpendStatus.REJECTED,
        FundingStatus.CONFIRMED,
        FundingStatus.FAILED,
        FundingStatus.TIMEOUT,
        EscrowStatus.DEPLETED,
        EscrowStatus.EXPIRED,
    ],
)
def test_terminal_states(status):
    assert is_terminal(status)


def test_authorization_can_pause_and_resume():
    assert can_transition(AuthorizationStatus.ACTIVE, AuthorizationStatus.PAUSED)
    assert can_transition(AuthorizationStatus.PAUSED, AuthorizationStatus.ACTIVE)
    assert not can_transition(AuthorizationStatus.REVOKED, AuthorizationStatus.ACTIVE)


def test_spend_cannot_go_backwards():
    assert can_transition(SpendStatus.SETTLING, SpendStatus.COMPLETED)
    assert not can_transition(SpendStatus.SETTLING, SpendStatus.AUTHORIZED)
    with pytest.raises(InvalidTransitionError) as exc_info:
        assert_transition(SpendStatus.COMPLETED, SpendStatus.FAILED)
    assert exc_info.value.entity == "spend transaction"


def test_escrow_activates_only_from_pending_deposit():
    assert can_transition(EscrowStatus.PENDING_DEPOSIT, EscrowStatus.ACTIVE)
    assert not can_transition(EscrowStatus.EXPIRED, EscrowStatus.ACTIVE)


def test_mixed_enums_are_rejected():
    with pytest.raises(TypeError):
        assert_transition(SpendStatus.PENDING, FundingStatus.CONFIRMED)
