"""Unit tests for record status lifecycle guardrails and provider vocabulary."""

import pytest

from confpay.common.state_machine import (
    InvalidTransitionError,
    PaymentStatus,
    is_reversal,
    map_provider_status,
    map_session_status,
    validate_transition,
)


def test_valid_transition():
    """Sanity check: a pending record may reach any terminal status."""

    for target in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED):
        validate_transition(PaymentStatus.PENDING, target)


def test_invalid_transition():
    """A failed record cannot be completed by a webhook."""

    with pytest.raises(InvalidTransitionError):
        validate_transition(PaymentStatus.FAILED, PaymentStatus.COMPLETED)
    with pytest.raises(ValueError):
        validate_transition(PaymentStatus.EXPIRED, PaymentStatus.PENDING)


def test_same_status_is_a_no_op():
    for status in PaymentStatus:
        validate_transition(status, status)


def test_completed_can_be_reversed():
    validate_transition(PaymentStatus.COMPLETED, PaymentStatus.FAILED)
    assert is_reversal(PaymentStatus.COMPLETED, PaymentStatus.FAILED)
    assert not is_reversal(PaymentStatus.PENDING, PaymentStatus.FAILED)


def test_only_terminal_targets_count_as_reversals():
    assert is_reversal(PaymentStatus.COMPLETED, PaymentStatus.EXPIRED)
    assert not is_reversal(PaymentStatus.COMPLETED, PaymentStatus.COMPLETED)
    assert not is_reversal(PaymentStatus.COMPLETED, PaymentStatus.PENDING)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("paid", PaymentStatus.COMPLETED),
        ("Succeeded", PaymentStatus.COMPLETED),
        ("COMPLETE", PaymentStatus.COMPLETED),
        ("error", PaymentStatus.FAILED),
        ("canceled", PaymentStatus.CANCELLED),
        ("expire", PaymentStatus.EXPIRED),
        ("processing", PaymentStatus.PENDING),
        ("incomplete", PaymentStatus.PENDING),
    ],
)
def test_provider_status_synonyms(raw, expected):
    assert map_provider_status(raw) == expected


def test_unknown_status_defaults_to_pending():
    assert map_provider_status("something-new") == PaymentStatus.PENDING
    assert map_provider_status(None) == PaymentStatus.PENDING
    assert map_provider_status("") == PaymentStatus.PENDING


def test_session_status_mapping():
    assert map_session_status("complete") == PaymentStatus.COMPLETED
    assert map_session_status("expired") == PaymentStatus.EXPIRED
    assert map_session_status("open") == PaymentStatus.PENDING
    assert map_session_status("failed") == PaymentStatus.FAILED
