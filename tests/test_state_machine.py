"""
Tests for the operation status transition table.

The table is checked exhaustively: for every (current, target) pair the
result of can_transition() must match the documented edges, so adding or
removing an edge by accident fails here.
"""

import itertools

import pytest

from app.models.operation import (
    CANCELLABLE_STATUSES,
    HEARTBEAT_MONITORED_STATUSES,
    INTERACTIVE_STATUSES,
    TERMINAL_STATUSES,
    OperationStatus as S,
    allowed_transitions,
    can_transition,
)


FORWARD_EDGES = {
    (S.PENDING, S.AWAITING_PACKAGE),
    (S.PENDING, S.PROCESSING),
    (S.AWAITING_PACKAGE, S.AWAITING_PAYMENT),
    (S.AWAITING_PACKAGE, S.COMPLETING),
    (S.AWAITING_PAYMENT, S.PROCESSING),
    (S.PROCESSING, S.AWAITING_CAPTCHA),
    (S.PROCESSING, S.COMPLETING),
    (S.AWAITING_CAPTCHA, S.PROCESSING),
    (S.AWAITING_CAPTCHA, S.AWAITING_FINAL_CONFIRM),
    (S.AWAITING_CAPTCHA, S.COMPLETING),
    (S.AWAITING_FINAL_CONFIRM, S.COMPLETING),
    (S.COMPLETING, S.COMPLETED),
}

CANCELLABLE = {S.PENDING, S.AWAITING_PACKAGE, S.AWAITING_PAYMENT, S.AWAITING_CAPTCHA}
TERMINAL = {S.COMPLETED, S.FAILED, S.CANCELLED, S.EXPIRED}


def expected_allowed(current: S, target: S) -> bool:
    if current in TERMINAL:
        return False
    if (current, target) in FORWARD_EDGES:
        return True
    if target in (S.FAILED, S.EXPIRED):
        return True
    if target == S.CANCELLED:
        return current in CANCELLABLE
    return False


class TestTransitionTable:

    @pytest.mark.parametrize(
        "current,target",
        list(itertools.product(list(S), list(S))),
        ids=lambda s: s.value,
    )
    def test_every_pair(self, current, target):
        assert can_transition(current, target) is expected_allowed(current, target)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL, key=lambda s: s.value))
    def test_terminal_statuses_have_no_exits(self, terminal):
        assert allowed_transitions(terminal) == frozenset()

    def test_no_self_transitions(self):
        for status in S:
            assert not can_transition(status, status)

    def test_every_non_terminal_status_can_fail_and_expire(self):
        for status in set(S) - TERMINAL:
            assert can_transition(status, S.FAILED)
            assert can_transition(status, S.EXPIRED)


class TestStatusGroups:

    def test_terminal_set(self):
        assert TERMINAL_STATUSES == TERMINAL

    def test_cancellable_set(self):
        assert CANCELLABLE_STATUSES == CANCELLABLE

    def test_interactive_statuses_are_the_awaiting_ones(self):
        assert INTERACTIVE_STATUSES == {
            S.AWAITING_PACKAGE, S.AWAITING_PAYMENT, S.AWAITING_CAPTCHA, S.AWAITING_FINAL_CONFIRM,
        }

    def test_sweep_does_not_watch_payment(self):
        """Payment is settled by the payment provider, not by an open tab."""
        assert S.AWAITING_PAYMENT not in HEARTBEAT_MONITORED_STATUSES
        assert HEARTBEAT_MONITORED_STATUSES < INTERACTIVE_STATUSES

    def test_completing_and_processing_cannot_be_cancelled(self):
        assert not can_transition(S.PROCESSING, S.CANCELLED)
        assert not can_transition(S.COMPLETING, S.CANCELLED)
        assert not can_transition(S.AWAITING_FINAL_CONFIRM, S.CANCELLED)
