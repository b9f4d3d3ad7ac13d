"""
Open Bookkeeping Payroll - Payroll Run State Machine Tests
"""

import pytest

from app.models.payroll import PayrollRunStatus as S
from app.services.payroll_state_machine import (
    PayrollAction as A,
    TRANSITIONS,
    allowed_actions,
    can_transition,
    is_legal_path,
    next_status,
)
from app.utils.error_handling import ErrorCode, InvalidTransitionException


class TestHappyPath:
    def test_full_lifecycle(self):
        status = S.DRAFT
        for action in (A.START_CALCULATION, A.COMPLETE_CALCULATION, A.APPROVE, A.FINALIZE, A.MARK_PAID):
            status = next_status(status, action)

        assert status == S.PAID

    def test_failed_calculation_returns_to_draft(self):
        assert next_status(S.CALCULATING, A.FAIL_CALCULATION) == S.DRAFT

    def test_recalculate_resets_pending_review(self):
        assert next_status(S.PENDING_REVIEW, A.RESET) == S.DRAFT

    @pytest.mark.parametrize("status", [S.DRAFT, S.CALCULATING, S.PENDING_REVIEW, S.APPROVED, S.FINALIZED])
    def test_cancel_from_any_non_terminal_status(self, status):
        assert next_status(status, A.CANCEL) == S.CANCELLED


class TestIllegalTransitions:
    def test_cannot_skip_approval(self):
        with pytest.raises(InvalidTransitionException) as exc_info:
            next_status(S.PENDING_REVIEW, A.FINALIZE)

        assert exc_info.value.current_status == "pending_review"
        assert exc_info.value.code == ErrorCode.INVALID_STATUS_TRANSITION
        assert exc_info.value.status_code == 409

    @pytest.mark.parametrize("status", [S.PAID, S.CANCELLED])
    def test_terminal_statuses_allow_nothing(self, status):
        assert status.is_terminal
        assert allowed_actions(status) == []
        with pytest.raises(InvalidTransitionException):
            next_status(status, A.CANCEL)

    def test_paid_requires_finalized(self):
        assert not can_transition(S.APPROVED, A.MARK_PAID)
        assert not is_legal_path([S.DRAFT, S.CALCULATING, S.PENDING_REVIEW, S.APPROVED, S.PAID])

    def test_every_target_is_a_known_status(self):
        assert set(TRANSITIONS.values()) <= set(S)


class TestPaths:
    def test_legal_path(self):
        assert is_legal_path([S.DRAFT, S.CALCULATING, S.DRAFT, S.CALCULATING, S.PENDING_REVIEW, S.CANCELLED])

    def test_allowed_actions_from_approved(self):
        assert set(allowed_actions(S.APPROVED)) == {A.FINALIZE, A.CANCEL}
