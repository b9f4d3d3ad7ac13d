"""
Open Bookkeeping Payroll - Payroll Run State Machine

The single authoritative transition table for payroll runs. Every status
change in PayrollRunService goes through next_status(); there are no
other status assignments.

    draft -> calculating -> pending_review -> approved -> finalized -> paid
    calculating -> draft when no employee could be calculated
    pending_review -> draft on recalculate
    any non-terminal status -> cancelled
"""

from enum import Enum
from typing import Dict, List, Tuple

from app.models.payroll import PayrollRunStatus
from app.utils.error_handling import InvalidTransitionException


class PayrollAction(str, Enum):
    START_CALCULATION = "start_calculation"
    COMPLETE_CALCULATION = "complete_calculation"
    FAIL_CALCULATION = "fail_calculation"
    RESET = "reset"
    APPROVE = "approve"
    FINALIZE = "finalize"
    MARK_PAID = "mark_paid"
    CANCEL = "cancel"


S = PayrollRunStatus
A = PayrollAction

TRANSITIONS: Dict[Tuple[PayrollRunStatus, PayrollAction], PayrollRunStatus] = {
    (S.DRAFT, A.START_CALCULATION): S.CALCULATING,
    (S.CALCULATING, A.COMPLETE_CALCULATION): S.PENDING_REVIEW,
    (S.CALCULATING, A.FAIL_CALCULATION): S.DRAFT,
    (S.PENDING_REVIEW, A.RESET): S.DRAFT,
    (S.PENDING_REVIEW, A.APPROVE): S.APPROVED,
    (S.APPROVED, A.FINALIZE): S.FINALIZED,
    (S.FINALIZED, A.MARK_PAID): S.PAID,
    (S.DRAFT, A.CANCEL): S.CANCELLED,
    (S.CALCULATING, A.CANCEL): S.CANCELLED,
    (S.PENDING_REVIEW, A.CANCEL): S.CANCELLED,
    (S.APPROVED, A.CANCEL): S.CANCELLED,
    (S.FINALIZED, A.CANCEL): S.CANCELLED,
}


def next_status(current: PayrollRunStatus, action: PayrollAction) -> PayrollRunStatus:
    """
    Target status for an action, or InvalidTransitionException carrying
    the current status when the pair is not in the table.
    """
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransitionException(action.value, current.value) from None


def can_transition(current: PayrollRunStatus, action: PayrollAction) -> bool:
    return (current, action) in TRANSITIONS


def allowed_actions(current: PayrollRunStatus) -> List[PayrollAction]:
    return [action for (status, action) in TRANSITIONS if status == current]


def is_legal_path(statuses: List[PayrollRunStatus]) -> bool:
    """True when each consecutive pair of statuses is reachable by one action."""
    reachable = set((frm, to) for (frm, _), to in TRANSITIONS.items())
    return all((a, b) in reachable for a, b in zip(statuses, statuses[1:]))
