"""
Open Bookkeeping Payroll - Statutory Deadline Calculator

EPF, SOCSO, EIS and PCB for a month are remitted by the 15th of the
following month. Urgency is a function of "today" and is evaluated on
every read, never stored.

The payment summary splits a calculated run's aggregates into one
remittance per agency, each with the same due date.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from app.config import settings
from app.models.payroll import PayrollRun
from app.services.statutory.malaysia import REMITTANCE_AGENCIES
from app.services.statutory.rate_table import StatutoryCategory

# Run aggregate columns per category: (employee side, employer side)
_RUN_TOTALS = {
    StatutoryCategory.PENSION: ("total_pension_employee", "total_pension_employer"),
    StatutoryCategory.SOCIAL_SECURITY: ("total_social_security_employee", "total_social_security_employer"),
    StatutoryCategory.EMPLOYMENT_INSURANCE: (
        "total_employment_insurance_employee",
        "total_employment_insurance_employer",
    ),
    StatutoryCategory.INCOME_TAX: ("total_income_tax", None),
}


class DeadlineClassification(str, Enum):
    OVERDUE = "overdue"
    DUE_SOON = "due_soon"
    ROUTINE = "routine"


@dataclass(frozen=True)
class DeadlineStatus:
    due_date: date
    days_until_due: int
    classification: DeadlineClassification

    def to_dict(self) -> Dict[str, object]:
        return {
            "due_date": self.due_date.isoformat(),
            "days_until_due": self.days_until_due,
            "classification": self.classification.value,
        }


@dataclass(frozen=True)
class AgencyRemittance:
    """Amount owed to one statutory agency for one run (minor units)."""
    agency: str
    category: StatutoryCategory
    employee: int
    employer: int
    due_date: date

    @property
    def total(self) -> int:
        return self.employee + self.employer


@dataclass(frozen=True)
class StatutoryPaymentSummary:
    deadline: DeadlineStatus
    remittances: List[AgencyRemittance] = field(default_factory=list)

    @property
    def total_payable(self) -> int:
        return sum(r.total for r in self.remittances)


def period_bounds(period_year: int, period_month: int) -> Tuple[date, date]:
    """First and last day of a monthly pay period."""
    start = date(period_year, period_month, 1)
    return start, start + relativedelta(day=31)


class StatutoryDeadlineCalculator:
    """Side-effect-free remittance deadline rules."""

    def __init__(self, due_day: Optional[int] = None, due_soon_days: Optional[int] = None):
        self.due_day = due_day or settings.statutory_due_day
        self.due_soon_days = due_soon_days if due_soon_days is not None else settings.statutory_due_soon_days

    def due_date(self, period_year: int, period_month: int) -> date:
        """Due day of the month following the period (clamped to that month's length)."""
        return date(period_year, period_month, 1) + relativedelta(months=1, day=self.due_day)

    def classify(self, due: date, today: date) -> DeadlineStatus:
        days = (due - today).days
        if days < 0:
            classification = DeadlineClassification.OVERDUE
        elif days <= self.due_soon_days:
            classification = DeadlineClassification.DUE_SOON
        else:
            classification = DeadlineClassification.ROUTINE
        return DeadlineStatus(due_date=due, days_until_due=days, classification=classification)

    def status_for_period(self, period_year: int, period_month: int, today: date) -> DeadlineStatus:
        return self.classify(self.due_date(period_year, period_month), today)

    def payment_summary(self, run: PayrollRun, today: date) -> StatutoryPaymentSummary:
        """
        Per-agency amounts payable for a run.

        A run that has not been calculated has no aggregates and so no
        remittances; its deadline is still reported.
        """
        deadline = self.status_for_period(run.period_year, run.period_month, today)
        if run.total_employees is None:
            return StatutoryPaymentSummary(deadline=deadline)

        remittances = []
        for category, (employee_field, employer_field) in _RUN_TOTALS.items():
            remittances.append(AgencyRemittance(
                agency=REMITTANCE_AGENCIES[category],
                category=category,
                employee=getattr(run, employee_field) or 0,
                employer=(getattr(run, employer_field) or 0) if employer_field else 0,
                due_date=deadline.due_date,
            ))
        return StatutoryPaymentSummary(deadline=deadline, remittances=remittances)
