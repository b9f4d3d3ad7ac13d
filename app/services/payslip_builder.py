"""
Open Bookkeeping Payroll - Pay Slip Builder

Turns a roster of employee profiles into calculated pay slips for one run.

- Gross = base salary + earnings components (fixed or percent of base)
- Deductions from the StatutoryCalculationEngine, income tax projected
  from the employee's year-to-date figures
- Net = gross - employee-side deductions

Per-employee calculation errors are collected, never raised, so one bad
profile does not sink the batch. Nothing is persisted here; the caller
writes the whole batch in one transaction.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from app.config import settings
from app.models.payroll import PaySlip
from app.services.statutory.engine import (
    DeductionBreakdown,
    EmployeeProfile,
    NO_YTD,
    StatutoryCalculationEngine,
    YtdFigures,
)
from app.services.statutory.rate_table import RateTable, StatutoryCategory
from app.utils.error_handling import PayrollCalculationException

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunContext:
    """The parts of a payroll run the builder needs, detached from the session."""
    run_id: uuid.UUID
    run_number: str
    period_end: date


@dataclass(frozen=True)
class EmployeeCalculationError:
    """One employee the builder could not calculate."""
    employee_id: uuid.UUID
    employee_code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "employee_id": str(self.employee_id),
            "employee_code": self.employee_code,
            "message": self.message,
        }


@dataclass(frozen=True)
class CalculatedPaySlip:
    """In-memory pay slip, ready to persist."""
    slip_number: str
    profile: EmployeeProfile
    breakdown: DeductionBreakdown
    ytd: YtdFigures = NO_YTD
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def gross_salary(self) -> int:
        return self.breakdown.gross_salary

    @property
    def net_salary(self) -> int:
        return self.breakdown.net_salary

    def to_model(self, payroll_run_id: uuid.UUID) -> PaySlip:
        b = self.breakdown
        pension = b[StatutoryCategory.PENSION]
        social_security = b[StatutoryCategory.SOCIAL_SECURITY]
        employment_insurance = b[StatutoryCategory.EMPLOYMENT_INSURANCE]
        return PaySlip(
            id=self.id,
            payroll_run_id=payroll_run_id,
            employee_id=self.profile.employee_id,
            slip_number=self.slip_number,
            employee_code=self.profile.employee_code,
            employee_name=self.profile.name,
            department=self.profile.department,
            position=self.profile.position,
            base_salary=self.profile.base_salary,
            gross_salary=b.gross_salary,
            taxable_wage=b.taxable_wage,
            earnings=self.profile.earnings_json(),
            pension_employee=pension.employee,
            pension_employer=pension.employer,
            social_security_employee=social_security.employee,
            social_security_employer=social_security.employer,
            employment_insurance_employee=employment_insurance.employee,
            employment_insurance_employer=employment_insurance.employer,
            income_tax=b[StatutoryCategory.INCOME_TAX].employee,
            total_employee_deductions=b.total_employee,
            total_employer_contributions=b.total_employer,
            net_salary=b.net_salary,
            exemptions=b.exemptions_json(),
            rate_sources=b.rate_sources_json(),
            rate_table_version=b.rate_table_version,
            ytd_gross_salary=self.ytd.gross_salary + b.gross_salary,
            ytd_pension_employee=self.ytd.pension_employee + pension.employee,
            ytd_income_tax=self.ytd.income_tax + b[StatutoryCategory.INCOME_TAX].employee,
        )


Outcome = Union[DeductionBreakdown, EmployeeCalculationError]


class PaySlipBuilder:
    """Builds pay slips for one run, optionally fanning employees out to a thread pool."""

    def __init__(
        self,
        engine: Optional[StatutoryCalculationEngine] = None,
        max_workers: Optional[int] = None,
    ):
        self.engine = engine or StatutoryCalculationEngine()
        self.max_workers = max_workers if max_workers is not None else settings.payroll_calculation_workers

    def build(
        self,
        run: RunContext,
        employees: Sequence[EmployeeProfile],
        rate_table: RateTable,
        ytd: Optional[Mapping[uuid.UUID, YtdFigures]] = None,
    ) -> Tuple[List[CalculatedPaySlip], List[EmployeeCalculationError]]:
        """
        Calculate every employee and split successes from failures.

        Output order follows the roster order; slip numbers are assigned
        sequentially over the successful employees only. ytd maps employee
        id to that employee's earlier figures for the year.
        """
        ytd = ytd or {}

        def calculate(profile: EmployeeProfile) -> Outcome:
            return self._calculate_one(profile, run, rate_table, ytd.get(profile.employee_id, NO_YTD))

        if self.max_workers > 1 and len(employees) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                outcomes = list(pool.map(calculate, employees))
        else:
            outcomes = [calculate(p) for p in employees]

        pay_slips: List[CalculatedPaySlip] = []
        errors: List[EmployeeCalculationError] = []
        for profile, outcome in zip(employees, outcomes):
            if isinstance(outcome, EmployeeCalculationError):
                errors.append(outcome)
                continue
            pay_slips.append(CalculatedPaySlip(
                slip_number=f"PS-{run.run_number}-{len(pay_slips) + 1:03d}",
                profile=profile,
                breakdown=outcome,
                ytd=ytd.get(profile.employee_id, NO_YTD),
            ))

        logger.info(
            f"Built {len(pay_slips)} pay slips for run {run.run_number} "
            f"({len(errors)} failed) using rate table {rate_table.version}"
        )
        return pay_slips, errors

    def _calculate_one(
        self,
        profile: EmployeeProfile,
        run: RunContext,
        rate_table: RateTable,
        ytd: YtdFigures,
    ) -> Outcome:
        try:
            self._validate_profile(profile)
            return self.engine.calculate(profile, profile.gross_salary, rate_table, run.period_end, ytd)
        except PayrollCalculationException as e:
            logger.warning(
                f"Payroll calculation failed for employee {profile.employee_code} "
                f"in run {run.run_number}: {e.message}"
            )
            return EmployeeCalculationError(profile.employee_id, profile.employee_code, e.message)

    @staticmethod
    def _validate_profile(profile: EmployeeProfile) -> None:
        if profile.base_salary <= 0:
            raise PayrollCalculationException(
                "Base salary must be greater than zero",
                employee_id=profile.employee_id,
                employee_code=profile.employee_code,
            )
        for component in profile.earnings:
            if component.amount < 0 or (component.percentage is not None and component.percentage < 0):
                raise PayrollCalculationException(
                    f"Earnings component {component.code} cannot be negative",
                    employee_id=profile.employee_id,
                    employee_code=profile.employee_code,
                )


def summarize(pay_slips: Sequence[CalculatedPaySlip]) -> Dict[str, Any]:
    """Run-level aggregates over a batch of calculated pay slips."""
    def total(category: StatutoryCategory, side: str) -> int:
        return sum(getattr(s.breakdown[category], side) for s in pay_slips)

    return {
        "total_employees": len(pay_slips),
        "total_gross_salary": sum(s.gross_salary for s in pay_slips),
        "total_net_salary": sum(s.net_salary for s in pay_slips),
        "total_employee_deductions": sum(s.breakdown.total_employee for s in pay_slips),
        "total_employer_contributions": sum(s.breakdown.total_employer for s in pay_slips),
        "total_pension_employee": total(StatutoryCategory.PENSION, "employee"),
        "total_pension_employer": total(StatutoryCategory.PENSION, "employer"),
        "total_social_security_employee": total(StatutoryCategory.SOCIAL_SECURITY, "employee"),
        "total_social_security_employer": total(StatutoryCategory.SOCIAL_SECURITY, "employer"),
        "total_employment_insurance_employee": total(StatutoryCategory.EMPLOYMENT_INSURANCE, "employee"),
        "total_employment_insurance_employer": total(StatutoryCategory.EMPLOYMENT_INSURANCE, "employer"),
        "total_income_tax": total(StatutoryCategory.INCOME_TAX, "employee"),
    }
