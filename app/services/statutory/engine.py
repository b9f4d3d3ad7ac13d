"""
Open Bookkeeping Payroll - Statutory Calculation Engine

Pure calculation of one employee's statutory deductions for one period.

For each category (pension, social security, employment insurance, income
tax) and each side (employee, employer):
1. Exemption check: manual exemptions on the profile, then the table's
   exemption rules. An exempt side is forced to zero and tagged.
2. Per-employee override rate, if the profile carries one.
3. Otherwise the first table entry whose predicate matches the employee
   and whose band contains the category's contributory wage.

The contributory wage of a category is the gross salary less any earnings
components that are not subject to that category.

Income tax is computed last because its reliefs depend on the employee's
pension and social security contributions. It is projected over the year
from the employee's year-to-date figures.

Every amount is computed in Decimal and rounded once, half-up, to whole
minor units. The engine never touches the database.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import ClassVar, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union
from uuid import UUID

from app.models.payroll import MaritalStatus, ResidencyClass
from app.services.statutory.rate_table import (
    AgeRequiredError,
    ContributionSide,
    ExemptionKind,
    RateEntry,
    RateMethod,
    RateTable,
    StatutoryCategory,
    TaxReliefs,
)
from app.utils.error_handling import PayrollCalculationException
from app.utils.money import format_minor, percent_of, round_half_up

logger = logging.getLogger(__name__)

SIDES = (ContributionSide.EMPLOYEE, ContributionSide.EMPLOYER)
PERIODS_PER_YEAR = 12
ALL_CATEGORIES = frozenset(StatutoryCategory)


# ===========================================
# RATE SOURCE / EXEMPTION REASON
# ===========================================

@dataclass(frozen=True)
class TableLookup:
    """Amount came from the rate table."""
    rate_table_version: str
    kind: ClassVar[str] = "table"


@dataclass(frozen=True)
class EmployeeOverride:
    """Amount came from an override rate (percent) on the employee profile."""
    rate: Decimal
    kind: ClassVar[str] = "override"


RateSource = Union[TableLookup, EmployeeOverride]


@dataclass(frozen=True)
class AgeExemption:
    reason: str
    kind: ClassVar[ExemptionKind] = ExemptionKind.AGE


@dataclass(frozen=True)
class ResidencyExemption:
    reason: str
    kind: ClassVar[ExemptionKind] = ExemptionKind.RESIDENCY


@dataclass(frozen=True)
class ManualExemption:
    reason: str
    kind: ClassVar[ExemptionKind] = ExemptionKind.MANUAL


ExemptionReason = Union[AgeExemption, ResidencyExemption, ManualExemption]

_EXEMPTION_TYPES = {
    ExemptionKind.AGE: AgeExemption,
    ExemptionKind.RESIDENCY: ResidencyExemption,
    ExemptionKind.MANUAL: ManualExemption,
}


# ===========================================
# INPUT / OUTPUT
# ===========================================

@dataclass(frozen=True)
class EarningsComponent:
    """
    Recurring earnings paid on top of base salary.

    Either a fixed amount (minor units) or a percentage of base salary.
    subject_to names the statutory categories whose contributory wage
    includes the component.
    """
    code: str
    name: str
    amount: int = 0
    percentage: Optional[Decimal] = None
    subject_to: FrozenSet[StatutoryCategory] = ALL_CATEGORIES

    def amount_for(self, base_salary: int) -> int:
        if self.percentage is not None:
            return percent_of(base_salary, self.percentage)
        return self.amount

    def to_dict(self, base_salary: int) -> Dict[str, object]:
        return {
            "code": self.code,
            "name": self.name,
            "amount": self.amount_for(base_salary),
            "percentage": str(self.percentage) if self.percentage is not None else None,
            "subject_to": sorted(c.value for c in self.subject_to),
        }


@dataclass(frozen=True)
class YtdFigures:
    """
    Totals from the employee's finalized or paid pay slips earlier in the
    same year. months is the number of those earlier periods.
    """
    gross_salary: int = 0
    taxable_wage: int = 0
    pension_employee: int = 0
    social_security_employee: int = 0
    income_tax: int = 0
    months: int = 0


NO_YTD = YtdFigures()


@dataclass(frozen=True)
class TaxInputs:
    """What the progressive income tax method needs beyond the wage."""
    pension: int = 0
    social_security: int = 0
    open_months: int = PERIODS_PER_YEAR
    ytd: YtdFigures = NO_YTD


@dataclass(frozen=True)
class EmployeeProfile:
    """Everything the engine and the pay slip builder need about one employee."""
    employee_id: UUID
    employee_code: str
    name: str
    base_salary: int
    residency_class: ResidencyClass
    date_of_birth: Optional[date] = None
    hire_date: Optional[date] = None
    department: Optional[str] = None
    position: Optional[str] = None
    earnings: Tuple[EarningsComponent, ...] = ()
    pay_frequency: str = "monthly"
    rate_overrides: Mapping[Tuple[StatutoryCategory, ContributionSide], Decimal] = field(default_factory=dict)
    manual_exemptions: Mapping[StatutoryCategory, str] = field(default_factory=dict)
    marital_status: MaritalStatus = MaritalStatus.SINGLE
    spouse_working: bool = True
    number_of_children: int = 0
    children_in_university: int = 0
    disabled_children: int = 0

    @property
    def total_earnings(self) -> int:
        return sum(c.amount_for(self.base_salary) for c in self.earnings)

    @property
    def gross_salary(self) -> int:
        return self.base_salary + self.total_earnings

    def excluded_from(self, category: StatutoryCategory) -> int:
        """Earnings not subject to a category's contributions."""
        return sum(
            c.amount_for(self.base_salary) for c in self.earnings if category not in c.subject_to
        )

    def earnings_json(self) -> List[Dict[str, object]]:
        return [c.to_dict(self.base_salary) for c in self.earnings]

    def age_on(self, as_of: date) -> Optional[int]:
        if self.date_of_birth is None:
            return None
        dob = self.date_of_birth
        return as_of.year - dob.year - ((as_of.month, as_of.day) < (dob.month, dob.day))


@dataclass(frozen=True)
class CategoryDeduction:
    """One category's employee-side and employer-side amounts (minor units)."""
    category: StatutoryCategory
    employee: int = 0
    employer: int = 0
    employee_source: Optional[RateSource] = None
    employer_source: Optional[RateSource] = None
    exemption: Optional[ExemptionReason] = None
    exempt_sides: FrozenSet[ContributionSide] = frozenset()

    def is_exempt(self, side: ContributionSide) -> bool:
        return side in self.exempt_sides


@dataclass(frozen=True)
class DeductionBreakdown:
    """Engine output for one employee and one period."""
    gross_salary: int
    rate_table_version: str
    categories: Dict[StatutoryCategory, CategoryDeduction]
    wages: Dict[StatutoryCategory, int] = field(default_factory=dict)

    def __getitem__(self, category: StatutoryCategory) -> CategoryDeduction:
        return self.categories[category]

    @property
    def total_employee(self) -> int:
        return sum(c.employee for c in self.categories.values())

    @property
    def total_employer(self) -> int:
        return sum(c.employer for c in self.categories.values())

    @property
    def net_salary(self) -> int:
        return self.gross_salary - self.total_employee

    @property
    def taxable_wage(self) -> int:
        return self.wages.get(StatutoryCategory.INCOME_TAX, self.gross_salary)

    def exemptions_json(self) -> Dict[str, Dict[str, object]]:
        return {
            c.category.value: {
                "kind": c.exemption.kind.value,
                "reason": c.exemption.reason,
                "employee": c.is_exempt(ContributionSide.EMPLOYEE),
                "employer": c.is_exempt(ContributionSide.EMPLOYER),
            }
            for c in self.categories.values()
            if c.exemption is not None
        }

    def rate_sources_json(self) -> Dict[str, Dict[str, Optional[str]]]:
        return {
            c.category.value: {
                "employee": c.employee_source.kind if c.employee_source else None,
                "employer": c.employer_source.kind if c.employer_source else None,
            }
            for c in self.categories.values()
        }


# ===========================================
# ENGINE
# ===========================================

class StatutoryCalculationEngine:
    """
    Stateless statutory deduction calculator.

    Safe to share across threads: it holds no mutable state and the rate
    table it reads is immutable.
    """

    def calculate(
        self,
        profile: EmployeeProfile,
        gross: int,
        rate_table: RateTable,
        as_of: date,
        ytd: Optional[YtdFigures] = None,
    ) -> DeductionBreakdown:
        """
        Calculate all statutory deductions for one employee.

        Args:
            profile: Employee profile
            gross: Gross salary for the period (minor units)
            rate_table: Rate table snapshot in effect for the period
            as_of: Date used to derive age (the period end date)
            ytd: Earlier finalized or paid periods of the same year

        Raises:
            PayrollCalculationException: for this employee only
        """
        if gross < 0:
            raise self._error(profile, f"Gross salary {format_minor(gross)} is negative")

        ytd = ytd or NO_YTD
        age = profile.age_on(as_of)
        wages = {
            category: max(gross - profile.excluded_from(category), 0)
            for category in StatutoryCategory
        }
        categories: Dict[StatutoryCategory, CategoryDeduction] = {}

        for category in (
            StatutoryCategory.PENSION,
            StatutoryCategory.SOCIAL_SECURITY,
            StatutoryCategory.EMPLOYMENT_INSURANCE,
        ):
            categories[category] = self._calculate_category(profile, category, wages[category], rate_table, age)

        tax_inputs = TaxInputs(
            pension=categories[StatutoryCategory.PENSION].employee,
            social_security=(
                categories[StatutoryCategory.SOCIAL_SECURITY].employee
                + categories[StatutoryCategory.EMPLOYMENT_INSURANCE].employee
            ),
            open_months=self.open_months(profile, as_of, ytd),
            ytd=ytd,
        )
        categories[StatutoryCategory.INCOME_TAX] = self._calculate_category(
            profile, StatutoryCategory.INCOME_TAX, wages[StatutoryCategory.INCOME_TAX],
            rate_table, age, tax_inputs,
        )

        return DeductionBreakdown(
            gross_salary=gross,
            rate_table_version=rate_table.version,
            categories=categories,
            wages=wages,
        )

    @staticmethod
    def open_months(profile: EmployeeProfile, as_of: date, ytd: YtdFigures) -> int:
        """
        Periods of the year still to be withheld, the current one included.

        Counted from January, or from the hire month for someone hired this
        year, less the periods already on record.
        """
        first_month = 1
        if profile.hire_date is not None and profile.hire_date.year == as_of.year:
            first_month = profile.hire_date.month
        return max(PERIODS_PER_YEAR - first_month + 1 - ytd.months, 1)

    # ===========================================
    # CATEGORY
    # ===========================================

    def _calculate_category(
        self,
        profile: EmployeeProfile,
        category: StatutoryCategory,
        wage: int,
        rate_table: RateTable,
        age: Optional[int],
        tax_inputs: Optional[TaxInputs] = None,
    ) -> CategoryDeduction:
        try:
            exemption, exempt_sides = self._find_exemption(profile, category, rate_table, age)

            amounts: Dict[ContributionSide, int] = {}
            sources: Dict[ContributionSide, Optional[RateSource]] = {}
            for side in SIDES:
                if side in exempt_sides:
                    amounts[side], sources[side] = 0, None
                    continue
                override = profile.rate_overrides.get((category, side))
                if override is not None:
                    entry = self._select_entry_for_override(profile, category, side, wage, rate_table, age)
                    base = entry.contributory_wage(wage) if entry else wage
                    amounts[side] = percent_of(base, override)
                    sources[side] = EmployeeOverride(override)
                    continue
                entry = self._select_entry(profile, category, side, wage, rate_table, age)
                if entry is None:
                    amounts[side], sources[side] = 0, None
                    continue
                amounts[side] = self._apply_entry(entry, profile, wage, rate_table.tax_reliefs, tax_inputs)
                sources[side] = TableLookup(rate_table.version)
        except AgeRequiredError:
            raise self._error(
                profile,
                f"Date of birth required to evaluate {category.value} rules",
            ) from None

        return CategoryDeduction(
            category=category,
            employee=amounts[ContributionSide.EMPLOYEE],
            employer=amounts[ContributionSide.EMPLOYER],
            employee_source=sources[ContributionSide.EMPLOYEE],
            employer_source=sources[ContributionSide.EMPLOYER],
            exemption=exemption,
            exempt_sides=frozenset(exempt_sides),
        )

    def _find_exemption(
        self,
        profile: EmployeeProfile,
        category: StatutoryCategory,
        rate_table: RateTable,
        age: Optional[int],
    ) -> Tuple[Optional[ExemptionReason], FrozenSet[ContributionSide]]:
        manual_reason = profile.manual_exemptions.get(category)
        if manual_reason:
            return ManualExemption(manual_reason), frozenset(SIDES)

        for rule in rate_table.exemptions_for(category):
            if rule.predicate.matches(age, profile.residency_class):
                sides = frozenset(side for side in SIDES if rule.covers(side))
                return _EXEMPTION_TYPES[rule.kind](rule.description), sides
        return None, frozenset()

    def _select_entry(
        self,
        profile: EmployeeProfile,
        category: StatutoryCategory,
        side: ContributionSide,
        wage: int,
        rate_table: RateTable,
        age: Optional[int],
    ) -> Optional[RateEntry]:
        """
        First matching entry for a category side.

        A side with no entries at all in the table is not levied and yields
        None. A side that has entries but none matching is an error.
        """
        entries = rate_table.entries_for(category, side)
        if not entries:
            return None
        for entry in entries:
            if entry.applies_to.matches(age, profile.residency_class) and entry.in_band(wage):
                return entry
        raise self._error(
            profile,
            f"No applicable {category.value} {side.value} rate for wage "
            f"{format_minor(wage)} in rate table {rate_table.version}",
        )

    def _select_entry_for_override(
        self,
        profile: EmployeeProfile,
        category: StatutoryCategory,
        side: ContributionSide,
        wage: int,
        rate_table: RateTable,
        age: Optional[int],
    ) -> Optional[RateEntry]:
        # Only the wage ceiling is taken from the table here.
        for entry in rate_table.entries_for(category, side):
            try:
                if entry.applies_to.matches(age, profile.residency_class) and entry.in_band(wage):
                    return entry
            except AgeRequiredError:
                continue
        return None

    # ===========================================
    # METHODS
    # ===========================================

    def _apply_entry(
        self,
        entry: RateEntry,
        profile: EmployeeProfile,
        wage: int,
        reliefs: TaxReliefs,
        tax_inputs: Optional[TaxInputs],
    ) -> int:
        if entry.method == RateMethod.PERCENTAGE:
            return percent_of(entry.contributory_wage(wage), entry.rate)
        if entry.method == RateMethod.FIXED:
            return entry.amount
        return self._progressive_tax(entry, profile, wage, reliefs, tax_inputs or TaxInputs())

    def _progressive_tax(
        self,
        entry: RateEntry,
        profile: EmployeeProfile,
        wage: int,
        reliefs: TaxReliefs,
        tax_inputs: TaxInputs,
    ) -> int:
        """
        Monthly withholding from annual brackets.

        Project the year as the year-to-date taxable wage plus this period's
        wage for every open period, subtract reliefs, apply brackets, take
        off the tax already withheld and spread the rest over the open
        periods. Rounded once at the end.
        """
        months = tax_inputs.open_months
        projected_income = tax_inputs.ytd.taxable_wage + wage * months
        total_reliefs = self.total_reliefs(profile, reliefs, tax_inputs)
        taxable = max(projected_income - total_reliefs, 0)

        annual_tax = sum(
            (bracket.tax_in_bracket(taxable) for bracket in entry.brackets),
            Decimal("0"),
        )
        remaining = max(annual_tax - tax_inputs.ytd.income_tax, Decimal("0"))
        return round_half_up(remaining / months)

    @staticmethod
    def total_reliefs(
        profile: EmployeeProfile,
        reliefs: TaxReliefs,
        tax_inputs: TaxInputs,
    ) -> int:
        """Annual reliefs (minor units) for one employee."""
        total = reliefs.personal
        if profile.marital_status == MaritalStatus.MARRIED and not profile.spouse_working:
            total += reliefs.spouse_without_income

        children_under_18 = max(
            0,
            profile.number_of_children - profile.children_in_university - profile.disabled_children,
        )
        total += children_under_18 * reliefs.child_under_18
        total += profile.children_in_university * reliefs.child_in_higher_education
        total += profile.disabled_children * reliefs.disabled_child

        months = tax_inputs.open_months
        ytd = tax_inputs.ytd
        total += min(ytd.pension_employee + tax_inputs.pension * months, reliefs.pension_max)
        total += min(
            ytd.social_security_employee + tax_inputs.social_security * months,
            reliefs.social_security_max,
        )
        return total

    @staticmethod
    def _error(profile: EmployeeProfile, message: str) -> PayrollCalculationException:
        return PayrollCalculationException(
            message=message,
            employee_id=profile.employee_id,
            employee_code=profile.employee_code,
        )
