"""
Open Bookkeeping Payroll - Statutory Rate Tables

Versioned, immutable snapshots of statutory contribution rules.

A RateTable holds:
- RateEntry rows keyed by category x side x band x applicability predicate
- ExemptionRule rows that force a category side to zero
- TaxReliefs used by the progressive income tax method

All money values (bands, ceilings, fixed amounts, brackets, reliefs) are
integer minor units. Rates are Decimal percentages (Decimal("11") is 11%).
Tables are frozen dataclasses; a table registered with the registry is
never changed afterwards, so recalculating a historical run stays
reproducible.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from app.models.payroll import ResidencyClass

logger = logging.getLogger(__name__)


class StatutoryCategory(str, Enum):
    """Statutory deduction categories."""
    PENSION = "pension"
    SOCIAL_SECURITY = "social_security"
    EMPLOYMENT_INSURANCE = "employment_insurance"
    INCOME_TAX = "income_tax"


class ContributionSide(str, Enum):
    """Who bears a contribution."""
    EMPLOYEE = "employee"
    EMPLOYER = "employer"


class RateMethod(str, Enum):
    """How an entry turns gross salary into an amount."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    PROGRESSIVE = "progressive"


class ExemptionKind(str, Enum):
    """Why a category side was forced to zero."""
    AGE = "age"
    RESIDENCY = "residency"
    MANUAL = "manual"


class AgeRequiredError(Exception):
    """Raised when a predicate needs an age but the employee has no date of birth."""


@dataclass(frozen=True)
class ApplicabilityPredicate:
    """
    Who an entry or exemption applies to.

    min_age is inclusive, max_age is exclusive. None means unbounded.
    residency_classes None means every class.
    """
    min_age: Optional[int] = None
    max_age: Optional[int] = None
    residency_classes: Optional[FrozenSet[ResidencyClass]] = None

    @property
    def is_age_banded(self) -> bool:
        return self.min_age is not None or self.max_age is not None

    def matches(self, age: Optional[int], residency_class: ResidencyClass) -> bool:
        """
        Check the predicate against an employee.

        Residency is checked first, so a predicate that cannot apply to the
        employee's residency class never asks for an age.

        Raises:
            AgeRequiredError: the predicate is age-banded and age is None.
        """
        if self.residency_classes is not None and residency_class not in self.residency_classes:
            return False
        if not self.is_age_banded:
            return True
        if age is None:
            raise AgeRequiredError()
        if self.min_age is not None and age < self.min_age:
            return False
        if self.max_age is not None and age >= self.max_age:
            return False
        return True


ANYONE = ApplicabilityPredicate()


@dataclass(frozen=True)
class TaxBracket:
    """Progressive tax bracket over annual taxable income (minor units)."""
    lower: int
    upper: Optional[int]
    rate: Decimal

    def tax_in_bracket(self, taxable_income: int) -> Decimal:
        """Tax (fractional minor units) owed on the slice of income inside this bracket."""
        if taxable_income <= self.lower:
            return Decimal("0")
        top = taxable_income if self.upper is None else min(taxable_income, self.upper)
        return Decimal(top - self.lower) * self.rate / 100


@dataclass(frozen=True)
class RateEntry:
    """
    One statutory rule for a category side.

    A salary band is [wage_from, wage_to] inclusive; wage_to None means
    unbounded. For percentage entries the rate applies to
    min(gross, wage_ceiling).
    """
    category: StatutoryCategory
    side: ContributionSide
    method: RateMethod
    rate: Decimal = Decimal("0")
    amount: int = 0
    brackets: Tuple[TaxBracket, ...] = ()
    wage_from: int = 0
    wage_to: Optional[int] = None
    wage_ceiling: Optional[int] = None
    applies_to: ApplicabilityPredicate = ANYONE

    def in_band(self, gross: int) -> bool:
        if gross < self.wage_from:
            return False
        return self.wage_to is None or gross <= self.wage_to

    def contributory_wage(self, gross: int) -> int:
        if self.wage_ceiling is None:
            return gross
        return min(gross, self.wage_ceiling)


@dataclass(frozen=True)
class ExemptionRule:
    """Documented exemption: forces the named sides of a category to zero."""
    category: StatutoryCategory
    kind: ExemptionKind
    predicate: ApplicabilityPredicate
    description: str
    employee_side: bool = True
    employer_side: bool = True

    def covers(self, side: ContributionSide) -> bool:
        return self.employee_side if side == ContributionSide.EMPLOYEE else self.employer_side


@dataclass(frozen=True)
class TaxReliefs:
    """Annual income tax reliefs (minor units)."""
    personal: int = 0
    spouse_without_income: int = 0
    child_under_18: int = 0
    child_in_higher_education: int = 0
    disabled_child: int = 0
    pension_max: int = 0
    social_security_max: int = 0


@dataclass(frozen=True)
class RateTable:
    """Immutable, versioned statutory configuration snapshot."""
    version: str
    effective_from: date
    currency: str
    entries: Tuple[RateEntry, ...]
    exemption_rules: Tuple[ExemptionRule, ...] = ()
    tax_reliefs: TaxReliefs = field(default_factory=TaxReliefs)

    def entries_for(self, category: StatutoryCategory, side: ContributionSide) -> List[RateEntry]:
        return [e for e in self.entries if e.category == category and e.side == side]

    def exemptions_for(self, category: StatutoryCategory) -> List[ExemptionRule]:
        return [r for r in self.exemption_rules if r.category == category]


class RateTableRegistry:
    """
    In-process store of rate tables, looked up by effective date.

    Implements the RateTableProvider contract. Registering a second table
    with an existing version is rejected; tables are never replaced.
    """

    def __init__(self, tables: Optional[List[RateTable]] = None):
        self._tables: Dict[str, RateTable] = {}
        for table in tables or []:
            self.register(table)

    def register(self, table: RateTable) -> None:
        if table.version in self._tables:
            raise ValueError(f"Rate table version {table.version} is already registered")
        self._tables[table.version] = table
        logger.info(
            f"Registered statutory rate table {table.version} "
            f"effective {table.effective_from.isoformat()}"
        )

    def get_version(self, version: str) -> RateTable:
        try:
            return self._tables[version]
        except KeyError:
            raise LookupError(f"Unknown rate table version {version}") from None

    def get_rate_table(self, effective_date: date) -> RateTable:
        """Latest table whose effective_from is on or before the given date."""
        candidates = [t for t in self._tables.values() if t.effective_from <= effective_date]
        if not candidates:
            raise LookupError(f"No statutory rate table in effect on {effective_date.isoformat()}")
        return max(candidates, key=lambda t: t.effective_from)

    @property
    def versions(self) -> List[str]:
        return sorted(self._tables, key=lambda v: self._tables[v].effective_from)
