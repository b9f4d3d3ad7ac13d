"""
Open Bookkeeping Payroll - Malaysian Statutory Defaults

Default rate tables for Malaysian payroll:
- EPF (KWSP): citizens/PR under 60 pay 11%, employer 13% up to RM5,000
  and 12% above; from 60 the employer pays 4% and the employee nothing.
  Foreign workers 2%/2% from October 2025. Wage ceiling RM20,000.
- SOCSO (PERKESO): Category 1 (under 60) 0.5%/1.75%, Category 2 (60+)
  employer 1.25% only. Foreign workers not covered. Wage ceiling RM6,000.
- EIS (SIP): 0.2% each side, citizens/PR under 60. Wage ceiling RM6,000.
- PCB: progressive annual brackets after reliefs, or a flat 28% for
  non-resident foreign workers.

These are configuration data. Replace or extend them by registering
further tables with a RateTableRegistry.
"""

from datetime import date
from decimal import Decimal
from typing import List

from app.models.payroll import ResidencyClass
from app.services.statutory.rate_table import (
    ApplicabilityPredicate,
    ContributionSide,
    ExemptionKind,
    ExemptionRule,
    RateEntry,
    RateMethod,
    RateTable,
    RateTableRegistry,
    StatutoryCategory,
    TaxBracket,
    TaxReliefs,
)


def _rm(amount: int) -> int:
    """Whole ringgit to sen."""
    return amount * 100


LOCAL = frozenset({ResidencyClass.CITIZEN, ResidencyClass.PERMANENT_RESIDENT})
FOREIGN = frozenset({ResidencyClass.FOREIGN})

LOCAL_UNDER_60 = ApplicabilityPredicate(max_age=60, residency_classes=LOCAL)
LOCAL_60_PLUS = ApplicabilityPredicate(min_age=60, residency_classes=LOCAL)
FOREIGN_ANY_AGE = ApplicabilityPredicate(residency_classes=FOREIGN)
LOCAL_ANY_AGE = ApplicabilityPredicate(residency_classes=LOCAL)

EPF_WAGE_CEILING = _rm(20000)
EPF_EMPLOYER_HIGHER_RATE_LIMIT = _rm(5000)
SOCSO_WAGE_CEILING = _rm(6000)
EIS_WAGE_CEILING = _rm(6000)

PCB_BRACKETS = (
    TaxBracket(_rm(0), _rm(5000), Decimal("0")),
    TaxBracket(_rm(5000), _rm(20000), Decimal("1")),
    TaxBracket(_rm(20000), _rm(35000), Decimal("3")),
    TaxBracket(_rm(35000), _rm(50000), Decimal("6")),
    TaxBracket(_rm(50000), _rm(70000), Decimal("11")),
    TaxBracket(_rm(70000), _rm(100000), Decimal("19")),
    TaxBracket(_rm(100000), _rm(400000), Decimal("25")),
    TaxBracket(_rm(400000), _rm(600000), Decimal("26")),
    TaxBracket(_rm(600000), _rm(2000000), Decimal("28")),
    TaxBracket(_rm(2000000), None, Decimal("30")),
)

MALAYSIA_TAX_RELIEFS = TaxReliefs(
    personal=_rm(9000),
    spouse_without_income=_rm(4000),
    child_under_18=_rm(2000),
    child_in_higher_education=_rm(8000),
    disabled_child=_rm(6000),
    pension_max=_rm(4000),
    social_security_max=_rm(350),
)

EMPLOYEE = ContributionSide.EMPLOYEE
EMPLOYER = ContributionSide.EMPLOYER


def _epf_entries(foreign_covered: bool) -> List[RateEntry]:
    epf = StatutoryCategory.PENSION
    entries = [
        RateEntry(epf, EMPLOYEE, RateMethod.PERCENTAGE, rate=Decimal("11"),
                  wage_ceiling=EPF_WAGE_CEILING, applies_to=LOCAL_UNDER_60),
        RateEntry(epf, EMPLOYER, RateMethod.PERCENTAGE, rate=Decimal("13"),
                  wage_to=EPF_EMPLOYER_HIGHER_RATE_LIMIT,
                  wage_ceiling=EPF_WAGE_CEILING, applies_to=LOCAL_UNDER_60),
        RateEntry(epf, EMPLOYER, RateMethod.PERCENTAGE, rate=Decimal("12"),
                  wage_from=EPF_EMPLOYER_HIGHER_RATE_LIMIT + 1,
                  wage_ceiling=EPF_WAGE_CEILING, applies_to=LOCAL_UNDER_60),
        RateEntry(epf, EMPLOYER, RateMethod.PERCENTAGE, rate=Decimal("4"),
                  wage_ceiling=EPF_WAGE_CEILING, applies_to=LOCAL_60_PLUS),
    ]
    if foreign_covered:
        entries += [
            RateEntry(epf, EMPLOYEE, RateMethod.PERCENTAGE, rate=Decimal("2"),
                      wage_ceiling=EPF_WAGE_CEILING, applies_to=FOREIGN_ANY_AGE),
            RateEntry(epf, EMPLOYER, RateMethod.PERCENTAGE, rate=Decimal("2"),
                      wage_ceiling=EPF_WAGE_CEILING, applies_to=FOREIGN_ANY_AGE),
        ]
    return entries


def _socso_eis_entries() -> List[RateEntry]:
    socso = StatutoryCategory.SOCIAL_SECURITY
    eis = StatutoryCategory.EMPLOYMENT_INSURANCE
    return [
        # Category 1: employment injury + invalidity
        RateEntry(socso, EMPLOYEE, RateMethod.PERCENTAGE, rate=Decimal("0.5"),
                  wage_ceiling=SOCSO_WAGE_CEILING, applies_to=LOCAL_UNDER_60),
        RateEntry(socso, EMPLOYER, RateMethod.PERCENTAGE, rate=Decimal("1.75"),
                  wage_ceiling=SOCSO_WAGE_CEILING, applies_to=LOCAL_UNDER_60),
        # Category 2: employment injury only
        RateEntry(socso, EMPLOYER, RateMethod.PERCENTAGE, rate=Decimal("1.25"),
                  wage_ceiling=SOCSO_WAGE_CEILING, applies_to=LOCAL_60_PLUS),
        RateEntry(eis, EMPLOYEE, RateMethod.PERCENTAGE, rate=Decimal("0.2"),
                  wage_ceiling=EIS_WAGE_CEILING, applies_to=LOCAL_UNDER_60),
        RateEntry(eis, EMPLOYER, RateMethod.PERCENTAGE, rate=Decimal("0.2"),
                  wage_ceiling=EIS_WAGE_CEILING, applies_to=LOCAL_UNDER_60),
    ]


def _pcb_entries() -> List[RateEntry]:
    pcb = StatutoryCategory.INCOME_TAX
    return [
        RateEntry(pcb, EMPLOYEE, RateMethod.PROGRESSIVE, brackets=PCB_BRACKETS,
                  applies_to=LOCAL_ANY_AGE),
        RateEntry(pcb, EMPLOYEE, RateMethod.PERCENTAGE, rate=Decimal("28"),
                  applies_to=FOREIGN_ANY_AGE),
    ]


def _exemptions(foreign_covered_by_epf: bool) -> List[ExemptionRule]:
    rules = []
    if not foreign_covered_by_epf:
        rules.append(ExemptionRule(
            StatutoryCategory.PENSION, ExemptionKind.RESIDENCY, FOREIGN_ANY_AGE,
            "Foreign workers are not covered by EPF before October 2025",
        ))
    rules += [
        ExemptionRule(
            StatutoryCategory.SOCIAL_SECURITY, ExemptionKind.RESIDENCY, FOREIGN_ANY_AGE,
            "Foreign workers are not covered by SOCSO",
        ),
        ExemptionRule(
            StatutoryCategory.EMPLOYMENT_INSURANCE, ExemptionKind.RESIDENCY, FOREIGN_ANY_AGE,
            "Foreign workers are not covered by EIS",
        ),
        ExemptionRule(
            StatutoryCategory.PENSION, ExemptionKind.AGE, LOCAL_60_PLUS,
            "No EPF employee contribution from age 60",
            employee_side=True, employer_side=False,
        ),
        ExemptionRule(
            StatutoryCategory.SOCIAL_SECURITY, ExemptionKind.AGE, LOCAL_60_PLUS,
            "SOCSO Category 2 (age 60 and above) has no employee contribution",
            employee_side=True, employer_side=False,
        ),
        ExemptionRule(
            StatutoryCategory.EMPLOYMENT_INSURANCE, ExemptionKind.AGE, LOCAL_60_PLUS,
            "EIS does not apply from age 60",
        ),
    ]
    return rules


def _malaysia_table(version: str, effective_from: date, foreign_epf: bool) -> RateTable:
    return RateTable(
        version=version,
        effective_from=effective_from,
        currency="MYR",
        entries=tuple(_epf_entries(foreign_epf) + _socso_eis_entries() + _pcb_entries()),
        exemption_rules=tuple(_exemptions(foreign_epf)),
        tax_reliefs=MALAYSIA_TAX_RELIEFS,
    )


MALAYSIA_2025 = _malaysia_table("MY-2025.01", date(2025, 1, 1), foreign_epf=False)
MALAYSIA_2025_FOREIGN_EPF = _malaysia_table("MY-2025.10", date(2025, 10, 1), foreign_epf=True)

DEFAULT_RATE_TABLES = [MALAYSIA_2025, MALAYSIA_2025_FOREIGN_EPF]

# Agency each category is remitted to
REMITTANCE_AGENCIES = {
    StatutoryCategory.PENSION: "EPF",
    StatutoryCategory.SOCIAL_SECURITY: "SOCSO",
    StatutoryCategory.EMPLOYMENT_INSURANCE: "EIS",
    StatutoryCategory.INCOME_TAX: "PCB",
}


def default_registry() -> RateTableRegistry:
    """Registry seeded with the shipped Malaysian tables."""
    return RateTableRegistry(DEFAULT_RATE_TABLES)
