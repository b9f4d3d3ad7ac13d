"""
Open Bookkeeping Payroll - Variance Detector

Advisory review findings for a stored pay slip. Findings are computed on
every read and never persisted, so rule changes apply to historical slips
without a migration. They never block a transition.

Rules:
- zero EPF (employee side), gross > 0, not exempt      -> warning
- zero SOCSO / EIS (employee side), gross > 0, not exempt -> info
- zero PCB on gross above the threshold, no exemption   -> info
- net / gross below the floor                           -> warning
- slip arithmetic inconsistent                          -> error
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from app.config import settings
from app.models.payroll import PaySlip
from app.services.statutory.rate_table import StatutoryCategory
from app.utils.money import to_minor


class VarianceSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class VarianceFinding:
    severity: VarianceSeverity
    category: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"severity": self.severity.value, "category": self.category, "message": self.message}


@dataclass(frozen=True)
class VarianceRules:
    """Configurable thresholds. income_tax_threshold is in minor units."""
    income_tax_threshold: int
    net_to_gross_floor: Decimal

    @classmethod
    def from_settings(cls) -> "VarianceRules":
        return cls(
            income_tax_threshold=to_minor(settings.variance_income_tax_threshold),
            net_to_gross_floor=settings.variance_net_to_gross_floor,
        )


def _employee_side_exempt(exemptions: Optional[Mapping[str, Any]], category: StatutoryCategory) -> bool:
    entry = (exemptions or {}).get(category.value)
    return bool(entry and entry.get("employee"))


def detect_variances(slip: PaySlip, rules: Optional[VarianceRules] = None) -> List[VarianceFinding]:
    """
    Inspect one pay slip and return advisory findings.

    Pure function of the slip and the rules; categories are checked
    independently so the result does not depend on evaluation order.
    """
    rules = rules or VarianceRules.from_settings()
    findings: List[VarianceFinding] = []
    gross = slip.gross_salary
    exemptions = slip.exemptions

    if gross > 0 and slip.pension_employee == 0 and not _employee_side_exempt(exemptions, StatutoryCategory.PENSION):
        findings.append(VarianceFinding(
            VarianceSeverity.WARNING,
            StatutoryCategory.PENSION.value,
            "No EPF deduction and no recorded exemption - verify the employee's EPF status",
        ))

    if (
        gross > 0
        and slip.social_security_employee == 0
        and not _employee_side_exempt(exemptions, StatutoryCategory.SOCIAL_SECURITY)
    ):
        findings.append(VarianceFinding(
            VarianceSeverity.INFO,
            StatutoryCategory.SOCIAL_SECURITY.value,
            "No SOCSO deduction and no recorded exemption",
        ))

    if (
        gross > 0
        and slip.employment_insurance_employee == 0
        and not _employee_side_exempt(exemptions, StatutoryCategory.EMPLOYMENT_INSURANCE)
    ):
        findings.append(VarianceFinding(
            VarianceSeverity.INFO,
            StatutoryCategory.EMPLOYMENT_INSURANCE.value,
            "No EIS deduction and no recorded exemption",
        ))

    if (
        gross > rules.income_tax_threshold
        and slip.income_tax == 0
        and not _employee_side_exempt(exemptions, StatutoryCategory.INCOME_TAX)
    ):
        findings.append(VarianceFinding(
            VarianceSeverity.INFO,
            StatutoryCategory.INCOME_TAX.value,
            "No PCB withheld above the review threshold - verify tax reliefs are correctly applied",
        ))

    if gross > 0:
        ratio = Decimal(slip.net_salary) / Decimal(gross)
        if ratio < rules.net_to_gross_floor:
            percent = (ratio * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            findings.append(VarianceFinding(
                VarianceSeverity.WARNING,
                "net",
                f"Net pay is {percent}% of gross - unusually high deductions",
            ))

    if slip.net_salary != gross - slip.total_employee_deductions or gross < slip.base_salary:
        findings.append(VarianceFinding(
            VarianceSeverity.ERROR,
            "consistency",
            "Pay slip totals do not reconcile (net must equal gross less employee deductions)",
        ))

    return findings
