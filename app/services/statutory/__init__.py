"""
Open Bookkeeping Payroll - Statutory Calculation Package

Modules:
- rate_table: versioned, immutable statutory rate tables and their registry
- malaysia: default Malaysian EPF/SOCSO/EIS/PCB tables
- engine: per-employee deduction calculation
"""

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
from app.services.statutory.engine import (
    AgeExemption,
    CategoryDeduction,
    DeductionBreakdown,
    EarningsComponent,
    EmployeeOverride,
    EmployeeProfile,
    ManualExemption,
    NO_YTD,
    ResidencyExemption,
    StatutoryCalculationEngine,
    TableLookup,
    TaxInputs,
    YtdFigures,
)
from app.services.statutory.malaysia import DEFAULT_RATE_TABLES, REMITTANCE_AGENCIES, default_registry

__all__ = [
    "ApplicabilityPredicate",
    "ContributionSide",
    "ExemptionKind",
    "ExemptionRule",
    "RateEntry",
    "RateMethod",
    "RateTable",
    "RateTableRegistry",
    "StatutoryCategory",
    "TaxBracket",
    "TaxReliefs",
    "AgeExemption",
    "CategoryDeduction",
    "DeductionBreakdown",
    "EarningsComponent",
    "EmployeeOverride",
    "EmployeeProfile",
    "ManualExemption",
    "NO_YTD",
    "ResidencyExemption",
    "StatutoryCalculationEngine",
    "TableLookup",
    "TaxInputs",
    "YtdFigures",
    "DEFAULT_RATE_TABLES",
    "REMITTANCE_AGENCIES",
    "default_registry",
]
