"""
Open Bookkeeping Payroll - SQLAlchemy Models Package

This package contains all database models for the payroll engine.
"""

from app.models.base import BaseModel, TimestampMixin, TenantMixin, ActorMixin
from app.models.payroll import (
    PayrollRunStatus,
    ResidencyClass,
    EmployeeStatus,
    PayFrequency,
    MaritalStatus,
    PostingPurpose,
    Employee,
    PayrollRun,
    PaySlip,
    PayrollJournalPosting,
    PayrollRunTransition,
)

__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "TenantMixin",
    "ActorMixin",
    # Payroll
    "PayrollRunStatus",
    "ResidencyClass",
    "EmployeeStatus",
    "PayFrequency",
    "MaritalStatus",
    "PostingPurpose",
    "Employee",
    "PayrollRun",
    "PaySlip",
    "PayrollJournalPosting",
    "PayrollRunTransition",
]
