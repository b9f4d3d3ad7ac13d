"""
Open Bookkeeping Payroll - Payroll Models

Payroll run lifecycle with Malaysian statutory deductions:
- EPF (Employees Provident Fund) - pension
- SOCSO (Social Security Organisation) - social security
- EIS (Employment Insurance System) - employment insurance
- PCB (Potongan Cukai Bulanan) - monthly income tax withholding

All monetary columns hold integer minor units (sen). Conversion to
decimal strings happens at the API boundary only.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text,
    Enum as SQLEnum, JSON, UniqueConstraint, CheckConstraint, Index, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel, TenantMixin, ActorMixin


# ===========================================
# ENUMS
# ===========================================

class PayrollRunStatus(str, Enum):
    """Payroll run lifecycle status. Paid and cancelled are terminal."""
    DRAFT = "draft"
    CALCULATING = "calculating"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    FINALIZED = "finalized"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PayrollRunStatus.PAID, PayrollRunStatus.CANCELLED)


class ResidencyClass(str, Enum):
    """Residency/nationality class used by statutory applicability rules."""
    CITIZEN = "citizen"
    PERMANENT_RESIDENT = "permanent_resident"
    FOREIGN = "foreign"


class EmployeeStatus(str, Enum):
    """Employment status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    TERMINATED = "terminated"


class PayFrequency(str, Enum):
    """Pay frequency."""
    MONTHLY = "monthly"
    BI_WEEKLY = "bi_weekly"
    WEEKLY = "weekly"


class MaritalStatus(str, Enum):
    """Marital status, used for income tax reliefs."""
    SINGLE = "single"
    MARRIED = "married"
    DIVORCED = "divorced"
    WIDOWED = "widowed"


class PostingPurpose(str, Enum):
    """Purpose of a payroll journal posting."""
    ACCRUAL = "accrual"
    PAYMENT = "payment"
    REVERSAL = "reversal"


# ===========================================
# EMPLOYEE (roster backing store)
# ===========================================

class Employee(BaseModel, TenantMixin):
    """
    Employee record read by the default roster.

    Only the fields the statutory calculation needs are kept here;
    employee CRUD lives outside the payroll engine.
    """

    __tablename__ = "payroll_employees"

    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    position: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Compensation
    base_salary: Mapped[int] = mapped_column(
        BigInteger, nullable=False,
        comment="Monthly base salary in minor units",
    )
    earnings_components: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(
        JSON, nullable=True,
        comment="Recurring earnings: [{code, name, amount | percentage, subject_to: [category]}]",
    )
    pay_frequency: Mapped[PayFrequency] = mapped_column(
        SQLEnum(PayFrequency),
        default=PayFrequency.MONTHLY,
        nullable=False,
    )

    # Statutory profile
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    residency_class: Mapped[ResidencyClass] = mapped_column(
        SQLEnum(ResidencyClass),
        default=ResidencyClass.CITIZEN,
        nullable=False,
    )
    pension_employee_rate_override: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=5, scale=2), nullable=True,
        comment="EPF employee rate override in percent, e.g. '9'",
    )
    pension_employer_rate_override: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=5, scale=2), nullable=True,
        comment="EPF employer rate override in percent, e.g. '13'",
    )
    manual_exemptions: Mapped[Optional[Dict[str, str]]] = mapped_column(
        JSON, nullable=True,
        comment="Documented exemptions keyed by statutory category: {category: reason}",
    )

    # Tax relief inputs (PCB)
    marital_status: Mapped[MaritalStatus] = mapped_column(
        SQLEnum(MaritalStatus),
        default=MaritalStatus.SINGLE,
        nullable=False,
    )
    spouse_working: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    number_of_children: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    children_in_university: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    disabled_children: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Employment
    status: Mapped[EmployeeStatus] = mapped_column(
        SQLEnum(EmployeeStatus),
        default=EmployeeStatus.ACTIVE,
        nullable=False,
    )
    hire_date: Mapped[date] = mapped_column(Date, nullable=False)
    termination_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint("entity_id", "employee_code", name="uq_payroll_employee_entity_code"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"<Employee(id={self.id}, code={self.employee_code})>"


# ===========================================
# PAYROLL RUN
# ===========================================

class PayrollRun(BaseModel, TenantMixin, ActorMixin):
    """
    Payroll run for one tenant and one monthly pay period.

    Status only changes through PayrollRunService, which checks every move
    against the transition table in payroll_state_machine. The version column
    is the optimistic concurrency counter; SQLAlchemy bumps it on every
    UPDATE and raises StaleDataError when a competing writer got there first.
    """

    __tablename__ = "payroll_runs"

    # Identification
    run_number: Mapped[str] = mapped_column(
        String(50), nullable=False,
        comment="Sequential per tenant and year, e.g. PR-2025-03",
    )
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Pay period
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    pay_date: Mapped[date] = mapped_column(
        Date, nullable=False,
        comment="Scheduled date employees will be paid",
    )

    # Status
    status: Mapped[PayrollRunStatus] = mapped_column(
        SQLEnum(PayrollRunStatus),
        default=PayrollRunStatus.DRAFT,
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Aggregates (NULL until calculated)
    total_employees: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_gross_salary: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_net_salary: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_employee_deductions: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_employer_contributions: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    total_pension_employee: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_pension_employer: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_social_security_employee: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_social_security_employer: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_employment_insurance_employee: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_employment_insurance_employer: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_income_tax: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    rate_table_version: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True,
        comment="Statutory rate table version used by the last calculation",
    )

    # Workflow audit
    calculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_date: Mapped[Optional[date]] = mapped_column(
        Date, nullable=True,
        comment="Actual date salaries were paid",
    )
    cancelled_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    pay_slips: Mapped[List["PaySlip"]] = relationship(
        "PaySlip",
        back_populates="payroll_run",
        cascade="all, delete-orphan",
        order_by="PaySlip.slip_number",
    )

    __table_args__ = (
        UniqueConstraint("entity_id", "run_number", name="uq_payroll_run_entity_number"),
        CheckConstraint("period_month BETWEEN 1 AND 12", name="period_month_range"),
        # One live run per tenant and period; cancelled runs may be repeated
        Index(
            "ix_payroll_runs_live_period",
            "entity_id", "period_year", "period_month",
            unique=True,
            postgresql_where=text("status <> 'CANCELLED'"),
            sqlite_where=text("status <> 'CANCELLED'"),
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<PayrollRun(id={self.id}, number={self.run_number}, status={self.status})>"


# ===========================================
# PAY SLIP
# ===========================================

class PaySlip(BaseModel):
    """
    One employee's calculated pay for a payroll run.

    Employee details are snapshotted at calculation time so later profile
    edits never change a historical slip.
    """

    __tablename__ = "pay_slips"

    payroll_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payroll_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    slip_number: Mapped[str] = mapped_column(String(60), nullable=False)

    # Snapshot
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    employee_name: Mapped[str] = mapped_column(String(200), nullable=False)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    position: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Compensation
    base_salary: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gross_salary: Mapped[int] = mapped_column(BigInteger, nullable=False)
    taxable_wage: Mapped[int] = mapped_column(
        BigInteger, nullable=False,
        comment="Gross less earnings not subject to income tax",
    )
    earnings: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False,
        comment="[{code, name, amount, percentage, subject_to}] as paid",
    )

    # Statutory
    pension_employee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    pension_employer: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    social_security_employee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    social_security_employer: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employment_insurance_employee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employment_insurance_employer: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    income_tax: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    total_employee_deductions: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_employer_contributions: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_salary: Mapped[int] = mapped_column(BigInteger, nullable=False)

    exemptions: Mapped[Dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False,
        comment="{category: {kind, reason, employee, employer}}",
    )
    rate_sources: Mapped[Dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False,
        comment="{category: {employee: table|override, employer: table|override}}",
    )
    rate_table_version: Mapped[str] = mapped_column(String(50), nullable=False)

    # Year to date, this slip included
    ytd_gross_salary: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    ytd_pension_employee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    ytd_income_tax: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    payroll_run: Mapped["PayrollRun"] = relationship("PayrollRun", back_populates="pay_slips")

    __table_args__ = (
        UniqueConstraint("payroll_run_id", "employee_id", name="uq_pay_slip_run_employee"),
        CheckConstraint("gross_salary >= base_salary", name="gross_not_below_base"),
        CheckConstraint(
            "net_salary = gross_salary - total_employee_deductions",
            name="net_equals_gross_less_deductions",
        ),
    )

    def __repr__(self) -> str:
        return f"<PaySlip(id={self.id}, number={self.slip_number})>"


# ===========================================
# JOURNAL POSTING (dedup record of ledger submissions)
# ===========================================

class PayrollJournalPosting(BaseModel, TenantMixin):
    """
    Local record of a journal entry handed to the external ledger.

    At most one row per (run, purpose); its presence means the ledger has
    accepted the entry and it must not be submitted again.
    """

    __tablename__ = "payroll_journal_postings"

    payroll_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payroll_runs.id"),
        nullable=False,
        index=True,
    )
    purpose: Mapped[PostingPurpose] = mapped_column(SQLEnum(PostingPurpose), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    lines: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    total_debit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_credit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ledger_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("payroll_run_id", "purpose", name="uq_payroll_posting_run_purpose"),
        CheckConstraint("total_debit = total_credit", name="balanced"),
    )

    def __repr__(self) -> str:
        return f"<PayrollJournalPosting(run={self.payroll_run_id}, purpose={self.purpose})>"


# ===========================================
# TRANSITION AUDIT TRAIL
# ===========================================

class PayrollRunTransition(BaseModel, TenantMixin):
    """Append-only record of every payroll run status change."""

    __tablename__ = "payroll_run_transitions"

    payroll_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payroll_runs.id"),
        nullable=False,
        index=True,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    from_status: Mapped[PayrollRunStatus] = mapped_column(
        SQLEnum(PayrollRunStatus), nullable=False,
    )
    to_status: Mapped[PayrollRunStatus] = mapped_column(
        SQLEnum(PayrollRunStatus), nullable=False,
    )
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    detail: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PayrollRunTransition(run={self.payroll_run_id}, "
            f"{self.from_status.value}->{self.to_status.value})>"
        )
