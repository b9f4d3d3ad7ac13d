"""
Open Bookkeeping Payroll - Payroll Schemas

Pydantic schemas for payroll run requests and responses.
Money is stored in minor units and rendered as decimal strings ("5000.00").
"""

from datetime import date, datetime
from typing import Annotated, Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field, PlainSerializer

from app.models.payroll import PayrollRunStatus
from app.utils.money import format_minor


# Minor units in, decimal string out
Money = Annotated[int, PlainSerializer(format_minor, return_type=str, when_used="json")]


# ===========================================
# REQUESTS
# ===========================================

class PayrollRunCreate(BaseModel):
    """Create payroll run request."""
    period_year: int = Field(..., ge=2000, le=2100)
    period_month: int = Field(..., ge=1, le=12)
    pay_date: date
    name: Optional[str] = Field(None, max_length=200)


class MarkPaidRequest(BaseModel):
    """Mark payroll as paid request."""
    payment_date: date


class CancelRequest(BaseModel):
    """Cancel payroll run request."""
    reason: Optional[str] = Field(None, max_length=1000)


# ===========================================
# PAYROLL RUN SCHEMAS
# ===========================================

class PayrollRunSummary(BaseModel):
    """Payroll run summary for lists."""
    id: UUID
    run_number: str
    name: Optional[str] = None
    status: PayrollRunStatus
    period_year: int
    period_month: int
    period_start: date
    period_end: date
    pay_date: date
    total_employees: Optional[int] = None
    total_gross_salary: Optional[Money] = None
    total_net_salary: Optional[Money] = None
    version: int

    class Config:
        from_attributes = True


class PayrollRunResponse(PayrollRunSummary):
    """Full payroll run response."""
    entity_id: UUID
    total_employee_deductions: Optional[Money] = None
    total_employer_contributions: Optional[Money] = None
    total_pension_employee: Optional[Money] = None
    total_pension_employer: Optional[Money] = None
    total_social_security_employee: Optional[Money] = None
    total_social_security_employer: Optional[Money] = None
    total_employment_insurance_employee: Optional[Money] = None
    total_employment_insurance_employer: Optional[Money] = None
    total_income_tax: Optional[Money] = None
    rate_table_version: Optional[str] = None
    calculated_at: Optional[datetime] = None
    approved_by_id: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    finalized_by_id: Optional[UUID] = None
    finalized_at: Optional[datetime] = None
    paid_by_id: Optional[UUID] = None
    paid_at: Optional[datetime] = None
    payment_date: Optional[date] = None
    cancelled_by_id: Optional[UUID] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class PayrollRunListResponse(BaseModel):
    items: List[PayrollRunSummary]
    skip: int
    limit: int


# ===========================================
# PAY SLIP SCHEMAS
# ===========================================

class PaySlipSummary(BaseModel):
    """Pay slip summary for lists."""
    id: UUID
    slip_number: str
    employee_id: UUID
    employee_code: str
    employee_name: str
    gross_salary: Money
    total_employee_deductions: Money
    net_salary: Money

    class Config:
        from_attributes = True


class PaySlipResponse(PaySlipSummary):
    """Full pay slip response."""
    payroll_run_id: UUID
    department: Optional[str] = None
    position: Optional[str] = None
    base_salary: Money
    taxable_wage: Money
    earnings: List[Dict[str, Any]] = []

    # Employee side
    pension_employee: Money
    social_security_employee: Money
    employment_insurance_employee: Money
    income_tax: Money

    # Employer side
    pension_employer: Money
    social_security_employer: Money
    employment_insurance_employer: Money
    total_employer_contributions: Money

    exemptions: Dict[str, Any] = {}
    rate_sources: Dict[str, Any] = {}
    rate_table_version: str

    # Year to date, this slip included
    ytd_gross_salary: Money
    ytd_pension_employee: Money
    ytd_income_tax: Money

    class Config:
        from_attributes = True


# ===========================================
# CALCULATION / AUDIT / ANALYSIS
# ===========================================

class CalculationFailure(BaseModel):
    """One employee that could not be calculated."""
    employee_id: UUID
    employee_code: str
    message: str

    class Config:
        from_attributes = True


class CalculationResponse(BaseModel):
    run: PayrollRunResponse
    pay_slips: List[PaySlipSummary]
    errors: List[CalculationFailure]


class TransitionResponse(BaseModel):
    """Audit trail entry for a status change."""
    id: UUID
    action: str
    from_status: PayrollRunStatus
    to_status: PayrollRunStatus
    actor_id: Optional[UUID] = None
    occurred_at: datetime
    detail: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class VarianceFindingResponse(BaseModel):
    severity: str
    category: str
    message: str


class DeadlineStatusResponse(BaseModel):
    """Statutory remittance deadline for a payroll period."""
    due_date: date
    days_until_due: int
    classification: str


class StatutoryRemittanceResponse(BaseModel):
    """Amount owed to one statutory agency."""
    agency: str
    category: str
    employee: Money
    employer: Money
    total: Money
    due_date: date


class StatutoryPaymentsResponse(DeadlineStatusResponse):
    """Per-agency statutory payments for a run, sharing one deadline."""
    remittances: List[StatutoryRemittanceResponse] = []
    total_payable: Money = 0
