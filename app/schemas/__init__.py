"""
Open Bookkeeping Payroll - Schemas Package

Pydantic schemas for request/response validation.
"""

from app.schemas.payroll import (
    Money,
    PayrollRunCreate,
    MarkPaidRequest,
    CancelRequest,
    PayrollRunSummary,
    PayrollRunResponse,
    PayrollRunListResponse,
    PaySlipSummary,
    PaySlipResponse,
    CalculationFailure,
    CalculationResponse,
    TransitionResponse,
    VarianceFindingResponse,
    DeadlineStatusResponse,
)
