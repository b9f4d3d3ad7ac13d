"""
Open Bookkeeping Payroll - Payroll Router

API endpoints for the payroll run lifecycle:
create -> calculate -> approve -> finalize -> mark paid, with cancel and
recalculate, plus read-only pay slip, audit trail, variance, deadline and
statutory payment queries.

Errors are raised as AppException subclasses and rendered by the handlers
registered in app.utils.error_handling.
"""

import uuid
from typing import Optional, List

from fastapi import APIRouter, Depends, status, Query, Path

from app.dependencies import (
    get_current_entity_id,
    get_current_actor_id,
    get_payroll_service,
    require_actor_id,
)
from app.models.payroll import PayrollRunStatus
from app.services.payroll_service import PayrollRunService
from app.schemas.payroll import (
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
    StatutoryPaymentsResponse,
    StatutoryRemittanceResponse,
)


router = APIRouter()


# ===========================================
# PAYROLL RUN ENDPOINTS
# ===========================================

@router.post(
    "/payroll-runs",
    response_model=PayrollRunResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create payroll run",
    description="Create a draft payroll run for one monthly pay period.",
)
async def create_payroll_run(
    data: PayrollRunCreate,
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
    actor_id: Optional[uuid.UUID] = Depends(get_current_actor_id),
):
    run = await service.create_run(
        entity_id=entity_id,
        period_year=data.period_year,
        period_month=data.period_month,
        pay_date=data.pay_date,
        name=data.name,
        actor_id=actor_id,
    )
    return PayrollRunResponse.model_validate(run)


@router.get(
    "/payroll-runs",
    response_model=PayrollRunListResponse,
    summary="List payroll runs",
)
async def list_payroll_runs(
    status: Optional[PayrollRunStatus] = Query(None),
    year: Optional[int] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    """List payroll runs with filters."""
    runs = await service.list_runs(entity_id, status=status, period_year=year, skip=skip, limit=limit)
    return PayrollRunListResponse(
        items=[PayrollRunSummary.model_validate(r) for r in runs],
        skip=skip,
        limit=limit,
    )


@router.get(
    "/payroll-runs/{run_id}",
    response_model=PayrollRunResponse,
    summary="Get payroll run",
)
async def get_payroll_run(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    run = await service.get_run(entity_id, run_id)
    return PayrollRunResponse.model_validate(run)


@router.delete(
    "/payroll-runs/{run_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete draft payroll run",
    description="Only draft runs that were never calculated can be deleted; cancel anything else.",
)
async def delete_payroll_run(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    await service.delete_run(entity_id, run_id)


# ===========================================
# LIFECYCLE ACTIONS
# ===========================================

@router.post(
    "/payroll-runs/{run_id}/calculate",
    response_model=CalculationResponse,
    summary="Calculate payroll run",
    description="Compute pay slips for all active employees. Per-employee failures are returned in errors.",
)
async def calculate_payroll_run(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
    actor_id: uuid.UUID = Depends(require_actor_id),
):
    result = await service.calculate(entity_id, run_id, actor_id)
    return _calculation_response(result)


@router.post(
    "/payroll-runs/{run_id}/recalculate",
    response_model=CalculationResponse,
    summary="Recalculate payroll run",
    description="Discard the pending_review results and calculate again.",
)
async def recalculate_payroll_run(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
    actor_id: uuid.UUID = Depends(require_actor_id),
):
    result = await service.recalculate(entity_id, run_id, actor_id)
    return _calculation_response(result)


@router.post(
    "/payroll-runs/{run_id}/approve",
    response_model=PayrollRunResponse,
    summary="Approve payroll run",
)
async def approve_payroll_run(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
    actor_id: uuid.UUID = Depends(require_actor_id),
):
    run = await service.approve(entity_id, run_id, actor_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/payroll-runs/{run_id}/finalize",
    response_model=PayrollRunResponse,
    summary="Finalize payroll run",
    description="Post the accrual journal entry. Repeating the call on a finalized run is a no-op.",
)
async def finalize_payroll_run(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
    actor_id: uuid.UUID = Depends(require_actor_id),
):
    run = await service.finalize(entity_id, run_id, actor_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/payroll-runs/{run_id}/mark-paid",
    response_model=PayrollRunResponse,
    summary="Mark payroll as paid",
    description="Post the salary payment journal entry. The payment date may not be in the future.",
)
async def mark_payroll_paid(
    data: MarkPaidRequest,
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
    actor_id: uuid.UUID = Depends(require_actor_id),
):
    run = await service.mark_paid(entity_id, run_id, data.payment_date, actor_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/payroll-runs/{run_id}/cancel",
    response_model=PayrollRunResponse,
    summary="Cancel payroll run",
    description="Cancel a non-terminal run. A finalized run has its accrual reversed first.",
)
async def cancel_payroll_run(
    data: Optional[CancelRequest] = None,
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
    actor_id: uuid.UUID = Depends(require_actor_id),
):
    reason = data.reason if data else None
    run = await service.cancel(entity_id, run_id, actor_id, reason=reason)
    return PayrollRunResponse.model_validate(run)


# ===========================================
# READ-ONLY QUERIES
# ===========================================

@router.get(
    "/payroll-runs/{run_id}/pay-slips",
    response_model=List[PaySlipSummary],
    summary="List pay slips of a run",
)
async def list_pay_slips(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    pay_slips = await service.list_pay_slips(entity_id, run_id)
    return [PaySlipSummary.model_validate(p) for p in pay_slips]


@router.get(
    "/payroll-runs/{run_id}/transitions",
    response_model=List[TransitionResponse],
    summary="Status change audit trail",
)
async def list_transitions(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    transitions = await service.list_transitions(entity_id, run_id)
    return [TransitionResponse.model_validate(t) for t in transitions]


@router.get(
    "/payroll-runs/{run_id}/deadline",
    response_model=DeadlineStatusResponse,
    summary="Statutory remittance deadline",
)
async def get_deadline_status(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    deadline = await service.get_deadline_status(entity_id, run_id)
    return DeadlineStatusResponse(**deadline.to_dict())


@router.get(
    "/payroll-runs/{run_id}/statutory-payments",
    response_model=StatutoryPaymentsResponse,
    summary="Statutory payments by agency",
    description="EPF, SOCSO, EIS and PCB amounts payable for the run, with the shared remittance deadline.",
)
async def get_statutory_payments(
    run_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    summary = await service.get_statutory_payments(entity_id, run_id)
    return StatutoryPaymentsResponse(
        **summary.deadline.to_dict(),
        remittances=[
            StatutoryRemittanceResponse(
                agency=r.agency,
                category=r.category.value,
                employee=r.employee,
                employer=r.employer,
                total=r.total,
                due_date=r.due_date,
            )
            for r in summary.remittances
        ],
        total_payable=summary.total_payable,
    )


@router.get(
    "/pay-slips/{pay_slip_id}",
    response_model=PaySlipResponse,
    summary="Get pay slip",
)
async def get_pay_slip(
    pay_slip_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    pay_slip = await service.get_pay_slip(entity_id, pay_slip_id)
    return PaySlipResponse.model_validate(pay_slip)


@router.get(
    "/pay-slips/{pay_slip_id}/variances",
    response_model=List[VarianceFindingResponse],
    summary="Variance findings for a pay slip",
    description="Advisory review findings. Never blocks approval.",
)
async def get_variance_findings(
    pay_slip_id: uuid.UUID = Path(...),
    service: PayrollRunService = Depends(get_payroll_service),
    entity_id: uuid.UUID = Depends(get_current_entity_id),
):
    findings = await service.get_variance_findings(entity_id, pay_slip_id)
    return [VarianceFindingResponse(**f.to_dict()) for f in findings]


def _calculation_response(result) -> CalculationResponse:
    return CalculationResponse(
        run=PayrollRunResponse.model_validate(result.run),
        pay_slips=[PaySlipSummary.model_validate(p) for p in result.pay_slips],
        errors=[CalculationFailure.model_validate(e) for e in result.errors],
    )
