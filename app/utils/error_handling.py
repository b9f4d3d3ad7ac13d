"""
Error Handling for Open Bookkeeping Payroll

Exception taxonomy for the payroll run workflow and the FastAPI handlers
that render it as {"detail": {code, message, timestamp, retryable, ...}}.

- PayrollValidationException   malformed input, no state change (422)
- InvalidTransitionException   operation not allowed from the run's status (409)
- PreconditionFailedException  transition legal but its guard does not hold (409)
- PayrollCalculationException  statutory calculation failed (422)
- JournalPostingException      ledger rejected (502) or timed out (504); retryable
- ConcurrencyConflictException a competing transition won the lock/version check (409)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("payroll.errors")


class ErrorCode(str, Enum):
    """Error codes returned in the response envelope."""

    # Input
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_PAY_PERIOD = "INVALID_PAY_PERIOD"
    DUPLICATE_PAY_PERIOD = "DUPLICATE_PAY_PERIOD"
    PAYMENT_DATE_IN_FUTURE = "PAYMENT_DATE_IN_FUTURE"

    # Lookup
    NOT_FOUND = "NOT_FOUND"
    PAYROLL_RUN_NOT_FOUND = "PAYROLL_RUN_NOT_FOUND"
    PAY_SLIP_NOT_FOUND = "PAY_SLIP_NOT_FOUND"

    # Workflow
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    VERSION_CONFLICT = "VERSION_CONFLICT"

    # Calculation
    CALCULATION_FAILED = "CALCULATION_FAILED"
    NO_ACTIVE_EMPLOYEES = "NO_ACTIVE_EMPLOYEES"
    RATE_TABLE_UNAVAILABLE = "RATE_TABLE_UNAVAILABLE"

    # Ledger
    LEDGER_POSTING_FAILED = "LEDGER_POSTING_FAILED"
    LEDGER_TIMEOUT = "LEDGER_TIMEOUT"

    # Infrastructure
    HTTP_ERROR = "HTTP_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for payroll errors that reach the API."""

    retryable: bool = False

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Body of the "detail" envelope."""
        body = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "retryable": self.retryable,
        }
        if self.field:
            body["field"] = self.field
        if self.details:
            body["details"] = self.details
        return body


# ============================================================================
# Input
# ============================================================================

class PayrollValidationException(AppException):
    """Malformed input to a payroll operation. Nothing was changed."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class PaymentDateInFutureException(PayrollValidationException):
    def __init__(self, payment_date: Any, today: Any):
        super().__init__(
            message=f"Payment date {payment_date} is in the future (today is {today})",
            field="payment_date",
            code=ErrorCode.PAYMENT_DATE_IN_FUTURE,
            details={"payment_date": str(payment_date), "today": str(today)},
        )


# ============================================================================
# Lookup
# ============================================================================

class NotFoundException(AppException):
    """Row missing, or owned by another tenant (indistinguishable on purpose)."""

    def __init__(self, resource_type: str, resource_id: Union[str, UUID], code: ErrorCode = ErrorCode.NOT_FOUND):
        super().__init__(
            code=code,
            message=f"{resource_type} with ID '{resource_id}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id)},
        )


class PayrollRunNotFoundException(NotFoundException):
    def __init__(self, run_id: Union[str, UUID]):
        super().__init__("PayrollRun", run_id, code=ErrorCode.PAYROLL_RUN_NOT_FOUND)


class PaySlipNotFoundException(NotFoundException):
    def __init__(self, pay_slip_id: Union[str, UUID]):
        super().__init__("PaySlip", pay_slip_id, code=ErrorCode.PAY_SLIP_NOT_FOUND)


# ============================================================================
# Workflow
# ============================================================================

class ConcurrencyConflictException(AppException):
    """
    A competing transition on the same payroll run committed first.

    The caller should refetch the run and decide whether to retry.
    """

    def __init__(self, run_id: Union[str, UUID], message: Optional[str] = None, **details: Any):
        super().__init__(
            code=ErrorCode.VERSION_CONFLICT,
            message=message or f"Payroll run {run_id} was modified by a concurrent request",
            status_code=status.HTTP_409_CONFLICT,
            details={"run_id": str(run_id), **details},
        )


class WorkflowException(AppException):
    """Operation refused by the payroll run workflow."""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_409_CONFLICT,
    ):
        super().__init__(code=code, message=message, status_code=status_code, details=details)


class InvalidTransitionException(WorkflowException):
    """Operation attempted from a status that does not permit it."""

    def __init__(self, action: str, current_status: str, message: Optional[str] = None):
        self.action = action
        self.current_status = current_status
        super().__init__(
            message=message or f"Cannot {action.replace('_', ' ')} a payroll run in {current_status} status",
            code=ErrorCode.INVALID_STATUS_TRANSITION,
            details={"action": action, "current_status": current_status},
        )


class PreconditionFailedException(WorkflowException):
    """Transition is legal from the current status but its guard does not hold."""

    def __init__(self, action: str, current_status: str, message: str, **details: Any):
        self.action = action
        self.current_status = current_status
        super().__init__(
            message=message,
            code=ErrorCode.PRECONDITION_FAILED,
            details={"action": action, "current_status": current_status, **details},
        )


class PayrollCalculationException(WorkflowException):
    """
    Statutory calculation failed.

    Raised per employee by the calculation engine (collected by the builder),
    and at run level when no employee could be calculated.
    """

    def __init__(
        self,
        message: str,
        employee_id: Optional[Union[str, UUID]] = None,
        employee_code: Optional[str] = None,
        failures: Optional[List[Dict[str, Any]]] = None,
        code: ErrorCode = ErrorCode.CALCULATION_FAILED,
    ):
        self.employee_id = employee_id
        self.employee_code = employee_code
        self.failures = failures or []
        details: Dict[str, Any] = {}
        if employee_id:
            details["employee_id"] = str(employee_id)
        if employee_code:
            details["employee_code"] = employee_code
        if self.failures:
            details["failures"] = self.failures
        super().__init__(
            message=message,
            code=code,
            details=details,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )


# ============================================================================
# Ledger
# ============================================================================

class JournalPostingException(AppException):
    """
    Ledger rejected or timed out on a journal submission.

    The run stays in its prior status; re-invoking the same operation is safe
    because postings are deduplicated per (run, purpose).
    """

    retryable = True

    def __init__(
        self,
        message: str,
        run_id: Optional[Union[str, UUID]] = None,
        purpose: Optional[str] = None,
        timed_out: bool = False,
        original_error: Optional[Exception] = None,
    ):
        self.timed_out = timed_out
        details: Dict[str, Any] = {"service": "Ledger API"}
        if run_id:
            details["run_id"] = str(run_id)
        if purpose:
            details["purpose"] = purpose
        super().__init__(
            code=ErrorCode.LEDGER_TIMEOUT if timed_out else ErrorCode.LEDGER_POSTING_FAILED,
            message=f"Journal posting failed: {message}",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT if timed_out else status.HTTP_502_BAD_GATEWAY,
            details=details,
            original_error=original_error,
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    retryable: bool = False,
) -> JSONResponse:
    """Error envelope for errors that never became an AppException."""
    content: Dict[str, Any] = {
        "code": code.value,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": retryable,
    }
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content={"detail": content})


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.code.value} on {request.method} {request.url.path}: {exc.message}",
        exc_info=exc.original_error,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes, wrong methods and other framework-level HTTP errors."""
    code = ErrorCode.NOT_FOUND if exc.status_code == status.HTTP_404_NOT_FOUND else ErrorCode.HTTP_ERROR
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {message}")
    return create_error_response(code, message, exc.status_code)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body, query and header validation failures."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(f"Validation failed on {request.method} {request.url.path}: {len(errors)} errors")
    return create_error_response(
        ErrorCode.VALIDATION_ERROR,
        "Request validation failed",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Database errors that escaped the service layer."""
    if isinstance(exc, IntegrityError):
        code, message, status_code = (
            ErrorCode.DATA_INTEGRITY_ERROR,
            "Data integrity constraint violated",
            status.HTTP_409_CONFLICT,
        )
    elif isinstance(exc, OperationalError):
        code, message, status_code = (
            ErrorCode.DATABASE_ERROR,
            "Database unavailable; retry later",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    else:
        code, message, status_code = (
            ErrorCode.DATABASE_ERROR,
            "A database error occurred",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}", exc_info=exc)
    return create_error_response(code, message, status_code, retryable=isinstance(exc, OperationalError))


async def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    """Optimistic version check lost outside the service's own conflict handling."""
    logger.warning(f"Stale payroll run version on {request.method} {request.url.path}: {exc}")
    return create_error_response(
        ErrorCode.VERSION_CONFLICT,
        "The payroll run was modified by a concurrent request",
        status.HTTP_409_CONFLICT,
        retryable=False,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.critical(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}", exc_info=exc)
    return create_error_response(
        ErrorCode.INTERNAL_ERROR,
        "An unexpected error occurred. Please try again later.",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StaleDataError, stale_data_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
