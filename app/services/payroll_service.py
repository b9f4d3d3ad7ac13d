"""
Open Bookkeeping Payroll - Payroll Run Service

Lifecycle operations for payroll runs:
- create_run / delete_run (draft only)
- calculate / recalculate (income tax projected from year-to-date slips)
- approve, finalize (accrual posting), mark_paid (payment posting)
- cancel (reversal posting when already finalized)
- variance findings, statutory deadline status and per-agency
  statutory payments (read-only)

Every status change goes through payroll_state_machine.next_status and is
recorded in payroll_run_transitions. Runs are serialized with
SELECT ... FOR UPDATE plus the optimistic version column; a lost race
surfaces as ConcurrencyConflictException.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, and_, delete, distinct
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.models.payroll import (
    PayrollRun,
    PayrollRunStatus,
    PayrollRunTransition,
    PaySlip,
    PostingPurpose,
)
from app.services.collaborators import (
    Clock,
    DatabaseEmployeeRoster,
    EmployeeRoster,
    HttpLedgerClient,
    LedgerClient,
    RateTableProvider,
    SystemClock,
)
from app.services.journal_posting import JournalPostingAdapter
from app.services.payroll_state_machine import PayrollAction, next_status
from app.services.payslip_builder import (
    EmployeeCalculationError,
    PaySlipBuilder,
    RunContext,
    summarize,
)
from app.services.statutory.engine import EmployeeProfile, YtdFigures
from app.services.statutory.malaysia import default_registry
from app.services.statutory.rate_table import RateTable
from app.services.statutory_deadline import (
    DeadlineStatus,
    StatutoryDeadlineCalculator,
    StatutoryPaymentSummary,
    period_bounds,
)
from app.services.variance_detector import VarianceFinding, VarianceRules, detect_variances
from app.utils.error_handling import (
    ConcurrencyConflictException,
    ErrorCode,
    InvalidTransitionException,
    JournalPostingException,
    PaymentDateInFutureException,
    PayrollCalculationException,
    PayrollRunNotFoundException,
    PayrollValidationException,
    PaySlipNotFoundException,
    PreconditionFailedException,
)

logger = logging.getLogger(__name__)

# Shared, read-only; tables inside are immutable
_default_rate_tables = default_registry()

AGGREGATE_FIELDS = (
    "total_employees",
    "total_gross_salary",
    "total_net_salary",
    "total_employee_deductions",
    "total_employer_contributions",
    "total_pension_employee",
    "total_pension_employer",
    "total_social_security_employee",
    "total_social_security_employer",
    "total_employment_insurance_employee",
    "total_employment_insurance_employer",
    "total_income_tax",
)


@dataclass
class CalculationResult:
    """Outcome of calculate: the run, its new pay slips and per-employee failures."""
    run: PayrollRun
    pay_slips: List[PaySlip] = field(default_factory=list)
    errors: List[EmployeeCalculationError] = field(default_factory=list)


class PayrollRunService:
    """Service for payroll run lifecycle operations."""

    def __init__(
        self,
        db: AsyncSession,
        roster: Optional[EmployeeRoster] = None,
        rate_tables: Optional[RateTableProvider] = None,
        ledger: Optional[LedgerClient] = None,
        clock: Optional[Clock] = None,
        builder: Optional[PaySlipBuilder] = None,
        deadlines: Optional[StatutoryDeadlineCalculator] = None,
        variance_rules: Optional[VarianceRules] = None,
    ):
        self.db = db
        self.roster = roster or DatabaseEmployeeRoster(db)
        self.rate_tables = rate_tables or _default_rate_tables
        self.clock = clock or SystemClock()
        self.builder = builder or PaySlipBuilder()
        self.deadlines = deadlines or StatutoryDeadlineCalculator()
        self.variance_rules = variance_rules or VarianceRules.from_settings()
        self.postings = JournalPostingAdapter(db, ledger or HttpLedgerClient(), self.clock)

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_run(
        self,
        entity_id: uuid.UUID,
        run_id: uuid.UUID,
        for_update: bool = False,
    ) -> PayrollRun:
        """Load a run for this tenant, always refreshing from the database."""
        query = (
            select(PayrollRun)
            .where(and_(PayrollRun.id == run_id, PayrollRun.entity_id == entity_id))
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        run = result.scalar_one_or_none()
        if run is None:
            raise PayrollRunNotFoundException(run_id)
        return run

    async def list_runs(
        self,
        entity_id: uuid.UUID,
        status: Optional[PayrollRunStatus] = None,
        period_year: Optional[int] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[PayrollRun]:
        query = select(PayrollRun).where(PayrollRun.entity_id == entity_id)
        if status:
            query = query.where(PayrollRun.status == status)
        if period_year:
            query = query.where(PayrollRun.period_year == period_year)
        query = query.order_by(
            PayrollRun.period_year.desc(),
            PayrollRun.period_month.desc(),
            PayrollRun.run_number.desc(),
        ).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_pay_slips(self, entity_id: uuid.UUID, run_id: uuid.UUID) -> List[PaySlip]:
        run = await self.get_run(entity_id, run_id)
        return await self._load_pay_slips(run.id)

    async def get_pay_slip(self, entity_id: uuid.UUID, pay_slip_id: uuid.UUID) -> PaySlip:
        result = await self.db.execute(
            select(PaySlip)
            .join(PayrollRun, PayrollRun.id == PaySlip.payroll_run_id)
            .where(and_(PaySlip.id == pay_slip_id, PayrollRun.entity_id == entity_id))
        )
        slip = result.scalar_one_or_none()
        if slip is None:
            raise PaySlipNotFoundException(pay_slip_id)
        return slip

    async def list_transitions(self, entity_id: uuid.UUID, run_id: uuid.UUID) -> List[PayrollRunTransition]:
        run = await self.get_run(entity_id, run_id)
        result = await self.db.execute(
            select(PayrollRunTransition)
            .where(PayrollRunTransition.payroll_run_id == run.id)
            .order_by(PayrollRunTransition.occurred_at, PayrollRunTransition.created_at)
        )
        return list(result.scalars().all())

    async def _load_pay_slips(self, run_id: uuid.UUID) -> List[PaySlip]:
        result = await self.db.execute(
            select(PaySlip)
            .where(PaySlip.payroll_run_id == run_id)
            .order_by(PaySlip.slip_number)
        )
        return list(result.scalars().all())

    async def _load_ytd(self, run: PayrollRun) -> Dict[uuid.UUID, YtdFigures]:
        """
        Per-employee totals from finalized or paid runs earlier in the same
        year for this tenant.
        """
        result = await self.db.execute(
            select(
                PaySlip.employee_id,
                func.sum(PaySlip.gross_salary),
                func.sum(PaySlip.taxable_wage),
                func.sum(PaySlip.pension_employee),
                func.sum(PaySlip.social_security_employee + PaySlip.employment_insurance_employee),
                func.sum(PaySlip.income_tax),
                func.count(distinct(PayrollRun.period_month)),
            )
            .join(PayrollRun, PayrollRun.id == PaySlip.payroll_run_id)
            .where(
                and_(
                    PayrollRun.entity_id == run.entity_id,
                    PayrollRun.period_year == run.period_year,
                    PayrollRun.period_month < run.period_month,
                    PayrollRun.status.in_([PayrollRunStatus.FINALIZED, PayrollRunStatus.PAID]),
                )
            )
            .group_by(PaySlip.employee_id)
        )
        return {
            row[0]: YtdFigures(
                gross_salary=int(row[1] or 0),
                taxable_wage=int(row[2] or 0),
                pension_employee=int(row[3] or 0),
                social_security_employee=int(row[4] or 0),
                income_tax=int(row[5] or 0),
                months=int(row[6] or 0),
            )
            for row in result.all()
        }

    # ===========================================
    # CREATE / DELETE
    # ===========================================

    async def create_run(
        self,
        entity_id: uuid.UUID,
        period_year: int,
        period_month: int,
        pay_date: date,
        name: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> PayrollRun:
        """
        Create a draft payroll run for one monthly period.

        Only one non-cancelled run may exist per tenant and period.
        """
        if not 1 <= period_month <= 12:
            raise PayrollValidationException(
                f"Period month must be between 1 and 12, got {period_month}",
                field="period_month",
                code=ErrorCode.INVALID_PAY_PERIOD,
            )
        if not 2000 <= period_year <= 2100:
            raise PayrollValidationException(
                f"Period year {period_year} is out of range",
                field="period_year",
                code=ErrorCode.INVALID_PAY_PERIOD,
            )
        period_start, period_end = period_bounds(period_year, period_month)
        if pay_date < period_start:
            raise PayrollValidationException(
                f"Pay date {pay_date} is before the start of the period ({period_start})",
                field="pay_date",
            )

        existing = await self.db.execute(
            select(PayrollRun.run_number).where(
                and_(
                    PayrollRun.entity_id == entity_id,
                    PayrollRun.period_year == period_year,
                    PayrollRun.period_month == period_month,
                    PayrollRun.status != PayrollRunStatus.CANCELLED,
                )
            )
        )
        duplicate = existing.scalars().first()
        if duplicate:
            raise PayrollValidationException(
                f"Payroll run {duplicate} already exists for {period_year}-{period_month:02d}",
                field="period_month",
                code=ErrorCode.DUPLICATE_PAY_PERIOD,
                details={"existing_run_number": duplicate},
            )

        count_result = await self.db.execute(
            select(func.count())
            .select_from(PayrollRun)
            .where(and_(PayrollRun.entity_id == entity_id, PayrollRun.period_year == period_year))
        )
        sequence = (count_result.scalar() or 0) + 1

        run = PayrollRun(
            entity_id=entity_id,
            run_number=f"PR-{period_year}-{sequence:02d}",
            name=name or f"{period_start.strftime('%B %Y')} Payroll",
            period_year=period_year,
            period_month=period_month,
            period_start=period_start,
            period_end=period_end,
            pay_date=pay_date,
            status=PayrollRunStatus.DRAFT,
            created_by_id=actor_id,
        )
        self.db.add(run)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConcurrencyConflictException(
                run.run_number,
                message="Another payroll run was created concurrently; retry",
            ) from e

        logger.info(f"Created payroll run {run.run_number} for {period_year}-{period_month:02d} (entity {entity_id})")
        return run

    async def delete_run(self, entity_id: uuid.UUID, run_id: uuid.UUID) -> None:
        """Delete a draft run that has never been calculated."""
        run = await self.get_run(entity_id, run_id, for_update=True)
        if run.status != PayrollRunStatus.DRAFT:
            raise InvalidTransitionException("delete", run.status.value)

        history = await self.db.execute(
            select(func.count())
            .select_from(PayrollRunTransition)
            .where(PayrollRunTransition.payroll_run_id == run.id)
        )
        if history.scalar():
            raise PreconditionFailedException(
                action="delete",
                current_status=run.status.value,
                message=f"Payroll run {run.run_number} has audit history; cancel it instead",
            )

        run_number = run.run_number
        await self.db.delete(run)
        await self._commit(run)
        logger.info(f"Deleted draft payroll run {run_number}")

    # ===========================================
    # CALCULATE
    # ===========================================

    async def calculate(
        self,
        entity_id: uuid.UUID,
        run_id: uuid.UUID,
        actor_id: uuid.UUID,
    ) -> CalculationResult:
        """
        Calculate pay slips for every active employee.

        Check-then-commit:
        1. draft -> calculating, committed; the new version is remembered.
        2. Pay slips are computed with no lock held.
        3. The run is re-read; only if it is still calculating at the same
           version are the pay slips, aggregates and pending_review written,
           all in one transaction.

        Per-employee failures are returned alongside the successes. If no
        employee succeeds the run goes back to draft and the failures are
        raised as one PayrollCalculationException. Any other error after
        step 1 also returns the run to draft before it propagates.
        """
        # Phase 1
        run = await self.get_run(entity_id, run_id, for_update=True)
        next_status(run.status, PayrollAction.START_CALCULATION)

        try:
            rate_table = self.rate_tables.get_rate_table(run.period_end)
        except LookupError as e:
            await self.db.rollback()
            raise PayrollCalculationException(str(e), code=ErrorCode.RATE_TABLE_UNAVAILABLE) from e

        employees = await self.roster.list_active_employees(entity_id, run.period_end)
        if not employees:
            await self.db.rollback()
            raise PayrollCalculationException(
                "Cannot calculate payroll: no active employees",
                code=ErrorCode.NO_ACTIVE_EMPLOYEES,
            )
        ytd = await self._load_ytd(run)

        self._transition(run, PayrollAction.START_CALCULATION, actor_id, {
            "employee_count": len(employees),
            "rate_table_version": rate_table.version,
        })
        await self._commit(run)
        expected_version = run.version
        context = RunContext(run_id=run.id, run_number=run.run_number, period_end=run.period_end)

        try:
            return await self._complete_calculation(
                entity_id, context, expected_version, employees, rate_table, ytd, actor_id,
            )
        except (ConcurrencyConflictException, PayrollCalculationException):
            raise
        except Exception as e:
            await self._release_calculation(entity_id, context, expected_version, actor_id, e)
            raise

    async def _complete_calculation(
        self,
        entity_id: uuid.UUID,
        context: RunContext,
        expected_version: int,
        employees: List[EmployeeProfile],
        rate_table: RateTable,
        ytd: Dict[uuid.UUID, YtdFigures],
        actor_id: uuid.UUID,
    ) -> CalculationResult:
        # Phase 2
        pay_slips, errors = await asyncio.to_thread(self.builder.build, context, employees, rate_table, ytd)

        # Phase 3
        run = await self.get_run(entity_id, context.run_id, for_update=True)
        if run.status != PayrollRunStatus.CALCULATING or run.version != expected_version:
            current = run.status.value
            await self.db.rollback()
            logger.warning(
                f"Discarding calculation for payroll run {context.run_number}: "
                f"run changed to {current} while calculating"
            )
            raise ConcurrencyConflictException(
                context.run_id,
                message=f"Payroll run {context.run_number} was modified during calculation "
                        f"(now {current}); results discarded",
                current_status=current,
            )

        failures = [e.to_dict() for e in errors]
        if not pay_slips:
            self._transition(run, PayrollAction.FAIL_CALCULATION, actor_id, {"failures": failures})
            await self._commit(run)
            raise PayrollCalculationException(
                f"Payroll calculation failed for all {len(errors)} employees",
                failures=failures,
            )

        models = [slip.to_model(run.id) for slip in pay_slips]
        self.db.add_all(models)
        for name, value in summarize(pay_slips).items():
            setattr(run, name, value)
        run.rate_table_version = rate_table.version
        run.calculated_at = self.clock.now()
        self._transition(run, PayrollAction.COMPLETE_CALCULATION, actor_id, {
            "pay_slips": len(models),
            "failures": failures,
        })
        await self._commit(run)

        logger.info(
            f"Calculated payroll run {run.run_number}: {len(models)} pay slips, "
            f"{len(errors)} failed, gross {run.total_gross_salary}, net {run.total_net_salary}"
        )
        return CalculationResult(run=run, pay_slips=models, errors=errors)

    async def _release_calculation(
        self,
        entity_id: uuid.UUID,
        context: RunContext,
        expected_version: int,
        actor_id: uuid.UUID,
        error: Exception,
    ) -> None:
        """Return a run left in calculating by an unexpected error to draft."""
        try:
            await self.db.rollback()
            run = await self.get_run(entity_id, context.run_id, for_update=True)
            if run.status != PayrollRunStatus.CALCULATING or run.version != expected_version:
                await self.db.rollback()
                logger.warning(
                    f"Not releasing payroll run {context.run_number}: it moved to {run.status.value}"
                )
                return
            self._transition(run, PayrollAction.FAIL_CALCULATION, actor_id, {
                "error": f"{type(error).__name__}: {error}",
            })
            await self._commit(run)
            logger.error(
                f"Calculation of payroll run {context.run_number} aborted "
                f"({type(error).__name__}); run returned to draft"
            )
        except (SQLAlchemyError, ConcurrencyConflictException, PayrollRunNotFoundException):
            await self.db.rollback()
            logger.exception(f"Could not return payroll run {context.run_number} to draft")

    async def recalculate(
        self,
        entity_id: uuid.UUID,
        run_id: uuid.UUID,
        actor_id: uuid.UUID,
    ) -> CalculationResult:
        """Discard pay slips and aggregates of a pending_review run, then calculate again."""
        run = await self.get_run(entity_id, run_id, for_update=True)
        next_status(run.status, PayrollAction.RESET)

        await self.db.execute(delete(PaySlip).where(PaySlip.payroll_run_id == run.id))
        for name in AGGREGATE_FIELDS:
            setattr(run, name, None)
        run.rate_table_version = None
        run.calculated_at = None
        self._transition(run, PayrollAction.RESET, actor_id)
        await self._commit(run)

        return await self.calculate(entity_id, run_id, actor_id)

    # ===========================================
    # APPROVE / FINALIZE / MARK PAID
    # ===========================================

    async def approve(
        self,
        entity_id: uuid.UUID,
        run_id: uuid.UUID,
        actor_id: uuid.UUID,
    ) -> PayrollRun:
        """Review gate: every pay slip present and internally consistent."""
        run = await self.get_run(entity_id, run_id, for_update=True)
        next_status(run.status, PayrollAction.APPROVE)

        pay_slips = await self._load_pay_slips(run.id)
        problems = self._consistency_problems(run, pay_slips)
        if problems:
            error = PreconditionFailedException(
                action=PayrollAction.APPROVE.value,
                current_status=run.status.value,
                message=f"Payroll run {run.run_number} has inconsistent pay slips",
                problems=problems,
            )
            await self.db.rollback()
            raise error

        self._transition(run, PayrollAction.APPROVE, actor_id)
        run.approved_by_id = actor_id
        run.approved_at = self.clock.now()
        await self._commit(run)
        return run

    async def finalize(
        self,
        entity_id: uuid.UUID,
        run_id: uuid.UUID,
        actor_id: uuid.UUID,
    ) -> PayrollRun:
        """
        Post the accrual entry and move approved -> finalized.

        A run that is already finalized with a recorded accrual is returned
        unchanged.
        """
        run = await self.get_run(entity_id, run_id, for_update=True)
        if run.status == PayrollRunStatus.FINALIZED and await self.postings.get_posting(
            run.id, PostingPurpose.ACCRUAL
        ):
            logger.info(f"Payroll run {run.run_number} is already finalized; nothing to do")
            await self.db.rollback()
            return await self.get_run(entity_id, run_id)
        next_status(run.status, PayrollAction.FINALIZE)

        try:
            pay_slips = await self._load_pay_slips(run.id)
            await self.postings.post_accrual(run, pay_slips)
            self._transition(run, PayrollAction.FINALIZE, actor_id)
            run.finalized_by_id = actor_id
            run.finalized_at = self.clock.now()
            await self.db.commit()
        except (StaleDataError, IntegrityError):
            await self.db.rollback()
            return await self._resolve_race(entity_id, run_id, PayrollRunStatus.FINALIZED, PostingPurpose.ACCRUAL)
        except (JournalPostingException, PreconditionFailedException):
            await self.db.rollback()
            raise
        return run

    async def mark_paid(
        self,
        entity_id: uuid.UUID,
        run_id: uuid.UUID,
        payment_date: date,
        actor_id: uuid.UUID,
    ) -> PayrollRun:
        """
        Post the payment entry and move finalized -> paid.

        The payment date may not be in the future. A run already paid with
        a recorded payment posting is returned unchanged.
        """
        today = self.clock.now().date()
        if payment_date > today:
            raise PaymentDateInFutureException(payment_date, today)

        run = await self.get_run(entity_id, run_id, for_update=True)
        if run.status == PayrollRunStatus.PAID and await self.postings.get_posting(
            run.id, PostingPurpose.PAYMENT
        ):
            logger.info(f"Payroll run {run.run_number} is already paid; nothing to do")
            await self.db.rollback()
            return await self.get_run(entity_id, run_id)
        next_status(run.status, PayrollAction.MARK_PAID)

        try:
            await self.postings.post_payment(run, payment_date)
            self._transition(run, PayrollAction.MARK_PAID, actor_id, {"payment_date": payment_date.isoformat()})
            run.payment_date = payment_date
            run.paid_by_id = actor_id
            run.paid_at = self.clock.now()
            await self.db.commit()
        except (StaleDataError, IntegrityError):
            await self.db.rollback()
            return await self._resolve_race(entity_id, run_id, PayrollRunStatus.PAID, PostingPurpose.PAYMENT)
        except JournalPostingException:
            await self.db.rollback()
            raise
        return run

    # ===========================================
    # CANCEL
    # ===========================================

    async def cancel(
        self,
        entity_id: uuid.UUID,
        run_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> PayrollRun:
        """
        Cancel a run from any non-terminal status.

        A finalized run has its accrual reversed in the ledger first; if the
        reversal fails the run stays finalized.
        """
        run = await self.get_run(entity_id, run_id, for_update=True)
        next_status(run.status, PayrollAction.CANCEL)

        try:
            if run.status == PayrollRunStatus.FINALIZED:
                await self.postings.post_reversal(run)
            self._transition(run, PayrollAction.CANCEL, actor_id, {"reason": reason} if reason else None)
            run.cancelled_by_id = actor_id
            run.cancelled_at = self.clock.now()
            if reason:
                run.notes = reason
            await self.db.commit()
        except (StaleDataError, IntegrityError) as e:
            await self.db.rollback()
            raise ConcurrencyConflictException(run_id) from e
        except (JournalPostingException, PreconditionFailedException):
            await self.db.rollback()
            raise
        return run

    # ===========================================
    # READ-ONLY ANALYSIS
    # ===========================================

    async def get_variance_findings(self, entity_id: uuid.UUID, pay_slip_id: uuid.UUID) -> List[VarianceFinding]:
        """Advisory review findings, recomputed on every call."""
        slip = await self.get_pay_slip(entity_id, pay_slip_id)
        return detect_variances(slip, self.variance_rules)

    async def get_deadline_status(self, entity_id: uuid.UUID, run_id: uuid.UUID) -> DeadlineStatus:
        """Statutory remittance due date and urgency as of the clock's today."""
        run = await self._get_remittable_run(entity_id, run_id, "deadline")
        return self.deadlines.status_for_period(run.period_year, run.period_month, self.clock.now().date())

    async def get_statutory_payments(self, entity_id: uuid.UUID, run_id: uuid.UUID) -> StatutoryPaymentSummary:
        """Amounts owed to each statutory agency for a run, with the shared due date."""
        run = await self._get_remittable_run(entity_id, run_id, "statutory_payments")
        return self.deadlines.payment_summary(run, self.clock.now().date())

    async def _get_remittable_run(self, entity_id: uuid.UUID, run_id: uuid.UUID, action: str) -> PayrollRun:
        run = await self.get_run(entity_id, run_id)
        if run.status == PayrollRunStatus.CANCELLED:
            raise PreconditionFailedException(
                action=action,
                current_status=run.status.value,
                message=f"Payroll run {run.run_number} is cancelled and has no remittance deadline",
            )
        return run

    # ===========================================
    # HELPERS
    # ===========================================

    def _transition(
        self,
        run: PayrollRun,
        action: PayrollAction,
        actor_id: uuid.UUID,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        previous = run.status
        run.status = next_status(previous, action)
        self.db.add(PayrollRunTransition(
            entity_id=run.entity_id,
            payroll_run_id=run.id,
            action=action.value,
            from_status=previous,
            to_status=run.status,
            actor_id=actor_id,
            occurred_at=self.clock.now(),
            detail=detail,
        ))
        logger.info(
            f"Payroll run {run.run_number}: {previous.value} -> {run.status.value} "
            f"({action.value}, actor {actor_id})"
        )

    async def _commit(self, run: PayrollRun) -> None:
        run_id = run.id
        try:
            await self.db.commit()
        except StaleDataError as e:
            await self.db.rollback()
            raise ConcurrencyConflictException(run_id) from e

    async def _resolve_race(
        self,
        entity_id: uuid.UUID,
        run_id: uuid.UUID,
        target: PayrollRunStatus,
        purpose: PostingPurpose,
    ) -> PayrollRun:
        """A competing request committed first; succeed only if it did the same thing."""
        run = await self.get_run(entity_id, run_id)
        if run.status == target and await self.postings.get_posting(run.id, purpose):
            logger.info(f"Payroll run {run.run_number} reached {target.value} in a concurrent request")
            return run
        raise ConcurrencyConflictException(run_id, current_status=run.status.value)

    @staticmethod
    def _consistency_problems(run: PayrollRun, pay_slips: List[PaySlip]) -> List[str]:
        problems = []
        if not pay_slips:
            problems.append("run has no pay slips")
        if run.total_employees != len(pay_slips):
            problems.append(f"run expects {run.total_employees} pay slips, found {len(pay_slips)}")
        for slip in pay_slips:
            employee_side = (
                slip.pension_employee
                + slip.social_security_employee
                + slip.employment_insurance_employee
                + slip.income_tax
            )
            if slip.total_employee_deductions != employee_side:
                problems.append(f"{slip.slip_number}: employee deductions do not add up")
            if slip.net_salary != slip.gross_salary - slip.total_employee_deductions:
                problems.append(f"{slip.slip_number}: net salary is not gross less deductions")
            if slip.gross_salary < slip.base_salary:
                problems.append(f"{slip.slip_number}: gross salary below base salary")
        if pay_slips and run.total_net_salary != sum(s.net_salary for s in pay_slips):
            problems.append("run net total does not match pay slips")
        if pay_slips and run.total_gross_salary != sum(s.gross_salary for s in pay_slips):
            problems.append("run gross total does not match pay slips")
        return problems


def get_payroll_run_service(db: AsyncSession) -> PayrollRunService:
    """Create a PayrollRunService with default collaborators."""
    return PayrollRunService(db)
