"""
Open Bookkeeping Payroll - Journal Posting Adapter

Translates payroll run aggregates into balanced double-entry journal
entries and submits them to the external ledger.

Accrual (finalize):
    Dr. Salaries & Wages                 (gross)
    Dr. EPF / SOCSO / EIS Employer Expense (employer side)
        Cr. Accrued Salaries             (net)
        Cr. EPF / SOCSO / EIS Payable    (employee + employer side)
        Cr. PCB Payable                  (income tax)

Payment (mark paid):
    Dr. Accrued Salaries                 (net)
        Cr. Cash at Bank                 (net)

Reversal (cancel after finalize): the accrual with debits and credits
swapped.

Duplicate posting is prevented per (run, purpose): a recorded posting is
returned as a duplicate without calling the ledger, and the ledger also
receives an Idempotency-Key. The posting record is added to the caller's
session but not committed, so it lands in the same transaction as the
status change that depends on it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.payroll import PayrollJournalPosting, PayrollRun, PaySlip, PostingPurpose
from app.services.collaborators import (
    Clock,
    JournalEntry,
    JournalLine,
    LedgerClient,
    PostingResult,
)
from app.utils.error_handling import JournalPostingException, PreconditionFailedException

logger = logging.getLogger(__name__)


@dataclass
class PostingOutcome:
    posting: PayrollJournalPosting
    duplicate: bool = False


class JournalPostingAdapter:
    """
    Builds and submits payroll journal entries.

    Account codes come from settings so a tenant chart can be mapped
    without code changes.
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: LedgerClient,
        clock: Clock,
        timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.clock = clock
        self.timeout_seconds = timeout_seconds or settings.ledger_timeout_seconds

    # ===========================================
    # LOOKUP
    # ===========================================

    async def get_posting(
        self,
        payroll_run_id,
        purpose: PostingPurpose,
    ) -> Optional[PayrollJournalPosting]:
        """Recorded posting for (run, purpose), if any."""
        result = await self.db.execute(
            select(PayrollJournalPosting).where(
                and_(
                    PayrollJournalPosting.payroll_run_id == payroll_run_id,
                    PayrollJournalPosting.purpose == purpose,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_postings(self, payroll_run_id) -> List[PayrollJournalPosting]:
        result = await self.db.execute(
            select(PayrollJournalPosting)
            .where(PayrollJournalPosting.payroll_run_id == payroll_run_id)
            .order_by(PayrollJournalPosting.posted_at)
        )
        return list(result.scalars().all())

    # ===========================================
    # LINE BUILDERS
    # ===========================================

    @staticmethod
    def accrual_lines(run: PayrollRun) -> List[JournalLine]:
        """Accrual lines from the run's aggregates. Zero lines are omitted."""
        n = run.run_number
        candidates = [
            JournalLine(settings.gl_salaries_wages, f"Payroll {n} - Gross salaries",
                        debit=run.total_gross_salary or 0),
            JournalLine(settings.gl_pension_employer_expense, f"Payroll {n} - EPF employer",
                        debit=run.total_pension_employer or 0),
            JournalLine(settings.gl_social_security_employer_expense, f"Payroll {n} - SOCSO employer",
                        debit=run.total_social_security_employer or 0),
            JournalLine(settings.gl_employment_insurance_employer_expense, f"Payroll {n} - EIS employer",
                        debit=run.total_employment_insurance_employer or 0),
            JournalLine(settings.gl_accrued_salaries, f"Payroll {n} - Net salaries payable",
                        credit=run.total_net_salary or 0),
            JournalLine(settings.gl_pension_payable, f"Payroll {n} - EPF payable",
                        credit=(run.total_pension_employee or 0) + (run.total_pension_employer or 0)),
            JournalLine(settings.gl_social_security_payable, f"Payroll {n} - SOCSO payable",
                        credit=(run.total_social_security_employee or 0) + (run.total_social_security_employer or 0)),
            JournalLine(settings.gl_employment_insurance_payable, f"Payroll {n} - EIS payable",
                        credit=(run.total_employment_insurance_employee or 0)
                        + (run.total_employment_insurance_employer or 0)),
            JournalLine(settings.gl_income_tax_payable, f"Payroll {n} - PCB payable",
                        credit=run.total_income_tax or 0),
        ]
        return [line for line in candidates if line.debit or line.credit]

    @staticmethod
    def payment_lines(run: PayrollRun) -> List[JournalLine]:
        net = run.total_net_salary or 0
        n = run.run_number
        return [
            JournalLine(settings.gl_accrued_salaries, f"Payroll {n} - Salaries paid", debit=net),
            JournalLine(settings.gl_cash_at_bank, f"Payroll {n} - Salaries paid", credit=net),
        ]

    @staticmethod
    def reversal_lines(accrual: PayrollJournalPosting) -> List[JournalLine]:
        return [
            JournalLine(
                line["account_code"],
                f"Reversal - {line['description']}",
                debit=line["credit"],
                credit=line["debit"],
            )
            for line in accrual.lines
        ]

    # ===========================================
    # POSTING
    # ===========================================

    async def post_accrual(self, run: PayrollRun, pay_slips: Sequence[PaySlip]) -> PostingOutcome:
        """Post the expense/liability accrual for a run being finalized."""
        gross = sum(s.gross_salary for s in pay_slips)
        net = sum(s.net_salary for s in pay_slips)
        if gross != run.total_gross_salary or net != run.total_net_salary:
            raise PreconditionFailedException(
                action="finalize",
                current_status=run.status.value,
                message="Payroll run totals do not match its pay slips; recalculate the run",
            )
        return await self._submit(
            run,
            PostingPurpose.ACCRUAL,
            entry_date=run.period_end,
            description=f"Payroll accrual {run.run_number} ({run.period_year}-{run.period_month:02d})",
            build_lines=lambda: self.accrual_lines(run),
        )

    async def post_payment(self, run: PayrollRun, payment_date: date) -> PostingOutcome:
        """Post the salary payment for a run being marked paid."""
        return await self._submit(
            run,
            PostingPurpose.PAYMENT,
            entry_date=payment_date,
            description=f"Payroll payment {run.run_number}",
            build_lines=lambda: self.payment_lines(run),
        )

    async def post_reversal(self, run: PayrollRun) -> PostingOutcome:
        """Reverse the accrual of a finalized run being cancelled."""
        accrual = await self.get_posting(run.id, PostingPurpose.ACCRUAL)
        if accrual is None:
            raise PreconditionFailedException(
                action="cancel",
                current_status=run.status.value,
                message=f"Payroll run {run.run_number} has no accrual posting to reverse",
            )
        return await self._submit(
            run,
            PostingPurpose.REVERSAL,
            entry_date=self.clock.now().date(),
            description=f"Reversal of payroll accrual {run.run_number}",
            build_lines=lambda: self.reversal_lines(accrual),
        )

    async def _submit(
        self,
        run: PayrollRun,
        purpose: PostingPurpose,
        entry_date: date,
        description: str,
        build_lines,
    ) -> PostingOutcome:
        existing = await self.get_posting(run.id, purpose)
        if existing is not None:
            logger.info(f"Payroll run {run.run_number} already has a {purpose.value} posting; skipping ledger call")
            return PostingOutcome(posting=existing, duplicate=True)

        entry = JournalEntry(
            entity_id=run.entity_id,
            payroll_run_id=run.id,
            purpose=purpose.value,
            entry_date=entry_date,
            reference=run.run_number,
            description=description,
            idempotency_key=f"{run.id}:{purpose.value}",
            lines=build_lines(),
        )

        if not entry.lines:
            raise JournalPostingException(
                f"{purpose.value} entry for {run.run_number} has no lines",
                run_id=run.id,
                purpose=purpose.value,
            )
        if not entry.is_balanced:
            raise JournalPostingException(
                f"{purpose.value} entry for {run.run_number} is unbalanced "
                f"(debits {entry.total_debit}, credits {entry.total_credit})",
                run_id=run.id,
                purpose=purpose.value,
            )

        result = await self._call_ledger(run, entry)

        posting = PayrollJournalPosting(
            entity_id=run.entity_id,
            payroll_run_id=run.id,
            purpose=purpose,
            entry_date=entry_date,
            idempotency_key=entry.idempotency_key,
            description=description,
            lines=[line.to_dict() for line in entry.lines],
            total_debit=entry.total_debit,
            total_credit=entry.total_credit,
            ledger_reference=result.ledger_reference or None,
            posted_at=self.clock.now(),
        )
        self.db.add(posting)
        await self.db.flush()

        logger.info(
            f"Posted {purpose.value} entry for payroll run {run.run_number}: "
            f"{len(entry.lines)} lines, total {entry.total_debit} "
            f"(ledger ref {posting.ledger_reference})"
        )
        return PostingOutcome(posting=posting, duplicate=result.duplicate)

    async def _call_ledger(self, run: PayrollRun, entry: JournalEntry) -> PostingResult:
        try:
            result = await asyncio.wait_for(
                self.ledger.submit_journal_entry(entry),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                f"Ledger timed out after {self.timeout_seconds}s posting {entry.purpose} "
                f"for payroll run {run.run_number}"
            )
            raise JournalPostingException(
                f"ledger did not respond within {self.timeout_seconds} seconds",
                run_id=run.id,
                purpose=entry.purpose,
                timed_out=True,
                original_error=e,
            )

        if not result.success:
            logger.error(
                f"Ledger rejected {entry.purpose} entry for payroll run {run.run_number}: {result.message}"
            )
            raise JournalPostingException(
                result.message,
                run_id=run.id,
                purpose=entry.purpose,
                timed_out=result.timed_out,
            )
        return result
