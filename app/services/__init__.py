"""
Open Bookkeeping Payroll - Services Package

Business logic services.
"""

from app.services.payroll_service import PayrollRunService, CalculationResult, get_payroll_run_service
from app.services.journal_posting import JournalPostingAdapter, PostingOutcome
from app.services.payslip_builder import PaySlipBuilder
from app.services.statutory_deadline import StatutoryDeadlineCalculator
from app.services.variance_detector import detect_variances
