"""Add payroll run engine tables

Revision ID: 20260301_0900
Revises:
Create Date: 2026-03-01 09:00:00.000000

This migration creates the payroll run engine:
- payroll_employees: roster backing store (statutory profile only)
- payroll_runs: one run per tenant and monthly period, versioned
- pay_slips: per-employee results in minor units (sen)
- payroll_journal_postings: ledger submissions, one per (run, purpose)
- payroll_run_transitions: append-only status change audit trail
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import UUID, JSON


# revision identifiers, used by Alembic.
revision = '20260301_0900'
down_revision = None
branch_labels = None
depends_on = None


# Enum labels are the member names, matching SQLEnum on the models
payroll_run_status = postgresql.ENUM(
    'DRAFT', 'CALCULATING', 'PENDING_REVIEW', 'APPROVED', 'FINALIZED', 'PAID', 'CANCELLED',
    name='payrollrunstatus', create_type=False,
)
residency_class = postgresql.ENUM(
    'CITIZEN', 'PERMANENT_RESIDENT', 'FOREIGN',
    name='residencyclass', create_type=False,
)
employee_status = postgresql.ENUM(
    'ACTIVE', 'INACTIVE', 'TERMINATED',
    name='employeestatus', create_type=False,
)
pay_frequency = postgresql.ENUM(
    'MONTHLY', 'BI_WEEKLY', 'WEEKLY',
    name='payfrequency', create_type=False,
)
marital_status = postgresql.ENUM(
    'SINGLE', 'MARRIED', 'DIVORCED', 'WIDOWED',
    name='maritalstatus', create_type=False,
)
posting_purpose = postgresql.ENUM(
    'ACCRUAL', 'PAYMENT', 'REVERSAL',
    name='postingpurpose', create_type=False,
)

ENUMS = [payroll_run_status, residency_class, employee_status, pay_frequency, marital_status, posting_purpose]


def table_exists(table_name: str) -> bool:
    """Check if a table exists."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    return table_name in inspector.get_table_names()


def timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    # ===========================================
    # PAYROLL EMPLOYEES TABLE
    # ===========================================
    if not table_exists('payroll_employees'):
        op.create_table('payroll_employees',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('entity_id', UUID(as_uuid=True), nullable=False, index=True),
            sa.Column('employee_code', sa.String(50), nullable=False),
            sa.Column('first_name', sa.String(100), nullable=False),
            sa.Column('last_name', sa.String(100), nullable=False),
            sa.Column('department', sa.String(100), nullable=True),
            sa.Column('position', sa.String(100), nullable=True),

            # Compensation (sen)
            sa.Column('base_salary', sa.BigInteger, nullable=False, comment='Monthly base salary in minor units'),
            sa.Column('earnings_components', JSON, nullable=True,
                      comment='Recurring earnings: [{code, name, amount | percentage, subject_to: [category]}]'),
            sa.Column('pay_frequency', pay_frequency, nullable=False, server_default='MONTHLY'),

            # Statutory profile
            sa.Column('date_of_birth', sa.Date, nullable=True),
            sa.Column('residency_class', residency_class, nullable=False, server_default='CITIZEN'),
            sa.Column('pension_employee_rate_override', sa.Numeric(5, 2), nullable=True,
                      comment="EPF employee rate override in percent, e.g. '9'"),
            sa.Column('pension_employer_rate_override', sa.Numeric(5, 2), nullable=True,
                      comment="EPF employer rate override in percent, e.g. '13'"),
            sa.Column('manual_exemptions', JSON, nullable=True,
                      comment='Documented exemptions keyed by statutory category: {category: reason}'),

            # Tax relief inputs (PCB)
            sa.Column('marital_status', marital_status, nullable=False, server_default='SINGLE'),
            sa.Column('spouse_working', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('number_of_children', sa.Integer, nullable=False, server_default='0'),
            sa.Column('children_in_university', sa.Integer, nullable=False, server_default='0'),
            sa.Column('disabled_children', sa.Integer, nullable=False, server_default='0'),

            # Employment
            sa.Column('status', employee_status, nullable=False, server_default='ACTIVE'),
            sa.Column('hire_date', sa.Date, nullable=False),
            sa.Column('termination_date', sa.Date, nullable=True),

            *timestamps(),
            sa.UniqueConstraint('entity_id', 'employee_code', name='uq_payroll_employee_entity_code'),
        )

    # ===========================================
    # PAYROLL RUNS TABLE
    # ===========================================
    if not table_exists('payroll_runs'):
        op.create_table('payroll_runs',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('entity_id', UUID(as_uuid=True), nullable=False, index=True),
            sa.Column('created_by_id', UUID(as_uuid=True), nullable=True),

            sa.Column('run_number', sa.String(50), nullable=False, comment='Sequential per tenant and year, e.g. PR-2025-03'),
            sa.Column('name', sa.String(200), nullable=True),

            # Pay period
            sa.Column('period_year', sa.Integer, nullable=False),
            sa.Column('period_month', sa.Integer, nullable=False),
            sa.Column('period_start', sa.Date, nullable=False),
            sa.Column('period_end', sa.Date, nullable=False),
            sa.Column('pay_date', sa.Date, nullable=False, comment='Scheduled date employees will be paid'),

            # Status
            sa.Column('status', payroll_run_status, nullable=False, server_default='DRAFT', index=True),
            sa.Column('version', sa.Integer, nullable=False),

            # Aggregates (sen, NULL until calculated)
            sa.Column('total_employees', sa.Integer, nullable=True),
            sa.Column('total_gross_salary', sa.BigInteger, nullable=True),
            sa.Column('total_net_salary', sa.BigInteger, nullable=True),
            sa.Column('total_employee_deductions', sa.BigInteger, nullable=True),
            sa.Column('total_employer_contributions', sa.BigInteger, nullable=True),
            sa.Column('total_pension_employee', sa.BigInteger, nullable=True),
            sa.Column('total_pension_employer', sa.BigInteger, nullable=True),
            sa.Column('total_social_security_employee', sa.BigInteger, nullable=True),
            sa.Column('total_social_security_employer', sa.BigInteger, nullable=True),
            sa.Column('total_employment_insurance_employee', sa.BigInteger, nullable=True),
            sa.Column('total_employment_insurance_employer', sa.BigInteger, nullable=True),
            sa.Column('total_income_tax', sa.BigInteger, nullable=True),
            sa.Column('rate_table_version', sa.String(50), nullable=True,
                      comment='Statutory rate table version used by the last calculation'),

            # Workflow audit
            sa.Column('calculated_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('approved_by_id', UUID(as_uuid=True), nullable=True),
            sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('finalized_by_id', UUID(as_uuid=True), nullable=True),
            sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('paid_by_id', UUID(as_uuid=True), nullable=True),
            sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('payment_date', sa.Date, nullable=True, comment='Actual date salaries were paid'),
            sa.Column('cancelled_by_id', UUID(as_uuid=True), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('notes', sa.Text, nullable=True),

            *timestamps(),
            sa.UniqueConstraint('entity_id', 'run_number', name='uq_payroll_run_entity_number'),
            sa.CheckConstraint('period_month BETWEEN 1 AND 12', name='ck_payroll_runs_period_month_range'),
        )

        # One live run per tenant and period; cancelled runs may be repeated
        op.create_index(
            'ix_payroll_runs_live_period',
            'payroll_runs',
            ['entity_id', 'period_year', 'period_month'],
            unique=True,
            postgresql_where=sa.text("status <> 'CANCELLED'"),
        )

    # ===========================================
    # PAY SLIPS TABLE
    # ===========================================
    if not table_exists('pay_slips'):
        op.create_table('pay_slips',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('payroll_run_id', UUID(as_uuid=True), sa.ForeignKey('payroll_runs.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('employee_id', UUID(as_uuid=True), nullable=False, index=True),
            sa.Column('slip_number', sa.String(60), nullable=False),

            # Employee snapshot
            sa.Column('employee_code', sa.String(50), nullable=False),
            sa.Column('employee_name', sa.String(200), nullable=False),
            sa.Column('department', sa.String(100), nullable=True),
            sa.Column('position', sa.String(100), nullable=True),

            # Amounts (sen)
            sa.Column('base_salary', sa.BigInteger, nullable=False),
            sa.Column('gross_salary', sa.BigInteger, nullable=False),
            sa.Column('taxable_wage', sa.BigInteger, nullable=False,
                      comment='Gross less earnings not subject to income tax'),
            sa.Column('earnings', JSON, nullable=False, server_default='[]'),
            sa.Column('pension_employee', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('pension_employer', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('social_security_employee', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('social_security_employer', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('employment_insurance_employee', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('employment_insurance_employer', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('income_tax', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('total_employee_deductions', sa.BigInteger, nullable=False),
            sa.Column('total_employer_contributions', sa.BigInteger, nullable=False),
            sa.Column('net_salary', sa.BigInteger, nullable=False),

            sa.Column('exemptions', JSON, nullable=False, comment='{category: {kind, reason, employee, employer}}'),
            sa.Column('rate_sources', JSON, nullable=False,
                      comment='{category: {employee: table|override, employer: table|override}}'),
            sa.Column('rate_table_version', sa.String(50), nullable=False),

            # Year to date, this slip included
            sa.Column('ytd_gross_salary', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('ytd_pension_employee', sa.BigInteger, nullable=False, server_default='0'),
            sa.Column('ytd_income_tax', sa.BigInteger, nullable=False, server_default='0'),

            *timestamps(),
            sa.UniqueConstraint('payroll_run_id', 'employee_id', name='uq_pay_slip_run_employee'),
            sa.CheckConstraint('gross_salary >= base_salary', name='ck_pay_slips_gross_not_below_base'),
            sa.CheckConstraint(
                'net_salary = gross_salary - total_employee_deductions',
                name='ck_pay_slips_net_equals_gross_less_deductions',
            ),
        )

    # ===========================================
    # JOURNAL POSTINGS TABLE
    # ===========================================
    if not table_exists('payroll_journal_postings'):
        op.create_table('payroll_journal_postings',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('entity_id', UUID(as_uuid=True), nullable=False, index=True),
            sa.Column('payroll_run_id', UUID(as_uuid=True), sa.ForeignKey('payroll_runs.id'), nullable=False, index=True),
            sa.Column('purpose', posting_purpose, nullable=False),
            sa.Column('entry_date', sa.Date, nullable=False),
            sa.Column('idempotency_key', sa.String(100), nullable=False, unique=True),
            sa.Column('description', sa.String(500), nullable=False),
            sa.Column('lines', JSON, nullable=False),
            sa.Column('total_debit', sa.BigInteger, nullable=False),
            sa.Column('total_credit', sa.BigInteger, nullable=False),
            sa.Column('ledger_reference', sa.String(100), nullable=True),
            sa.Column('posted_at', sa.DateTime(timezone=True), nullable=False),

            *timestamps(),
            sa.UniqueConstraint('payroll_run_id', 'purpose', name='uq_payroll_posting_run_purpose'),
            sa.CheckConstraint('total_debit = total_credit', name='ck_payroll_journal_postings_balanced'),
        )

    # ===========================================
    # TRANSITIONS TABLE
    # ===========================================
    if not table_exists('payroll_run_transitions'):
        op.create_table('payroll_run_transitions',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('entity_id', UUID(as_uuid=True), nullable=False, index=True),
            sa.Column('payroll_run_id', UUID(as_uuid=True), sa.ForeignKey('payroll_runs.id'), nullable=False, index=True),
            sa.Column('action', sa.String(50), nullable=False),
            sa.Column('from_status', payroll_run_status, nullable=False),
            sa.Column('to_status', payroll_run_status, nullable=False),
            sa.Column('actor_id', UUID(as_uuid=True), nullable=True),
            sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('detail', JSON, nullable=True),

            *timestamps(),
        )


def downgrade() -> None:
    op.drop_table('payroll_run_transitions')
    op.drop_table('payroll_journal_postings')
    op.drop_table('pay_slips')
    op.drop_index('ix_payroll_runs_live_period', table_name='payroll_runs')
    op.drop_table('payroll_runs')
    op.drop_table('payroll_employees')

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
