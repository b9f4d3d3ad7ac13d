"""
Open Bookkeeping Payroll - External Collaborators

Narrow contracts the payroll engine consumes, with default implementations:
- EmployeeRoster     -> DatabaseEmployeeRoster (payroll_employees table)
- RateTableProvider  -> RateTableRegistry (see statutory.malaysia)
- LedgerClient       -> HttpLedgerClient (external ledger REST API via httpx)
- Clock              -> SystemClock (payroll timezone)
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.payroll import Employee, EmployeeStatus
from app.services.statutory.engine import EarningsComponent, EmployeeProfile
from app.services.statutory.rate_table import ContributionSide, RateTable, StatutoryCategory
from app.utils.money import format_minor

logger = logging.getLogger(__name__)


# ===========================================
# JOURNAL ENTRY / POSTING RESULT
# ===========================================

@dataclass(frozen=True)
class JournalLine:
    """One debit or credit line. Amounts in minor units; one side is zero."""
    account_code: str
    description: str
    debit: int = 0
    credit: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_code": self.account_code,
            "description": self.description,
            "debit": self.debit,
            "credit": self.credit,
        }


@dataclass(frozen=True)
class JournalEntry:
    """Balanced journal entry handed to the external ledger."""
    entity_id: uuid.UUID
    payroll_run_id: uuid.UUID
    purpose: str
    entry_date: date
    reference: str
    description: str
    idempotency_key: str
    lines: List[JournalLine] = field(default_factory=list)

    @property
    def total_debit(self) -> int:
        return sum(line.debit for line in self.lines)

    @property
    def total_credit(self) -> int:
        return sum(line.credit for line in self.lines)

    @property
    def is_balanced(self) -> bool:
        return self.total_debit == self.total_credit

    def to_payload(self) -> Dict[str, Any]:
        """Ledger API wire format. Money as decimal strings."""
        return {
            "entity_id": str(self.entity_id),
            "entry_date": self.entry_date.isoformat(),
            "reference": self.reference,
            "description": self.description,
            "source": "payroll",
            "source_id": str(self.payroll_run_id),
            "source_purpose": self.purpose,
            "currency": settings.payroll_currency,
            "lines": [
                {
                    "account_code": line.account_code,
                    "description": line.description,
                    "debit_amount": format_minor(line.debit),
                    "credit_amount": format_minor(line.credit),
                }
                for line in self.lines
            ],
        }


@dataclass
class PostingResult:
    """Outcome of a journal submission."""
    success: bool
    message: str
    ledger_reference: Optional[str] = None
    duplicate: bool = False
    timed_out: bool = False


# ===========================================
# PROTOCOLS
# ===========================================

class EmployeeRoster(Protocol):
    async def list_active_employees(self, entity_id: uuid.UUID, as_of: date) -> List[EmployeeProfile]:
        ...


class RateTableProvider(Protocol):
    def get_rate_table(self, effective_date: date) -> RateTable:
        ...


class LedgerClient(Protocol):
    async def submit_journal_entry(self, entry: JournalEntry) -> PostingResult:
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...


# ===========================================
# DEFAULT IMPLEMENTATIONS
# ===========================================

class SystemClock:
    """Wall clock in the payroll timezone."""

    def __init__(self, timezone: Optional[str] = None):
        self.tz = ZoneInfo(timezone or settings.payroll_timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)


class DatabaseEmployeeRoster:
    """Active employees for a tenant, read from payroll_employees."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_active_employees(self, entity_id: uuid.UUID, as_of: date) -> List[EmployeeProfile]:
        """
        Employees with ACTIVE status, hired on or before as_of and not
        terminated before it. Ordered by employee code.
        """
        query = (
            select(Employee)
            .where(
                and_(
                    Employee.entity_id == entity_id,
                    Employee.status == EmployeeStatus.ACTIVE,
                    Employee.hire_date <= as_of,
                    or_(Employee.termination_date.is_(None), Employee.termination_date >= as_of),
                )
            )
            .order_by(Employee.employee_code)
        )
        result = await self.db.execute(query)
        return [self.to_profile(e) for e in result.scalars().all()]

    @staticmethod
    def to_profile(employee: Employee) -> EmployeeProfile:
        overrides: Dict[Any, Decimal] = {}
        if employee.pension_employee_rate_override is not None:
            overrides[(StatutoryCategory.PENSION, ContributionSide.EMPLOYEE)] = Decimal(
                employee.pension_employee_rate_override
            )
        if employee.pension_employer_rate_override is not None:
            overrides[(StatutoryCategory.PENSION, ContributionSide.EMPLOYER)] = Decimal(
                employee.pension_employer_rate_override
            )

        manual: Dict[StatutoryCategory, str] = {}
        for key, reason in (employee.manual_exemptions or {}).items():
            try:
                manual[StatutoryCategory(key)] = reason
            except ValueError:
                logger.warning(
                    f"Ignoring unknown exemption category '{key}' on employee {employee.employee_code}"
                )

        return EmployeeProfile(
            employee_id=employee.id,
            employee_code=employee.employee_code,
            name=employee.full_name,
            department=employee.department,
            position=employee.position,
            base_salary=employee.base_salary,
            earnings=DatabaseEmployeeRoster.parse_earnings(employee),
            pay_frequency=employee.pay_frequency.value,
            date_of_birth=employee.date_of_birth,
            hire_date=employee.hire_date,
            residency_class=employee.residency_class,
            rate_overrides=overrides,
            manual_exemptions=manual,
            marital_status=employee.marital_status,
            spouse_working=employee.spouse_working,
            number_of_children=employee.number_of_children,
            children_in_university=employee.children_in_university,
            disabled_children=employee.disabled_children,
        )

    @staticmethod
    def parse_earnings(employee: Employee) -> Tuple[EarningsComponent, ...]:
        """
        Earnings components from the employee's JSON column:
        [{"code", "name", "amount" | "percentage", "subject_to": [category, ...]}]

        A component without subject_to counts towards every category.
        """
        components = []
        for raw in employee.earnings_components or []:
            subject_to = set()
            for key in raw.get("subject_to", [c.value for c in StatutoryCategory]):
                try:
                    subject_to.add(StatutoryCategory(key))
                except ValueError:
                    logger.warning(
                        f"Ignoring unknown category '{key}' on earnings component "
                        f"{raw.get('code')} of employee {employee.employee_code}"
                    )
            percentage = raw.get("percentage")
            components.append(EarningsComponent(
                code=raw["code"],
                name=raw.get("name") or raw["code"],
                amount=int(raw.get("amount") or 0),
                percentage=Decimal(str(percentage)) if percentage is not None else None,
                subject_to=frozenset(subject_to),
            ))
        return tuple(components)


class HttpLedgerClient:
    """
    External ledger REST client.

    Sends the entry with an Idempotency-Key header so the ledger can also
    drop duplicates. Transport failures and non-2xx responses are reported
    as unsuccessful PostingResults, never raised.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.ledger_api_url).rstrip("/")
        self.timeout = timeout or settings.ledger_timeout_seconds
        self.transport = transport

    def _get_headers(self, entry: JournalEntry) -> Dict[str, str]:
        headers = dict(settings.ledger_headers)
        headers["Accept"] = "application/json"
        headers["Idempotency-Key"] = entry.idempotency_key
        return headers

    async def submit_journal_entry(self, entry: JournalEntry) -> PostingResult:
        url = f"{self.base_url}/journal-entries"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, headers=self._get_headers(entry), json=entry.to_payload())
                response_data = response.json() if response.content else {}

                if response.status_code in (200, 201):
                    return PostingResult(
                        success=True,
                        message="Journal entry accepted",
                        ledger_reference=str(response_data.get("id") or response_data.get("entry_number") or ""),
                        duplicate=response.status_code == 200 and bool(response_data.get("duplicate")),
                    )
                return PostingResult(
                    success=False,
                    message=f"Ledger rejected entry ({response.status_code}): "
                            f"{response_data.get('message', 'Unknown error')}",
                )

        except httpx.TimeoutException:
            return PostingResult(
                success=False,
                message="Request timeout - ledger did not respond in time",
                timed_out=True,
            )
        except httpx.RequestError as e:
            return PostingResult(success=False, message=f"Network error: {str(e)}")
        except json.JSONDecodeError:
            return PostingResult(success=False, message="Invalid JSON response from ledger")
