"""
Open Bookkeeping Payroll - Test Configuration

Pytest fixtures and configuration.

Each test gets its own SQLite database file (aiosqlite) so that separate
sessions really are separate connections, which the concurrency tests need.
"""

import asyncio
from datetime import datetime, date, timedelta
from typing import AsyncGenerator, Dict, List, Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from app.database import Base
from app.dependencies import get_payroll_service
from app.models.payroll import Employee, EmployeeStatus, ResidencyClass
from app.services.collaborators import JournalEntry, PostingResult
from app.services.payroll_service import PayrollRunService
from app.services.payslip_builder import PaySlipBuilder
from main import create_app


KL = ZoneInfo("Asia/Kuala_Lumpur")
ENTITY_ID = UUID("6f1c2a9e-0b7d-4c55-9a1e-3f2d8b7c4e01")
OTHER_ENTITY_ID = UUID("0d4e8b36-51a2-4f0c-8e77-b29c6a1d5f02")
ACTOR_ID = UUID("a3b7c1d9-2e4f-4a6b-8c0d-9e1f2a3b4c03")


# ===========================================
# FAKE COLLABORATORS
# ===========================================

class SteppingClock:
    """Deterministic clock; every call moves one second forward."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value

    def today(self) -> date:
        return self.current.date()


class FakeLedger:
    """In-memory ledger that honours idempotency keys."""

    def __init__(self):
        self.entries: List[JournalEntry] = []
        self.references: Dict[str, str] = {}
        self.fail_with: Optional[str] = None
        self.delay: float = 0.0
        self.calls = 0

    async def submit_journal_entry(self, entry: JournalEntry) -> PostingResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            return PostingResult(success=False, message=self.fail_with)
        if entry.idempotency_key in self.references:
            return PostingResult(
                success=True,
                message="Duplicate",
                ledger_reference=self.references[entry.idempotency_key],
                duplicate=True,
            )
        reference = f"JE-{len(self.entries) + 1:05d}"
        self.entries.append(entry)
        self.references[entry.idempotency_key] = reference
        return PostingResult(success=True, message="Accepted", ledger_reference=reference)

    def entries_for(self, purpose: str) -> List[JournalEntry]:
        return [e for e in self.entries if e.purpose == purpose]


# ===========================================
# DATABASE
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payroll.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock(datetime(2025, 4, 20, 9, 0, 0, tzinfo=KL))


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def make_service(ledger, clock):
    """Build a PayrollRunService on a session with the fake collaborators."""
    def _make(session: AsyncSession, **kwargs) -> PayrollRunService:
        kwargs.setdefault("ledger", ledger)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("builder", PaySlipBuilder(max_workers=1))
        return PayrollRunService(session, **kwargs)
    return _make


@pytest.fixture
def service(db_session, make_service) -> PayrollRunService:
    return make_service(db_session)


# ===========================================
# DATA FIXTURES
# ===========================================

def build_employee(
    code: str,
    base_salary: int,
    date_of_birth: Optional[date],
    residency_class: ResidencyClass = ResidencyClass.CITIZEN,
    entity_id=ENTITY_ID,
    **kwargs,
) -> Employee:
    """Employee row with sensible defaults. Salaries are in sen."""
    values = {
        "id": uuid4(),
        "first_name": code,
        "last_name": "Tester",
        "hire_date": date(2020, 1, 1),
        "status": EmployeeStatus.ACTIVE,
    }
    values.update(kwargs)
    return Employee(
        entity_id=entity_id,
        employee_code=code,
        base_salary=base_salary,
        date_of_birth=date_of_birth,
        residency_class=residency_class,
        **values,
    )


@pytest_asyncio.fixture
async def employees(db_session: AsyncSession) -> List[Employee]:
    """
    Three employees with known March 2025 results (rate table MY-2025.01):

    E001 citizen, 30, RM5,000   -> net 4,306.75
    E002 citizen, 62, RM6,000   -> net 5,755.83
    E003 foreign,     RM3,000   -> net 2,160.00
    """
    rows = [
        build_employee("E001", 500000, date(1995, 1, 15), first_name="Aisyah", last_name="Rahman",
                       department="Finance", position="Accountant"),
        build_employee("E002", 600000, date(1962, 6, 1), first_name="Lim", last_name="Wei Ming",
                       department="Operations", position="Manager"),
        build_employee("E003", 300000, date(1990, 5, 5), ResidencyClass.FOREIGN,
                       first_name="Ravi", last_name="Kumar", department="Operations"),
    ]
    db_session.add_all(rows)
    await db_session.commit()
    return rows


@pytest_asyncio.fixture
async def march_run(service: PayrollRunService, employees):
    """Draft run for March 2025."""
    return await service.create_run(ENTITY_ID, 2025, 3, date(2025, 3, 28), actor_id=ACTOR_ID)


@pytest_asyncio.fixture
async def approved_run(service: PayrollRunService, march_run):
    await service.calculate(ENTITY_ID, march_run.id, ACTOR_ID)
    return await service.approve(ENTITY_ID, march_run.id, ACTOR_ID)


# ===========================================
# API CLIENT
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def client(session_factory, make_service) -> AsyncGenerator[AsyncClient, None]:
    """Test client whose payroll service runs on the test database and fakes."""
    app = create_app(use_lifespan=False)

    async def override_service():
        async with session_factory() as session:
            yield make_service(session)

    app.dependency_overrides[get_payroll_service] = override_service

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Entity-ID": str(ENTITY_ID), "X-Actor-ID": str(ACTOR_ID)},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
