"""Pytest fixtures for pay run engine tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Callable
from uuid import UUID

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from payrun_engine.api.app import create_app
from payrun_engine.calculators.pay_elements import PayElementRegistry
from payrun_engine.calculators.tax_policy import TaxPolicyTable
from payrun_engine.calculators.types import (
    BankDetails,
    ElementAssignment,
    EmployeeSnapshot,
)
from payrun_engine.collaborators import Collaborators, OutputKind, StaticEmployeeDirectory
from payrun_engine.config import Settings
from payrun_engine.database import create_schema, make_session_factory
from payrun_engine.services.pay_run_service import PayRunService

TENANT_ID = UUID("11111111-1111-1111-1111-111111111111")
OTHER_TENANT_ID = UUID("22222222-2222-2222-2222-222222222222")

ACTOR = "payroll.admin"
APPROVER = "finance.manager"


def make_settings(**overrides) -> Settings:
    """Settings for tests; never read from the environment."""
    values = dict(
        database_url="sqlite+aiosqlite://",
        engine_version="test",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="DEBUG",
        tax_policy_path=None,
        calculation_batch_size=2,
        calculation_max_workers=2,
        transition_retry_attempts=3,
        default_pay_day=25,
        large_variance_threshold_pct=Decimal("20"),
    )
    values.update(overrides)
    return Settings(**values)


def make_employee(
    number: str,
    basic_salary: str = "35000.00",
    *,
    name: str | None = None,
    bank: BankDetails | None = None,
    with_bank: bool = True,
    assignments: tuple[ElementAssignment, ...] = (),
    **kwargs,
) -> EmployeeSnapshot:
    """Employee with complete tax, ID and bank details unless overridden."""
    if bank is None and with_bank:
        bank = BankDetails(
            account_holder=name or f"Employee {number}",
            bank_name="First National Bank",
            account_number=f"62{number[-4:].zfill(4)}123456",
            branch_code="250655",
        )
    values = dict(
        employee_id=f"emp-{number}",
        employee_number=number,
        employee_name=name or f"Employee {number}",
        basic_salary=Decimal(basic_salary),
        id_number="8001015009087",
        tax_number="0123456789",
        department="Operations",
        job_title="Analyst",
        bank=bank,
        start_date=date(2020, 1, 6),
        assignments=assignments,
    )
    values.update(kwargs)
    return EmployeeSnapshot(**values)


class FixedLeave:
    """Unpaid leave days per employee id."""

    def __init__(self, days: dict[str, Decimal] | None = None):
        self.days = days or {}

    async def unpaid_leave_days(self, tenant_id, employee_id, start, end) -> Decimal:
        return self.days.get(employee_id, Decimal("0"))


class RecordingOutputGenerator:
    """Records output requests; outputs named in ``fail_on`` raise."""

    def __init__(self):
        self.requests: list[tuple[UUID, OutputKind]] = []
        self.invalidations: list[UUID] = []
        self.fail_on: set[OutputKind] = set()

    async def request(self, tenant_id: UUID, pay_run_id: UUID, output: OutputKind) -> None:
        if output in self.fail_on:
            raise ConnectionError(f"{output.value} service unavailable")
        self.requests.append((pay_run_id, output))

    async def invalidate(self, tenant_id: UUID, pay_run_id: UUID) -> None:
        self.invalidations.append(pay_run_id)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def tax_policies() -> TaxPolicyTable:
    return TaxPolicyTable.load_default()


@pytest.fixture
def registry() -> PayElementRegistry:
    return PayElementRegistry.with_defaults()


@pytest.fixture
def employees() -> list[EmployeeSnapshot]:
    return [
        make_employee("E001", "35000.00", name="Thandi Mokoena"),
        make_employee("E002", "20000.00", name="Sipho Dlamini"),
    ]


@pytest.fixture
def directory(employees) -> StaticEmployeeDirectory:
    return StaticEmployeeDirectory({TENANT_ID: employees})


@pytest.fixture
def leave() -> FixedLeave:
    return FixedLeave()


@pytest.fixture
def outputs() -> RecordingOutputGenerator:
    return RecordingOutputGenerator()


@pytest.fixture
def collaborators(directory, leave, outputs) -> Collaborators:
    return Collaborators(directory=directory, leave=leave, outputs=outputs)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """On-disk SQLite database per test so worker threads share it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payrun.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def service_factory(
    session, collaborators, tax_policies, settings
) -> Callable[..., PayRunService]:
    def factory(tenant_id: UUID = TENANT_ID, **kwargs) -> PayRunService:
        kwargs.setdefault("collaborators", collaborators)
        kwargs.setdefault("tax_policies", tax_policies)
        kwargs.setdefault("settings", settings)
        return PayRunService(session, tenant_id, **kwargs)

    return factory


@pytest.fixture
def service(service_factory) -> PayRunService:
    return service_factory()


@pytest_asyncio.fixture
async def app(tmp_path, settings, collaborators) -> AsyncGenerator[FastAPI, None]:
    """Application on its own database. The transport does not run the lifespan."""
    app = create_app(
        settings=settings,
        collaborators=collaborators,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
    )
    await create_schema(app.state.engine)
    yield app
    await app.state.engine.dispose()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
