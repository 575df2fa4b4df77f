"""Pay run service - main orchestrator for the pay run lifecycle."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.engine import EmployeeInput, PayRunCalculationEngine, RunTotals
from payrun_engine.calculators.exceptions import ExceptionDetector, Rule
from payrun_engine.calculators.line_builder import LineItemBuilder
from payrun_engine.calculators.pay_elements import PayElementRegistry
from payrun_engine.calculators.pay_period import calculate_pay_period
from payrun_engine.calculators.tax_policy import TaxPolicyTable
from payrun_engine.calculators.types import LineCalculation, PayFrequency
from payrun_engine.collaborators import Collaborators, OutputKind
from payrun_engine.config import Settings, get_settings
from payrun_engine.errors import (
    BlockingExceptionsError,
    BlockingLine,
    ConcurrentModificationError,
    DuplicatePayRunError,
    InputValidationError,
    OutputRequestError,
    PayRunNotFoundError,
    StateConflictError,
)
from payrun_engine.models import (
    AuditEvent,
    PayRun,
    PayRunException,
    PayRunInput,
    PayRunLine,
)
from payrun_engine.models.base import utcnow
from payrun_engine.services.commit_service import CommitService
from payrun_engine.services.adjustment_service import AdjustmentService
from payrun_engine.services.locking_service import LockingService
from payrun_engine.services.pay_element_service import (
    PayElementService,
    TenantSettingsService,
)
from payrun_engine.services.state_machine import PayRunStateMachine, PayRunStatus
from payrun_engine.services.ytd_service import SETTLED_STATUSES, YtdService

logger = logging.getLogger(__name__)

T = TypeVar("T")

YTD_FIELDS = (
    ("ytd_gross", "gross_earnings"),
    ("ytd_taxable", "taxable_income"),
    ("ytd_paye", "paye"),
    ("ytd_uif", "uif_employee"),
    ("ytd_sdl", "sdl"),
    ("ytd_net", "net_pay"),
)


class PayRunService:
    """Service for managing the pay run lifecycle for one tenant.

    Operations:
    - create_pay_run: Derive period dates and create a draft run
    - lock_inputs: Freeze roster, unpaid leave, approved adjustments and
      element definitions
    - calculate: Compute every employee's line and the run totals
    - submit_for_review / request_approval / approve: Review gates
    - finalise: Request payslips, bank file and journal
    - close: Terminal transition
    - reopen: Move an approved/finalised run back to calculated
    - unlock_inputs: Discard frozen inputs and return to draft
    - exclude_line / include_line / resolve_exception: Review edits

    Every operation re-reads the run and writes its new status with a
    compare-and-set on (status, version). Losing that race raises
    ConcurrentModificationError, which is retried after re-reading.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: UUID,
        collaborators: Collaborators | None = None,
        tax_policies: TaxPolicyTable | None = None,
        settings: Settings | None = None,
        exception_rules: Sequence[Rule] | None = None,
    ):
        self.session = session
        self.tenant_id = tenant_id
        self.collaborators = collaborators or Collaborators()
        self.settings = settings or get_settings()
        self.tax_policies = tax_policies or TaxPolicyTable.load_default(
            self.settings.tax_policy_path
        )
        self.exception_rules = exception_rules
        self.locking_service = LockingService(session, self.collaborators)
        self.commit_service = CommitService(session)
        self.ytd_service = YtdService(session)
        self.element_service = PayElementService(session, tenant_id)
        self.adjustment_service = AdjustmentService(session, tenant_id)
        self.tenant_settings = TenantSettingsService(session, tenant_id, self.settings)

    # ===== Reads =====

    async def get_pay_run(self, pay_run_id: UUID) -> PayRun:
        """Load a pay run, always from the database."""
        result = await self.session.execute(
            select(PayRun)
            .where(PayRun.pay_run_id == pay_run_id, PayRun.tenant_id == self.tenant_id)
            .execution_options(populate_existing=True)
        )
        pay_run = result.scalar_one_or_none()
        if pay_run is None:
            raise PayRunNotFoundError("Pay run", pay_run_id)
        return pay_run

    async def list_pay_runs(
        self,
        status: str | None = None,
        tax_year: str | None = None,
        frequency: str | None = None,
    ) -> list[PayRun]:
        query = select(PayRun).where(PayRun.tenant_id == self.tenant_id)
        if status:
            query = query.where(PayRun.status == status)
        if tax_year:
            query = query.where(PayRun.tax_year == tax_year)
        if frequency:
            query = query.where(PayRun.frequency == frequency)
        result = await self.session.execute(
            query.order_by(
                PayRun.tax_year.desc(), PayRun.frequency, PayRun.period_number.desc()
            ).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_lines(self, pay_run_id: UUID) -> list[PayRunLine]:
        await self.get_pay_run(pay_run_id)
        result = await self.session.execute(
            select(PayRunLine)
            .where(PayRunLine.pay_run_id == pay_run_id)
            .order_by(PayRunLine.employee_number)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_line(self, pay_run_id: UUID, pay_run_line_id: UUID) -> PayRunLine:
        await self.get_pay_run(pay_run_id)
        result = await self.session.execute(
            select(PayRunLine)
            .where(
                PayRunLine.pay_run_id == pay_run_id,
                PayRunLine.pay_run_line_id == pay_run_line_id,
            )
            .execution_options(populate_existing=True)
        )
        line = result.scalar_one_or_none()
        if line is None:
            raise PayRunNotFoundError("Pay run line", pay_run_line_id)
        return line

    async def get_audit_events(self, pay_run_id: UUID) -> list[AuditEvent]:
        await self.get_pay_run(pay_run_id)
        result = await self.session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.tenant_id == self.tenant_id,
                AuditEvent.entity_type == "pay_run",
                AuditEvent.entity_id == pay_run_id,
            )
            .order_by(AuditEvent.created_at)
        )
        return list(result.scalars().all())

    # ===== Creation and deletion =====

    async def create_pay_run(
        self,
        frequency: str,
        period_number: int,
        tax_year: str,
        actor: str,
        notes: str | None = None,
    ) -> PayRun:
        """Create a draft run after validating the period and tax year.

        Raises:
            PayPeriodError: Invalid frequency, period number or tax year.
            TaxPolicyNotFoundError: No policy for the tax year.
            DuplicatePayRunError: A run already exists for the period.
        """
        tenant = await self.tenant_settings.get()
        period = calculate_pay_period(
            frequency,
            period_number,
            tax_year,
            pay_day=tenant.pay_day,
            cut_off_day=tenant.cut_off_day,
        )
        self.tax_policies.for_tax_year(tax_year)

        existing = await self.session.execute(
            select(PayRun.pay_run_id).where(
                PayRun.tenant_id == self.tenant_id,
                PayRun.frequency == period.frequency.value,
                PayRun.tax_year == tax_year,
                PayRun.period_number == period_number,
            )
        )
        if existing.first() is not None:
            raise DuplicatePayRunError(period.frequency.value, tax_year, period_number)

        pay_run = PayRun(
            tenant_id=self.tenant_id,
            frequency=period.frequency.value,
            period_number=period_number,
            tax_year=tax_year,
            period_start=period.period_start,
            period_end=period.period_end,
            cut_off_date=period.cut_off_date,
            pay_date=period.pay_date,
            status=PayRunStatus.DRAFT.value,
            version=1,
            sdl_registered=tenant.sdl_registered,
            created_by=actor,
            notes=notes,
        )
        try:
            async with self._unit_of_work():
                self.session.add(pay_run)
                await self.session.flush()
                self._record_audit(
                    pay_run.pay_run_id,
                    "created",
                    actor,
                    {
                        "frequency": pay_run.frequency,
                        "period_number": period_number,
                        "tax_year": tax_year,
                    },
                )
        except IntegrityError as e:
            # Lost a race with another create for the same period
            raise DuplicatePayRunError(period.frequency.value, tax_year, period_number) from e
        logger.info(
            "Created %s pay run %s for period %d of %s",
            pay_run.frequency,
            pay_run.pay_run_id,
            period_number,
            tax_year,
        )
        return pay_run

    async def delete_pay_run(self, pay_run_id: UUID, actor: str) -> None:
        """Delete a run that has not been approved."""
        await self._with_retry(self._delete_pay_run, pay_run_id, actor)

    async def _delete_pay_run(self, pay_run_id: UUID, actor: str) -> None:
        pay_run = await self.get_pay_run(pay_run_id)
        if not PayRunStateMachine.can_delete(pay_run.status):
            raise StateConflictError(
                pay_run.status, "deleted", "runs cannot be deleted once approved"
            )
        async with self._unit_of_work():
            await self.commit_service.delete_lines(pay_run_id)
            await self.locking_service.release_inputs(pay_run_id)
            await self.adjustment_service.revert_applied(pay_run_id)
            result = await self.session.execute(
                delete(PayRun)
                .where(
                    PayRun.pay_run_id == pay_run_id,
                    PayRun.status == pay_run.status,
                    PayRun.version == pay_run.version,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConcurrentModificationError(
                    pay_run.status, "deleted", "pay run was modified concurrently"
                )
            self._record_audit(pay_run_id, "deleted", actor, {"status": pay_run.status})
        self.session.expunge(pay_run)
        logger.info("Deleted pay run %s by %s", pay_run_id, actor)

    # ===== Forward transitions =====

    async def transition(self, pay_run_id: UUID, to_status: str, actor: str) -> PayRun:
        """Move a run to its designated successor status.

        Only the single next status is accepted; anything else raises
        StateConflictError. Two-phase steps (calculating → calculated,
        finalising → finalised) run to completion.
        """
        pay_run = await self.get_pay_run(pay_run_id)
        PayRunStateMachine.validate_transition(pay_run.status, to_status)

        handlers: dict[str, Callable[[UUID, str], Awaitable[PayRun]]] = {
            PayRunStatus.INPUTS_LOCKED: self.lock_inputs,
            PayRunStatus.CALCULATING: self.calculate,
            PayRunStatus.CALCULATED: self.calculate,
            PayRunStatus.REVIEW: self.submit_for_review,
            PayRunStatus.PENDING_APPROVAL: self.request_approval,
            PayRunStatus.APPROVED: self.approve,
            PayRunStatus.FINALISING: self.finalise,
            PayRunStatus.FINALISED: self.finalise,
            PayRunStatus.CLOSED: self.close,
        }
        return await handlers[to_status](pay_run_id, actor)

    async def advance(self, pay_run_id: UUID, actor: str) -> PayRun:
        """Move a run to its next status."""
        pay_run = await self.get_pay_run(pay_run_id)
        next_statuses = PayRunStateMachine.get_next_statuses(pay_run.status)
        if not next_statuses:
            raise StateConflictError(pay_run.status, pay_run.status, "run is closed")
        return await self.transition(pay_run_id, next_statuses[0], actor)

    async def lock_inputs(self, pay_run_id: UUID, actor: str) -> PayRun:
        """draft → inputs_locked: freeze roster, leave, adjustments and elements."""
        return await self._with_retry(self._lock_inputs, pay_run_id, actor)

    async def _lock_inputs(self, pay_run_id: UUID, actor: str) -> PayRun:
        pay_run = await self.get_pay_run(pay_run_id)
        PayRunStateMachine.validate_transition(pay_run.status, PayRunStatus.INPUTS_LOCKED)

        registry = await self.element_service.registry()
        async with self._unit_of_work():
            adjustments = await self.adjustment_service.for_pay_run(pay_run)
            count = await self.locking_service.freeze_inputs(pay_run, registry, adjustments)
            applied = await self.adjustment_service.mark_applied(pay_run, adjustments)
            await self._compare_and_set(
                pay_run,
                PayRunStatus.INPUTS_LOCKED,
                actor,
                element_snapshot_json=registry.to_payload(),
                employee_count=count,
            )
            self._record_audit(
                pay_run_id,
                "inputs_locked",
                actor,
                {"employee_count": count, "adjustments_applied": applied},
            )
        return await self._committed(pay_run)

    async def calculate(self, pay_run_id: UUID, actor: str) -> PayRun:
        """inputs_locked/calculated → calculating → calculated.

        The claim on ``calculating`` is committed before any computation.
        Lines and totals are then written in one transaction; if that
        fails the run stays ``calculating`` with its previous lines and
        can be recalculated.
        """
        pay_run = await self._with_retry(self._claim_calculation, pay_run_id, actor)

        try:
            lines = await self._compute_lines(pay_run)
            async with self._unit_of_work():
                await self.commit_service.replace_lines(
                    pay_run_id, lines, self.settings.calculation_batch_size
                )
                totals = RunTotals.from_lines(lines)
                await self._compare_and_set(
                    pay_run,
                    PayRunStatus.CALCULATED,
                    actor,
                    **CommitService.totals_values(totals),
                )
                self._record_audit(
                    pay_run_id,
                    "calculated",
                    actor,
                    {
                        "employee_count": totals.employee_count,
                        "exception_count": totals.exception_count,
                        "total_net": str(totals.total_net),
                    },
                )
        except ConcurrentModificationError:
            logger.warning("Pay run %s changed while calculating", pay_run_id)
            raise
        except Exception:
            logger.exception("Calculation failed for pay run %s", pay_run_id)
            raise

        pay_run = await self._committed(pay_run)
        logger.info(
            "Calculated pay run %s: %d employee(s), net %s, %d exception(s)",
            pay_run_id,
            pay_run.employee_count,
            pay_run.total_net,
            pay_run.exception_count,
        )
        return pay_run

    async def _claim_calculation(self, pay_run_id: UUID, actor: str) -> PayRun:
        pay_run = await self.get_pay_run(pay_run_id)
        if not PayRunStateMachine.can_calculate(pay_run.status):
            if pay_run.status == PayRunStatus.DRAFT:
                reason = "inputs must be locked before calculating"
            elif pay_run.status == PayRunStatus.CLOSED:
                reason = "run is closed"
            else:
                reason = "approved runs can only be recalculated after a reopen"
            raise StateConflictError(pay_run.status, PayRunStatus.CALCULATING.value, reason)

        async with self._unit_of_work():
            await self._compare_and_set(pay_run, PayRunStatus.CALCULATING, actor)
        return await self._committed(pay_run)

    async def _compute_lines(self, pay_run: PayRun) -> list[LineCalculation]:
        """Fan per-employee computation out to worker threads in chunks."""
        inputs = await self.locking_service.load_inputs(pay_run.pay_run_id)
        history = await self.ytd_service.history_for(pay_run, (i.employee_id for i in inputs))
        registry = PayElementRegistry.from_payload(pay_run.element_snapshot_json or [])
        detector = ExceptionDetector(
            rules=self.exception_rules,
            variance_threshold_pct=await self.tenant_settings.variance_threshold(),
        )
        engine = PayRunCalculationEngine(
            registry=registry,
            policy=self.tax_policies.for_tax_year(pay_run.tax_year),
            frequency=PayFrequency(pay_run.frequency),
            period_start=pay_run.period_start,
            period_end=pay_run.period_end,
            sdl_registered=pay_run.sdl_registered,
            detector=detector,
        )

        employees = [self._employee_input(i, history) for i in inputs]
        size = self.settings.calculation_batch_size
        chunks = [employees[i : i + size] for i in range(0, len(employees), size)]
        semaphore = asyncio.Semaphore(self.settings.calculation_max_workers)

        async def run_chunk(chunk: list[EmployeeInput]) -> list[LineCalculation]:
            async with semaphore:
                return await asyncio.to_thread(engine.calculate_batch, chunk)

        results = await asyncio.gather(*(run_chunk(c) for c in chunks))
        return [line for chunk in results for line in chunk]

    @staticmethod
    def _employee_input(row: PayRunInput, history: dict) -> EmployeeInput:
        return EmployeeInput(
            snapshot=row.snapshot,
            unpaid_leave_days=row.unpaid_leave_days,
            history=history[row.employee_id],
            is_included=row.is_included,
            exclude_reason=row.exclude_reason,
        )

    async def submit_for_review(self, pay_run_id: UUID, actor: str) -> PayRun:
        """calculated → review. No recomputation."""
        return await self._with_retry(
            self._simple_transition, pay_run_id, PayRunStatus.REVIEW, actor
        )

    async def request_approval(self, pay_run_id: UUID, actor: str) -> PayRun:
        """review → pending_approval. Blocked by unresolved error exceptions."""
        return await self._with_retry(
            self._simple_transition, pay_run_id, PayRunStatus.PENDING_APPROVAL, actor
        )

    async def approve(self, pay_run_id: UUID, actor: str) -> PayRun:
        """pending_approval → approved. Records the approver; lines freeze."""
        return await self._with_retry(
            self._simple_transition, pay_run_id, PayRunStatus.APPROVED, actor
        )

    async def close(self, pay_run_id: UUID, actor: str) -> PayRun:
        """finalised → closed."""
        return await self._with_retry(
            self._simple_transition, pay_run_id, PayRunStatus.CLOSED, actor
        )

    async def _simple_transition(
        self, pay_run_id: UUID, to_status: PayRunStatus, actor: str
    ) -> PayRun:
        pay_run = await self.get_pay_run(pay_run_id)
        PayRunStateMachine.validate_transition(pay_run.status, to_status)
        if PayRunStateMachine.requires_clean_exceptions(pay_run.status):
            await self._check_blocking_exceptions(pay_run, to_status)

        async with self._unit_of_work():
            await self._compare_and_set(pay_run, to_status, actor)
            self._record_audit(pay_run_id, to_status.value, actor, {"from": pay_run.status})
        return await self._committed(pay_run)

    async def _check_blocking_exceptions(self, pay_run: PayRun, to_status: str) -> None:
        result = await self.session.execute(
            select(PayRunLine)
            .where(PayRunLine.pay_run_id == pay_run.pay_run_id, PayRunLine.is_included.is_(True))
            .order_by(PayRunLine.employee_number)
            .execution_options(populate_existing=True)
        )
        blocking = [
            BlockingLine(
                pay_run_line_id=line.pay_run_line_id,
                employee_number=line.employee_number,
                employee_name=line.employee_name,
                exception_types=[e.exception_type for e in line.blocking_exceptions],
            )
            for line in result.scalars().all()
            if line.blocking_exceptions
        ]
        if blocking:
            logger.warning(
                "Pay run %s blocked from %s: %d line(s) with unresolved errors",
                pay_run.pay_run_id,
                _value(to_status),
                len(blocking),
            )
            raise BlockingExceptionsError(pay_run.status, _value(to_status), blocking)

    async def finalise(self, pay_run_id: UUID, actor: str) -> PayRun:
        """approved → finalising → finalised.

        Requests each output not yet requested. If a request fails the run
        stays ``finalising`` with the flags of the outputs that succeeded,
        and finalise can be called again.
        """
        pay_run = await self.get_pay_run(pay_run_id)
        if pay_run.status != PayRunStatus.FINALISING:
            pay_run = await self._with_retry(
                self._simple_transition, pay_run_id, PayRunStatus.FINALISING, actor
            )

        for output in OutputKind:
            if getattr(pay_run, output.flag):
                continue
            try:
                await self.collaborators.outputs.request(self.tenant_id, pay_run_id, output)
            except Exception as e:
                logger.exception("Requesting %s failed for pay run %s", output.value, pay_run_id)
                raise OutputRequestError(output.value, str(e)) from e
            async with self._unit_of_work():
                await self._compare_and_set(
                    pay_run, PayRunStatus.FINALISING, None, **{output.flag: True}
                )
                self._record_audit(pay_run_id, f"{output.value}_requested", actor)
            pay_run = await self._committed(pay_run)

        async with self._unit_of_work():
            await self._compare_and_set(pay_run, PayRunStatus.FINALISED, actor)
            self._record_audit(pay_run_id, "finalised", actor)
        pay_run = await self._committed(pay_run)
        logger.info("Finalised pay run %s by %s", pay_run_id, actor)
        return pay_run

    # ===== Backward operations =====

    async def reopen(self, pay_run_id: UUID, actor: str, reason: str) -> PayRun:
        """approved / finalising / finalised → calculated.

        Clears approval and finalisation stamps and output flags, and tells
        the output generators their artefacts are stale.
        """
        if not reason or not reason.strip():
            raise InputValidationError("reason", "is required to reopen a pay run")
        return await self._with_retry(self._reopen, pay_run_id, actor, reason.strip())

    async def _reopen(self, pay_run_id: UUID, actor: str, reason: str) -> PayRun:
        pay_run = await self.get_pay_run(pay_run_id)
        if not PayRunStateMachine.can_reopen(pay_run.status):
            raise StateConflictError(
                pay_run.status,
                PayRunStatus.CALCULATED.value,
                "only approved, finalising or finalised runs can be reopened",
            )

        later = await self._later_settled_runs(pay_run)
        if later:
            logger.warning(
                "Reopening pay run %s with %d later settled run(s) in %s",
                pay_run_id,
                len(later),
                pay_run.tax_year,
            )

        now = utcnow()
        async with self._unit_of_work():
            await self._compare_and_set(
                pay_run,
                PayRunStatus.CALCULATED,
                None,
                reopened_by=actor,
                reopened_at=now,
                reopen_reason=reason,
                reopen_count=PayRun.reopen_count + 1,
                approved_by=None,
                approved_at=None,
                finalised_by=None,
                finalised_at=None,
                payslips_generated=False,
                bank_file_generated=False,
                journal_generated=False,
            )
            try:
                await self.collaborators.outputs.invalidate(self.tenant_id, pay_run_id)
            except Exception as e:
                raise OutputRequestError("invalidate", str(e)) from e
            self._record_audit(
                pay_run_id,
                "reopened",
                actor,
                {
                    "from": pay_run.status,
                    "reason": reason,
                    "later_settled_runs": [
                        {"pay_run_id": str(r.pay_run_id), "period_number": r.period_number}
                        for r in later
                    ],
                },
            )
        pay_run = await self._committed(pay_run)
        logger.info("Reopened pay run %s by %s: %s", pay_run_id, actor, reason)
        return pay_run

    async def _later_settled_runs(self, pay_run: PayRun) -> list[PayRun]:
        result = await self.session.execute(
            select(PayRun).where(
                PayRun.tenant_id == self.tenant_id,
                PayRun.frequency == pay_run.frequency,
                PayRun.tax_year == pay_run.tax_year,
                PayRun.period_number > pay_run.period_number,
                PayRun.status.in_(SETTLED_STATUSES),
            )
        )
        return list(result.scalars().all())

    async def unlock_inputs(
        self, pay_run_id: UUID, actor: str, reason: str | None = None
    ) -> PayRun:
        """inputs_locked / calculating / calculated → draft.

        Discards frozen inputs, lines and totals.
        """
        return await self._with_retry(self._unlock_inputs, pay_run_id, actor, reason)

    async def _unlock_inputs(self, pay_run_id: UUID, actor: str, reason: str | None) -> PayRun:
        pay_run = await self.get_pay_run(pay_run_id)
        if not PayRunStateMachine.can_unlock(pay_run.status):
            raise StateConflictError(
                pay_run.status,
                PayRunStatus.DRAFT.value,
                "inputs can only be unlocked before review",
            )

        async with self._unit_of_work():
            lines = await self.commit_service.delete_lines(pay_run_id)
            inputs = await self.locking_service.release_inputs(pay_run_id)
            adjustments = await self.adjustment_service.revert_applied(pay_run_id)
            await self._compare_and_set(
                pay_run,
                PayRunStatus.DRAFT,
                None,
                inputs_locked_by=None,
                inputs_locked_at=None,
                calculated_by=None,
                calculated_at=None,
                element_snapshot_json=None,
                employee_count=0,
                processed_count=0,
                exception_count=0,
                **_zero_totals(),
            )
            self._record_audit(
                pay_run_id,
                "inputs_unlocked",
                actor,
                {
                    "from": pay_run.status,
                    "reason": reason,
                    "lines": lines,
                    "inputs": inputs,
                    "adjustments_reverted": adjustments,
                },
            )
        return await self._committed(pay_run)

    # ===== Line edits =====

    async def exclude_line(
        self, pay_run_id: UUID, pay_run_line_id: UUID, actor: str, reason: str
    ) -> PayRunLine:
        """Exclude a line from the run's totals. A reason is required."""
        if not reason or not reason.strip():
            raise InputValidationError("reason", "is required to exclude a line")
        return await self._with_retry(
            self._set_line_inclusion, pay_run_id, pay_run_line_id, actor, False, reason.strip()
        )

    async def include_line(self, pay_run_id: UUID, pay_run_line_id: UUID, actor: str) -> PayRunLine:
        return await self._with_retry(
            self._set_line_inclusion, pay_run_id, pay_run_line_id, actor, True, None
        )

    async def _set_line_inclusion(
        self,
        pay_run_id: UUID,
        pay_run_line_id: UUID,
        actor: str,
        include: bool,
        reason: str | None,
    ) -> PayRunLine:
        pay_run = await self.get_pay_run(pay_run_id)
        action = "include_line" if include else "exclude_line"
        if not PayRunStateMachine.can_edit_lines(pay_run.status):
            raise StateConflictError(pay_run.status, pay_run.status, f"cannot {action} now")

        line = await self.get_line(pay_run_id, pay_run_line_id)
        if line.is_included == include:
            return line

        async with self._unit_of_work():
            # Excluded lines carry the prior YTD forward unchanged.
            sign = 1 if include else -1
            for ytd_field, period_field in YTD_FIELDS:
                setattr(
                    line, ytd_field, getattr(line, ytd_field) + sign * getattr(line, period_field)
                )
            line.is_included = include
            line.exclude_reason = reason
            line.calculation_hash = LineItemBuilder.compute_line_hash(
                CommitService.to_calculation(line)
            )

            frozen = await self.locking_service.get_input(pay_run_id, line.employee_id)
            if frozen is not None:
                frozen.is_included = include
                frozen.exclude_reason = reason

            await self.session.flush()
            totals = await self.commit_service.aggregate_totals(pay_run_id)
            await self._compare_and_set(
                pay_run, pay_run.status, None, **CommitService.totals_values(totals)
            )
            self._record_audit(
                pay_run_id,
                "line_included" if include else "line_excluded",
                actor,
                {"employee_number": line.employee_number, "reason": reason},
            )
        logger.info(
            "%s line %s on pay run %s by %s",
            "Included" if include else "Excluded",
            line.employee_number,
            pay_run_id,
            actor,
        )
        return await self.get_line(pay_run_id, pay_run_line_id)

    async def resolve_exception(
        self,
        pay_run_id: UUID,
        pay_run_exception_id: UUID,
        actor: str,
        resolution: str,
    ) -> PayRunException:
        """Mark an exception resolved, recording actor, time and note."""
        if not resolution or not resolution.strip():
            raise InputValidationError("resolution", "is required to resolve an exception")
        return await self._with_retry(
            self._resolve_exception, pay_run_id, pay_run_exception_id, actor, resolution.strip()
        )

    async def _resolve_exception(
        self,
        pay_run_id: UUID,
        pay_run_exception_id: UUID,
        actor: str,
        resolution: str,
    ) -> PayRunException:
        pay_run = await self.get_pay_run(pay_run_id)
        if not PayRunStateMachine.can_edit_lines(pay_run.status):
            raise StateConflictError(
                pay_run.status, pay_run.status, "cannot resolve exceptions now"
            )

        result = await self.session.execute(
            select(PayRunException)
            .where(
                PayRunException.pay_run_id == pay_run_id,
                PayRunException.pay_run_exception_id == pay_run_exception_id,
            )
            .execution_options(populate_existing=True)
        )
        exception = result.scalar_one_or_none()
        if exception is None:
            raise PayRunNotFoundError("Exception", pay_run_exception_id)
        if exception.is_resolved:
            return exception

        async with self._unit_of_work():
            exception.is_resolved = True
            exception.resolved_by = actor
            exception.resolved_at = utcnow()
            exception.resolution = resolution
            await self.session.flush()
            totals = await self.commit_service.aggregate_totals(pay_run_id)
            await self._compare_and_set(
                pay_run, pay_run.status, None, exception_count=totals.exception_count
            )
            self._record_audit(
                pay_run_id,
                "exception_resolved",
                actor,
                {
                    "exception_id": str(pay_run_exception_id),
                    "exception_type": exception.exception_type,
                    "resolution": resolution,
                },
            )
        logger.info(
            "Resolved %s exception on pay run %s by %s",
            exception.exception_type,
            pay_run_id,
            actor,
        )
        return exception

    # ===== Plumbing =====

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[None]:
        """Commit on success, roll back on any failure."""
        try:
            yield
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def _with_retry(self, operation: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run an operation, retrying when a concurrent writer got there first."""
        attempts = self.settings.transition_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await operation(*args)
            except ConcurrentModificationError as e:
                if attempt == attempts:
                    logger.warning("Giving up after %d attempt(s): %s", attempt, e)
                    raise
                logger.warning(
                    "Retrying after concurrent modification (attempt %d): %s", attempt, e
                )
        raise AssertionError("unreachable")

    async def _compare_and_set(
        self,
        pay_run: PayRun,
        to_status: str,
        actor: str | None,
        **values: Any,
    ) -> None:
        """Write the new status if nobody else changed the run since it was read.

        Raises:
            ConcurrentModificationError: If status or version moved on.
        """
        to_value = _value(to_status)
        prefix = PayRunStateMachine.stamp_prefix(to_value)
        if prefix and actor is not None and to_value != pay_run.status:
            values.setdefault(f"{prefix}_by", actor)
            values.setdefault(f"{prefix}_at", utcnow())

        result = await self.session.execute(
            update(PayRun)
            .where(
                PayRun.pay_run_id == pay_run.pay_run_id,
                PayRun.status == pay_run.status,
                PayRun.version == pay_run.version,
            )
            .values(status=to_value, version=PayRun.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError(
                pay_run.status, to_value, "pay run was modified concurrently"
            )
        if to_value != pay_run.status:
            logger.info(
                "Pay run %s: %s -> %s", pay_run.pay_run_id, pay_run.status, to_value
            )

    async def _committed(self, pay_run: PayRun) -> PayRun:
        await self.session.refresh(pay_run)
        return pay_run

    def _record_audit(
        self,
        pay_run_id: UUID,
        action: str,
        actor: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            AuditEvent(
                tenant_id=self.tenant_id,
                actor_id=actor,
                entity_type="pay_run",
                entity_id=pay_run_id,
                action=action,
                details_json=details,
            )
        )


def _value(status: str) -> str:
    return status.value if isinstance(status, PayRunStatus) else status


def _zero_totals() -> dict[str, Any]:
    zero = Decimal("0.00")
    return {
        "total_gross": zero,
        "total_deductions": zero,
        "total_employer_contributions": zero,
        "total_net": zero,
        "total_paye": zero,
        "total_uif_employee": zero,
        "total_uif_employer": zero,
        "total_sdl": zero,
    }
