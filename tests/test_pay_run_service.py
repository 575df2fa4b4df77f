"""Integration tests for the pay run lifecycle against a real database.

Uses an on-disk SQLite database per test; calculation runs on worker
threads exactly as it does in production.
"""

from decimal import Decimal

import pytest

from conftest import ACTOR, APPROVER, OTHER_TENANT_ID, TENANT_ID, make_employee
from payrun_engine.calculators.types import DetectedException, ElementAssignment
from payrun_engine.collaborators import OutputKind
from payrun_engine.errors import (
    BlockingExceptionsError,
    ConcurrentModificationError,
    DuplicatePayRunError,
    InputValidationError,
    OutputRequestError,
    PayElementError,
    PayRunNotFoundError,
    StateConflictError,
    TaxPolicyNotFoundError,
)
from payrun_engine.services.pay_run_service import PayRunService
from payrun_engine.services.state_machine import PayRunStatus

pytestmark = pytest.mark.asyncio

TAX_YEAR = "2025/2026"


async def calculated_run(service: PayRunService, period_number: int = 1):
    run = await service.create_pay_run("monthly", period_number, TAX_YEAR, ACTOR)
    await service.lock_inputs(run.pay_run_id, ACTOR)
    return await service.calculate(run.pay_run_id, ACTOR)


async def approved_run(service: PayRunService, period_number: int = 1):
    run = await calculated_run(service, period_number)
    await service.submit_for_review(run.pay_run_id, ACTOR)
    await service.request_approval(run.pay_run_id, ACTOR)
    return await service.approve(run.pay_run_id, APPROVER)


async def finalised_run(service: PayRunService, period_number: int = 1):
    run = await approved_run(service, period_number)
    return await service.finalise(run.pay_run_id, ACTOR)


def line_for(lines, employee_number):
    return next(line for line in lines if line.employee_number == employee_number)


class AlwaysOutrunService(PayRunService):
    """Loses every compare-and-set, as if another writer always got there first."""

    async def _compare_and_set(self, pay_run, to_status, actor, **values):
        raise ConcurrentModificationError(
            pay_run.status, str(to_status), "pay run was modified concurrently"
        )


class TestCreatePayRun:
    async def test_creates_draft_with_derived_dates(self, service):
        run = await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR, notes="March")

        assert run.status == PayRunStatus.DRAFT
        assert run.version == 1
        assert str(run.period_start) == "2025-03-01"
        assert str(run.period_end) == "2025-03-31"
        assert str(run.pay_date) == "2025-03-25"
        assert run.created_by == ACTOR

    async def test_duplicate_period_rejected(self, service):
        await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)

        with pytest.raises(DuplicatePayRunError):
            await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)

    async def test_same_period_other_frequency_allowed(self, service):
        await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)
        run = await service.create_pay_run("weekly", 1, TAX_YEAR, ACTOR)
        assert run.frequency == "weekly"

    async def test_unknown_tax_year(self, service):
        with pytest.raises(TaxPolicyNotFoundError):
            await service.create_pay_run("monthly", 1, "2030/2031", ACTOR)

    async def test_tenant_isolation(self, service, service_factory):
        run = await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)
        other = service_factory(OTHER_TENANT_ID)

        with pytest.raises(PayRunNotFoundError):
            await other.get_pay_run(run.pay_run_id)
        assert await other.list_pay_runs() == []

    async def test_list_filters(self, service):
        await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)
        await service.create_pay_run("monthly", 2, TAX_YEAR, ACTOR)
        await service.create_pay_run("weekly", 1, TAX_YEAR, ACTOR)

        monthly = await service.list_pay_runs(frequency="monthly")
        assert [r.period_number for r in monthly] == [2, 1]
        assert len(await service.list_pay_runs(status="draft", tax_year=TAX_YEAR)) == 3


class TestLockInputs:
    async def test_freezes_roster(self, service):
        run = await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)
        run = await service.lock_inputs(run.pay_run_id, ACTOR)

        assert run.status == PayRunStatus.INPUTS_LOCKED
        assert run.employee_count == 2
        assert run.inputs_locked_by == ACTOR
        assert run.inputs_locked_at is not None
        assert [e["code"] for e in run.element_snapshot_json][0] == "BASIC"

    async def test_empty_roster_rejected(self, service, directory):
        directory.set_employees(TENANT_ID, [])
        run = await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)
        run_id = run.pay_run_id

        with pytest.raises(InputValidationError) as exc_info:
            await service.lock_inputs(run_id, ACTOR)

        assert exc_info.value.field == "employees"
        assert (await service.get_pay_run(run_id)).status == PayRunStatus.DRAFT

    async def test_invalid_assignment_names_employee(self, service, directory):
        directory.set_employees(
            TENANT_ID,
            [
                make_employee("E001"),
                make_employee("E007", assignments=(ElementAssignment("BONUS"),)),
            ],
        )
        run = await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)
        run_id = run.pay_run_id

        with pytest.raises(PayElementError) as exc_info:
            await service.lock_inputs(run_id, ACTOR)

        assert exc_info.value.employee_number == "E007"
        run = await service.get_pay_run(run_id)
        assert run.status == PayRunStatus.DRAFT
        assert run.employee_count == 0

    async def test_calculate_from_draft_rejected(self, service):
        run = await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)

        with pytest.raises(StateConflictError) as exc_info:
            await service.calculate(run.pay_run_id, ACTOR)

        assert exc_info.value.reason == "inputs must be locked before calculating"


class TestCalculate:
    async def test_totals(self, service):
        run = await calculated_run(service)

        assert run.status == PayRunStatus.CALCULATED
        assert run.calculated_by == ACTOR
        assert run.employee_count == 2
        assert run.processed_count == 2
        assert run.exception_count == 0
        assert run.total_gross == Decimal("55000.00")
        assert run.total_deductions == Decimal("8826.65")
        assert run.total_net == Decimal("46173.35")
        assert run.total_uif_employee == Decimal("354.24")
        assert run.total_uif_employer == Decimal("354.24")
        assert run.total_sdl == Decimal("550.00")
        assert run.total_net == run.total_gross - run.total_deductions

    async def test_lines_and_items(self, service):
        run = await calculated_run(service)
        lines = await service.get_lines(run.pay_run_id)

        assert [line.employee_number for line in lines] == ["E001", "E002"]
        line = lines[0]
        assert line.net_pay == Decimal("28533.55")
        assert line.ytd_gross == Decimal("35000.00")
        assert [i.element_code for i in line.items] == ["BASIC", "PAYE", "UIF_EE", "UIF_ER", "SDL"]
        assert line.masked_account_number == "****3456"

    async def test_recalculation_is_idempotent(self, service):
        run = await calculated_run(service)
        first = [line.calculation_hash for line in await service.get_lines(run.pay_run_id)]

        again = await service.calculate(run.pay_run_id, ACTOR)
        second = [line.calculation_hash for line in await service.get_lines(run.pay_run_id)]

        assert first == second
        assert again.total_net == Decimal("46173.35")
        assert again.processed_count == 2

    async def test_large_roster_in_chunks(self, service, directory):
        directory.set_employees(
            TENANT_ID, [make_employee(f"E{n:03d}", "20000.00") for n in range(1, 8)]
        )
        run = await calculated_run(service)

        assert run.employee_count == 7
        assert run.total_net == Decimal("17639.80") * 7

    async def test_failed_calculation_keeps_previous_lines(self, service, service_factory):
        run = await calculated_run(service)

        def broken_rule(ctx) -> DetectedException | None:
            raise RuntimeError("rule failed")

        run_id = run.pay_run_id
        broken = service_factory(exception_rules=[broken_rule])
        with pytest.raises(RuntimeError):
            await broken.calculate(run_id, ACTOR)

        run = await service.get_pay_run(run_id)
        assert run.status == PayRunStatus.CALCULATING
        assert len(await service.get_lines(run.pay_run_id)) == 2

        # Recalculating recovers the run
        run = await service.calculate(run.pay_run_id, ACTOR)
        assert run.status == PayRunStatus.CALCULATED

    async def test_unpaid_leave_from_leave_service(self, service, leave):
        leave.days["emp-E002"] = Decimal("2")
        run = await calculated_run(service)
        line = line_for(await service.get_lines(run.pay_run_id), "E002")

        # 20 000 / 21.67 a day
        assert line.gross_earnings == Decimal("18154.13")


class TestReviewGates:
    async def test_blocking_exceptions_stop_approval_request(self, service, directory):
        directory.set_employees(
            TENANT_ID,
            [
                make_employee("E001"),
                make_employee("E002", "20000.00", name="Sipho Dlamini", with_bank=False),
            ],
        )
        run = await calculated_run(service)
        assert run.exception_count == 1

        # Entering review is not gated
        await service.submit_for_review(run.pay_run_id, ACTOR)

        with pytest.raises(BlockingExceptionsError) as exc_info:
            await service.request_approval(run.pay_run_id, ACTOR)

        [blocking] = exc_info.value.lines
        assert blocking.employee_number == "E002"
        assert blocking.employee_name == "Sipho Dlamini"
        assert blocking.exception_types == ["missing_bank_details"]
        assert (await service.get_pay_run(run.pay_run_id)).status == PayRunStatus.REVIEW

    async def test_resolving_unblocks(self, service, directory):
        directory.set_employees(TENANT_ID, [make_employee("E002", with_bank=False)])
        run = await calculated_run(service)
        await service.submit_for_review(run.pay_run_id, ACTOR)
        [line] = await service.get_lines(run.pay_run_id)

        resolved = await service.resolve_exception(
            run.pay_run_id, line.exceptions[0].pay_run_exception_id, ACTOR, "Paid by cheque"
        )
        assert resolved.is_resolved is True
        assert resolved.resolved_by == ACTOR

        run = await service.request_approval(run.pay_run_id, ACTOR)
        assert run.status == PayRunStatus.PENDING_APPROVAL
        assert run.exception_count == 0

    async def test_resolution_note_required(self, service):
        run = await calculated_run(service)

        with pytest.raises(InputValidationError):
            await service.resolve_exception(run.pay_run_id, run.pay_run_id, ACTOR, " ")

    async def test_excluding_blocked_line_unblocks(self, service, directory):
        directory.set_employees(
            TENANT_ID,
            [
                make_employee("E001"),
                make_employee(
                    "E003",
                    "1000.00",
                    assignments=(ElementAssignment("LOAN", amount=Decimal("5000")),),
                ),
            ],
        )
        run = await calculated_run(service)
        await service.submit_for_review(run.pay_run_id, ACTOR)
        line = line_for(await service.get_lines(run.pay_run_id), "E003")
        assert line.net_pay == Decimal("-4010.00")

        await service.exclude_line(
            run.pay_run_id, line.pay_run_line_id, ACTOR, "Loan to be rescheduled"
        )
        run = await service.request_approval(run.pay_run_id, ACTOR)

        assert run.status == PayRunStatus.PENDING_APPROVAL
        assert run.total_net == Decimal("28533.55")

    async def test_approve_records_approver(self, service):
        run = await approved_run(service)

        assert run.status == PayRunStatus.APPROVED
        assert run.approved_by == APPROVER
        assert run.approved_at is not None

    async def test_no_recalculation_after_approval(self, service):
        run = await approved_run(service)

        with pytest.raises(StateConflictError):
            await service.calculate(run.pay_run_id, ACTOR)


class TestLineEdits:
    async def test_exclude_and_include(self, service):
        run = await calculated_run(service)
        line = line_for(await service.get_lines(run.pay_run_id), "E002")

        excluded = await service.exclude_line(
            run.pay_run_id, line.pay_run_line_id, ACTOR, "Resigned before pay date"
        )
        assert excluded.is_included is False
        assert excluded.exclude_reason == "Resigned before pay date"
        assert excluded.ytd_gross == Decimal("0.00")

        run = await service.get_pay_run(run.pay_run_id)
        assert run.employee_count == 1
        assert run.processed_count == 2
        assert run.total_net == Decimal("28533.55")

        included = await service.include_line(run.pay_run_id, line.pay_run_line_id, ACTOR)
        assert included.ytd_gross == Decimal("20000.00")
        run = await service.get_pay_run(run.pay_run_id)
        assert run.total_net == Decimal("46173.35")

    async def test_exclusion_survives_recalculation(self, service):
        run = await calculated_run(service)
        line = line_for(await service.get_lines(run.pay_run_id), "E002")
        await service.exclude_line(run.pay_run_id, line.pay_run_line_id, ACTOR, "On hold")

        run = await service.calculate(run.pay_run_id, ACTOR)
        line = line_for(await service.get_lines(run.pay_run_id), "E002")

        assert line.is_included is False
        assert line.exclude_reason == "On hold"
        assert run.total_net == Decimal("28533.55")

    async def test_exclusion_refreshes_line_hash(self, service):
        run = await calculated_run(service)
        line = line_for(await service.get_lines(run.pay_run_id), "E001")
        line_id, original_hash = line.pay_run_line_id, line.calculation_hash

        excluded = await service.exclude_line(run.pay_run_id, line_id, ACTOR, "On hold")
        excluded_hash = excluded.calculation_hash
        assert excluded_hash != original_hash

        await service.calculate(run.pay_run_id, ACTOR)
        recalculated = line_for(await service.get_lines(run.pay_run_id), "E001")
        assert recalculated.calculation_hash == excluded_hash

        included = await service.include_line(
            run.pay_run_id, recalculated.pay_run_line_id, ACTOR
        )
        assert included.calculation_hash == original_hash

    async def test_exclude_requires_reason(self, service):
        run = await calculated_run(service)
        line = (await service.get_lines(run.pay_run_id))[0]

        with pytest.raises(InputValidationError) as exc_info:
            await service.exclude_line(run.pay_run_id, line.pay_run_line_id, ACTOR, "")
        assert exc_info.value.field == "reason"

    async def test_lines_frozen_after_approval(self, service):
        run = await approved_run(service)
        line = (await service.get_lines(run.pay_run_id))[0]

        with pytest.raises(StateConflictError):
            await service.exclude_line(run.pay_run_id, line.pay_run_line_id, ACTOR, "Too late")


class TestFinalise:
    async def test_requests_every_output(self, service, outputs):
        run = await finalised_run(service)

        assert run.status == PayRunStatus.FINALISED
        assert run.finalised_by == ACTOR
        assert run.payslips_generated and run.bank_file_generated and run.journal_generated
        assert [kind for _, kind in outputs.requests] == list(OutputKind)

    async def test_failed_output_can_be_retried(self, service, outputs):
        run = await approved_run(service)
        outputs.fail_on = {OutputKind.BANK_FILE}
        run_id = run.pay_run_id

        with pytest.raises(OutputRequestError):
            await service.finalise(run_id, ACTOR)

        run = await service.get_pay_run(run_id)
        assert run.status == PayRunStatus.FINALISING
        assert run.payslips_generated is True
        assert run.bank_file_generated is False

        outputs.fail_on = set()
        run = await service.finalise(run.pay_run_id, ACTOR)

        assert run.status == PayRunStatus.FINALISED
        # Payslips were not requested a second time
        assert [kind for _, kind in outputs.requests] == list(OutputKind)

    async def test_close(self, service):
        run = await finalised_run(service)
        run = await service.close(run.pay_run_id, ACTOR)

        assert run.status == PayRunStatus.CLOSED
        assert run.closed_by == ACTOR
        with pytest.raises(StateConflictError):
            await service.advance(run.pay_run_id, ACTOR)


class TestReopen:
    async def test_reason_required(self, service):
        run = await approved_run(service)

        with pytest.raises(InputValidationError):
            await service.reopen(run.pay_run_id, ACTOR, "  ")

    async def test_lost_race_leaves_outputs_valid(
        self, service, session, collaborators, tax_policies, settings, outputs
    ):
        run = await finalised_run(service)
        run_id = run.pay_run_id
        outrun = AlwaysOutrunService(session, TENANT_ID, collaborators, tax_policies, settings)

        with pytest.raises(ConcurrentModificationError):
            await outrun.reopen(run_id, ACTOR, "Overtime was omitted")

        assert outputs.invalidations == []
        run = await service.get_pay_run(run_id)
        assert run.status == PayRunStatus.FINALISED
        assert run.payslips_generated is True

    async def test_reopen_finalised_run(self, service, outputs):
        run = await finalised_run(service)
        run = await service.reopen(run.pay_run_id, ACTOR, "Overtime was omitted")

        assert run.status == PayRunStatus.CALCULATED
        assert run.reopened_by == ACTOR
        assert run.reopen_reason == "Overtime was omitted"
        assert run.reopen_count == 1
        assert run.approved_by is None
        assert run.finalised_by is None
        assert not (run.payslips_generated or run.bank_file_generated or run.journal_generated)
        assert outputs.invalidations == [run.pay_run_id]

        # The run can go through review again
        await service.submit_for_review(run.pay_run_id, ACTOR)

    async def test_reopen_not_allowed_before_approval(self, service):
        run = await calculated_run(service)

        with pytest.raises(StateConflictError):
            await service.reopen(run.pay_run_id, ACTOR, "Mistake")

    async def test_reopen_records_later_settled_runs(self, service):
        first = await finalised_run(service, 1)
        await finalised_run(service, 2)

        await service.reopen(first.pay_run_id, ACTOR, "Back pay")
        events = await service.get_audit_events(first.pay_run_id)
        reopened = next(e for e in events if e.action == "reopened")

        assert [r["period_number"] for r in reopened.details_json["later_settled_runs"]] == [2]


class TestUnlockAndDelete:
    async def test_unlock_discards_lines(self, service):
        run = await calculated_run(service)
        run = await service.unlock_inputs(run.pay_run_id, ACTOR, "Roster changed")

        assert run.status == PayRunStatus.DRAFT
        assert run.employee_count == 0
        assert run.total_net == Decimal("0.00")
        assert run.calculated_by is None
        assert run.element_snapshot_json is None
        assert await service.get_lines(run.pay_run_id) == []

        # Inputs can be locked again
        run = await service.lock_inputs(run.pay_run_id, ACTOR)
        assert run.status == PayRunStatus.INPUTS_LOCKED

    async def test_unlock_not_allowed_in_review(self, service):
        run = await calculated_run(service)
        await service.submit_for_review(run.pay_run_id, ACTOR)

        with pytest.raises(StateConflictError):
            await service.unlock_inputs(run.pay_run_id, ACTOR)

    async def test_delete_before_approval(self, service):
        run = await calculated_run(service)
        await service.delete_pay_run(run.pay_run_id, ACTOR)

        with pytest.raises(PayRunNotFoundError):
            await service.get_pay_run(run.pay_run_id)

    async def test_delete_after_approval_rejected(self, service):
        run = await approved_run(service)

        with pytest.raises(StateConflictError):
            await service.delete_pay_run(run.pay_run_id, ACTOR)


class TestTransitions:
    async def test_out_of_order_transition(self, service):
        run = await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)

        with pytest.raises(StateConflictError) as exc_info:
            await service.transition(run.pay_run_id, "approved", ACTOR)

        assert exc_info.value.from_status == "draft"
        assert exc_info.value.to_status == "approved"

    async def test_advance_through_lifecycle(self, service):
        run = await service.create_pay_run("monthly", 1, TAX_YEAR, ACTOR)
        seen = []
        while run.status != PayRunStatus.CLOSED:
            run = await service.advance(run.pay_run_id, ACTOR)
            seen.append(run.status)

        # Two-phase steps run to completion
        assert seen == [
            "inputs_locked",
            "calculated",
            "review",
            "pending_approval",
            "approved",
            "finalised",
            "closed",
        ]

    async def test_audit_trail(self, service):
        run = await approved_run(service)
        actions = [e.action for e in await service.get_audit_events(run.pay_run_id)]

        assert actions == [
            "created",
            "inputs_locked",
            "calculated",
            "review",
            "pending_approval",
            "approved",
        ]


class TestConcurrency:
    async def test_stale_write_rejected(
        self, service, session_factory, collaborators, tax_policies, settings
    ):
        run = await calculated_run(service)

        async with session_factory() as other_session:
            other = PayRunService(other_session, TENANT_ID, collaborators, tax_policies, settings)
            stale = await other.get_pay_run(run.pay_run_id)

            await service.submit_for_review(run.pay_run_id, ACTOR)

            with pytest.raises(ConcurrentModificationError):
                await other._compare_and_set(stale, PayRunStatus.REVIEW, ACTOR)
            await other_session.rollback()

            # A retried operation re-reads and sees the new status
            with pytest.raises(StateConflictError) as exc_info:
                await other.submit_for_review(run.pay_run_id, ACTOR)
            assert exc_info.value.from_status == "review"


class TestYearToDate:
    async def test_ytd_accumulates_across_settled_periods(self, service):
        for period_number in (1, 2):
            await finalised_run(service, period_number)
        run = await calculated_run(service, 3)

        lines = await service.get_lines(run.pay_run_id)
        e001 = line_for(lines, "E001")
        assert e001.ytd_gross == Decimal("105000.00")
        assert e001.ytd_paye == Decimal("18867.99")
        assert e001.ytd_net == e001.net_pay * 3

    async def test_unsettled_runs_do_not_count(self, service):
        await approved_run(service, 1)
        run = await calculated_run(service, 2)

        e001 = line_for(await service.get_lines(run.pay_run_id), "E001")
        assert e001.ytd_gross == Decimal("35000.00")

    async def test_salary_change_flagged_against_last_run(self, service, directory):
        await finalised_run(service, 1)
        directory.set_employees(
            TENANT_ID, [make_employee("E001", "38000.00"), make_employee("E002", "20000.00")]
        )
        run = await calculated_run(service, 2)

        e001 = line_for(await service.get_lines(run.pay_run_id), "E001")
        assert {e.exception_type for e in e001.exceptions} == {"salary_change"}
        # Warnings never block
        await service.submit_for_review(run.pay_run_id, ACTOR)
        await service.request_approval(run.pay_run_id, ACTOR)
