"""Pay run API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payrun_engine.api.dependencies import ActorId, PayRuns
from payrun_engine.api.schemas import (
    AuditEventResponse,
    ErrorResponse,
    ExceptionResponse,
    PayRunCreate,
    PayRunLineListResponse,
    PayRunLineResponse,
    PayRunListResponse,
    PayRunResponse,
    ReasonRequest,
    ResolveExceptionRequest,
    TransitionRequest,
    UnlockRequest,
)

router = APIRouter(prefix="/pay-runs", tags=["pay-runs"])

CONFLICT = {404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


# ============================================================================
# Pay Run CRUD
# ============================================================================


@router.post(
    "",
    response_model=PayRunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_pay_run(
    service: PayRuns,
    actor: ActorId,
    payload: PayRunCreate,
) -> PayRunResponse:
    """Create a new pay run in draft status."""
    pay_run = await service.create_pay_run(
        payload.frequency,
        payload.period_number,
        payload.tax_year,
        actor,
        notes=payload.notes,
    )
    return PayRunResponse.model_validate(pay_run)


@router.get("", response_model=PayRunListResponse)
async def list_pay_runs(
    service: PayRuns,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    tax_year: str | None = None,
    frequency: str | None = None,
) -> PayRunListResponse:
    """List pay runs for a tenant with optional filters."""
    pay_runs = await service.list_pay_runs(
        status=status_filter, tax_year=tax_year, frequency=frequency
    )
    return PayRunListResponse(
        items=[PayRunResponse.model_validate(pr) for pr in pay_runs],
        total=len(pay_runs),
    )


@router.get(
    "/{pay_run_id}",
    response_model=PayRunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_pay_run(
    service: PayRuns,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Get a specific pay run by ID."""
    return PayRunResponse.model_validate(await service.get_pay_run(pay_run_id))


@router.delete(
    "/{pay_run_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=CONFLICT,
)
async def delete_pay_run(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> None:
    """Delete a pay run that has not been approved."""
    await service.delete_pay_run(pay_run_id, actor)


@router.get(
    "/{pay_run_id}/lines",
    response_model=PayRunLineListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_lines(
    service: PayRuns,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunLineListResponse:
    """List the computed lines of a pay run."""
    lines = await service.get_lines(pay_run_id)
    return PayRunLineListResponse(
        items=[PayRunLineResponse.model_validate(line) for line in lines],
        total=len(lines),
    )


@router.get(
    "/{pay_run_id}/lines/{line_id}",
    response_model=PayRunLineResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_line(
    service: PayRuns,
    pay_run_id: Annotated[UUID, Path()],
    line_id: Annotated[UUID, Path()],
) -> PayRunLineResponse:
    return PayRunLineResponse.model_validate(await service.get_line(pay_run_id, line_id))


@router.get(
    "/{pay_run_id}/audit",
    response_model=list[AuditEventResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_audit_events(
    service: PayRuns,
    pay_run_id: Annotated[UUID, Path()],
) -> list[AuditEventResponse]:
    """Audit trail of a pay run, oldest first."""
    events = await service.get_audit_events(pay_run_id)
    return [AuditEventResponse.model_validate(e) for e in events]


# ============================================================================
# Pay Run State Transitions
# ============================================================================


@router.post("/{pay_run_id}/transition", response_model=PayRunResponse, responses=CONFLICT)
async def transition_pay_run(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
    payload: TransitionRequest,
) -> PayRunResponse:
    """Move a pay run to its next status, which must be named explicitly."""
    pay_run = await service.transition(pay_run_id, payload.to_status, actor)
    return PayRunResponse.model_validate(pay_run)


@router.post("/{pay_run_id}/advance", response_model=PayRunResponse, responses=CONFLICT)
async def advance_pay_run(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Move a pay run to whatever its next status is."""
    return PayRunResponse.model_validate(await service.advance(pay_run_id, actor))


@router.post("/{pay_run_id}/lock", response_model=PayRunResponse, responses=CONFLICT)
async def lock_inputs(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Freeze the roster, unpaid leave and pay element definitions."""
    return PayRunResponse.model_validate(await service.lock_inputs(pay_run_id, actor))


@router.post("/{pay_run_id}/unlock", response_model=PayRunResponse, responses=CONFLICT)
async def unlock_inputs(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
    payload: UnlockRequest | None = None,
) -> PayRunResponse:
    """Discard frozen inputs and lines and return to draft."""
    reason = payload.reason if payload else None
    return PayRunResponse.model_validate(await service.unlock_inputs(pay_run_id, actor, reason))


@router.post("/{pay_run_id}/calculate", response_model=PayRunResponse, responses=CONFLICT)
async def calculate_pay_run(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Calculate (or recalculate) every line. Idempotent for unchanged inputs."""
    return PayRunResponse.model_validate(await service.calculate(pay_run_id, actor))


@router.post("/{pay_run_id}/review", response_model=PayRunResponse, responses=CONFLICT)
async def submit_for_review(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    return PayRunResponse.model_validate(await service.submit_for_review(pay_run_id, actor))


@router.post("/{pay_run_id}/request-approval", response_model=PayRunResponse, responses=CONFLICT)
async def request_approval(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Submit for approval. Blocked by unresolved error exceptions."""
    return PayRunResponse.model_validate(await service.request_approval(pay_run_id, actor))


@router.post("/{pay_run_id}/approve", response_model=PayRunResponse, responses=CONFLICT)
async def approve_pay_run(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Approve a pay run. Lines are frozen from here on."""
    return PayRunResponse.model_validate(await service.approve(pay_run_id, actor))


@router.post("/{pay_run_id}/finalise", response_model=PayRunResponse, responses=CONFLICT)
async def finalise_pay_run(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Request payslips, bank file and journal, then mark finalised."""
    return PayRunResponse.model_validate(await service.finalise(pay_run_id, actor))


@router.post("/{pay_run_id}/close", response_model=PayRunResponse, responses=CONFLICT)
async def close_pay_run(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    return PayRunResponse.model_validate(await service.close(pay_run_id, actor))


@router.post("/{pay_run_id}/reopen", response_model=PayRunResponse, responses=CONFLICT)
async def reopen_pay_run(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
    payload: ReasonRequest,
) -> PayRunResponse:
    """Reopen an approved or finalised pay run back to calculated."""
    pay_run = await service.reopen(pay_run_id, actor, payload.reason)
    return PayRunResponse.model_validate(pay_run)


# ============================================================================
# Review edits
# ============================================================================


@router.post(
    "/{pay_run_id}/lines/{line_id}/exclude",
    response_model=PayRunLineResponse,
    responses=CONFLICT,
)
async def exclude_line(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
    line_id: Annotated[UUID, Path()],
    payload: ReasonRequest,
) -> PayRunLineResponse:
    """Exclude an employee from this run's totals."""
    line = await service.exclude_line(pay_run_id, line_id, actor, payload.reason)
    return PayRunLineResponse.model_validate(line)


@router.post(
    "/{pay_run_id}/lines/{line_id}/include",
    response_model=PayRunLineResponse,
    responses=CONFLICT,
)
async def include_line(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
    line_id: Annotated[UUID, Path()],
) -> PayRunLineResponse:
    line = await service.include_line(pay_run_id, line_id, actor)
    return PayRunLineResponse.model_validate(line)


@router.post(
    "/{pay_run_id}/exceptions/{exception_id}/resolve",
    response_model=ExceptionResponse,
    responses=CONFLICT,
)
async def resolve_exception(
    service: PayRuns,
    actor: ActorId,
    pay_run_id: Annotated[UUID, Path()],
    exception_id: Annotated[UUID, Path()],
    payload: ResolveExceptionRequest,
) -> ExceptionResponse:
    """Resolve an exception with a note."""
    exception = await service.resolve_exception(
        pay_run_id, exception_id, actor, payload.resolution
    )
    return ExceptionResponse.model_validate(exception)
