"""Payroll adjustment endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payrun_engine.api.dependencies import ActorId, Adjustments
from payrun_engine.api.schemas import (
    AdjustmentCreate,
    AdjustmentReject,
    AdjustmentResponse,
    AdjustmentUpdate,
    ErrorResponse,
)

router = APIRouter(tags=["adjustments"])


@router.get(
    "/adjustments",
    response_model=list[AdjustmentResponse],
    responses={422: {"model": ErrorResponse}},
)
async def list_adjustments(
    service: Adjustments,
    employee_id: str | None = None,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> list[AdjustmentResponse]:
    adjustments = await service.list_adjustments(employee_id=employee_id, status=status_filter)
    return [AdjustmentResponse.model_validate(a) for a in adjustments]


@router.post(
    "/adjustments",
    response_model=AdjustmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_adjustment(
    service: Adjustments,
    actor: ActorId,
    payload: AdjustmentCreate,
) -> AdjustmentResponse:
    """Record an adjustment; it stays pending unless approval is not required."""
    adjustment = await service.create_adjustment(created_by=actor, **payload.model_dump())
    return AdjustmentResponse.model_validate(adjustment)


@router.get(
    "/adjustments/{adjustment_id}",
    response_model=AdjustmentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_adjustment(
    service: Adjustments,
    adjustment_id: Annotated[UUID, Path()],
) -> AdjustmentResponse:
    return AdjustmentResponse.model_validate(await service.get_adjustment(adjustment_id))


@router.patch(
    "/adjustments/{adjustment_id}",
    response_model=AdjustmentResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def update_adjustment(
    service: Adjustments,
    actor: ActorId,
    adjustment_id: Annotated[UUID, Path()],
    payload: AdjustmentUpdate,
) -> AdjustmentResponse:
    changes = payload.model_dump(exclude_unset=True)
    return AdjustmentResponse.model_validate(
        await service.update_adjustment(adjustment_id, changes)
    )


@router.post(
    "/adjustments/{adjustment_id}/approve",
    response_model=AdjustmentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def approve_adjustment(
    service: Adjustments,
    actor: ActorId,
    adjustment_id: Annotated[UUID, Path()],
) -> AdjustmentResponse:
    return AdjustmentResponse.model_validate(
        await service.approve_adjustment(adjustment_id, actor)
    )


@router.post(
    "/adjustments/{adjustment_id}/reject",
    response_model=AdjustmentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def reject_adjustment(
    service: Adjustments,
    actor: ActorId,
    adjustment_id: Annotated[UUID, Path()],
    payload: AdjustmentReject,
) -> AdjustmentResponse:
    return AdjustmentResponse.model_validate(
        await service.reject_adjustment(adjustment_id, actor, payload.reason)
    )


@router.delete(
    "/adjustments/{adjustment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_adjustment(
    service: Adjustments,
    actor: ActorId,
    adjustment_id: Annotated[UUID, Path()],
) -> None:
    """Delete an adjustment that has not been applied to a pay run."""
    await service.delete_adjustment(adjustment_id)
