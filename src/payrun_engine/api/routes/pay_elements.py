"""Pay element catalogue and tenant payroll settings endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, status

from payrun_engine.api.dependencies import ActorId, PayElements, PayrollSettings
from payrun_engine.api.schemas import (
    ErrorResponse,
    PayElementCreate,
    PayElementResponse,
    PayElementUpdate,
    PayrollSettingsResponse,
    PayrollSettingsUpdate,
    SeedResponse,
)
from payrun_engine.calculators.pay_elements import PayElementDefinition

router = APIRouter(tags=["pay-elements"])


@router.get("/pay-elements", response_model=list[PayElementResponse])
async def list_pay_elements(
    service: PayElements,
    include_inactive: bool = True,
) -> list[PayElementResponse]:
    elements = await service.list_elements(include_inactive=include_inactive)
    return [PayElementResponse.model_validate(e) for e in elements]


@router.post(
    "/pay-elements",
    response_model=PayElementResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def create_pay_element(
    service: PayElements,
    actor: ActorId,
    payload: PayElementCreate,
) -> PayElementResponse:
    """Create a pay element; the definition is validated before saving."""
    definition = PayElementDefinition.from_dict(payload.model_dump())
    return PayElementResponse.model_validate(await service.create_element(definition))


@router.post("/pay-elements/seed", response_model=SeedResponse)
async def seed_pay_elements(service: PayElements, actor: ActorId) -> SeedResponse:
    """Add any missing elements from the default catalogue."""
    return SeedResponse(added=await service.seed_defaults())


@router.get(
    "/pay-elements/{code}",
    response_model=PayElementResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_pay_element(
    service: PayElements,
    code: Annotated[str, Path()],
) -> PayElementResponse:
    return PayElementResponse.model_validate(await service.get_element(code))


@router.patch(
    "/pay-elements/{code}",
    response_model=PayElementResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def update_pay_element(
    service: PayElements,
    actor: ActorId,
    code: Annotated[str, Path()],
    payload: PayElementUpdate,
) -> PayElementResponse:
    changes = payload.model_dump(exclude_unset=True)
    return PayElementResponse.model_validate(await service.update_element(code, changes))


@router.delete(
    "/pay-elements/{code}",
    response_model=PayElementResponse,
    responses={404: {"model": ErrorResponse}},
)
async def deactivate_pay_element(
    service: PayElements,
    actor: ActorId,
    code: Annotated[str, Path()],
) -> PayElementResponse:
    """Deactivate a pay element. Elements are never physically deleted."""
    return PayElementResponse.model_validate(await service.deactivate_element(code))


@router.get("/payroll-settings", response_model=PayrollSettingsResponse)
async def get_payroll_settings(service: PayrollSettings) -> PayrollSettingsResponse:
    return PayrollSettingsResponse.model_validate(await service.get())


@router.put(
    "/payroll-settings",
    response_model=PayrollSettingsResponse,
    responses={422: {"model": ErrorResponse}},
)
async def update_payroll_settings(
    service: PayrollSettings,
    actor: ActorId,
    payload: PayrollSettingsUpdate,
) -> PayrollSettingsResponse:
    stored = await service.update(payload.model_dump(exclude_unset=True))
    return PayrollSettingsResponse.model_validate(stored)
