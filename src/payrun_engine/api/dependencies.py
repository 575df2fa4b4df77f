"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.services.adjustment_service import AdjustmentService
from payrun_engine.services.pay_element_service import PayElementService, TenantSettingsService
from payrun_engine.services.pay_run_service import PayRunService


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract tenant ID from header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-ID format",
        )


async def get_actor_id(
    x_actor_id: Annotated[str | None, Header()] = None
) -> str:
    """Extract the acting user from header. Required for every mutation."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-ID header is required",
        )
    return x_actor_id.strip()


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
TenantId = Annotated[UUID, Depends(get_tenant_id)]
ActorId = Annotated[str, Depends(get_actor_id)]


def get_pay_run_service(request: Request, db: DbSession, tenant_id: TenantId) -> PayRunService:
    state = request.app.state
    return PayRunService(
        db,
        tenant_id,
        collaborators=state.collaborators,
        tax_policies=state.tax_policies,
        settings=state.settings,
    )


def get_pay_element_service(db: DbSession, tenant_id: TenantId) -> PayElementService:
    return PayElementService(db, tenant_id)


def get_adjustment_service(db: DbSession, tenant_id: TenantId) -> AdjustmentService:
    return AdjustmentService(db, tenant_id)


def get_settings_service(
    request: Request, db: DbSession, tenant_id: TenantId
) -> TenantSettingsService:
    return TenantSettingsService(db, tenant_id, request.app.state.settings)


PayRuns = Annotated[PayRunService, Depends(get_pay_run_service)]
PayElements = Annotated[PayElementService, Depends(get_pay_element_service)]
PayrollSettings = Annotated[TenantSettingsService, Depends(get_settings_service)]
Adjustments = Annotated[AdjustmentService, Depends(get_adjustment_service)]
