"""Tenant pay element catalogue and payroll settings."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.pay_elements import (
    DEFAULT_ELEMENTS,
    PayElementDefinition,
    PayElementRegistry,
)
from payrun_engine.config import Settings, get_settings
from payrun_engine.errors import InputValidationError, PayElementError, PayRunNotFoundError
from payrun_engine.models import PayElement, TenantPayrollSettings

logger = logging.getLogger(__name__)


class PayElementService:
    """CRUD over a tenant's pay element definitions.

    Elements are never deleted, only deactivated: existing lines keep a
    copy of the code, name and flags they were calculated with.
    """

    def __init__(self, session: AsyncSession, tenant_id: UUID):
        self.session = session
        self.tenant_id = tenant_id

    async def list_elements(self, include_inactive: bool = True) -> list[PayElement]:
        query = select(PayElement).where(PayElement.tenant_id == self.tenant_id)
        if not include_inactive:
            query = query.where(PayElement.is_active.is_(True))
        result = await self.session.execute(
            query.order_by(PayElement.sort_order, PayElement.code)
        )
        return list(result.scalars().all())

    async def get_element(self, code: str) -> PayElement:
        result = await self.session.execute(
            select(PayElement).where(
                PayElement.tenant_id == self.tenant_id,
                PayElement.code == code,
            )
        )
        element = result.scalar_one_or_none()
        if element is None:
            raise PayRunNotFoundError("Pay element", code)
        return element

    async def create_element(self, definition: PayElementDefinition) -> PayElement:
        existing = await self.session.execute(
            select(PayElement.pay_element_id).where(
                PayElement.tenant_id == self.tenant_id,
                PayElement.code == definition.code,
            )
        )
        if existing.first() is not None:
            raise PayElementError("code", f"pay element '{definition.code}' already exists")

        element = PayElement.from_definition(self.tenant_id, definition)
        self.session.add(element)
        await self.session.commit()
        logger.info("Created pay element %s for tenant %s", definition.code, self.tenant_id)
        return element

    async def update_element(self, code: str, changes: dict[str, Any]) -> PayElement:
        """Apply changes and revalidate the whole definition.

        The code is the element's identity and cannot be changed.
        """
        if "code" in changes and changes["code"] != code:
            raise PayElementError("code", "cannot be changed")

        element = await self.get_element(code)
        data = element.to_definition().to_dict()
        data.update({k: v for k, v in changes.items() if v is not None})
        definition = PayElementDefinition.from_dict(data)

        element.apply_definition(definition)
        await self.session.commit()
        logger.info("Updated pay element %s for tenant %s", code, self.tenant_id)
        return element

    async def deactivate_element(self, code: str) -> PayElement:
        return await self.update_element(code, {"is_active": False})

    async def seed_defaults(self) -> int:
        """Add any missing default elements.

        Returns count of elements added.
        """
        existing = {e.code for e in await self.list_elements()}
        added = 0
        for definition in DEFAULT_ELEMENTS:
            if definition.code in existing:
                continue
            self.session.add(PayElement.from_definition(self.tenant_id, definition))
            added += 1
        await self.session.commit()
        logger.info("Seeded %d default pay element(s) for tenant %s", added, self.tenant_id)
        return added

    async def registry(self) -> PayElementRegistry:
        """Registry of the tenant's elements, or the defaults if none exist."""
        elements = await self.list_elements()
        if not elements:
            return PayElementRegistry.with_defaults()
        return PayElementRegistry.from_definitions(e.to_definition() for e in elements)


class TenantSettingsService:
    """Per-tenant payroll settings with environment defaults."""

    def __init__(self, session: AsyncSession, tenant_id: UUID, settings: Settings | None = None):
        self.session = session
        self.tenant_id = tenant_id
        self.settings = settings or get_settings()

    async def get(self) -> TenantPayrollSettings:
        """Stored settings, or an unsaved instance holding the defaults."""
        stored = await self.session.get(TenantPayrollSettings, self.tenant_id)
        if stored is not None:
            return stored
        return TenantPayrollSettings(
            tenant_id=self.tenant_id,
            sdl_registered=True,
            pay_day=self.settings.default_pay_day,
            cut_off_day=self.settings.default_pay_day,
            large_variance_threshold_pct=None,
        )

    async def variance_threshold(self) -> Decimal:
        stored = await self.get()
        if stored.large_variance_threshold_pct is not None:
            return stored.large_variance_threshold_pct
        return self.settings.large_variance_threshold_pct

    async def update(self, changes: dict[str, Any]) -> TenantPayrollSettings:
        for day_field in ("pay_day", "cut_off_day"):
            value = changes.get(day_field)
            if value is not None and not 1 <= value <= 31:
                raise InputValidationError(day_field, "must be between 1 and 31")
        threshold = changes.get("large_variance_threshold_pct")
        if threshold is not None and threshold < 0:
            raise InputValidationError("large_variance_threshold_pct", "must not be negative")

        stored = await self.session.get(TenantPayrollSettings, self.tenant_id)
        if stored is None:
            stored = await self.get()
            self.session.add(stored)
        for key, value in changes.items():
            if value is not None:
                setattr(stored, key, value)
        await self.session.commit()
        logger.info("Updated payroll settings for tenant %s", self.tenant_id)
        return stored
