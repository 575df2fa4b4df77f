"""Payroll adjustments and their approval lifecycle."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.pay_elements import (
    BASIC_CODE,
    Fixed,
    PayElementRegistry,
    Percentage,
)
from payrun_engine.calculators.types import AdjustmentStatus, AdjustmentType
from payrun_engine.errors import (
    AdjustmentStateError,
    ConcurrentModificationError,
    InputValidationError,
    PayElementError,
    PayRunNotFoundError,
)
from payrun_engine.models import PayRun, PayRunInput, PayrollAdjustment
from payrun_engine.models.base import utcnow
from payrun_engine.services.pay_element_service import PayElementService
from payrun_engine.services.state_machine import PayRunStatus

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "element_code",
    "amount",
    "percentage",
    "reason",
    "notes",
    "effective_pay_run_id",
    "effective_from",
    "effective_to",
    "retro_period_start",
    "retro_period_end",
)


class AdjustmentService:
    """Create, approve and apply payroll adjustments.

    Lifecycle: pending → approved → applied, or pending → rejected.
    Adjustments that skip approval are created approved. Only pending
    adjustments can be edited, and applied ones cannot be deleted.

    Approved adjustments are folded into frozen inputs when a run locks
    (see ``for_pay_run`` and ``mark_applied``); unlocking or deleting the
    run returns them to approved with ``revert_applied``.
    """

    def __init__(self, session: AsyncSession, tenant_id: UUID):
        self.session = session
        self.tenant_id = tenant_id
        self.element_service = PayElementService(session, tenant_id)

    # ===== Reads =====

    async def list_adjustments(
        self, employee_id: str | None = None, status: str | None = None
    ) -> list[PayrollAdjustment]:
        query = select(PayrollAdjustment).where(PayrollAdjustment.tenant_id == self.tenant_id)
        if employee_id is not None:
            query = query.where(PayrollAdjustment.employee_id == employee_id)
        if status is not None:
            query = query.where(PayrollAdjustment.status == _status(status))
        result = await self.session.execute(
            query.order_by(PayrollAdjustment.created_at, PayrollAdjustment.employee_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_adjustment(self, adjustment_id: UUID) -> PayrollAdjustment:
        result = await self.session.execute(
            select(PayrollAdjustment).where(
                PayrollAdjustment.tenant_id == self.tenant_id,
                PayrollAdjustment.adjustment_id == adjustment_id,
            ).execution_options(populate_existing=True)
        )
        adjustment = result.scalar_one_or_none()
        if adjustment is None:
            raise PayRunNotFoundError("Adjustment", adjustment_id)
        return adjustment

    # ===== Writes =====

    async def create_adjustment(
        self,
        employee_id: str,
        element_code: str,
        adjustment_type: str,
        reason: str,
        created_by: str,
        amount: Decimal | None = None,
        percentage: Decimal | None = None,
        notes: str | None = None,
        effective_pay_run_id: UUID | None = None,
        effective_from: date | None = None,
        effective_to: date | None = None,
        retro_period_start: date | None = None,
        retro_period_end: date | None = None,
        requires_approval: bool = True,
    ) -> PayrollAdjustment:
        """Record an adjustment, pending approval unless it needs none."""
        if not employee_id:
            raise InputValidationError("employee_id", "is required")
        try:
            kind = AdjustmentType(adjustment_type)
        except ValueError:
            raise InputValidationError(
                "adjustment_type",
                f"'{adjustment_type}' is not one of "
                + ", ".join(t.value for t in AdjustmentType),
            ) from None

        adjustment = PayrollAdjustment(
            tenant_id=self.tenant_id,
            employee_id=employee_id,
            element_code=element_code,
            adjustment_type=kind.value,
            amount=amount,
            percentage=percentage,
            reason=reason,
            notes=notes,
            effective_pay_run_id=effective_pay_run_id,
            effective_from=effective_from,
            effective_to=effective_to,
            retro_period_start=retro_period_start,
            retro_period_end=retro_period_end,
            requires_approval=requires_approval,
            status=AdjustmentStatus.PENDING.value,
            created_by=created_by,
        )
        await self._validate(adjustment)

        if not requires_approval:
            adjustment.status = AdjustmentStatus.APPROVED.value
            adjustment.approved_by = created_by
            adjustment.approved_at = utcnow()

        self.session.add(adjustment)
        await self.session.commit()
        logger.info(
            "Created %s adjustment %s (%s) for employee %s, status %s",
            kind.value,
            adjustment.adjustment_id,
            element_code,
            employee_id,
            adjustment.status,
        )
        return adjustment

    async def update_adjustment(
        self, adjustment_id: UUID, changes: dict[str, Any]
    ) -> PayrollAdjustment:
        """Edit a pending adjustment and revalidate it."""
        adjustment = await self.get_adjustment(adjustment_id)
        self._require_pending(adjustment, "edited")

        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InputValidationError(sorted(unknown)[0], "cannot be changed")
        for key, value in changes.items():
            setattr(adjustment, key, value)
        try:
            await self._validate(adjustment)
        except (InputValidationError, PayRunNotFoundError):
            await self.session.rollback()
            raise

        await self.session.commit()
        logger.info("Updated adjustment %s", adjustment_id)
        return adjustment

    async def approve_adjustment(self, adjustment_id: UUID, approver: str) -> PayrollAdjustment:
        adjustment = await self.get_adjustment(adjustment_id)
        self._require_pending(adjustment, AdjustmentStatus.APPROVED.value)
        adjustment.status = AdjustmentStatus.APPROVED.value
        adjustment.approved_by = approver
        adjustment.approved_at = utcnow()
        await self.session.commit()
        logger.info("Approved adjustment %s by %s", adjustment_id, approver)
        return adjustment

    async def reject_adjustment(
        self, adjustment_id: UUID, rejected_by: str, reason: str
    ) -> PayrollAdjustment:
        if not reason or not reason.strip():
            raise InputValidationError("reason", "is required to reject an adjustment")
        adjustment = await self.get_adjustment(adjustment_id)
        self._require_pending(adjustment, AdjustmentStatus.REJECTED.value)
        adjustment.status = AdjustmentStatus.REJECTED.value
        adjustment.rejected_by = rejected_by
        adjustment.rejected_at = utcnow()
        adjustment.rejection_reason = reason
        await self.session.commit()
        logger.info("Rejected adjustment %s by %s: %s", adjustment_id, rejected_by, reason)
        return adjustment

    async def delete_adjustment(self, adjustment_id: UUID) -> None:
        adjustment = await self.get_adjustment(adjustment_id)
        if adjustment.status == AdjustmentStatus.APPLIED.value:
            raise AdjustmentStateError(
                adjustment.status, "deleted", "applied adjustments cannot be deleted"
            )
        await self.session.delete(adjustment)
        await self.session.commit()
        logger.info("Deleted adjustment %s", adjustment_id)

    # ===== Pay run integration =====
    # These run inside the caller's unit of work and never commit.

    async def for_pay_run(self, pay_run: PayRun) -> list[PayrollAdjustment]:
        """Approved adjustments that belong in the run's inputs."""
        result = await self.session.execute(
            select(PayrollAdjustment)
            .where(
                PayrollAdjustment.tenant_id == self.tenant_id,
                PayrollAdjustment.status == AdjustmentStatus.APPROVED.value,
            )
            .order_by(PayrollAdjustment.created_at, PayrollAdjustment.adjustment_id)
        )
        return [a for a in result.scalars().all() if a.applies_to(pay_run)]

    async def mark_applied(
        self, pay_run: PayRun, adjustments: Sequence[PayrollAdjustment]
    ) -> int:
        """Mark the once-off and retro adjustments folded into a run as applied.

        Only adjustments for employees whose inputs were frozen are marked;
        recurring adjustments stay approved for later runs.

        Raises:
            ConcurrentModificationError: If any of them left approved meanwhile.
        """
        frozen = await self.session.execute(
            select(PayRunInput.employee_id).where(PayRunInput.pay_run_id == pay_run.pay_run_id)
        )
        frozen_ids = set(frozen.scalars().all())
        targets = [
            a.adjustment_id
            for a in adjustments
            if not a.is_recurring and a.employee_id in frozen_ids
        ]
        if not targets:
            return 0

        result = await self.session.execute(
            update(PayrollAdjustment)
            .where(
                PayrollAdjustment.adjustment_id.in_(targets),
                PayrollAdjustment.status == AdjustmentStatus.APPROVED.value,
            )
            .values(
                status=AdjustmentStatus.APPLIED.value,
                applied_pay_run_id=pay_run.pay_run_id,
                applied_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(targets):
            raise ConcurrentModificationError(
                pay_run.status,
                PayRunStatus.INPUTS_LOCKED.value,
                "an adjustment was modified concurrently",
            )
        logger.info("Applied %d adjustment(s) to pay run %s", len(targets), pay_run.pay_run_id)
        return len(targets)

    async def revert_applied(self, pay_run_id: UUID) -> int:
        """Return adjustments applied to a run to approved.

        Returns count of reverted adjustments.
        """
        result = await self.session.execute(
            update(PayrollAdjustment)
            .where(
                PayrollAdjustment.tenant_id == self.tenant_id,
                PayrollAdjustment.applied_pay_run_id == pay_run_id,
                PayrollAdjustment.status == AdjustmentStatus.APPLIED.value,
            )
            .values(
                status=AdjustmentStatus.APPROVED.value,
                applied_pay_run_id=None,
                applied_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ===== Validation =====

    async def _validate(self, adjustment: PayrollAdjustment) -> None:
        registry = await self.element_service.registry()
        self._validate_element(adjustment, registry)

        if adjustment.reason is None or not adjustment.reason.strip():
            raise InputValidationError("reason", "is required")
        if (
            adjustment.effective_from is not None
            and adjustment.effective_to is not None
            and adjustment.effective_to < adjustment.effective_from
        ):
            raise InputValidationError("effective_to", "must not be before effective_from")

        if adjustment.is_retroactive:
            if adjustment.retro_period_start is None or adjustment.retro_period_end is None:
                raise InputValidationError(
                    "retro_period_start", "retro adjustments need a start and end date"
                )
            if adjustment.retro_period_end < adjustment.retro_period_start:
                raise InputValidationError(
                    "retro_period_end", "must not be before retro_period_start"
                )

        if adjustment.effective_pay_run_id is not None:
            if adjustment.is_recurring:
                raise InputValidationError(
                    "effective_pay_run_id", "recurring adjustments cannot target one pay run"
                )
            pay_run = await self.session.get(PayRun, adjustment.effective_pay_run_id)
            if pay_run is None or pay_run.tenant_id != self.tenant_id:
                raise PayRunNotFoundError("Pay run", adjustment.effective_pay_run_id)
            if pay_run.status != PayRunStatus.DRAFT.value:
                raise InputValidationError(
                    "effective_pay_run_id", "pay run inputs are already locked"
                )

    @staticmethod
    def _validate_element(adjustment: PayrollAdjustment, registry: PayElementRegistry) -> None:
        field_name = "element_code"
        definition = registry.definitions.get(adjustment.element_code)
        if definition is None:
            raise PayElementError(field_name, "unknown pay element code")
        if not definition.is_active:
            raise PayElementError(field_name, "pay element is inactive")
        if definition.code == BASIC_CODE or definition.is_statutory:
            raise PayElementError(field_name, "element cannot be adjusted")

        for name in ("amount", "percentage"):
            value = getattr(adjustment, name)
            if value is not None and value < 0:
                raise InputValidationError(name, "must not be negative")

        method = definition.method
        if isinstance(method, Fixed):
            if adjustment.amount is None and method.default_amount is None:
                raise InputValidationError("amount", "is required")
        elif isinstance(method, Percentage):
            if adjustment.percentage is not None and adjustment.percentage > 100:
                raise InputValidationError("percentage", "must be between 0 and 100")
        else:
            raise PayElementError(
                field_name, f"{method.kind} elements cannot be adjusted, use an assignment"
            )

    @staticmethod
    def _require_pending(adjustment: PayrollAdjustment, to: str) -> None:
        if adjustment.status != AdjustmentStatus.PENDING.value:
            raise AdjustmentStateError(
                adjustment.status, to, "only pending adjustments can change"
            )


def _status(value: str) -> str:
    try:
        return AdjustmentStatus(value).value
    except ValueError:
        raise InputValidationError(
            "status", f"'{value}' is not one of " + ", ".join(s.value for s in AdjustmentStatus)
        ) from None
