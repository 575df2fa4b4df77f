"""Pay run engine services."""

from payrun_engine.services.state_machine import PayRunStateMachine, PayRunStatus
from payrun_engine.services.pay_run_service import PayRunService
from payrun_engine.services.locking_service import LockingService
from payrun_engine.services.commit_service import CommitService
from payrun_engine.services.ytd_service import YtdService
from payrun_engine.services.pay_element_service import PayElementService, TenantSettingsService
from payrun_engine.services.adjustment_service import AdjustmentService

__all__ = [
    "PayRunStateMachine",
    "PayRunStatus",
    "PayRunService",
    "LockingService",
    "CommitService",
    "YtdService",
    "PayElementService",
    "TenantSettingsService",
    "AdjustmentService",
]
