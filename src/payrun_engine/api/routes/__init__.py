"""API routes."""

from payrun_engine.api.routes.adjustments import router as adjustments_router
from payrun_engine.api.routes.health import router as health_router
from payrun_engine.api.routes.pay_elements import router as pay_elements_router
from payrun_engine.api.routes.pay_runs import router as pay_runs_router

__all__ = ["adjustments_router", "health_router", "pay_elements_router", "pay_runs_router"]
