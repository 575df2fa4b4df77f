"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payrun_engine import __version__
from payrun_engine.api.routes import (
    adjustments_router,
    health_router,
    pay_elements_router,
    pay_runs_router,
)
from payrun_engine.calculators.tax_policy import TaxPolicyTable
from payrun_engine.collaborators import Collaborators
from payrun_engine.config import Settings, get_settings
from payrun_engine.database import create_schema, get_engine, make_session_factory
from payrun_engine.errors import (
    BlockingExceptionsError,
    DuplicatePayRunError,
    InputValidationError,
    OutputRequestError,
    PayRunError,
    PayRunNotFoundError,
    StateConflictError,
    TaxPolicyNotFoundError,
)
from payrun_engine.log import configure_logging

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS: list[tuple[type[PayRunError], int]] = [
    (PayRunNotFoundError, status.HTTP_404_NOT_FOUND),
    (InputValidationError, 422),
    (TaxPolicyNotFoundError, 422),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (DuplicatePayRunError, status.HTTP_409_CONFLICT),
    (OutputRequestError, status.HTTP_502_BAD_GATEWAY),
]


def error_content(exc: PayRunError) -> dict:
    """JSON body for a domain error."""
    content: dict = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, InputValidationError):
        content["context"] = {"field": exc.field, "employee_number": exc.employee_number}
    elif isinstance(exc, BlockingExceptionsError):
        content["context"] = {
            "lines": [
                {
                    "pay_run_line_id": str(line.pay_run_line_id),
                    "employee_number": line.employee_number,
                    "employee_name": line.employee_name,
                    "exception_types": line.exception_types,
                }
                for line in exc.lines
            ]
        }
    elif isinstance(exc, StateConflictError):
        content["context"] = {"from_status": exc.from_status, "to_status": exc.to_status}
    return content


def status_for(exc: PayRunError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    await create_schema(app.state.engine)
    logger.info(
        "Pay run engine %s started; tax years %s",
        app.state.settings.engine_version,
        ", ".join(app.state.tax_policies.tax_years),
    )
    yield
    # Shutdown
    await app.state.engine.dispose()


def create_app(
    settings: Settings | None = None,
    collaborators: Collaborators | None = None,
    database_url: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Pay Run Engine API",
        description="Multi-tenant payroll run processing",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = get_engine(database_url or settings.database_url)
    app.state.session_factory = make_session_factory(app.state.engine)
    app.state.tax_policies = TaxPolicyTable.load_default(settings.tax_policy_path)
    app.state.collaborators = collaborators or Collaborators()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PayRunError)
    async def pay_run_error_handler(request: Request, exc: PayRunError) -> JSONResponse:
        """Translate domain errors to status codes."""
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content=error_content(exc))

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(pay_runs_router, prefix="/api/v1")
    app.include_router(pay_elements_router, prefix="/api/v1")
    app.include_router(adjustments_router, prefix="/api/v1")

    return app
