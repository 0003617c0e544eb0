"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from api.routes import health, pipelines, executions, imports, jobs, datasets, dashboard, triggers
from api.dependencies import get_orchestrator, get_trigger_service, shutdown_services
from core.config import settings
from core.exceptions import (
    DataflowException,
    PlanError,
    ValidationFailed,
    InvalidTransition,
    SubscriptionLimitExceeded,
    NotFound,
    TriggerError,
)
from core.logging import setup_logging
from dataflow.scheduler import JobMaintenanceScheduler
from schemas.api import ErrorResponse
import logging
from api.middleware import RequestContextMiddleware

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Dataflow Pipeline Engine API",
    description="Dataset pipelines, file imports and async job tracking",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

scheduler = None


# Include routers
app.include_router(health.router)
app.include_router(pipelines.router)
app.include_router(executions.router)
app.include_router(imports.router)
app.include_router(jobs.router)
app.include_router(datasets.router)
app.include_router(dashboard.router)
app.include_router(triggers.router)


# ============================================================================
# Error mapping
# ============================================================================

ERROR_STATUS_CODES = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (PlanError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationFailed, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TriggerError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (SubscriptionLimitExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
]


def status_code_for(exc: DataflowException) -> int:
    for exc_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(DataflowException)
async def dataflow_exception_handler(request: Request, exc: DataflowException):
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {code}: {exc.message}")

    context = dict(exc.context)
    if isinstance(exc, ValidationFailed):
        context["errors"] = exc.errors
        context["row_errors"] = exc.row_errors

    body = ErrorResponse(error=type(exc).__name__, detail=exc.message, context=context)
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    global scheduler
    logger.info("Starting Dataflow Pipeline Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    # chain triggers listen for finished executions from here on
    trigger_service = get_trigger_service()

    if settings.SCHEDULER_ENABLED:
        scheduler = JobMaintenanceScheduler(get_orchestrator())
        scheduler.start()
        await trigger_service.reload_schedules(scheduler.scheduler)


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Dataflow Pipeline Engine API")
    if scheduler is not None:
        scheduler.stop()
    await shutdown_services()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Dataflow Pipeline Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "pipelines": "/pipelines",
            "executions": "/executions/{id}",
            "imports": "/imports",
            "jobs": "/jobs",
            "datasets": "/datasets",
            "dashboard": "/dashboard",
            "triggers": "/pipelines/{id}/triggers"
        }
    }
