"""
FastAPI dependencies: database sessions, engine services, caller identity,
permission checks and the audit sink.

Authentication and role lookup live outside this service. The caller's
user id arrives in the X-User-Id header, and permission checks go through
a pluggable PermissionChecker.
"""

from typing import Any, Callable, Dict, Optional
import logging

from fastapi import Depends, Header, HTTPException, status

from core.database import async_session_maker
from dataflow.importer import ImportRunner
from dataflow.jobs import JobOrchestrator
from dataflow.runner import PipelineRunner
from dataflow.storage import ParquetStorage
from dataflow.triggers import TriggerService
from models.base import JobType

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("dataflow.audit")

# Permission codes
PIPELINE_READ = "pipeline:read"
PIPELINE_WRITE = "pipeline:write"
PIPELINE_EXECUTE = "pipeline:execute"
DATASET_READ = "dataset:read"
DATA_IMPORT = "data:import"


async def get_db():
    """Database session dependency"""
    async with async_session_maker() as session:
        yield session


# ============================================================================
# Collaborators
# ============================================================================

class PermissionChecker:
    """Answers has_permission(user_id, code). The default grants everything."""

    def has_permission(self, user_id: int, permission_code: str) -> bool:
        return True


class LoggingAuditSink:
    """Writes one audit line per terminal job transition."""

    ACTIONS = {
        JobType.PIPELINE_EXECUTION.value: "PIPELINE_EXECUTE",
        JobType.DATA_IMPORT.value: "IMPORT",
    }

    def record(
        self,
        user_id: Optional[int],
        action_type: str,
        resource_id: Optional[str],
        result: str,
        error_message: Optional[str] = None
    ) -> None:
        audit_logger.info(
            f"user={user_id} action={action_type} resource={resource_id} result={result}"
            + (f" error={error_message}" if error_message else "")
        )

    def on_job_terminal(self, job: Dict[str, Any]) -> None:
        status_value = getattr(job["status"], "value", job["status"])
        self.record(
            user_id=job["user_id"],
            action_type=self.ACTIONS.get(job["job_type"], job["job_type"].upper()),
            resource_id=job["resource_id"],
            result="SUCCESS" if status_value == "succeeded" else "FAILURE",
            error_message=job["error_message"],
        )


# ============================================================================
# Service singletons
# ============================================================================

_services: Dict[str, Any] = {}


def get_storage() -> ParquetStorage:
    if "storage" not in _services:
        _services["storage"] = ParquetStorage()
    return _services["storage"]


def get_audit_sink() -> LoggingAuditSink:
    if "audit" not in _services:
        _services["audit"] = LoggingAuditSink()
    return _services["audit"]


def get_orchestrator() -> JobOrchestrator:
    if "orchestrator" not in _services:
        orchestrator = JobOrchestrator()
        orchestrator.add_terminal_hook(get_audit_sink().on_job_terminal)
        _services["orchestrator"] = orchestrator
    return _services["orchestrator"]


def get_pipeline_runner() -> PipelineRunner:
    if "pipeline_runner" not in _services:
        _services["pipeline_runner"] = PipelineRunner(get_orchestrator(), storage=get_storage())
    return _services["pipeline_runner"]


def get_import_runner() -> ImportRunner:
    if "import_runner" not in _services:
        _services["import_runner"] = ImportRunner(get_orchestrator(), storage=get_storage())
    return _services["import_runner"]


def get_trigger_service() -> TriggerService:
    if "triggers" not in _services:
        service = TriggerService(get_pipeline_runner())
        get_pipeline_runner().add_completion_hook(service.on_execution_finished)
        _services["triggers"] = service
    return _services["triggers"]


def get_permission_checker() -> PermissionChecker:
    if "permissions" not in _services:
        _services["permissions"] = PermissionChecker()
    return _services["permissions"]


async def shutdown_services() -> None:
    """Cancel in-flight jobs of this process and drop the singletons."""
    for key in ("pipeline_runner", "import_runner"):
        runner = _services.get(key)
        if runner is not None:
            await runner.shutdown()
    _services.clear()


# ============================================================================
# Identity and permissions
# ============================================================================

async def get_current_user(x_user_id: Optional[int] = Header(None, alias="X-User-Id")) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header is required")
    return x_user_id


def require_permission(permission_code: str) -> Callable:
    """Dependency factory: resolves to the user id if the permission is held."""

    async def checker(
        user_id: int = Depends(get_current_user),
        permissions: PermissionChecker = Depends(get_permission_checker)
    ) -> int:
        if not permissions.has_permission(user_id, permission_code):
            logger.warning(f"User {user_id} denied {permission_code}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission_code}"
            )
        return user_id

    return checker
