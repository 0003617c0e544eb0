"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import JobStatus, ExecutionStatus


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    storage_writable: bool
    active_jobs: int = 0
    stale_jobs: int = 0
    # declared last so the validator sees the checks above
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if not values.get("storage_writable", False):
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "storage_writable": True,
                "active_jobs": 2,
                "stale_jobs": 0
            }
        }


# ============================================================================
# Async Job Schemas
# ============================================================================

class JobStatusResponse(BaseModel):
    """Polling view of an async job"""
    job_id: str
    job_type: str
    user_id: Optional[int] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    status: JobStatus
    stage: str
    progress: int = Field(..., ge=0, le=100)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    cancel_requested: bool = False
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job):
        """Build from an AsyncJob row or a job snapshot dict"""
        if isinstance(job, dict):
            return cls(**job)
        return cls(
            job_id=job.job_id,
            job_type=job.job_type,
            user_id=job.user_id,
            resource=job.resource,
            resource_id=job.resource_id,
            status=job.status,
            stage=job.stage,
            progress=job.progress,
            metadata=job.job_metadata or {},
            error_message=job.error_message,
            cancel_requested=bool(job.cancel_requested),
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "job_id": "0b6f1c7e-6c1e-4c52-9d3f-0d0f2f3b8a11",
                "job_type": "pipeline_execution",
                "user_id": 1,
                "status": "running",
                "stage": "executing-step-1",
                "progress": 33,
                "metadata": {"pipeline_id": 4, "current_step": "aggregate", "total_steps": 3},
                "error_message": None,
                "created_at": "2024-01-15T10:30:00Z",
                "updated_at": "2024-01-15T10:30:04Z"
            }
        }


class JobAcceptedResponse(BaseModel):
    """Returned immediately when an async job is started"""
    job_id: str
    status: JobStatus = JobStatus.PENDING
    execution_id: Optional[int] = None
    import_id: Optional[int] = None
    status_url: str

    class Config:
        use_enum_values = True


# ============================================================================
# Dashboard Schemas
# ============================================================================

class RecentImport(BaseModel):
    id: int
    job_id: str
    dataset_id: Optional[int] = None
    dataset_name: str
    file_name: Optional[str] = None
    status: JobStatus
    total_rows: Optional[int] = 0
    error_rows: Optional[int] = 0
    created_at: datetime

    class Config:
        use_enum_values = True


class RecentExecution(BaseModel):
    id: int
    job_id: Optional[str] = None
    pipeline_id: int
    pipeline_name: Optional[str] = None
    status: ExecutionStatus
    failed_step_index: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        use_enum_values = True


class DashboardResponse(BaseModel):
    """Aggregate counts and recent activity"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    total_datasets: int
    source_datasets: int
    derived_datasets: int
    total_pipelines: int
    active_pipelines: int
    recent_imports: List[RecentImport] = Field(default_factory=list)
    recent_executions: List[RecentExecution] = Field(default_factory=list)


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "NotFound",
                "detail": "Job 0b6f1c7e-6c1e-4c52-9d3f-0d0f2f3b8a11 not found",
                "context": {"job_id": "0b6f1c7e-6c1e-4c52-9d3f-0d0f2f3b8a11"},
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
