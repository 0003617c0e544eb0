"""
Pydantic schemas for request/response validation and serialization.

Schemas:
    api: Health, async job, dashboard and error responses
    pipelines: Pipeline definitions, steps and execution results
    datasets: Dataset metadata, row previews, lineage and imports
    triggers: Schedule, chain and API triggers and their firing events

Usage:
    from schemas.api import JobStatusResponse, JobAcceptedResponse
    from schemas.pipelines import PipelineCreate, ExecutionResponse
    from schemas.datasets import ImportOptions, LineageResponse

Validation:
    Request schemas validate required fields, enum values (step kinds,
    column types) and simple constraints such as non-empty step sources.
    Response schemas read straight from ORM rows (from_attributes) or
    from job snapshot dicts.
"""

from schemas.api import (
    DashboardResponse,
    ErrorResponse,
    HealthCheckResponse,
    JobAcceptedResponse,
    JobStatusResponse,
)
from schemas.datasets import (
    DatasetResponse,
    ImportOptions,
    ImportResponse,
    LineageResponse,
)
from schemas.pipelines import (
    ExecutionResponse,
    PipelineCreate,
    PipelineResponse,
    StepDefinition,
)
from schemas.triggers import (
    TriggerCreate,
    TriggerEventResponse,
    TriggerResponse,
)

__all__ = [
    "DashboardResponse",
    "ErrorResponse",
    "HealthCheckResponse",
    "JobAcceptedResponse",
    "JobStatusResponse",
    "DatasetResponse",
    "ImportOptions",
    "ImportResponse",
    "LineageResponse",
    "ExecutionResponse",
    "PipelineCreate",
    "PipelineResponse",
    "StepDefinition",
    "TriggerCreate",
    "TriggerEventResponse",
    "TriggerResponse",
]
