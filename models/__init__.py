"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (DatasetKind, StepKind,
          ExecutionStatus, StepStatus, JobStatus, JobType, ColumnType,
          TriggerType, TriggerEventType)
    dataset: Dataset versions and lineage edges
    pipeline: Pipeline definitions and their ordered steps
    trigger: Pipeline triggers (schedule, chain, API) and their firing events
    execution: Pipeline executions and per-step results
    job: Async job records (stage, progress, metadata)
    data_import: File import audit records

Usage:
    from models import Dataset, PipelineExecution, AsyncJob
    from models.base import DatasetKind, JobStatus

Relationships:
    - Dataset → LineageEdge (one-to-many, as derived dataset)
    - Pipeline → PipelineStep (one-to-many, ordered)
    - Pipeline → PipelineTrigger (one-to-many)
    - PipelineTrigger → TriggerEvent (one-to-many)
    - PipelineExecution → StepExecution (one-to-many, ordered)
    - PipelineExecution ↔ AsyncJob (via job_id)
"""

from models.base import Base
from models.dataset import Dataset, LineageEdge
from models.pipeline import Pipeline, PipelineStep
from models.trigger import PipelineTrigger, TriggerEvent
from models.execution import PipelineExecution, StepExecution
from models.job import AsyncJob
from models.data_import import DataImport

__all__ = [
    "Base",
    "Dataset",
    "LineageEdge",
    "Pipeline",
    "PipelineStep",
    "PipelineTrigger",
    "TriggerEvent",
    "PipelineExecution",
    "StepExecution",
    "AsyncJob",
    "DataImport",
]
