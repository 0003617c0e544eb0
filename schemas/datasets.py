"""
Dataset, lineage and import schemas
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import DatasetKind, ColumnType, JobStatus


class ColumnDefinition(BaseModel):
    """A declared column of an import schema"""
    name: str = Field(..., min_length=1, max_length=255)
    type: ColumnType = ColumnType.TEXT
    nullable: bool = True

    @validator("type", pre=True)
    def normalize_type(cls, v):
        return v.upper() if isinstance(v, str) else v

    class Config:
        use_enum_values = True


class ImportOptions(BaseModel):
    """Form fields accompanying an uploaded file"""
    dataset_name: str = Field(..., min_length=1, max_length=255)
    columns: List[ColumnDefinition] = Field(..., min_length=1)
    description: Optional[str] = None
    delimiter: str = Field(",", min_length=1, max_length=1)
    encoding: str = "utf-8"
    has_header: bool = True
    skip_rows: int = Field(0, ge=0)
    column_mapping: Optional[Dict[str, str]] = Field(
        None, description="File column -> declared column renames"
    )


class DatasetResponse(BaseModel):
    id: int
    name: str
    version: int
    kind: DatasetKind
    description: Optional[str] = None
    columns: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int
    column_count: int
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_dataset(cls, dataset):
        return cls(
            id=dataset.id,
            name=dataset.name,
            version=dataset.version,
            kind=dataset.kind,
            description=dataset.description,
            columns=list(dataset.schema or []),
            row_count=dataset.row_count,
            column_count=dataset.column_count,
            created_by=dataset.created_by,
            created_at=dataset.created_at,
            updated_at=dataset.updated_at,
        )

    class Config:
        use_enum_values = True


class DatasetRowsResponse(BaseModel):
    dataset_id: int
    columns: List[str]
    rows: List[Dict[str, Any]]
    returned_rows: int
    total_rows: int


class LineageEdgeResponse(BaseModel):
    derived_dataset_id: int
    source_dataset_id: int
    execution_id: int
    step_index: int
    created_at: datetime

    class Config:
        from_attributes = True


class LineageResponse(BaseModel):
    dataset_id: int
    edges: List[LineageEdgeResponse] = Field(default_factory=list)


class ImportResponse(BaseModel):
    id: int
    job_id: str
    dataset_id: Optional[int] = None
    dataset_name: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    status: JobStatus
    total_rows: Optional[int] = 0
    success_rows: Optional[int] = 0
    error_rows: Optional[int] = 0
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    imported_by: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True
