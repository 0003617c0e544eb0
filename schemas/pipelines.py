"""
Pipeline definition and execution schemas
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Union
from datetime import datetime
from models.base import StepKind, ExecutionStatus, StepStatus

InputRef = Union[int, str, Dict[str, Any]]


class StepDefinition(BaseModel):
    """One step of a pipeline definition"""
    name: Optional[str] = Field(None, max_length=255)
    kind: StepKind
    source: str = Field(..., description="SQL query text or script body")
    input_refs: List[InputRef] = Field(
        default_factory=list,
        description="Dataset ids, dataset names, earlier step outputs, or {ref, alias} objects"
    )
    output_name: str = Field(..., min_length=1, max_length=255)
    timeout_seconds: Optional[float] = Field(None, gt=0)

    @validator("source")
    def validate_source(cls, v):
        if not v or not v.strip():
            raise ValueError("source cannot be empty")
        return v

    @validator("input_refs", each_item=True)
    def validate_input_ref(cls, v):
        if isinstance(v, dict) and "ref" not in v:
            raise ValueError("input reference objects need a 'ref' key")
        return v

    class Config:
        use_enum_values = True


class PipelineCreate(BaseModel):
    """Request body for creating a pipeline"""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: bool = True
    steps: List[StepDefinition] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "name": "daily_sales",
                "steps": [
                    {
                        "name": "clean",
                        "kind": "sql_query",
                        "source": "SELECT * FROM sales WHERE amount > 0",
                        "input_refs": ["sales"],
                        "output_name": "clean_sales"
                    },
                    {
                        "name": "by_region",
                        "kind": "script",
                        "source": "output = clean_sales.groupby('region', as_index=False)['amount'].sum()",
                        "input_refs": ["clean_sales"],
                        "output_name": "sales_by_region"
                    }
                ]
            }
        }


class PipelineActiveUpdate(BaseModel):
    is_active: bool


class PipelineStepResponse(BaseModel):
    id: int
    step_index: int
    name: str
    kind: StepKind
    source: str
    input_refs: List[InputRef]
    output_name: str
    timeout_seconds: Optional[float] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class PipelineResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    steps: List[PipelineStepResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class StepExecutionResponse(BaseModel):
    step_index: int
    step_name: str
    status: StepStatus
    output_dataset_id: Optional[int] = None
    row_count: Optional[int] = None
    error_message: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None
    log: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class ExecutionResponse(BaseModel):
    id: int
    pipeline_id: int
    job_id: Optional[str] = None
    status: ExecutionStatus
    executed_by: Optional[int] = None
    error_message: Optional[str] = None
    failed_step_index: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    step_results: List[StepExecutionResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True
        use_enum_values = True
