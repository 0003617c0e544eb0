"""
Pipeline trigger schemas
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any
from datetime import datetime
from models.base import TriggerType, TriggerEventType

SECRET_CONFIG_KEYS = ("token_hash",)


class TriggerCreate(BaseModel):
    """
    New trigger. config depends on trigger_type:

    - schedule: {"cron": "0 6 * * *", "timezone": "UTC", "concurrency_policy": "skip"}
    - pipeline_chain: {"upstream_pipeline_id": 3, "condition": "success"}
    - api: no config; the response carries the token once
    """
    name: str = Field(..., min_length=1, max_length=255)
    trigger_type: TriggerType
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    is_enabled: bool = True

    class Config:
        json_schema_extra = {
            "example": {
                "name": "nightly",
                "trigger_type": "schedule",
                "config": {"cron": "0 2 * * *", "timezone": "UTC"},
            }
        }


class TriggerEnabledUpdate(BaseModel):
    is_enabled: bool


class TriggerResponse(BaseModel):
    id: int
    pipeline_id: int
    trigger_type: TriggerType
    name: str
    description: Optional[str] = None
    is_enabled: bool
    config: Dict[str, Any] = Field(default_factory=dict)
    trigger_state: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    token: Optional[str] = Field(None, description="API trigger token, only returned on creation")

    @validator("config", "trigger_state", pre=True)
    def hide_secrets(cls, v):
        return {key: value for key, value in (v or {}).items() if key not in SECRET_CONFIG_KEYS}

    class Config:
        from_attributes = True
        use_enum_values = True


class TriggerEventResponse(BaseModel):
    id: int
    trigger_id: int
    pipeline_id: int
    execution_id: Optional[int] = None
    event_type: TriggerEventType
    detail: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class ExternalTriggerResponse(BaseModel):
    status: str
    pipeline_id: int
    trigger_id: int
    execution_id: Optional[int] = None
    reason: Optional[str] = None
