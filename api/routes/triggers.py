"""
Pipeline trigger endpoints: manage schedule/chain/API triggers, fire them
by hand, and the token-authenticated external fire endpoint.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from api.dependencies import (
    get_trigger_service,
    require_permission,
    PIPELINE_READ,
    PIPELINE_WRITE,
    PIPELINE_EXECUTE,
)
from dataflow.triggers import TriggerService
from models.base import TriggerEventType
from schemas.triggers import (
    ExternalTriggerResponse,
    TriggerCreate,
    TriggerEnabledUpdate,
    TriggerEventResponse,
    TriggerResponse,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Triggers"])


@router.post(
    "/pipelines/{pipeline_id}/triggers",
    response_model=TriggerResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_trigger(
    pipeline_id: int,
    body: TriggerCreate,
    service: TriggerService = Depends(get_trigger_service),
    user_id: int = Depends(require_permission(PIPELINE_WRITE))
):
    """
    Create a trigger. API triggers return their token in this response only.
    Fired runs execute as the creating user.
    """
    trigger, token = await service.create_trigger(
        pipeline_id,
        body.trigger_type,
        body.name,
        config=body.config,
        description=body.description,
        is_enabled=body.is_enabled,
        created_by=user_id,
    )
    return TriggerResponse.model_validate(trigger).model_copy(update={"token": token})


@router.get("/pipelines/{pipeline_id}/triggers", response_model=List[TriggerResponse])
async def list_triggers(
    pipeline_id: int,
    service: TriggerService = Depends(get_trigger_service),
    user_id: int = Depends(require_permission(PIPELINE_READ))
):
    return await service.list_triggers(pipeline_id)


@router.get("/pipelines/{pipeline_id}/trigger-events", response_model=List[TriggerEventResponse])
async def list_trigger_events(
    pipeline_id: int,
    limit: int = Query(50, ge=1, le=500),
    service: TriggerService = Depends(get_trigger_service),
    user_id: int = Depends(require_permission(PIPELINE_READ))
):
    return await service.list_events(pipeline_id, limit=limit)


@router.get("/triggers/{trigger_id}", response_model=TriggerResponse)
async def get_trigger(
    trigger_id: int,
    service: TriggerService = Depends(get_trigger_service),
    user_id: int = Depends(require_permission(PIPELINE_READ))
):
    return await service.get_trigger(trigger_id)


@router.patch("/triggers/{trigger_id}/enabled", response_model=TriggerResponse)
async def set_trigger_enabled(
    trigger_id: int,
    body: TriggerEnabledUpdate,
    service: TriggerService = Depends(get_trigger_service),
    user_id: int = Depends(require_permission(PIPELINE_WRITE))
):
    return await service.set_enabled(trigger_id, body.is_enabled)


@router.delete("/triggers/{trigger_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_trigger(
    trigger_id: int,
    service: TriggerService = Depends(get_trigger_service),
    user_id: int = Depends(require_permission(PIPELINE_WRITE))
):
    await service.delete_trigger(trigger_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/triggers/{trigger_id}/fire", response_model=TriggerEventResponse)
async def fire_trigger(
    trigger_id: int,
    service: TriggerService = Depends(get_trigger_service),
    user_id: int = Depends(require_permission(PIPELINE_EXECUTE))
):
    """Fire a trigger now. The recorded event says whether a run started."""
    await service.get_trigger(trigger_id)
    event = await service.fire(trigger_id, detail={"source": "manual", "fired_by": user_id})
    if event is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Trigger {trigger_id} is disabled")
    return event


@router.post(
    "/triggers/api/{token}",
    response_model=ExternalTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def fire_api_trigger(
    token: str,
    service: TriggerService = Depends(get_trigger_service)
):
    """
    External fire endpoint. The token is the credential, so no X-User-Id
    header is needed; the run executes as the trigger's creator.
    """
    trigger = await service.resolve_api_token(token)
    if trigger is None or not trigger.is_enabled:
        logger.warning("Rejected external trigger call with an unknown or disabled token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid trigger token")

    event = await service.fire(trigger.id, detail={"source": "api"})
    if event is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid trigger token")
    reason = (event.detail or {}).get("reason") or (event.detail or {}).get("error")
    return ExternalTriggerResponse(
        status="triggered" if event.event_type == TriggerEventType.FIRED else event.event_type.value,
        pipeline_id=trigger.pipeline_id,
        trigger_id=trigger.id,
        execution_id=event.execution_id,
        reason=reason,
    )
