# ============================================================================
# File: dataflow/triggers.py
# Description: Schedule, chain and API triggers that start pipeline runs
# ============================================================================
"""
Pipeline Triggers - start pipeline runs without a user request.

Trigger types:
- SCHEDULE        cron expression registered on the APScheduler instance
                  as job "pipeline_trigger_{id}"; with the "skip" policy a
                  firing is skipped while the pipeline already has a pending
                  or running execution
- PIPELINE_CHAIN  fires when an upstream pipeline's execution ends with a
                  matching status (success, failure or any); chains may not
                  point at themselves or close a cycle
- API             fired by presenting a secret token; only its sha256 is stored

Every firing attempt of an enabled trigger is recorded as a TriggerEvent:
FIRED (with the execution id), SKIPPED (with the reason) or ERROR.
Fired runs go through PipelineRunner.submit as the trigger's creator.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import hmac
import logging
import secrets

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select, func

from core.config import settings
from core.exceptions import DataflowException, NotFound, TriggerError
from dataflow.runner import PipelineRunner
from models.base import ExecutionStatus, TriggerEventType, TriggerType
from models.execution import PipelineExecution
from models.pipeline import Pipeline
from models.trigger import PipelineTrigger, TriggerEvent

logger = logging.getLogger(__name__)

CONCURRENCY_POLICIES = ("skip", "allow")
CHAIN_CONDITIONS = ("success", "failure", "any")

CONDITION_STATUSES = {
    "success": {ExecutionStatus.SUCCEEDED},
    "failure": {ExecutionStatus.FAILED},
    "any": {ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
}


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def schedule_job_id(trigger_id: int) -> str:
    return f"pipeline_trigger_{trigger_id}"


def build_cron_trigger(config: Dict[str, Any]) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(config["cron"], timezone=config["timezone"])
    except (ValueError, KeyError) as e:
        raise TriggerError(
            f"Invalid schedule: {e}",
            context={"cron": config.get("cron"), "timezone": config.get("timezone")},
            original_exception=e
        )


class TriggerService:
    """
    Owns PipelineTrigger and TriggerEvent records and fires triggers.

    scheduler is the AsyncIOScheduler schedule triggers are registered on;
    without one, schedule triggers are stored but never fire on their own.
    """

    def __init__(
        self,
        runner: PipelineRunner,
        session_maker=None,
        scheduler=None,
        max_chain_depth: Optional[int] = None
    ):
        self.runner = runner
        self._session_maker = session_maker or runner.session_maker
        self.scheduler = scheduler
        self.max_chain_depth = max_chain_depth or settings.TRIGGER_MAX_CHAIN_DEPTH

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def create_trigger(
        self,
        pipeline_id: int,
        trigger_type: TriggerType,
        name: str,
        config: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        is_enabled: bool = True,
        created_by: Optional[int] = None
    ) -> Tuple[PipelineTrigger, Optional[str]]:
        """
        Create a trigger for a pipeline.

        Returns the trigger and, for API triggers, the raw token. The token
        is not stored and cannot be retrieved later.

        Raises:
            NotFound: unknown pipeline (or chain upstream pipeline)
            TriggerError: invalid configuration
        """
        trigger_type = TriggerType(trigger_type)
        config = dict(config or {})
        token = None

        async with self._session_maker() as session:
            if await session.get(Pipeline, pipeline_id) is None:
                raise NotFound(f"Pipeline {pipeline_id} not found", context={"pipeline_id": pipeline_id})

            if trigger_type == TriggerType.SCHEDULE:
                config = self._schedule_config(config)
            elif trigger_type == TriggerType.PIPELINE_CHAIN:
                config = self._chain_config(pipeline_id, config)
                upstream_id = config["upstream_pipeline_id"]
                if await session.get(Pipeline, upstream_id) is None:
                    raise NotFound(
                        f"Upstream pipeline {upstream_id} not found",
                        context={"pipeline_id": upstream_id}
                    )
                await self._check_chain_cycle(session, pipeline_id, upstream_id)
            else:
                token = secrets.token_urlsafe(32)
                config = {"token_hash": hash_token(token)}

            trigger = PipelineTrigger(
                pipeline_id=pipeline_id,
                trigger_type=trigger_type,
                name=name,
                description=description,
                is_enabled=is_enabled,
                config=config,
                trigger_state={},
                created_by=created_by,
            )
            session.add(trigger)
            await session.commit()

        if trigger.trigger_type == TriggerType.SCHEDULE and trigger.is_enabled:
            self.register_schedule(trigger)

        logger.info(
            f"Created {trigger_type.value} trigger {trigger.id} '{name}' for pipeline {pipeline_id}"
        )
        return trigger, token

    async def get_trigger(self, trigger_id: int) -> PipelineTrigger:
        async with self._session_maker() as session:
            trigger = await session.get(PipelineTrigger, trigger_id)
        if trigger is None:
            raise NotFound(f"Trigger {trigger_id} not found", context={"trigger_id": trigger_id})
        return trigger

    async def list_triggers(self, pipeline_id: int) -> List[PipelineTrigger]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(PipelineTrigger)
                .where(PipelineTrigger.pipeline_id == pipeline_id)
                .order_by(PipelineTrigger.id)
            )
            return list(result.scalars().all())

    async def set_enabled(self, trigger_id: int, is_enabled: bool) -> PipelineTrigger:
        async with self._session_maker() as session:
            trigger = await session.get(PipelineTrigger, trigger_id)
            if trigger is None:
                raise NotFound(f"Trigger {trigger_id} not found", context={"trigger_id": trigger_id})
            trigger.is_enabled = is_enabled
            await session.commit()

        if trigger.trigger_type == TriggerType.SCHEDULE:
            if is_enabled:
                self.register_schedule(trigger)
            else:
                self.unregister_schedule(trigger.id)
        logger.info(f"Trigger {trigger_id} {'enabled' if is_enabled else 'disabled'}")
        return trigger

    async def delete_trigger(self, trigger_id: int) -> None:
        async with self._session_maker() as session:
            trigger = await session.get(PipelineTrigger, trigger_id)
            if trigger is None:
                raise NotFound(f"Trigger {trigger_id} not found", context={"trigger_id": trigger_id})
            await session.delete(trigger)
            await session.commit()

        self.unregister_schedule(trigger_id)
        logger.info(f"Deleted trigger {trigger_id}")

    async def list_events(self, pipeline_id: int, limit: int = 50) -> List[TriggerEvent]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(TriggerEvent)
                .where(TriggerEvent.pipeline_id == pipeline_id)
                .order_by(TriggerEvent.created_at.desc(), TriggerEvent.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def resolve_api_token(self, token: str) -> Optional[PipelineTrigger]:
        """The API trigger a raw token belongs to, or None."""
        digest = hash_token(token)
        async with self._session_maker() as session:
            result = await session.execute(
                select(PipelineTrigger).where(PipelineTrigger.trigger_type == TriggerType.API)
            )
            for trigger in result.scalars():
                if hmac.compare_digest(trigger.config.get("token_hash", ""), digest):
                    return trigger
        return None

    def _schedule_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        cron = config.get("cron")
        if not cron or not isinstance(cron, str):
            raise TriggerError("Schedule triggers require a cron expression")
        policy = str(config.get("concurrency_policy", "skip")).lower()
        if policy not in CONCURRENCY_POLICIES:
            raise TriggerError(
                f"Unknown concurrency policy '{policy}'",
                context={"allowed": list(CONCURRENCY_POLICIES)}
            )
        normalized = {
            "cron": cron.strip(),
            "timezone": config.get("timezone") or settings.TRIGGER_DEFAULT_TIMEZONE,
            "concurrency_policy": policy,
        }
        build_cron_trigger(normalized)
        return normalized

    def _chain_config(self, pipeline_id: int, config: Dict[str, Any]) -> Dict[str, Any]:
        upstream_id = config.get("upstream_pipeline_id")
        if not isinstance(upstream_id, int) or isinstance(upstream_id, bool):
            raise TriggerError("Chain triggers require an integer upstream_pipeline_id")
        if upstream_id == pipeline_id:
            raise TriggerError(
                "Pipeline cannot trigger itself",
                context={"pipeline_id": pipeline_id}
            )
        condition = str(config.get("condition", "success")).lower()
        if condition not in CHAIN_CONDITIONS:
            raise TriggerError(
                f"Unknown chain condition '{condition}'",
                context={"allowed": list(CHAIN_CONDITIONS)}
            )
        return {"upstream_pipeline_id": upstream_id, "condition": condition}

    async def _chain_edges(self, session) -> Dict[int, List[int]]:
        """upstream pipeline id -> pipelines its completion triggers"""
        result = await session.execute(
            select(PipelineTrigger).where(PipelineTrigger.trigger_type == TriggerType.PIPELINE_CHAIN)
        )
        edges: Dict[int, List[int]] = {}
        for trigger in result.scalars():
            edges.setdefault(trigger.config["upstream_pipeline_id"], []).append(trigger.pipeline_id)
        return edges

    async def _check_chain_cycle(self, session, pipeline_id: int, upstream_id: int) -> None:
        # the new edge upstream -> pipeline closes a loop iff upstream is
        # already reachable downstream of pipeline
        edges = await self._chain_edges(session)
        visited = set()

        def walk(current: int, depth: int) -> None:
            if depth > self.max_chain_depth:
                raise TriggerError(
                    f"Trigger chain deeper than {self.max_chain_depth} pipelines",
                    context={"pipeline_id": pipeline_id, "upstream_pipeline_id": upstream_id}
                )
            for downstream in edges.get(current, []):
                if downstream == upstream_id:
                    raise TriggerError(
                        "Cyclic trigger dependency detected",
                        context={"pipeline_id": pipeline_id, "upstream_pipeline_id": upstream_id}
                    )
                if downstream not in visited:
                    visited.add(downstream)
                    walk(downstream, depth + 1)

        walk(pipeline_id, 1)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def fire(self, trigger_id: int, detail: Optional[Dict[str, Any]] = None) -> Optional[TriggerEvent]:
        """
        Fire a trigger once and record the outcome.

        Returns the recorded event, or None when the trigger is missing or
        disabled (nothing is recorded then). Submission errors are recorded
        as ERROR events, not raised.
        """
        detail = dict(detail or {})

        # read-only checks; the session is closed before submit writes
        async with self._session_maker() as session:
            trigger = await session.get(PipelineTrigger, trigger_id)
            if trigger is None:
                logger.warning(f"Trigger {trigger_id} no longer exists")
                return None
            if not trigger.is_enabled:
                logger.info(f"Trigger {trigger_id} is disabled, not firing")
                return None

            pipeline = await session.get(Pipeline, trigger.pipeline_id)
            skip_reason = None
            if pipeline is None or not pipeline.is_active:
                skip_reason = "Pipeline is not active"
            elif (
                trigger.trigger_type == TriggerType.SCHEDULE
                and trigger.config.get("concurrency_policy") == "skip"
                and await self._has_active_execution(session, trigger.pipeline_id)
            ):
                skip_reason = "Concurrent execution (skip policy)"

        if skip_reason:
            return await self._record(trigger, TriggerEventType.SKIPPED, {**detail, "reason": skip_reason})

        try:
            job, execution = await self.runner.submit(trigger.pipeline_id, user_id=trigger.created_by)
        except DataflowException as e:
            logger.error(f"Trigger {trigger_id} could not start pipeline {trigger.pipeline_id}: {e.message}")
            return await self._record(trigger, TriggerEventType.ERROR, {**detail, "error": e.message})

        logger.info(
            f"Trigger {trigger_id} started pipeline {trigger.pipeline_id}: "
            f"execution {execution.id} (job {job.job_id})"
        )
        return await self._record(
            trigger, TriggerEventType.FIRED, {**detail, "job_id": job.job_id}, execution_id=execution.id
        )

    async def on_execution_finished(self, pipeline_id: int, execution_id: int, status: ExecutionStatus) -> None:
        """Completion hook: fire the enabled chain triggers whose condition matches."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(PipelineTrigger)
                .where(
                    PipelineTrigger.trigger_type == TriggerType.PIPELINE_CHAIN,
                    PipelineTrigger.is_enabled.is_(True),
                )
                .order_by(PipelineTrigger.id)
            )
            matching = [
                trigger.id for trigger in result.scalars()
                if trigger.config.get("upstream_pipeline_id") == pipeline_id
                and status in CONDITION_STATUSES[trigger.config.get("condition", "success")]
            ]

        for trigger_id in matching:
            await self.fire(trigger_id, detail={"upstream_execution_id": execution_id})

    async def _has_active_execution(self, session, pipeline_id: int) -> bool:
        count = await session.scalar(
            select(func.count(PipelineExecution.id)).where(
                PipelineExecution.pipeline_id == pipeline_id,
                PipelineExecution.status.in_([ExecutionStatus.PENDING, ExecutionStatus.RUNNING]),
            )
        )
        return bool(count)

    async def _record(
        self,
        trigger: PipelineTrigger,
        event_type: TriggerEventType,
        detail: Optional[Dict[str, Any]] = None,
        execution_id: Optional[int] = None
    ) -> TriggerEvent:
        async with self._session_maker() as session:
            event = TriggerEvent(
                trigger_id=trigger.id,
                pipeline_id=trigger.pipeline_id,
                execution_id=execution_id,
                event_type=event_type,
                detail=detail or None,
            )
            session.add(event)
            if event_type == TriggerEventType.FIRED:
                stored = await session.get(PipelineTrigger, trigger.id)
                if stored is not None:
                    stored.trigger_state = {
                        **(stored.trigger_state or {}),
                        "last_fired_at": datetime.utcnow().isoformat(),
                        "last_execution_id": execution_id,
                    }
            await session.commit()

        if event_type != TriggerEventType.FIRED:
            logger.info(f"Trigger {trigger.id} {event_type.value}: {detail}")
        return event

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def register_schedule(self, trigger: PipelineTrigger) -> None:
        """Add (or replace) the scheduler job of a schedule trigger."""
        if self.scheduler is None:
            return
        self.scheduler.add_job(
            self.fire_scheduled,
            trigger=build_cron_trigger(trigger.config),
            args=[trigger.id],
            id=schedule_job_id(trigger.id),
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        logger.info(f"Scheduled trigger {trigger.id} with cron '{trigger.config['cron']}'")

    def unregister_schedule(self, trigger_id: int) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.remove_job(schedule_job_id(trigger_id))
        except JobLookupError:
            pass

    async def reload_schedules(self, scheduler=None) -> int:
        """Register every enabled schedule trigger; returns how many were registered."""
        if scheduler is not None:
            self.scheduler = scheduler

        async with self._session_maker() as session:
            result = await session.execute(
                select(PipelineTrigger).where(
                    PipelineTrigger.trigger_type == TriggerType.SCHEDULE,
                    PipelineTrigger.is_enabled.is_(True),
                )
            )
            triggers = list(result.scalars().all())

        registered = 0
        for trigger in triggers:
            try:
                self.register_schedule(trigger)
                registered += 1
            except TriggerError as e:
                logger.error(f"Could not schedule trigger {trigger.id}: {e.message}")
        logger.info(f"Registered {registered} schedule triggers")
        return registered

    async def fire_scheduled(self, trigger_id: int) -> None:
        """Scheduler job body"""
        try:
            await self.fire(trigger_id, detail={"source": "schedule"})
        except Exception:
            logger.exception(f"Scheduled firing of trigger {trigger_id} failed")
