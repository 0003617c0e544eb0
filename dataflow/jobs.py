# ============================================================================
# File: dataflow/jobs.py
# Description: Async job lifecycle shared by imports and pipeline executions
# ============================================================================
"""
Job Orchestrator - owns every AsyncJob record.

State machine:
    PENDING  -> RUNNING    (advance)
    RUNNING  -> SUCCEEDED  (complete)
    PENDING | RUNNING -> FAILED  (fail)

- progress never decreases; a regression raises InvalidTransition
- progress reaches 100 only through complete()
- exactly one terminal transition per job
- writes to the same job are serialized with a per-job lock, and
  subscribers see events in the order they were applied

Cancellation is cooperative: cancel() only sets a flag that the owning
runner checks at its next step boundary.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union
import asyncio
import enum
import inspect
import logging
import uuid
import weakref

from sqlalchemy import select, delete

from core.config import settings
from core.database import async_session_maker
from core.exceptions import InvalidTransition, NotFound, SubscriptionLimitExceeded
from models.base import JobStatus, JobType, TERMINAL_JOB_STATUSES
from models.job import AsyncJob

logger = logging.getLogger(__name__)

STAGE_QUEUED = "queued"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"

EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"

TerminalHook = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def normalize_metadata(value: Any) -> Any:
    """
    Coerce a metadata value into the closed JSON value set
    (str, int, float, bool, None, list, dict with str keys).
    """
    if isinstance(value, enum.Enum):
        return normalize_metadata(value.value)
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): normalize_metadata(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [normalize_metadata(v) for v in value]
    raise TypeError(f"Unsupported metadata value of type {type(value).__name__}")


def job_snapshot(job: AsyncJob) -> Dict[str, Any]:
    """Plain-dict view of a job, safe to hand out after the session closes."""
    return {
        "job_id": job.job_id,
        "job_type": job.job_type,
        "user_id": job.user_id,
        "resource": job.resource,
        "resource_id": job.resource_id,
        "status": job.status,
        "stage": job.stage,
        "progress": job.progress,
        "metadata": dict(job.job_metadata or {}),
        "error_message": job.error_message,
        "cancel_requested": bool(job.cancel_requested),
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "completed_at": job.completed_at,
    }


@dataclass(frozen=True)
class JobEvent:
    """One pushed transition: 'progress', 'complete' or 'error'."""
    event: str
    job: Dict[str, Any]

    @property
    def terminal(self) -> bool:
        return self.event in (EVENT_COMPLETE, EVENT_ERROR)


def _event_for(snapshot: Dict[str, Any]) -> JobEvent:
    if snapshot["status"] == JobStatus.SUCCEEDED:
        return JobEvent(EVENT_COMPLETE, snapshot)
    if snapshot["status"] == JobStatus.FAILED:
        return JobEvent(EVENT_ERROR, snapshot)
    return JobEvent(EVENT_PROGRESS, snapshot)


class JobSubscription:
    """
    Ordered stream of events for one job, starting with its current state.

    Iteration ends after the terminal event. Always close() a subscription
    that is abandoned early so the subscriber slot is released.
    """

    def __init__(self, orchestrator: "JobOrchestrator", job_id: str):
        self._orchestrator = orchestrator
        self.job_id = job_id
        self.queue: "asyncio.Queue[JobEvent]" = asyncio.Queue()
        self.closed = False

    def __aiter__(self) -> AsyncIterator[JobEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[JobEvent]:
        try:
            while True:
                event = await self.queue.get()
                yield event
                if event.terminal:
                    return
        finally:
            self.close()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._orchestrator._unsubscribe(self)


class JobOrchestrator:
    """
    Creates, advances and terminates async jobs.

    All state lives in the async_jobs table; polling get_status() always
    returns the latest committed state. Subscriptions and terminal hooks are
    in-process conveniences on top of it.
    """

    def __init__(self, session_maker=None, max_subscribers: Optional[int] = None):
        self._session_maker = session_maker or async_session_maker
        self.max_subscribers = max_subscribers or settings.MAX_SUBSCRIBERS_PER_JOB
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._subscribers: Dict[str, List[JobSubscription]] = {}
        self._terminal_hooks: List[TerminalHook] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_job(
        self,
        job_type: JobType,
        user_id: Optional[int] = None,
        resource: Optional[str] = None,
        resource_id: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AsyncJob:
        """Allocate a job in stage 'queued' with progress 0."""
        now = datetime.utcnow()
        job = AsyncJob(
            job_id=str(uuid.uuid4()),
            job_type=JobType(job_type).value,
            user_id=user_id,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            status=JobStatus.PENDING,
            stage=STAGE_QUEUED,
            progress=0,
            job_metadata=normalize_metadata(metadata or {}),
            cancel_requested=False,
            created_at=now,
            updated_at=now,
        )
        async with self._session_maker() as session:
            session.add(job)
            await session.commit()

        logger.info(f"Created {job.job_type} job {job.job_id} for user {user_id}")
        return job

    async def advance(
        self,
        job_id: str,
        stage: str,
        progress: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        progress_delta: Optional[int] = None
    ) -> AsyncJob:
        """
        Move a non-terminal job to a new stage.

        Args:
            job_id: Job to advance
            stage: New stage label
            progress: Absolute progress (must not be below the current value)
            metadata: Patch merged into the job metadata
            progress_delta: Relative progress increase (alternative to progress)

        Raises:
            InvalidTransition: job is terminal, or progress would decrease
        """
        if progress is not None and progress_delta is not None:
            raise ValueError("Pass either progress or progress_delta, not both")
        patch = normalize_metadata(metadata) if metadata else None

        def apply(job: AsyncJob) -> None:
            self._require_active(job, "advance")
            target = job.progress
            if progress_delta is not None:
                target = job.progress + int(progress_delta)
            elif progress is not None:
                target = int(progress)

            if target < job.progress:
                raise InvalidTransition(
                    f"Progress cannot go from {job.progress} to {target}",
                    context={"job_id": job.job_id, "current": job.progress, "requested": target}
                )

            # 100 is reserved for complete()
            job.progress = min(target, 99)
            job.stage = stage
            job.status = JobStatus.RUNNING
            if patch:
                job.job_metadata = {**(job.job_metadata or {}), **patch}

        job = await self._mutate(job_id, apply)
        logger.debug(f"Job {job_id} -> stage={stage} progress={job.progress}")
        return job

    async def complete(self, job_id: str, metadata: Optional[Dict[str, Any]] = None) -> AsyncJob:
        """Terminal success. No-op if the job already succeeded."""
        patch = normalize_metadata(metadata) if metadata else None
        already_done = False

        def apply(job: AsyncJob) -> bool:
            nonlocal already_done
            if job.status == JobStatus.SUCCEEDED:
                already_done = True
                return False
            if job.status == JobStatus.FAILED:
                raise InvalidTransition(
                    "Cannot complete a failed job",
                    context={"job_id": job.job_id, "status": job.status.value}
                )
            job.status = JobStatus.SUCCEEDED
            job.stage = STAGE_COMPLETED
            job.progress = 100
            job.completed_at = datetime.utcnow()
            if patch:
                job.job_metadata = {**(job.job_metadata or {}), **patch}
            return True

        job = await self._mutate(job_id, apply)
        if not already_done:
            logger.info(f"Job {job_id} completed")
            await self._run_terminal_hooks(job)
        return job

    async def fail(
        self,
        job_id: str,
        error_message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AsyncJob:
        """Terminal failure, allowed from any non-terminal state."""
        message = (error_message or "").strip() or "Job failed"
        patch = normalize_metadata(metadata) if metadata else None

        def apply(job: AsyncJob) -> None:
            self._require_active(job, "fail")
            job.status = JobStatus.FAILED
            job.stage = STAGE_FAILED
            job.error_message = message
            job.completed_at = datetime.utcnow()
            if patch:
                job.job_metadata = {**(job.job_metadata or {}), **patch}

        job = await self._mutate(job_id, apply)
        logger.warning(f"Job {job_id} failed: {message}")
        await self._run_terminal_hooks(job)
        return job

    async def cancel(self, job_id: str) -> AsyncJob:
        """Request cooperative cancellation; the runner observes it later."""

        def apply(job: AsyncJob) -> None:
            self._require_active(job, "cancel")
            job.cancel_requested = True

        job = await self._mutate(job_id, apply)
        logger.info(f"Cancellation requested for job {job_id}")
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str) -> AsyncJob:
        async with self._session_maker() as session:
            job = await session.get(AsyncJob, job_id)
            if job is None:
                raise NotFound(f"Job {job_id} not found", context={"job_id": job_id})
            return job

    async def is_cancel_requested(self, job_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AsyncJob.cancel_requested).where(AsyncJob.job_id == job_id)
            )
            flag = result.scalar_one_or_none()
        if flag is None:
            raise NotFound(f"Job {job_id} not found", context={"job_id": job_id})
        return bool(flag)

    async def list_jobs(
        self,
        user_id: Optional[int] = None,
        job_type: Optional[JobType] = None,
        limit: int = 50
    ) -> List[AsyncJob]:
        query = select(AsyncJob)
        if user_id is not None:
            query = query.where(AsyncJob.user_id == user_id)
        if job_type is not None:
            query = query.where(AsyncJob.job_type == JobType(job_type).value)
        query = query.order_by(AsyncJob.created_at.desc()).limit(limit)
        async with self._session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Subscriptions and hooks
    # ------------------------------------------------------------------

    async def subscribe(self, job_id: str) -> JobSubscription:
        """
        Open an event stream for a job. The first event is the current state.

        Raises:
            NotFound: unknown job
            SubscriptionLimitExceeded: too many live subscribers for this job
        """
        async with self._lock_for(job_id):
            job = await self.get_status(job_id)
            subscription = JobSubscription(self, job_id)
            event = _event_for(job_snapshot(job))

            if not event.terminal:
                current = self._subscribers.setdefault(job_id, [])
                if len(current) >= self.max_subscribers:
                    raise SubscriptionLimitExceeded(
                        f"Job {job_id} already has {len(current)} subscribers",
                        context={"job_id": job_id, "max_subscribers": self.max_subscribers}
                    )
                current.append(subscription)

            subscription.queue.put_nowait(event)
        return subscription

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def _unsubscribe(self, subscription: JobSubscription) -> None:
        current = self._subscribers.get(subscription.job_id)
        if current and subscription in current:
            current.remove(subscription)
            if not current:
                del self._subscribers[subscription.job_id]

    def add_terminal_hook(self, hook: TerminalHook) -> None:
        """Register a callback invoked with the job snapshot after each terminal transition."""
        self._terminal_hooks.append(hook)

    async def _run_terminal_hooks(self, job: AsyncJob) -> None:
        snapshot = job_snapshot(job)
        for hook in list(self._terminal_hooks):
            try:
                result = hook(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Terminal hook {hook!r} failed for job {job.job_id}")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def fail_stale_jobs(self, stale_minutes: Optional[int] = None) -> int:
        """Fail non-terminal jobs that have not been updated recently."""
        minutes = stale_minutes or settings.JOB_STALE_MINUTES
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)

        async with self._session_maker() as session:
            result = await session.execute(
                select(AsyncJob.job_id).where(
                    AsyncJob.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),
                    AsyncJob.updated_at < cutoff,
                )
            )
            stale_ids = list(result.scalars().all())

        failed = 0
        for job_id in stale_ids:
            try:
                await self.fail(job_id, f"Job timed out: no progress for {minutes} minutes")
                failed += 1
            except InvalidTransition:
                logger.debug(f"Stale job {job_id} reached a terminal state concurrently")

        if failed:
            logger.warning(f"Marked {failed} stale jobs as failed")
        return failed

    async def delete_old_jobs(self, retention_days: Optional[int] = None) -> int:
        """Delete terminal jobs that finished before the retention window."""
        days = retention_days or settings.JOB_RETENTION_DAYS
        cutoff = datetime.utcnow() - timedelta(days=days)

        async with self._session_maker() as session:
            result = await session.execute(
                delete(AsyncJob).where(
                    AsyncJob.status.in_(list(TERMINAL_JOB_STATUSES)),
                    AsyncJob.updated_at < cutoff,
                )
            )
            await session.commit()
            deleted = result.rowcount or 0

        if deleted:
            logger.info(f"Deleted {deleted} jobs older than {days} days")
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    @staticmethod
    def _require_active(job: AsyncJob, operation: str) -> None:
        if job.status in TERMINAL_JOB_STATUSES:
            raise InvalidTransition(
                f"Cannot {operation} job in terminal state {job.status.value}",
                context={"job_id": job.job_id, "status": job.status.value}
            )

    async def _mutate(self, job_id: str, apply: Callable[[AsyncJob], Any]) -> AsyncJob:
        """Load, change and commit one job under its lock, then publish the new state."""
        async with self._lock_for(job_id):
            async with self._session_maker() as session:
                job = await session.get(AsyncJob, job_id)
                if job is None:
                    raise NotFound(f"Job {job_id} not found", context={"job_id": job_id})

                changed = apply(job)
                if changed is False:
                    return job

                job.updated_at = datetime.utcnow()
                await session.commit()

            event = _event_for(job_snapshot(job))
            for subscription in list(self._subscribers.get(job_id, [])):
                subscription.queue.put_nowait(event)
            if event.terminal:
                self._subscribers.pop(job_id, None)
        return job
