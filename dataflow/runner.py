# ============================================================================
# File: dataflow/runner.py
# Description: Drives one pipeline execution from plan to terminal state
# ============================================================================
"""
Pipeline Runner - sequences a pipeline's steps and reports progress.

Execution phases:
1. Plan      - resolve every step input (PlanError before anything runs)
2. Submit    - create the async job and the execution record, return at once
3. Steps     - for each step: check cancellation, advance the job to
               "executing-step-{i}", execute, register the output dataset
               together with its lineage edges
4. Finalize  - complete the job, or fail it on the first step error

Steps run strictly in order and fail fast: after a failing step no further
step runs and no further step result is recorded.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
import asyncio
import logging

from core.config import settings
from core.database import async_session_maker
from core.exceptions import DataflowException, InvalidTransition, StepExecutionError
from dataflow.executor import DatasetHandle, StepExecutor
from dataflow.jobs import JobOrchestrator
from dataflow.pipelines import PipelineService
from dataflow.planner import ExecutionPlan, PlannedStep, build_plan
from dataflow.registry import DatasetRegistry
from dataflow.storage import ParquetStorage
from models.base import ExecutionStatus, JobType, StepStatus, TERMINAL_EXECUTION_STATUSES
from models.execution import PipelineExecution, StepExecution
from models.job import AsyncJob

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"

# (pipeline_id, execution_id, terminal status)
CompletionHook = Callable[[int, int, ExecutionStatus], Awaitable[None]]


class PipelineRunner:
    """
    Pipeline execution orchestrator.

    Responsibilities:
    - Build the plan before a job exists
    - Run each execution on its own asyncio task
    - Own PipelineExecution, StepExecution and (through the registry)
      derived Dataset and LineageEdge records
    - Translate step failures and cancellation into terminal job states
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        storage: Optional[ParquetStorage] = None,
        executor: Optional[StepExecutor] = None,
        session_maker=None
    ):
        self.orchestrator = orchestrator
        self.storage = storage or ParquetStorage()
        self.executor = executor or StepExecutor(self.storage, default_timeout=settings.STEP_TIMEOUT_SECONDS)
        self._session_maker = session_maker or async_session_maker
        self._tasks: Set[asyncio.Task] = set()
        self._completion_hooks: List[CompletionHook] = []

    @property
    def session_maker(self):
        return self._session_maker

    def add_completion_hook(self, hook: CompletionHook) -> None:
        """Call hook after every execution submitted here reaches a terminal state."""
        self._completion_hooks.append(hook)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def plan(self, pipeline_id: int) -> ExecutionPlan:
        async with self._session_maker() as session:
            pipeline = await PipelineService(session).get(pipeline_id)
            return await build_plan(pipeline, DatasetRegistry(session), self.storage)

    async def submit(self, pipeline_id: int, user_id: Optional[int] = None) -> Tuple[AsyncJob, PipelineExecution]:
        """
        Plan and start a pipeline run; returns as soon as the job exists.

        Raises:
            NotFound: unknown pipeline
            PlanError: the pipeline cannot be planned
        """
        plan = await self.plan(pipeline_id)

        job, execution = await self.prepare(plan, user_id)
        task = asyncio.create_task(self._run_and_notify(plan, execution.id, job.job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job, execution

    async def prepare(self, plan: ExecutionPlan, user_id: Optional[int] = None) -> Tuple[AsyncJob, PipelineExecution]:
        """Create the job and a PENDING execution record for a plan."""
        job = await self.orchestrator.create_job(
            JobType.PIPELINE_EXECUTION,
            user_id=user_id,
            resource="pipeline",
            resource_id=plan.pipeline_id,
            metadata={
                "pipeline_id": plan.pipeline_id,
                "pipeline_name": plan.pipeline_name,
                "total_steps": plan.total_steps,
            },
        )
        async with self._session_maker() as session:
            execution = PipelineExecution(
                pipeline_id=plan.pipeline_id,
                job_id=job.job_id,
                status=ExecutionStatus.PENDING,
                executed_by=user_id,
            )
            session.add(execution)
            await session.commit()

        logger.info(
            f"Submitted pipeline '{plan.pipeline_name}' as execution {execution.id} (job {job.job_id})"
        )
        return job, execution

    async def wait_all(self) -> None:
        """Wait for every in-flight execution task of this runner."""
        # completion hooks may submit further executions while we wait
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        while self._tasks:
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, plan: ExecutionPlan, execution_id: int, job_id: str) -> ExecutionStatus:
        """
        Drive one execution to a terminal state.

        Never raises for step failures: they end as FAILED executions and
        failed jobs. Returns the terminal execution status.
        """
        total = plan.total_steps
        outputs: Dict[str, DatasetHandle] = {}
        produced: List[int] = []
        open_step_id: Optional[int] = None

        try:
            await self._update_execution(
                execution_id, status=ExecutionStatus.RUNNING, started_at=datetime.utcnow()
            )

            for step in plan.steps:
                i = step.index

                # --------------------------------------------------
                # CANCELLATION CHECKPOINT
                # --------------------------------------------------
                if await self.orchestrator.is_cancel_requested(job_id):
                    logger.info(f"Execution {execution_id} cancelled before step {i}")
                    await self._update_execution(
                        execution_id,
                        status=ExecutionStatus.CANCELLED,
                        error_message=CANCELLED_MESSAGE,
                        completed_at=datetime.utcnow(),
                    )
                    await self.orchestrator.fail(
                        job_id, CANCELLED_MESSAGE, metadata={"completed_steps": i, "cancelled": True}
                    )
                    return ExecutionStatus.CANCELLED

                await self.orchestrator.advance(
                    job_id,
                    f"executing-step-{i}",
                    progress=round(i / total * 100),
                    metadata={"current_step": step.name, "step_index": i, "completed_steps": i},
                )

                # --------------------------------------------------
                # EXECUTE
                # --------------------------------------------------
                resolved = self._resolve_inputs(step, outputs)
                step_record_id = open_step_id = await self._start_step(execution_id, step)
                logger.info(f"Execution {execution_id}: step {i} '{step.name}' started")

                try:
                    result = await self.executor.execute(step, resolved)
                except StepExecutionError as e:
                    logger.error(
                        f"Execution {execution_id}: step {i} '{step.name}' failed: {e.message}",
                        extra={"error_context": e.to_dict()}
                    )
                    await self._finish_step(
                        step_record_id,
                        status=StepStatus.FAILED,
                        error_message=e.message,
                        error_detail=e.to_dict(),
                    )
                    open_step_id = None
                    await self._update_execution(
                        execution_id,
                        status=ExecutionStatus.FAILED,
                        error_message=e.message,
                        failed_step_index=i,
                        completed_at=datetime.utcnow(),
                    )
                    await self.orchestrator.fail(
                        job_id,
                        f"Step {i} ({step.name}) failed: {e.message}",
                        metadata={"failed_step_index": i, "error_type": type(e).__name__},
                    )
                    return ExecutionStatus.FAILED

                # --------------------------------------------------
                # REGISTER OUTPUT + LINEAGE
                # --------------------------------------------------
                created_by = await self._executed_by(execution_id)
                try:
                    async with self._session_maker() as session:
                        dataset = await DatasetRegistry(session).create_derived(
                            name=step.output_name,
                            schema=result.schema,
                            storage_key=result.storage_key,
                            row_count=result.row_count,
                            source_dataset_ids=[h.dataset_id for h in resolved.values()],
                            execution_id=execution_id,
                            step_index=i,
                            created_by=created_by,
                        )
                except Exception as e:
                    # no dataset record points at the file
                    self.storage.delete(result.storage_key)
                    await self._finish_step(
                        step_record_id,
                        status=StepStatus.FAILED,
                        error_message=f"Could not register output: {e}",
                    )
                    open_step_id = None
                    raise

                await self._finish_step(
                    step_record_id,
                    status=StepStatus.SUCCEEDED,
                    output_dataset_id=dataset.id,
                    row_count=result.row_count,
                    log=result.log,
                )
                open_step_id = None
                outputs[step.output_name] = DatasetHandle(
                    dataset_id=dataset.id,
                    name=dataset.name,
                    version=dataset.version,
                    storage_key=dataset.storage_key,
                )
                produced.append(dataset.id)

            # --------------------------------------------------
            # FINALIZE
            # --------------------------------------------------
            await self._update_execution(
                execution_id, status=ExecutionStatus.SUCCEEDED, completed_at=datetime.utcnow()
            )
            await self.orchestrator.complete(
                job_id, metadata={"completed_steps": total, "output_dataset_ids": produced}
            )
            logger.info(f"Execution {execution_id} succeeded ({total} steps)")
            return ExecutionStatus.SUCCEEDED

        except asyncio.CancelledError:
            logger.warning(f"Execution {execution_id} interrupted by shutdown")
            await self._close_open_step(open_step_id, CANCELLED_MESSAGE)
            await self._abort(execution_id, job_id, ExecutionStatus.CANCELLED, CANCELLED_MESSAGE)
            raise

        except Exception as e:
            logger.exception(f"Unexpected error in execution {execution_id}")
            message = e.message if isinstance(e, DataflowException) else str(e) or type(e).__name__
            await self._close_open_step(open_step_id, message)
            await self._abort(execution_id, job_id, ExecutionStatus.FAILED, message)
            return ExecutionStatus.FAILED

    async def _run_and_notify(self, plan: ExecutionPlan, execution_id: int, job_id: str) -> ExecutionStatus:
        status = await self.run(plan, execution_id, job_id)
        for hook in list(self._completion_hooks):
            try:
                await hook(plan.pipeline_id, execution_id, status)
            except Exception:
                logger.exception(f"Completion hook failed for execution {execution_id}")
        return status

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_inputs(step: PlannedStep, outputs: Dict[str, DatasetHandle]) -> Dict[str, DatasetHandle]:
        return {
            planned.binding: planned.dataset or outputs[planned.step_output]
            for planned in step.inputs
        }

    async def _abort(self, execution_id: int, job_id: str, status: ExecutionStatus, message: str) -> None:
        """Best-effort terminal bookkeeping after an unexpected error."""
        try:
            await self._update_execution(
                execution_id, status=status, error_message=message, completed_at=datetime.utcnow()
            )
        except Exception:
            logger.exception(f"Could not mark execution {execution_id} as {status.value}")
        try:
            await self.orchestrator.fail(job_id, message)
        except InvalidTransition:
            logger.debug(f"Job {job_id} was already terminal")

    async def _close_open_step(self, step_record_id: Optional[int], message: str) -> None:
        if step_record_id is None:
            return
        try:
            await self._finish_step(step_record_id, status=StepStatus.FAILED, error_message=message)
        except Exception:
            logger.exception(f"Could not close step record {step_record_id}")

    async def _executed_by(self, execution_id: int) -> Optional[int]:
        async with self._session_maker() as session:
            execution = await session.get(PipelineExecution, execution_id)
            return execution.executed_by if execution else None

    async def _update_execution(self, execution_id: int, **fields: Any) -> None:
        async with self._session_maker() as session:
            execution = await session.get(PipelineExecution, execution_id)
            if execution.status in TERMINAL_EXECUTION_STATUSES:
                raise InvalidTransition(
                    f"Execution {execution_id} is already {execution.status.value}",
                    context={"execution_id": execution_id}
                )
            for key, value in fields.items():
                setattr(execution, key, value)
            await session.commit()

    async def _start_step(self, execution_id: int, step: PlannedStep) -> int:
        async with self._session_maker() as session:
            execution = await session.get(PipelineExecution, execution_id)
            if execution.status in TERMINAL_EXECUTION_STATUSES:
                raise InvalidTransition(
                    f"Execution {execution_id} is terminal; no more step results",
                    context={"execution_id": execution_id, "step_index": step.index}
                )
            record = StepExecution(
                execution_id=execution_id,
                step_index=step.index,
                step_name=step.name,
                status=StepStatus.RUNNING,
                started_at=datetime.utcnow(),
            )
            session.add(record)
            await session.commit()
            return record.id

    async def _finish_step(self, step_record_id: int, **fields: Any) -> None:
        async with self._session_maker() as session:
            record = await session.get(StepExecution, step_record_id)
            for key, value in fields.items():
                setattr(record, key, value)
            record.completed_at = datetime.utcnow()
            await session.commit()
