"""
Execution planning for pipelines.

A plan resolves every step input before anything runs, so a pipeline with
an unresolvable reference never starts. Input references may be:

    7                           dataset id
    "sales"                     dataset name (latest version)
    "clean_sales"               output name of an earlier step
    {"ref": 7, "alias": "s"}    any of the above, bound under another name

The binding name is what a SQL query selects from and what a script sees
in ``inputs``.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging

from core.exceptions import NotFound, PlanError
from dataflow.executor import DatasetHandle
from dataflow.registry import DatasetRegistry
from dataflow.storage import ParquetStorage
from models.base import StepKind
from models.pipeline import Pipeline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedInput:
    """One bound input: an existing dataset, or the output of an earlier step."""
    binding: str
    dataset: Optional[DatasetHandle] = None
    step_output: Optional[str] = None


@dataclass(frozen=True)
class PlannedStep:
    index: int
    name: str
    kind: StepKind
    source: str
    output_name: str
    inputs: Tuple[PlannedInput, ...]
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class ExecutionPlan:
    pipeline_id: int
    pipeline_name: str
    steps: Tuple[PlannedStep, ...]

    @property
    def total_steps(self) -> int:
        return len(self.steps)


def _split_reference(raw: Any) -> Tuple[Any, Optional[str]]:
    if isinstance(raw, dict):
        return raw.get("ref"), raw.get("alias")
    return raw, None


async def build_plan(
    pipeline: Pipeline,
    registry: DatasetRegistry,
    storage: Optional[ParquetStorage] = None
) -> ExecutionPlan:
    """
    Resolve a pipeline into an execution plan.

    Raises:
        PlanError: inactive or empty pipeline, a step without inputs, an
            unresolvable/forward reference, or duplicate names
    """
    context = {"pipeline_id": pipeline.id}

    if not pipeline.is_active:
        raise PlanError(f"Pipeline '{pipeline.name}' is inactive", context=context)

    steps = sorted(pipeline.steps, key=lambda s: s.step_index)
    if not steps:
        raise PlanError(f"Pipeline '{pipeline.name}' has no steps", context=context)

    all_outputs = {s.output_name for s in steps}
    earlier_outputs: Dict[str, int] = {}
    planned: List[PlannedStep] = []

    for index, step in enumerate(steps):
        step_context = {**context, "step_index": index, "step_name": step.name}

        if not step.output_name:
            raise PlanError("Step declares no output name", context=step_context)
        if step.output_name in earlier_outputs:
            raise PlanError(
                f"Output name '{step.output_name}' is produced by more than one step",
                context=step_context
            )
        if not (step.source or "").strip():
            raise PlanError("Step has an empty query or script body", context=step_context)

        refs = list(step.input_refs or [])
        if not refs:
            # a derived dataset always needs at least one lineage source
            raise PlanError("Step declares no input datasets", context=step_context)

        inputs: List[PlannedInput] = []
        for raw in refs:
            reference, alias = _split_reference(raw)
            if reference is None or reference == "":
                raise PlanError("Empty input reference", context=step_context)

            if isinstance(reference, str) and reference in earlier_outputs:
                planned_input = PlannedInput(binding=alias or reference, step_output=reference)
            elif isinstance(reference, str) and reference in all_outputs:
                raise PlanError(
                    f"Input '{reference}' refers to the output of the same or a later step",
                    context={**step_context, "reference": reference}
                )
            else:
                try:
                    dataset = await registry.resolve(reference)
                except NotFound as e:
                    raise PlanError(
                        f"Input '{reference}' does not resolve to a dataset",
                        context={**step_context, "reference": reference},
                        original_exception=e
                    )
                if storage is not None and not storage.path_for(dataset.storage_key).exists():
                    raise PlanError(
                        f"Dataset '{dataset.name}' v{dataset.version} is not readable",
                        context={**step_context, "reference": reference, "dataset_id": dataset.id}
                    )
                planned_input = PlannedInput(
                    binding=alias or dataset.name,
                    dataset=DatasetHandle(
                        dataset_id=dataset.id,
                        name=dataset.name,
                        version=dataset.version,
                        storage_key=dataset.storage_key,
                    ),
                )

            if any(existing.binding == planned_input.binding for existing in inputs):
                raise PlanError(
                    f"Input name '{planned_input.binding}' is bound twice; use an alias",
                    context=step_context
                )
            inputs.append(planned_input)

        planned.append(PlannedStep(
            index=index,
            name=step.name,
            kind=StepKind(step.kind),
            source=step.source,
            output_name=step.output_name,
            inputs=tuple(inputs),
            timeout_seconds=step.timeout_seconds,
        ))
        earlier_outputs[step.output_name] = index

    logger.info(f"Planned pipeline '{pipeline.name}' with {len(planned)} steps")
    return ExecutionPlan(pipeline_id=pipeline.id, pipeline_name=pipeline.name, steps=tuple(planned))
