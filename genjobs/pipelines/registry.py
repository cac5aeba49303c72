"""Pipeline types, their runners and their scheduling limits."""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, Tuple

from genjobs.errors import StepValidationError
from genjobs.models.job import (
    AWAITING_FALLBACK,
    AWAITING_REFINEMENT,
    AWAITING_REFRAME,
    CLAIMED,
    PENDING,
    PROCESSING,
    Job,
)
from genjobs.pipelines.base import PipelineContext, Runner
from genjobs.services.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


@dataclass
class PipelineSpec:
    """How the engine schedules one pipeline type."""

    runner: Runner
    stale_after_seconds: float
    slot_capacity: int = 0  # 0 means unlimited
    awaiting_statuses: Tuple[str, ...] = ()

    @property
    def slot_limited(self) -> bool:
        return self.slot_capacity > 0

    @property
    def stale_statuses(self) -> Tuple[str, ...]:
        """Statuses that count as live work for stale recovery.

        Pending jobs of slot-limited types wait for intake on purpose, so only
        unlimited types treat a long-pending job as stranded.
        """
        if self.slot_limited:
            return (CLAIMED, PROCESSING)
        return (PENDING, CLAIMED, PROCESSING)


class PipelineRegistry:
    """Maps ``pipeline_type`` to its ``PipelineSpec``."""

    def __init__(self):
        self.specs: Dict[str, PipelineSpec] = {}

    def register(self, pipeline_type: str, spec: PipelineSpec) -> None:
        self.specs[pipeline_type] = spec

    def get(self, pipeline_type: str) -> PipelineSpec:
        if pipeline_type not in self.specs:
            raise StepValidationError(f"Unknown pipeline type: {pipeline_type}")
        return self.specs[pipeline_type]

    def __contains__(self, pipeline_type: str) -> bool:
        return pipeline_type in self.specs

    def items(self) -> Iterator[Tuple[str, PipelineSpec]]:
        return iter(self.specs.items())


def build_registry(ctx: PipelineContext, planner_client) -> PipelineRegistry:
    """Register every pipeline type the engine runs."""
    from genjobs.pipelines.batch_refine import BatchRefinePipeline
    from genjobs.pipelines.composite import CompositePipeline
    from genjobs.pipelines.reframe import ReframePipeline
    from genjobs.planner.loop import AgentPlannerLoop

    settings = ctx.settings
    registry = PipelineRegistry()
    registry.register("composite", PipelineSpec(
        runner=CompositePipeline(ctx),
        stale_after_seconds=settings.STALE_COMPOSITE_SECONDS,
        slot_capacity=1,
        awaiting_statuses=(AWAITING_REFRAME, AWAITING_FALLBACK),
    ))
    registry.register("agent_conversation", PipelineSpec(
        runner=AgentPlannerLoop(ctx, planner_client),
        stale_after_seconds=settings.STALE_AGENT_SECONDS,
        awaiting_statuses=(AWAITING_REFINEMENT,),
    ))
    registry.register("reframe", PipelineSpec(
        runner=ReframePipeline(ctx),
        stale_after_seconds=settings.STALE_REFRAME_SECONDS,
        awaiting_statuses=(AWAITING_FALLBACK,),
    ))
    registry.register("batch_refine", PipelineSpec(
        runner=BatchRefinePipeline(ctx),
        stale_after_seconds=settings.STALE_BATCH_REFINE_SECONDS,
        slot_capacity=1,
    ))
    return registry


def start_job(registry: PipelineRegistry, dispatcher: Dispatcher, job: Job) -> bool:
    """
    Kick off a freshly created job.

    Slot-limited types stay pending until the watchdog's intake claims them.

    Returns:
        True if an invocation was dispatched

    Raises:
        DispatchError: If the hand-off failed
    """
    spec = registry.get(job.pipeline_type)
    if spec.slot_limited:
        logger.info(f"Job {job.id} queued for {job.pipeline_type} intake")
        return False
    dispatcher.dispatch(job.id)
    return True
