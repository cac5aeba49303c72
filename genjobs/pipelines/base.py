"""Step-machine building blocks shared by every pipeline."""

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from genjobs.errors import (
    ProviderError,
    ProviderValidationError,
    StepValidationError,
)
from genjobs.models.job import AWAITING_FALLBACK, COMPLETE, PROCESSING, Job
from genjobs.services.blob_store import BlobStore, blob_key
from genjobs.services.job_store import JobStore
from genjobs.services.providers import FALLBACK, PRIMARY, GenerationProvider, ProviderSet

logger = logging.getLogger(__name__)

# Metadata keys owned by the engine rather than a pipeline step
BOOKKEEPING_KEYS = frozenset({
    "provider",
    "fallback_for",
    "delegated_job_id",
    "watchdog_retries",
    "escalation_reason",
    "failed_step",
})


@dataclass
class StepResult:
    """Outcome of one step invocation, persisted by the worker."""

    next_step: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = PROCESSING
    self_invoke: bool = True
    history: Optional[List[Dict[str, Any]]] = None
    error_message: Optional[str] = None
    start_jobs: List[Job] = field(default_factory=list)
    # Version the final write is checked against when the handler already
    # wrote once itself
    base_version: Optional[int] = None


@dataclass
class Step:
    """A named handler and the steps it may move to."""

    name: str
    handler: Callable[[Job, JobStore], StepResult]
    next_steps: Tuple[str, ...] = ()


class PipelineContext:
    """Collaborators shared by all pipelines."""

    def __init__(self, blobs: BlobStore, providers: ProviderSet, settings):
        self.blobs = blobs
        self.providers = providers
        self.settings = settings


class Runner:
    """Interface the worker and watchdog use to drive a pipeline type."""

    pipeline_type = ""

    def run(self, job: Job, store: JobStore) -> StepResult:
        raise NotImplementedError

    def can_escalate(self, job: Job, error: Exception) -> bool:
        return False

    def delegate_result(self, parent: Job, child: Job) -> StepResult:
        raise NotImplementedError


def child_result(child: Job) -> Dict[str, Any]:
    """The part of a finished child job a parent cares about."""
    meta = child.meta or {}
    result = {"job_id": child.id, "pipeline_type": child.pipeline_type}
    for key in ("final_image_url", "final_result", "results"):
        if meta.get(key) is not None:
            result[key] = meta[key]
    return result


class StepPipeline(Runner):
    """
    Base class for step-machine pipelines.

    Subclasses declare their steps in ``build_steps``. ``run`` executes the
    handler for ``job.step`` (``first_step`` when unset) and checks that the
    transition it asks for was declared.
    """

    first_step = "start"
    terminal_step = "done"
    supports_fallback = False
    escalating_steps: frozenset = frozenset()
    inputs_model: Optional[Type[BaseModel]] = None

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx
        self.steps: Dict[str, Step] = {step.name: step for step in self.build_steps()}

    def build_steps(self) -> List[Step]:
        raise NotImplementedError

    def current_step(self, job: Job) -> str:
        return job.step or self.first_step

    def run(self, job: Job, store: JobStore) -> StepResult:
        name = self.current_step(job)
        step = self.steps.get(name)
        if step is None:
            raise StepValidationError(f"Unknown step '{name}' for pipeline {self.pipeline_type}")

        logger.info(f"Job {job.id} running step {name}")
        result = step.handler(job, store)

        if result.next_step is not None and result.next_step not in step.next_steps:
            raise StepValidationError(
                f"Step {name} may not transition to {result.next_step} (allowed: {list(step.next_steps)})"
            )
        if result.next_step:
            logger.info(f"Job {job.id} step {name} -> {result.next_step}")
        return result

    def can_escalate(self, job: Job, error: Exception) -> bool:
        """Structural or exhausted transient failures on escalating steps, while on primary."""
        if not self.supports_fallback:
            return False
        if not isinstance(error, ProviderError) or isinstance(error, ProviderValidationError):
            return False
        if self.current_step(job) not in self.escalating_steps:
            return False
        if (job.meta or {}).get("provider", PRIMARY) != PRIMARY:
            return False
        return self.ctx.providers.has(FALLBACK)

    def delegate_result(self, parent: Job, child: Job) -> StepResult:
        """
        Fold a completed child's output into its parent.

        A fallback child ran the rest of the pipeline, so its metadata replaces
        the parent's step outputs and the parent completes. Other children
        complete the parent directly when it is parked on its terminal step,
        and resume it otherwise.
        """
        metadata: Dict[str, Any] = {"delegated_result": child_result(child)}
        if parent.status == AWAITING_FALLBACK:
            metadata.update({k: v for k, v in (child.meta or {}).items() if k not in BOOKKEEPING_KEYS})
            return StepResult(metadata=metadata, status=COMPLETE, self_invoke=False)

        if (child.meta or {}).get("final_image_url"):
            metadata["final_image_url"] = child.meta["final_image_url"]
        if self.current_step(parent) == self.terminal_step:
            return StepResult(metadata=metadata, status=COMPLETE, self_invoke=False)
        return StepResult(metadata=metadata, status=PROCESSING)

    # Helpers for step handlers

    def provider_for(self, job: Job) -> GenerationProvider:
        return self.ctx.providers.get((job.meta or {}).get("provider", PRIMARY))

    def inputs(self, job: Job):
        """Validate the pipeline's inputs out of job metadata."""
        try:
            return self.inputs_model.model_validate(job.meta or {})
        except ValidationError as e:
            raise StepValidationError(f"Job {job.id} has invalid inputs: {e}")

    def require(self, job: Job, *keys: str) -> List[Any]:
        """Fetch metadata keys a step depends on."""
        meta = job.meta or {}
        missing = [key for key in keys if meta.get(key) in (None, "", [])]
        if missing:
            raise StepValidationError(
                f"Job {job.id} step {self.current_step(job)} is missing metadata: {', '.join(missing)}"
            )
        return [meta[key] for key in keys]

    def upload(self, job: Job, name: str, data: bytes) -> str:
        return self.ctx.blobs.write(blob_key(job.id, self.current_step(job), name), data)

    def store_candidate(self, job: Job, candidate, index: int) -> str:
        """URL for a generated candidate, uploading inline payloads."""
        if candidate.url:
            return candidate.url
        try:
            data = base64.b64decode(candidate.base64, validate=True)
        except ValueError as e:
            raise ProviderValidationError(f"Candidate {index} has invalid base64: {e}")
        return self.upload(job, f"candidate-{index}.png", data)
