"""Batch refine pipeline: refine or upscale a list of images one at a time."""

import logging
from typing import List

from pydantic import BaseModel, Field

from genjobs.models.job import COMPLETE, Job
from genjobs.pipelines.base import Step, StepPipeline, StepResult
from genjobs.services.job_store import JobStore

logger = logging.getLogger(__name__)


class BatchRefineInputs(BaseModel):
    items: List[str] = Field(min_length=1)
    prompt: str = ""
    upscale_factor: float = Field(default=1.2, gt=0)


class BatchRefinePipeline(StepPipeline):
    """Self-loops over ``items`` with one provider call per item."""

    pipeline_type = "batch_refine"
    first_step = "refine_item"
    inputs_model = BatchRefineInputs

    def build_steps(self) -> List[Step]:
        return [
            Step("refine_item", self.refine_item, ("refine_item", "done")),
            Step("done", self.done),
        ]

    def refine_item(self, job: Job, store: JobStore) -> StepResult:
        inputs = self.inputs(job)
        cursor = (job.meta or {}).get("cursor", 0)
        results = list((job.meta or {}).get("results", []))

        result = self.provider_for(job).generate(
            {"image": inputs.items[cursor]},
            {"mode": "refine", "prompt": inputs.prompt, "upscale_factor": inputs.upscale_factor},
        )
        results.append(self.store_candidate(job, result.candidates[0], cursor))
        cursor += 1
        logger.info(f"Job {job.id} refined item {cursor}/{len(inputs.items)}")

        next_step = "refine_item" if cursor < len(inputs.items) else "done"
        return StepResult(next_step=next_step, metadata={"cursor": cursor, "results": results})

    def done(self, job: Job, store: JobStore) -> StepResult:
        (results,) = self.require(job, "results")
        return StepResult(
            metadata={"final_image_url": results[-1], "final_result": {"images": results}},
            status=COMPLETE,
            self_invoke=False,
        )
