"""Reframe pipeline: outpaint an image to a new aspect ratio."""

import logging
from typing import List

from pydantic import BaseModel, field_validator

from genjobs.models.job import COMPLETE, Job
from genjobs.pipelines.base import Step, StepPipeline, StepResult
from genjobs.services.images import outpaint_canvas, parse_aspect_ratio
from genjobs.services.job_store import JobStore

logger = logging.getLogger(__name__)


class ReframeInputs(BaseModel):
    base_image_url: str
    aspect_ratio: str
    prompt: str = ""

    @field_validator("aspect_ratio")
    @classmethod
    def _valid_ratio(cls, value: str) -> str:
        parse_aspect_ratio(value)
        return value


class ReframePipeline(StepPipeline):
    pipeline_type = "reframe"
    supports_fallback = True
    escalating_steps = frozenset({"generate"})
    inputs_model = ReframeInputs

    def build_steps(self) -> List[Step]:
        return [
            Step("start", self.prepare_canvas, ("generate",)),
            Step("generate", self.generate, ("done",)),
            Step("done", self.done),
        ]

    def prepare_canvas(self, job: Job, store: JobStore) -> StepResult:
        inputs = self.inputs(job)
        canvas, mask = outpaint_canvas(self.ctx.blobs.read(inputs.base_image_url), inputs.aspect_ratio)
        return StepResult(
            next_step="generate",
            metadata={
                "canvas_url": self.upload(job, "canvas.png", canvas),
                "mask_url": self.upload(job, "mask.png", mask),
            },
        )

    def generate(self, job: Job, store: JobStore) -> StepResult:
        inputs = self.inputs(job)
        canvas_url, mask_url = self.require(job, "canvas_url", "mask_url")
        result = self.provider_for(job).generate(
            {"image": canvas_url, "mask": mask_url},
            {"mode": "outpaint", "prompt": inputs.prompt, "invert_mask": False},
        )
        final_url = self.store_candidate(job, result.candidates[0], 0)
        logger.info(f"Job {job.id} reframed to {inputs.aspect_ratio}")
        return StepResult(next_step="done", metadata={"final_image_url": final_url})

    def done(self, job: Job, store: JobStore) -> StepResult:
        self.require(job, "final_image_url")
        return StepResult(status=COMPLETE, self_invoke=False)
