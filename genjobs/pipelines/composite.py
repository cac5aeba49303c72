"""Composite try-on pipeline: locate, prepare, generate/check, verify, reframe."""

import logging
from typing import List, Optional

from pydantic import BaseModel, ValidationError

from genjobs.errors import ProviderError, ProviderValidationError
from genjobs.models.job import AWAITING_REFRAME, AWAITING_USER_CHOICE, COMPLETE, FAILED, Job
from genjobs.pipelines.base import Step, StepPipeline, StepResult
from genjobs.schemas.providers import (
    COMPLETENESS_QUESTION,
    SUBJECT_REGION_QUESTION,
    CompletenessResult,
    SubjectRegion,
)
from genjobs.services.images import bbox_to_pixels, crop_to_bbox, fit_within, image_size
from genjobs.services.job_store import JobStore

logger = logging.getLogger(__name__)

# Sampling steps per generation pass; later passes spend more compute
SAMPLE_STEPS = (15, 30, 55)

COMPOSITE = "composite"
REFRAME = "reframe"


class CompositeInputs(BaseModel):
    """Caller-supplied inputs of a composite job."""

    subject_image_url: str
    reference_image_url: str
    garment_type: Optional[str] = None
    prompt: str = ""
    check_completeness: bool = False
    auto_complete: bool = False
    target_aspect_ratio: Optional[str] = None


class CompositePipeline(StepPipeline):
    """Places a reference garment on a subject image, one provider call per step."""

    pipeline_type = COMPOSITE
    supports_fallback = True
    escalating_steps = frozenset({"generate_candidate", "quality_check"})
    inputs_model = CompositeInputs

    def build_steps(self) -> List[Step]:
        return [
            Step("start", self.locate_subject_region, ("prepare_subject_asset",)),
            Step("prepare_subject_asset", self.prepare_subject_asset, ("prepare_reference_asset",)),
            Step("prepare_reference_asset", self.prepare_reference_asset, ("generate_candidate",)),
            Step("generate_candidate", self.generate_candidate, ("quality_check",)),
            Step("quality_check", self.quality_check, ("generate_candidate", "completeness_check")),
            Step("completeness_check", self.completeness_check, ("await_user_choice", "reframe", "done")),
            Step("await_user_choice", self.await_user_choice, ("await_user_choice", "reframe", "done")),
            Step("reframe", self.reframe, ("done",)),
            Step("done", self.done),
        ]

    def locate_subject_region(self, job: Job, store: JobStore) -> StepResult:
        """Ask the provider where the subject is and record the box in pixels."""
        inputs = self.inputs(job)
        answer = self.provider_for(job).analyze(inputs.subject_image_url, SUBJECT_REGION_QUESTION)
        try:
            region = SubjectRegion.model_validate(answer)
        except ValidationError as e:
            raise ProviderValidationError(f"Bad subject region: {e}")

        width, height = image_size(self.ctx.blobs.read(inputs.subject_image_url))
        bbox = bbox_to_pixels(region.box, width, height)
        logger.info(f"Job {job.id} subject region {bbox} in {width}x{height}")

        return StepResult(
            next_step="prepare_subject_asset",
            metadata={
                "bbox": bbox,
                "bbox_normalized": region.box,
                "source_size": [width, height],
            },
        )

    def prepare_subject_asset(self, job: Job, store: JobStore) -> StepResult:
        inputs = self.inputs(job)
        (bbox,) = self.require(job, "bbox")
        cropped = crop_to_bbox(self.ctx.blobs.read(inputs.subject_image_url), bbox)
        url = self.upload(job, "cropped_subject.png", cropped)
        return StepResult(next_step="prepare_reference_asset", metadata={"cropped_subject_url": url})

    def prepare_reference_asset(self, job: Job, store: JobStore) -> StepResult:
        inputs = self.inputs(job)
        resized = fit_within(self.ctx.blobs.read(inputs.reference_image_url), self.ctx.settings.MAX_ASSET_EDGE)
        url = self.upload(job, "reference.png", resized)
        return StepResult(next_step="generate_candidate", metadata={"prepared_reference_url": url})

    def generate_candidate(self, job: Job, store: JobStore) -> StepResult:
        """One generation pass. Parameters escalate with the pass number."""
        inputs = self.inputs(job)
        cropped_url, reference_url = self.require(job, "cropped_subject_url", "prepared_reference_url")
        qa_pass = (job.meta or {}).get("qa_pass", 1)
        qa_history = (job.meta or {}).get("qa_history", [])

        params = {
            "prompt": inputs.prompt,
            "garment_type": inputs.garment_type,
            "sample_step": SAMPLE_STEPS[min(qa_pass, len(SAMPLE_STEPS)) - 1],
            "pass": qa_pass,
        }
        if qa_history:
            params["feedback"] = qa_history[-1].get("reasoning", "")

        result = self.provider_for(job).generate(
            {"subject": cropped_url, "reference": reference_url},
            params,
        )
        candidates = [self.store_candidate(job, c, i) for i, c in enumerate(result.candidates)]
        logger.info(f"Job {job.id} pass {qa_pass} produced {len(candidates)} candidates")

        return StepResult(next_step="quality_check", metadata={"candidates": candidates, "qa_pass": qa_pass})

    def quality_check(self, job: Job, store: JobStore) -> StepResult:
        """
        Score the current candidates and decide whether to go again.

        The pass after ``MAX_QUALITY_RETRIES`` retries is always a select, so
        the loop runs at most ``MAX_QUALITY_RETRIES + 1`` passes.
        """
        inputs = self.inputs(job)
        (candidates,) = self.require(job, "candidates")
        qa_pass = (job.meta or {}).get("qa_pass", 1)
        max_retries = self.ctx.settings.MAX_QUALITY_RETRIES

        decision = self.provider_for(job).score(inputs.subject_image_url, inputs.reference_image_url, candidates)
        forced = decision.action == "retry" and qa_pass > max_retries

        entry = {
            "pass": qa_pass,
            "action": decision.action,
            "best_index": decision.best_index,
            "reasoning": decision.reasoning,
            "forced": forced,
        }
        qa_history = list((job.meta or {}).get("qa_history", [])) + [entry]

        if decision.action == "retry" and not forced:
            logger.info(f"Job {job.id} QA pass {qa_pass} asked for a retry")
            return StepResult(
                next_step="generate_candidate",
                metadata={"qa_history": qa_history, "candidates": [], "qa_pass": qa_pass + 1},
            )

        if not 0 <= decision.best_index < len(candidates):
            raise ProviderValidationError(f"best_index {decision.best_index} out of range")
        if forced:
            logger.warning(f"Job {job.id} QA retries exhausted, forcing select on pass {qa_pass}")
        return StepResult(
            next_step="completeness_check",
            metadata={
                "qa_history": qa_history,
                "candidates": [],
                "qa_best_index": decision.best_index,
                "selected_image_url": candidates[decision.best_index],
            },
        )

    def completeness_check(self, job: Job, store: JobStore) -> StepResult:
        inputs = self.inputs(job)
        if not inputs.check_completeness:
            return self._after_checks(job)

        (selected_url,) = self.require(job, "selected_image_url")
        question = dict(COMPLETENESS_QUESTION, context={"garment_type": inputs.garment_type})
        try:
            answer = self.provider_for(job).analyze(selected_url, question)
            analysis = CompletenessResult.model_validate(answer)
        except (ProviderError, ValidationError) as e:
            if self.ctx.settings.COMPLETENESS_FAILURE_POLICY == "fail":
                if isinstance(e, ValidationError):
                    raise ProviderValidationError(f"Bad completeness analysis: {e}")
                raise
            logger.warning(f"Job {job.id} completeness analysis failed, skipping: {e}")
            return self._after_checks(
                job,
                {"outfit_analysis_error": str(e), "outfit_analysis_skipped": True},
            )

        metadata = {"outfit_analysis": analysis.model_dump()}
        if not analysis.is_outfit_complete and not inputs.auto_complete:
            logger.info(f"Job {job.id} outfit incomplete ({analysis.missing_items}), waiting for user")
            return StepResult(
                next_step="await_user_choice",
                metadata=metadata,
                status=AWAITING_USER_CHOICE,
                self_invoke=False,
            )
        return self._after_checks(job, metadata)

    def await_user_choice(self, job: Job, store: JobStore) -> StepResult:
        """Resume once ``user_choice`` is set: ``accept`` continues, ``reject`` fails."""
        choice = (job.meta or {}).get("user_choice")
        if not choice:
            return StepResult(next_step="await_user_choice", status=AWAITING_USER_CHOICE, self_invoke=False)
        if choice == "reject":
            return StepResult(
                status=FAILED,
                self_invoke=False,
                error_message="Result rejected by user",
            )
        return self._after_checks(job)

    def reframe(self, job: Job, store: JobStore) -> StepResult:
        """Hand the selected image to a reframe job and wait for it."""
        inputs = self.inputs(job)
        (selected_url,) = self.require(job, "selected_image_url")

        existing = store.find_children(job.id, REFRAME)
        start_jobs = []
        if existing:
            child = existing[-1]
            logger.info(f"Job {job.id} reusing reframe job {child.id}")
        else:
            child = store.create(
                REFRAME,
                metadata={"base_image_url": selected_url, "aspect_ratio": inputs.target_aspect_ratio},
                parent_job_id=job.id,
            )
            start_jobs.append(child)

        return StepResult(
            next_step="done",
            metadata={"delegated_job_id": child.id},
            status=AWAITING_REFRAME,
            self_invoke=False,
            start_jobs=start_jobs,
        )

    def done(self, job: Job, store: JobStore) -> StepResult:
        meta = job.meta or {}
        final_url = meta.get("final_image_url") or meta.get("selected_image_url")
        return StepResult(metadata={"final_image_url": final_url}, status=COMPLETE, self_invoke=False)

    def _after_checks(self, job: Job, metadata: Optional[dict] = None) -> StepResult:
        next_step = "reframe" if (job.meta or {}).get("target_aspect_ratio") else "done"
        return StepResult(next_step=next_step, metadata=metadata or {})
