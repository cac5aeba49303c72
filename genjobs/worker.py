"""Worker: runs one step of one job per invocation."""

import logging
from typing import Any, Dict, Optional

from genjobs.errors import DispatchError, JobNotFoundError, StaleWriteError, StepValidationError
from genjobs.models.job import (
    AWAITING_FEEDBACK,
    AWAITING_USER_CHOICE,
    FAILED,
    PROCESSING,
    RUNNABLE_STATUSES,
    Job,
)
from genjobs.pipelines.base import StepResult
from genjobs.pipelines.escalation import escalate, mark_pending_fallback
from genjobs.pipelines.registry import PipelineRegistry, PipelineSpec, start_job
from genjobs.services.dispatcher import Dispatcher
from genjobs.services.job_store import JobStore

logger = logging.getLogger(__name__)

# Paused on a person rather than on another job; new input resumes them
USER_PAUSE_STATUSES = frozenset({AWAITING_USER_CHOICE, AWAITING_FEEDBACK})


class Worker:
    """Executes job invocations handed over by a dispatcher."""

    def __init__(self, session_factory, registry: PipelineRegistry, dispatcher: Dispatcher):
        """Initialize worker."""
        self.session_factory = session_factory
        self.registry = registry
        self.dispatcher = dispatcher

    def invoke(self, job_id: str, extra_inputs: Optional[Dict[str, Any]] = None) -> None:
        """
        Run the next step of a job.

        Safe to call more than once for the same state: the result is written
        with a version check, so a duplicate invocation loses the race and
        drops its result instead of forking the job.

        Args:
            job_id: Job to advance
            extra_inputs: Metadata to merge before running (user replies)
        """
        db = self.session_factory()
        try:
            self._invoke(JobStore(db), job_id, extra_inputs)
        except StaleWriteError as e:
            logger.info(f"Job {job_id} advanced by another invocation, dropping this one ({e})")
        except Exception as e:
            logger.error(f"Worker error for job {job_id}: {e}", exc_info=True)
        finally:
            db.close()

    def _invoke(self, store: JobStore, job_id: str, extra_inputs: Optional[Dict[str, Any]]) -> None:
        try:
            job = store.get(job_id)
        except JobNotFoundError:
            logger.error(f"Invoke for unknown job {job_id}")
            return

        if not self._should_run(job, extra_inputs):
            logger.info(f"Job {job.id} is {job.status}, nothing to do")
            return

        if extra_inputs:
            resumed = PROCESSING if job.status in USER_PAUSE_STATUSES else None
            job = store.update(job.id, status=resumed, metadata=extra_inputs, expected_version=job.version)

        try:
            spec = self.registry.get(job.pipeline_type)
        except StepValidationError as e:
            logger.error(f"Job {job.id} cannot run: {e}")
            store.update(job.id, status=FAILED, error_message=str(e), expected_version=job.version)
            return

        version = job.version
        logger.info(f"Processing job {job.id} ({job.pipeline_type}, step {job.step or 'initial'})")

        try:
            result = spec.runner.run(job, store)
        except StaleWriteError:
            raise
        except Exception as e:
            store.db.rollback()
            self._handle_failure(store, spec, store.get(job.id), job.step, e)
            return

        self._persist(store, job, result, result.base_version or version)

    def _should_run(self, job: Job, extra_inputs: Optional[Dict[str, Any]]) -> bool:
        if job.status in RUNNABLE_STATUSES:
            return True
        return job.status in USER_PAUSE_STATUSES and bool(extra_inputs)

    def _persist(self, store: JobStore, job: Job, result: StepResult, expected_version: int) -> None:
        fields: Dict[str, Any] = {
            "status": result.status,
            "metadata": result.metadata or None,
            "history": result.history,
            "expected_version": expected_version,
        }
        if result.next_step is not None:
            fields["step"] = result.next_step
        if result.error_message is not None:
            fields["error_message"] = result.error_message

        store.update(job.id, **fields)
        logger.info(f"Job {job.id} -> {result.status} (step {result.next_step or job.step})")

        for child in result.start_jobs:
            try:
                start_job(self.registry, self.dispatcher, child)
            except DispatchError as e:
                logger.warning(f"Child job {child.id} of {job.id} not dispatched, left for the watchdog: {e}")

        if result.self_invoke:
            try:
                self.dispatcher.dispatch(job.id)
            except DispatchError as e:
                logger.warning(f"Self-invoke for job {job.id} failed, left for stale recovery: {e}")

    def _handle_failure(
        self,
        store: JobStore,
        spec: PipelineSpec,
        job: Job,
        failed_step: Optional[str],
        error: Exception,
    ) -> None:
        """Escalate or fail the job. Never leaves it silently untouched."""
        logger.error(f"Job {job.id} failed at step {failed_step or 'initial'}: {error}", exc_info=True)

        if job.status not in RUNNABLE_STATUSES:
            # Another invocation already concluded the job
            logger.warning(f"Job {job.id} is already {job.status}, not recording failure")
            return

        if spec.runner.can_escalate(job, error):
            job = mark_pending_fallback(store, job, spec.runner.current_step(job), error)
            escalate(store, self.registry, self.dispatcher, job)
            return

        store.update(job.id, status=FAILED, error_message=str(error) or error.__class__.__name__)
