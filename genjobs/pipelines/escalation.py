"""Switching a job to the fallback provider."""

import logging
from typing import Optional

from genjobs.errors import DispatchError, EscalationError
from genjobs.models.job import AWAITING_FALLBACK, FAILED, PENDING_FALLBACK, Job, utcnow
from genjobs.pipelines.base import BOOKKEEPING_KEYS
from genjobs.pipelines.registry import PipelineRegistry, start_job
from genjobs.services.dispatcher import Dispatcher
from genjobs.services.job_store import JobStore
from genjobs.services.providers import FALLBACK

logger = logging.getLogger(__name__)


def mark_pending_fallback(store: JobStore, job: Job, step: str, error: Exception) -> Job:
    """Record why the primary provider was abandoned."""
    fix_history = list((job.meta or {}).get("fix_history", []))
    fix_history.append({
        "failed_step": step,
        "provider": (job.meta or {}).get("provider", "primary"),
        "error": str(error),
        "at": utcnow().isoformat(),
    })
    return store.update(
        job.id,
        status=PENDING_FALLBACK,
        metadata={"escalation_reason": str(error), "failed_step": step, "fix_history": fix_history},
        error_message=str(error),
    )


def escalate(store: JobStore, registry: PipelineRegistry, dispatcher: Dispatcher, job: Job) -> Optional[Job]:
    """
    Create (or find) the fallback child of a ``pending_fallback`` job and park
    the parent in ``awaiting_fallback``.

    The child is the same pipeline type, starts at the failed step and carries
    all accumulated metadata with ``provider=fallback``.

    Returns:
        The fallback child, or None when escalation failed and the job was
        marked failed
    """
    meta = job.meta or {}
    reason = meta.get("escalation_reason") or job.error_message or "primary provider failed"
    failed_step = meta.get("failed_step")

    try:
        check_escalation_target(job)
        existing = [
            c for c in store.find_children(job.id, job.pipeline_type)
            if (c.meta or {}).get("fallback_for") == job.id
        ]
        created = False
        if existing:
            child = existing[-1]
        else:
            child_meta = {k: v for k, v in meta.items() if k not in BOOKKEEPING_KEYS}
            child_meta.update({"provider": FALLBACK, "fallback_for": job.id})
            child = store.create(job.pipeline_type, metadata=child_meta, parent_job_id=job.id, step=failed_step)
            created = True

        store.update(job.id, status=AWAITING_FALLBACK, metadata={"delegated_job_id": child.id})
    except Exception as e:
        message = f"Primary provider failed: {reason}; escalation failed: {e}"
        logger.error(f"Job {job.id} {message}", exc_info=True)
        store.db.rollback()
        store.update(job.id, status=FAILED, error_message=message)
        return None

    logger.info(f"Job {job.id} escalated to fallback job {child.id} at step {failed_step}")
    if created:
        try:
            start_job(registry, dispatcher, child)
        except DispatchError as e:
            # The child stays pending and is picked up by stale recovery or intake
            logger.warning(f"Fallback job {child.id} not dispatched: {e}")
    return child


def check_escalation_target(job: Job) -> None:
    """Refuse to escalate a job that already runs on the fallback provider."""
    if (job.meta or {}).get("provider") == FALLBACK:
        raise EscalationError(f"Job {job.id} already uses the fallback provider")
