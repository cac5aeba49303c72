"""Watchdog: recovers stalled jobs, feeds slot-limited pipelines and reconciles delegated work."""

import logging
import threading
from typing import List

from genjobs.config import settings
from genjobs.errors import DispatchError, JobNotFoundError, StaleWriteError
from genjobs.models.job import (
    COMPLETE,
    FAILED,
    FAILED_STATUSES,
    PENDING_FALLBACK,
    PERMANENTLY_FAILED,
    Job,
)
from genjobs.pipelines.escalation import escalate
from genjobs.pipelines.registry import PipelineRegistry, PipelineSpec
from genjobs.services.dispatcher import Dispatcher
from genjobs.services.job_store import JobStore
from genjobs.services.lease import Lease

logger = logging.getLogger(__name__)

LEASE_NAME = "watchdog"


class Watchdog:
    """Periodic reconciliation pass over every registered pipeline type."""

    def __init__(self, session_factory, registry: PipelineRegistry, dispatcher: Dispatcher, config=settings):
        self.session_factory = session_factory
        self.registry = registry
        self.dispatcher = dispatcher
        self.config = config

    def run_once(self) -> List[str]:
        """
        One watchdog cycle.

        Returns a list of human-readable actions taken. When another run holds
        the lease, returns an empty list without touching any job.
        """
        db = self.session_factory()
        lease = Lease(db, LEASE_NAME, self.config.WATCHDOG_LOCK_TTL)
        try:
            if not lease.try_acquire():
                logger.info("Watchdog lease held elsewhere, skipping this cycle")
                return []

            store = JobStore(db)
            actions: List[str] = []
            tasks = (
                self.recover_stale,
                self.intake,
                self.propagate_delegations,
                self.propagate_escalations,
            )
            for pipeline_type, spec in self.registry.items():
                for task in tasks:
                    try:
                        actions.extend(task(store, pipeline_type, spec))
                    except Exception as e:
                        db.rollback()
                        logger.error(f"Watchdog task {task.__name__} failed for {pipeline_type}: {e}", exc_info=True)

            if actions:
                logger.info(f"Watchdog cycle finished with {len(actions)} actions")
            return actions
        finally:
            try:
                lease.release()
            finally:
                db.close()

    def recover_stale(self, store: JobStore, pipeline_type: str, spec: PipelineSpec) -> List[str]:
        """Re-invoke jobs that stopped making progress, or give up on them."""
        actions = []
        for job in store.find_stale(pipeline_type, spec.stale_after_seconds, spec.stale_statuses):
            retries = (job.meta or {}).get("watchdog_retries", 0) + 1
            try:
                if retries > self.config.MAX_WATCHDOG_RETRIES:
                    store.update(
                        job.id,
                        status=PERMANENTLY_FAILED,
                        error_message=f"Job stalled in {job.status} after {retries - 1} watchdog recoveries",
                        expected_version=job.version,
                    )
                    logger.error(f"Job {job.id} permanently failed after {retries - 1} recoveries")
                    actions.append(f"permanently_failed {job.id}")
                    continue

                # Bumps updated_at, so the job is not stale again this cycle
                store.update(job.id, metadata={"watchdog_retries": retries}, expected_version=job.version)
            except StaleWriteError:
                logger.info(f"Job {job.id} moved while being recovered, skipping")
                continue

            logger.warning(f"Recovering stale job {job.id} ({job.status}, step {job.step}), attempt {retries}")
            try:
                self.dispatcher.dispatch(job.id)
                actions.append(f"recovered {job.id}")
            except DispatchError as e:
                logger.error(f"Could not re-invoke stale job {job.id}: {e}")
        return actions

    def intake(self, store: JobStore, pipeline_type: str, spec: PipelineSpec) -> List[str]:
        """Claim pending work for slot-limited types while a slot is free."""
        if not spec.slot_limited:
            return []

        actions = []
        free = spec.slot_capacity - store.count_active(pipeline_type)
        for _ in range(max(free, 0)):
            job = store.claim_next(pipeline_type)
            if job is None:
                break
            try:
                self.dispatcher.dispatch(job.id)
                actions.append(f"claimed {job.id}")
            except DispatchError as e:
                logger.error(f"Dispatch of claimed job {job.id} failed, reverting: {e}")
                store.revert_claim(job.id)
                break
        return actions

    def propagate_delegations(self, store: JobStore, pipeline_type: str, spec: PipelineSpec) -> List[str]:
        """Move parents forward once the job they wait on has finished."""
        actions = []
        for parent in store.find_by_status(pipeline_type, spec.awaiting_statuses):
            try:
                actions.extend(self._propagate_one(store, spec, parent))
            except StaleWriteError:
                logger.info(f"Job {parent.id} moved during propagation, skipping")
        return actions

    def _propagate_one(self, store: JobStore, spec: PipelineSpec, parent: Job) -> List[str]:
        child_id = (parent.meta or {}).get("delegated_job_id")
        if not child_id:
            logger.warning(f"Job {parent.id} is {parent.status} without a delegated job")
            return []

        try:
            child = store.get(child_id)
        except JobNotFoundError:
            store.update(
                parent.id,
                status=FAILED,
                error_message=f"Delegated job {child_id} not found",
                expected_version=parent.version,
            )
            return [f"failed {parent.id}"]

        if child.status in FAILED_STATUSES:
            store.update(
                parent.id,
                status=FAILED,
                error_message=f"Delegated job {child.id} failed: {child.error_message or 'unknown error'}",
                expected_version=parent.version,
            )
            logger.warning(f"Job {parent.id} failed because delegated job {child.id} failed")
            return [f"failed {parent.id}"]

        if child.status != COMPLETE:
            return []

        result = spec.runner.delegate_result(parent, child)
        store.update(
            parent.id,
            status=result.status,
            metadata=result.metadata or None,
            history=result.history,
            expected_version=parent.version,
        )
        logger.info(f"Job {parent.id} picked up result of delegated job {child.id} -> {result.status}")

        if result.self_invoke:
            try:
                self.dispatcher.dispatch(parent.id)
            except DispatchError as e:
                logger.error(f"Could not resume job {parent.id}: {e}")
        return [f"propagated {child.id} -> {parent.id}"]

    def propagate_escalations(self, store: JobStore, pipeline_type: str, spec: PipelineSpec) -> List[str]:
        """Finish escalations that were interrupted before the fallback job existed."""
        actions = []
        for job in store.find_by_status(pipeline_type, (PENDING_FALLBACK,)):
            child = escalate(store, self.registry, self.dispatcher, job)
            actions.append(f"escalated {job.id} -> {child.id}" if child else f"failed {job.id}")
        return actions

    def run_forever(self, stop_event=None):
        """Main watchdog loop.

        Args:
            stop_event: Optional threading.Event to signal the loop to stop
        """
        stop_event = stop_event or threading.Event()
        logger.info(f"Watchdog started, interval {self.config.WATCHDOG_INTERVAL}s")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Watchdog error: {e}", exc_info=True)
            stop_event.wait(self.config.WATCHDOG_INTERVAL)
        logger.info("Watchdog stop signal received")


def main():
    """Entry point for a standalone watchdog process."""
    from genjobs.engine import build_engine

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    engine = build_engine()
    engine.watchdog.run_forever()


if __name__ == "__main__":
    main()
