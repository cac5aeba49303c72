"""Durable job records: create, read, merge-update, claim and staleness queries."""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from genjobs.errors import JobNotFoundError, StaleWriteError
from genjobs.models.job import (
    CLAIMED,
    FAILED_STATUSES,
    PENDING,
    PROCESSING,
    Job,
    utcnow,
)

logger = logging.getLogger(__name__)

_UNSET = object()

# Merge conflicts on unguarded writes are retried this many times
MERGE_ATTEMPTS = 3


class JobStore:
    """Job Store over a SQLAlchemy session.

    Every write bumps ``updated_at`` (the watchdog's staleness clock) and
    ``version`` (the optimistic concurrency token).
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        pipeline_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        parent_job_id: Optional[str] = None,
        history: Optional[List[Dict[str, Any]]] = None,
        step: Optional[str] = None,
    ) -> Job:
        """Insert a new job with status pending."""
        now = utcnow()
        job = Job(
            pipeline_type=pipeline_type,
            status=PENDING,
            step=step,
            meta=dict(metadata or {}),
            history=list(history or []),
            parent_job_id=parent_job_id,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.commit()
        logger.info(f"Created {pipeline_type} job {job.id}")
        return job

    def get(self, job_id: str) -> Job:
        """Load a fresh copy of a job.

        Raises:
            JobNotFoundError: If no job has this id
        """
        job = (
            self.db.query(Job)
            .filter(Job.id == job_id)
            .populate_existing()
            .first()
        )
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def update(
        self,
        job_id: str,
        status: Optional[str] = None,
        step: Any = _UNSET,
        metadata: Optional[Dict[str, Any]] = None,
        history: Optional[List[Dict[str, Any]]] = None,
        error_message: Any = _UNSET,
        expected_version: Optional[int] = None,
    ) -> Job:
        """
        Merge fields into a job.

        ``metadata`` is shallow-merged over the stored document, so keys the
        caller does not mention survive. ``history`` replaces the stored list.

        Args:
            job_id: Job to update
            status: New status
            step: New step name (``None`` clears it)
            metadata: Partial metadata to merge
            history: Full replacement history
            error_message: Error text (``None`` clears it)
            expected_version: When given, the write only applies if the job is
                still at this version

        Returns:
            The refreshed job

        Raises:
            JobNotFoundError: If the job does not exist
            StaleWriteError: If ``expected_version`` no longer matches
        """
        for attempt in range(MERGE_ATTEMPTS):
            current = self.get(job_id)
            if expected_version is not None and current.version != expected_version:
                raise StaleWriteError(job_id, expected_version)

            values: Dict[str, Any] = {
                "updated_at": utcnow(),
                "version": current.version + 1,
            }
            if status is not None:
                values["status"] = status
            if step is not _UNSET:
                values["step"] = step
            if metadata is not None:
                values["meta"] = {**(current.meta or {}), **metadata}
            if history is not None:
                values["history"] = list(history)
            if error_message is not _UNSET:
                values["error_message"] = error_message
            elif status is not None and status not in FAILED_STATUSES:
                values["error_message"] = None

            result = self.db.execute(
                update(Job)
                .where(Job.id == job_id, Job.version == current.version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()

            if result.rowcount == 1:
                return self.get(job_id)

            if expected_version is not None:
                raise StaleWriteError(job_id, expected_version)
            logger.warning(f"Job {job_id} changed during merge, retrying ({attempt + 1}/{MERGE_ATTEMPTS})")

        raise StaleWriteError(job_id, current.version)

    def claim_next(self, pipeline_type: str) -> Optional[Job]:
        """
        Atomically move the oldest pending job of a type to claimed.

        A single UPDATE with the pending check in its WHERE clause, so two
        concurrent callers can never claim the same row.
        """
        candidate = (
            select(Job.id)
            .where(Job.pipeline_type == pipeline_type, Job.status == PENDING)
            .order_by(Job.created_at, Job.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        result = self.db.execute(
            update(Job)
            .where(Job.id == candidate, Job.status == PENDING)
            .values(status=CLAIMED, updated_at=utcnow(), version=Job.version + 1)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        claimed_id = result.scalar_one_or_none()
        self.db.commit()

        if claimed_id is None:
            return None
        logger.info(f"Claimed {pipeline_type} job {claimed_id}")
        return self.get(claimed_id)

    def revert_claim(self, job_id: str) -> bool:
        """Put a claimed job back to pending. Returns False if it moved on."""
        result = self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == CLAIMED)
            .values(status=PENDING, updated_at=utcnow(), version=Job.version + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        reverted = result.rowcount == 1
        if reverted:
            logger.warning(f"Job {job_id} reverted to pending")
        return reverted

    def find_stale(
        self,
        pipeline_type: str,
        threshold_seconds: float,
        statuses: Iterable[str] = (CLAIMED, PROCESSING),
    ) -> List[Job]:
        """Jobs in the given active statuses not updated within the threshold."""
        cutoff = utcnow() - timedelta(seconds=threshold_seconds)
        return (
            self.db.query(Job)
            .filter(
                Job.pipeline_type == pipeline_type,
                Job.status.in_(list(statuses)),
                Job.updated_at < cutoff,
            )
            .order_by(Job.updated_at)
            .populate_existing()
            .all()
        )

    def find_by_status(self, pipeline_type: str, statuses: Iterable[str]) -> List[Job]:
        """All jobs of a type in any of the given statuses."""
        return (
            self.db.query(Job)
            .filter(Job.pipeline_type == pipeline_type, Job.status.in_(list(statuses)))
            .order_by(Job.updated_at)
            .populate_existing()
            .all()
        )

    def find_children(self, parent_job_id: str, pipeline_type: Optional[str] = None) -> List[Job]:
        """Jobs created on behalf of a parent, oldest first."""
        query = self.db.query(Job).filter(Job.parent_job_id == parent_job_id)
        if pipeline_type is not None:
            query = query.filter(Job.pipeline_type == pipeline_type)
        return query.order_by(Job.created_at).populate_existing().all()

    def count_active(self, pipeline_type: str) -> int:
        """Number of claimed or processing jobs of a type."""
        return (
            self.db.query(func.count(Job.id))
            .filter(Job.pipeline_type == pipeline_type, Job.status.in_([CLAIMED, PROCESSING]))
            .scalar()
        )
