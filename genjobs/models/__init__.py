"""SQLAlchemy ORM models."""

from genjobs.models.job import Job
from genjobs.models.lease import SchedulerLease

__all__ = [
    "Job",
    "SchedulerLease",
]
