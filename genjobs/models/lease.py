"""Scheduler lease model."""

from sqlalchemy import Column, DateTime, Text

from genjobs.database import Base


class SchedulerLease(Base):
    """A named lease with a TTL, held by at most one watchdog run."""

    __tablename__ = "scheduler_leases"

    name = Column(Text, primary_key=True)
    holder = Column(Text)
    expires_at = Column(DateTime)
