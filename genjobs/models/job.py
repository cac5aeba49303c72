"""Job model: one row per pipeline instance."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB

from genjobs.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

# Statuses
PENDING = "pending"
CLAIMED = "claimed"
PROCESSING = "processing"
COMPLETE = "complete"
FAILED = "failed"
PERMANENTLY_FAILED = "permanently_failed"
PENDING_FALLBACK = "pending_fallback"
AWAITING_REFRAME = "awaiting_reframe"
AWAITING_REFINEMENT = "awaiting_refinement"
AWAITING_FALLBACK = "awaiting_fallback"
AWAITING_FEEDBACK = "awaiting_feedback"
AWAITING_USER_CHOICE = "awaiting_user_choice"

FAILED_STATUSES = frozenset({FAILED, PERMANENTLY_FAILED})
RUNNABLE_STATUSES = frozenset({PENDING, CLAIMED, PROCESSING})


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable across SQLite and Postgres."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Job(Base):
    """Job represents a single pipeline instance and its durable progress."""

    __tablename__ = "jobs"

    id = Column(Text, primary_key=True, default=lambda: str(uuid.uuid4()))
    pipeline_type = Column(Text, nullable=False)  # 'composite', 'agent_conversation', 'reframe', 'batch_refine'
    status = Column(Text, nullable=False, default=PENDING)
    step = Column(Text)  # Next step for step-machines, unused by the planner loop
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    history = Column(JSONType, nullable=False, default=list)  # Planner turns, append-only
    error_message = Column(Text)
    parent_job_id = Column(Text)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_jobs_type_status", "pipeline_type", "status"),
        Index("idx_jobs_updated_at", "updated_at"),
        Index("idx_jobs_parent_job_id", "parent_job_id"),
    )
