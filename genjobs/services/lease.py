"""Non-blocking TTL lease used to serialize watchdog runs."""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from genjobs.models.job import utcnow
from genjobs.models.lease import SchedulerLease

logger = logging.getLogger(__name__)


class Lease:
    """A named lease that expires on its own if the holder dies."""

    def __init__(self, db: Session, name: str, ttl_seconds: int):
        self.db = db
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.holder = uuid.uuid4().hex
        self.held = False

    def try_acquire(self) -> bool:
        """Take the lease if it is free or expired. Never blocks."""
        now = utcnow()
        expires_at = now + timedelta(seconds=self.ttl_seconds)

        result = self.db.execute(
            update(SchedulerLease)
            .where(
                SchedulerLease.name == self.name,
                or_(SchedulerLease.expires_at.is_(None), SchedulerLease.expires_at < now),
            )
            .values(holder=self.holder, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 1:
            self.held = True
            return True

        # First run ever: the row does not exist yet
        try:
            self.db.add(SchedulerLease(name=self.name, holder=self.holder, expires_at=expires_at))
            self.db.commit()
            self.held = True
        except IntegrityError:
            self.db.rollback()
            self.held = False
        return self.held

    def release(self) -> None:
        """Give the lease back early. A no-op if someone else holds it now."""
        if not self.held:
            return
        self.db.execute(
            update(SchedulerLease)
            .where(SchedulerLease.name == self.name, SchedulerLease.holder == self.holder)
            .values(holder=None, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.held = False
        logger.debug(f"Lease {self.name} released")
