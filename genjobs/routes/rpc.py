"""Job RPC routes."""

import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from genjobs.database import get_db
from genjobs.engine import Engine, get_engine
from genjobs.errors import DispatchError, JobNotFoundError, StaleWriteError
from genjobs.schemas.job import (
    ClaimNextJobRequest,
    CreateJobRequest,
    GetJobRequest,
    InvokeRequest,
    InvokeResponse,
    JobIdResponse,
    JobResponse,
    ListStaleJobsRequest,
    UpdateJobRequest,
    WatchdogResponse,
)
from genjobs.pipelines.registry import start_job
from genjobs.services.job_store import JobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rpc", tags=["rpc"])


def _job_response(job) -> JobResponse:
    return JobResponse(
        id=job.id,
        pipeline_type=job.pipeline_type,
        status=job.status,
        step=job.step,
        metadata=dict(job.meta or {}),
        history=list(job.history or []),
        error_message=job.error_message,
        parent_job_id=job.parent_job_id,
        version=job.version,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.post("/CreateJob", response_model=JobIdResponse)
def create_job(
    data: CreateJobRequest,
    db: Session = Depends(get_db),
    engine: Engine = Depends(get_engine),
):
    """Create a job and start it unless its type waits for a slot."""
    if data.pipeline_type not in engine.registry:
        raise HTTPException(status_code=422, detail=f"Unknown pipeline type: {data.pipeline_type}")

    job = JobStore(db).create(data.pipeline_type, metadata=data.metadata)
    try:
        start_job(engine.registry, engine.dispatcher, job)
    except DispatchError as e:
        # The job is stored as pending; stale recovery picks it up
        logger.warning(f"Initial dispatch of job {job.id} failed: {e}")

    return JobIdResponse(id=job.id)


@router.post("/GetJob", response_model=JobResponse)
def get_job(data: GetJobRequest, db: Session = Depends(get_db)):
    """Get a job."""
    try:
        job = JobStore(db).get(data.id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.post("/UpdateJob")
def update_job(data: UpdateJobRequest, db: Session = Depends(get_db)):
    """Merge fields into a job."""
    fields = data.fields.model_dump(exclude_unset=True)
    try:
        JobStore(db).update(data.id, **fields)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except StaleWriteError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {}


@router.post("/ClaimNextJob", response_model=Optional[JobIdResponse])
def claim_next_job(data: ClaimNextJobRequest, db: Session = Depends(get_db)):
    """Claim the oldest pending job of a type, if any."""
    job = JobStore(db).claim_next(data.pipeline_type)
    if job is None:
        return None
    return JobIdResponse(id=job.id)


@router.post("/ListStaleJobs", response_model=List[JobIdResponse])
def list_stale_jobs(
    data: ListStaleJobsRequest,
    db: Session = Depends(get_db),
    engine: Engine = Depends(get_engine),
):
    """List jobs of a type that stopped making progress."""
    if data.pipeline_type not in engine.registry:
        raise HTTPException(status_code=422, detail=f"Unknown pipeline type: {data.pipeline_type}")

    statuses = engine.registry.get(data.pipeline_type).stale_statuses
    jobs = JobStore(db).find_stale(data.pipeline_type, data.threshold_seconds, statuses)
    return [JobIdResponse(id=job.id) for job in jobs]


@router.post("/Invoke", response_model=InvokeResponse)
def invoke(
    data: InvokeRequest,
    background_tasks: BackgroundTasks,
    engine: Engine = Depends(get_engine),
):
    """Advance a job by one step in the background."""
    background_tasks.add_task(engine.worker.invoke, data.job_id, data.extra_inputs)
    logger.info(f"Invoke accepted for job {data.job_id}")
    return InvokeResponse(dispatched=True)


@router.post("/RunWatchdog", response_model=WatchdogResponse)
def run_watchdog(engine: Engine = Depends(get_engine)):
    """Run one watchdog cycle now."""
    return WatchdogResponse(actions=engine.watchdog.run_once())
