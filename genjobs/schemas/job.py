"""Job RPC request/response schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CreateJobRequest(BaseModel):
    pipeline_type: str
    metadata: Dict[str, Any] = {}


class JobIdResponse(BaseModel):
    id: str


class GetJobRequest(BaseModel):
    id: str


class JobResponse(BaseModel):
    """Full job record."""

    id: str
    pipeline_type: str
    status: str
    step: Optional[str] = None
    metadata: Dict[str, Any]
    history: List[Dict[str, Any]]
    error_message: Optional[str] = None
    parent_job_id: Optional[str] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class JobFields(BaseModel):
    """Fields a caller may change through UpdateJob."""

    status: Optional[str] = None
    step: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    expected_version: Optional[int] = None


class UpdateJobRequest(BaseModel):
    id: str
    fields: JobFields


class ClaimNextJobRequest(BaseModel):
    pipeline_type: str


class ListStaleJobsRequest(BaseModel):
    pipeline_type: str
    threshold_seconds: float = Field(gt=0)


class InvokeRequest(BaseModel):
    job_id: str
    extra_inputs: Optional[Dict[str, Any]] = None


class InvokeResponse(BaseModel):
    dispatched: bool = True


class WatchdogResponse(BaseModel):
    actions: List[str]
