"""Scheduled job status endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_db
from app.models.domain import JobDescriptor, JobRun

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class JobDescriptorResponse(BaseModel):
    name: str
    task: str
    trigger_kind: str
    trigger_expr: str
    concurrency_limit: int
    state: str
    last_scheduled_at: datetime | None
    next_run_at: datetime | None
    last_started_at: datetime | None
    last_completed_at: datetime | None

    class Config:
        from_attributes = True


class JobRunResponse(BaseModel):
    id: int
    job_name: str
    started_at: datetime
    completed_at: datetime | None
    status: str
    records_processed: int | None
    error_message: str | None

    class Config:
        from_attributes = True


class JobsResponse(BaseModel):
    descriptors: list[JobDescriptorResponse]
    recent_runs: list[JobRunResponse]


@router.get("", response_model=JobsResponse)
async def list_jobs(
    runs: int = Query(20, ge=0, le=200, description="Number of recent runs"),
    db: AsyncSession = Depends(get_db),
):
    """Job descriptors and the most recent runs."""
    descriptors = await db.execute(select(JobDescriptor).order_by(JobDescriptor.name))
    recent = await db.execute(
        select(JobRun).order_by(JobRun.started_at.desc(), JobRun.id.desc()).limit(runs)
    )
    return JobsResponse(
        descriptors=[JobDescriptorResponse.model_validate(d) for d in descriptors.scalars()],
        recent_runs=[JobRunResponse.model_validate(r) for r in recent.scalars()],
    )
