"""Document job and worker API routes"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request

from esign_workflow.api.routes.contracts import get_engine
from esign_workflow.engine import WorkflowEngine
from esign_workflow.models.job import DocumentJob, JobStats, JobStatus, WorkerStatus

router = APIRouter()


@router.get("/api/jobs", response_model=List[DocumentJob])
async def list_jobs(
    status: Optional[JobStatus] = None,
    limit: int = 100,
    engine: WorkflowEngine = Depends(get_engine),
):
    return engine.jobs.list_jobs(status, limit)


@router.get("/api/jobs/stats", response_model=JobStats)
async def job_stats(engine: WorkflowEngine = Depends(get_engine)):
    return engine.jobs.get_stats()


@router.get("/api/jobs/{job_id}", response_model=DocumentJob)
async def get_job(job_id: str, engine: WorkflowEngine = Depends(get_engine)):
    return engine.jobs.get_job(job_id)


@router.post("/api/jobs/{job_id}/reprocess", response_model=DocumentJob)
async def reprocess_job(job_id: str, engine: WorkflowEngine = Depends(get_engine)):
    """Reset a failed job so the next poll picks it up."""
    return engine.jobs.reprocess(job_id)


@router.get("/api/worker/status", response_model=WorkerStatus)
async def worker_status(request: Request):
    return request.app.state.worker.get_status()
