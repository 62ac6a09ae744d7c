"""Jobs router - inspect pipeline jobs and batches."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from omnisync.core.deps import get_current_user, get_db
from omnisync.db.enums import JobKind, JobStatus
from omnisync.schemas.job import BatchStatusRead, JobRead
from omnisync.services import job_service

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get("", response_model=list[JobRead])
def list_jobs(
    status: JobStatus | None = None,
    kind: JobKind | None = None,
    batch_id: UUID | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """List recent jobs for the current user."""
    return job_service.list_jobs(
        db,
        user.id,
        status=status,
        kind=kind,
        batch_id=batch_id,
        limit=min(limit, 100),
    )


@router.get("/stats", response_model=dict[str, int])
def get_job_stats(
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Job counts per status for the current user."""
    return job_service.get_job_stats(db, user.id)


@router.get("/batches/{batch_id}", response_model=BatchStatusRead)
def get_batch_status(
    batch_id: UUID,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Aggregate status of one pipeline run."""
    status = job_service.get_batch_status(db, user.id, batch_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return status


@router.get("/{job_id}", response_model=JobRead)
def get_job(
    job_id: UUID,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    job = job_service.get_job(db, job_id, user_id=user.id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{job_id}/retry", response_model=JobRead)
def retry_job(
    job_id: UUID,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Requeue a job that ended in error."""
    try:
        job = job_service.requeue_job(db, job_id, user.id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
