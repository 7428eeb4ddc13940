"""Job history and live job management endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from services.job_engine import JobEngine, get_engine

router = APIRouter()


@router.get("")
async def list_jobs(
    type: Optional[str] = Query(None, description="Filter by job type"),
    status: Optional[str] = Query(None, description="running, completed or failed"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: JobEngine = Depends(get_engine),
):
    """Job records, newest first."""
    jobs = await engine.store.list_all(
        job_type=type,
        status=status,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    total = await engine.store.count_all(
        job_type=type, status=status, start_date=start_date, end_date=end_date
    )
    return {"jobs": jobs, "total": total, "limit": limit, "offset": offset}


@router.get("/stats/summary")
async def jobs_summary(engine: JobEngine = Depends(get_engine)):
    """Counts by type and status plus the most recent jobs."""
    summary = await engine.store.summary()
    summary["running"] = len(engine.registry)
    return summary


@router.get("/running")
async def running_jobs(
    type: Optional[str] = Query(None, description="Filter by job type"),
    engine: JobEngine = Depends(get_engine),
):
    jobs = await engine.list_running(type)
    return {"jobs": jobs, "count": len(jobs)}


@router.get("/running/{job_id}")
async def running_job(job_id: str, engine: JobEngine = Depends(get_engine)):
    return await engine.get_running(job_id)


@router.get("/{job_id}")
async def get_job(job_id: str, engine: JobEngine = Depends(get_engine)):
    job = await engine.store.get_by_id(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    job["live"] = job_id in engine.registry
    return job


@router.delete("/{job_id}")
async def delete_job(job_id: str, engine: JobEngine = Depends(get_engine)):
    """Delete a job record (stopping it first if it is still running)."""
    if not await engine.delete_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": True, "message": "Job deleted"}


@router.post("/{job_id}/stop")
async def stop_job(job_id: str, engine: JobEngine = Depends(get_engine)):
    """Stop any live job regardless of type."""
    result = await engine.stop_job(job_id)
    return {"success": True, "message": "Job stopped", **result}


@router.get("/{job_id}/stats")
async def job_stats(
    job_id: str,
    include_samples: bool = Query(False, alias="includeSamples"),
    engine: JobEngine = Depends(get_engine),
):
    return await engine.get_stats(job_id, include_samples=include_samples)


@router.get("/{job_id}/logs")
async def job_logs(
    job_id: str,
    limit: int = Query(1000, ge=1, le=10000),
    offset: int = Query(0, ge=0),
    engine: JobEngine = Depends(get_engine),
):
    return await engine.get_logs(job_id, limit=limit, offset=offset)


@router.delete("/{job_id}/logs")
async def clear_job_logs(job_id: str, engine: JobEngine = Depends(get_engine)):
    cleared = engine.clear_logs(job_id)
    return {"success": True, "cleared": cleared}
