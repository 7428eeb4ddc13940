"""Consume job endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from services.job_configs import ConsumeConfig
from services.job_engine import JobEngine, get_engine

router = APIRouter()

JOB_TYPE = "consume"


@router.post("/start")
async def start_consume(
    config: ConsumeConfig,
    engine: JobEngine = Depends(get_engine),
):
    return await engine.start_consume(config)


@router.post("/stop/{job_id}")
async def stop_consume(job_id: str, engine: JobEngine = Depends(get_engine)):
    result = await engine.stop_job(job_id, job_type=JOB_TYPE)
    return {"success": True, "message": "Consume job stopped", **result}


@router.post("/stop")
async def stop_all_consume(engine: JobEngine = Depends(get_engine)):
    stopped = await engine.stop_all(JOB_TYPE)
    return {
        "success": True,
        "message": f"Stopped {len(stopped)} consume job(s)",
        "stopped": stopped,
    }


@router.get("/{job_id}/missing-sequences")
async def missing_sequences(
    job_id: str,
    start: Optional[int] = Query(None, description="First expected sequence"),
    end: Optional[int] = Query(None, description="Last expected sequence"),
    engine: JobEngine = Depends(get_engine),
):
    """Sequence numbers in ``[start, end]`` that the job never received."""
    return await engine.missing_sequences(job_id, start, end)
