"""Produce job endpoints."""

from fastapi import APIRouter, Depends

from services.job_configs import ProduceConfig
from services.job_engine import JobEngine, get_engine

router = APIRouter()

JOB_TYPE = "produce"


@router.post("/start")
async def start_produce(
    config: ProduceConfig,
    engine: JobEngine = Depends(get_engine),
):
    """Start a continuous or count-bounded produce job.

    A ``count`` of 1 sends the record before responding and includes the
    final stats.
    """
    return await engine.start_produce(config)


@router.post("/stop/{job_id}")
async def stop_produce(job_id: str, engine: JobEngine = Depends(get_engine)):
    result = await engine.stop_job(job_id, job_type=JOB_TYPE)
    return {"success": True, "message": "Produce job stopped", **result}


@router.post("/stop")
async def stop_all_produce(engine: JobEngine = Depends(get_engine)):
    """Stop every running produce job."""
    stopped = await engine.stop_all(JOB_TYPE)
    return {
        "success": True,
        "message": f"Stopped {len(stopped)} produce job(s)",
        "stopped": stopped,
    }
