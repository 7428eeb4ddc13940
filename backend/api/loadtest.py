"""Load test endpoints (rate-limited producer and timed consumer)."""

from fastapi import APIRouter, Depends, Query

from services.job_configs import LoadTestConsumerConfig, LoadTestProducerConfig
from services.job_engine import JobEngine, get_engine

router = APIRouter()

PRODUCER = "loadtest-producer"
CONSUMER = "loadtest-consumer"


async def _stop(engine: JobEngine, job_id: str, job_type: str) -> dict:
    result = await engine.stop_job(job_id, job_type=job_type)
    return {"success": True, "message": "Load test stopped", **result}


async def _stop_all(engine: JobEngine, job_type: str) -> dict:
    stopped = await engine.stop_all(job_type)
    return {
        "success": True,
        "message": f"Stopped {len(stopped)} load test(s)",
        "stopped": stopped,
    }


# ============================================================================
# Producer
# ============================================================================

@router.post("/producer/start")
async def start_producer(
    config: LoadTestProducerConfig,
    engine: JobEngine = Depends(get_engine),
):
    """Start a producer load test at ``targetThroughput`` records/sec for ``duration`` seconds."""
    return await engine.start_load_test_producer(config)


@router.post("/producer/stop/{job_id}")
async def stop_producer(job_id: str, engine: JobEngine = Depends(get_engine)):
    return await _stop(engine, job_id, PRODUCER)


@router.post("/producer/stop")
async def stop_all_producers(engine: JobEngine = Depends(get_engine)):
    return await _stop_all(engine, PRODUCER)


@router.get("/producer/stats/{job_id}")
async def producer_stats(
    job_id: str,
    include_samples: bool = Query(False, alias="includeSamples"),
    engine: JobEngine = Depends(get_engine),
):
    return await engine.get_stats(job_id, job_type=PRODUCER, include_samples=include_samples)


# ============================================================================
# Consumer
# ============================================================================

@router.post("/consumer/start")
async def start_consumer(
    config: LoadTestConsumerConfig,
    engine: JobEngine = Depends(get_engine),
):
    return await engine.start_load_test_consumer(config)


@router.post("/consumer/stop/{job_id}")
async def stop_consumer(job_id: str, engine: JobEngine = Depends(get_engine)):
    return await _stop(engine, job_id, CONSUMER)


@router.post("/consumer/stop")
async def stop_all_consumers(engine: JobEngine = Depends(get_engine)):
    return await _stop_all(engine, CONSUMER)


@router.get("/consumer/stats/{job_id}")
async def consumer_stats(job_id: str, engine: JobEngine = Depends(get_engine)):
    return await engine.get_stats(job_id, job_type=CONSUMER)


# ============================================================================
# Running tests
# ============================================================================

@router.get("/running")
async def running_load_tests(engine: JobEngine = Depends(get_engine)):
    """All live load tests, producers and consumers."""
    jobs = await engine.list_running(PRODUCER) + await engine.list_running(CONSUMER)
    return {"jobs": jobs, "count": len(jobs)}
