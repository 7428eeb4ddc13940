"""Endpoints that run Kafka's own perf-test scripts against the connected cluster."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from services.job_configs import PerfConsumerConfig, PerfProducerConfig
from services.job_engine import JobEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/tools/check")
async def check_tools(engine: JobEngine = Depends(get_engine)):
    tools = engine.perf_tools.check_tools()
    available = all(tool["available"] for tool in tools.values())
    return {
        "success": True,
        "available": available,
        "tools": tools,
        "message": "Kafka tools found" if available else "Kafka tools not found",
    }


@router.post("/producer/run")
async def run_producer(config: PerfProducerConfig, engine: JobEngine = Depends(get_engine)):
    """Run kafka-producer-perf-test.sh and wait for its summary."""
    config.validate_setup()
    result = await engine.perf_tools.run_producer(config)
    return {"success": True, "result": result}


@router.post("/consumer/run")
async def run_consumer(config: PerfConsumerConfig, engine: JobEngine = Depends(get_engine)):
    """Run kafka-consumer-perf-test.sh and wait for its summary."""
    config.validate_setup()
    result = await engine.perf_tools.run_consumer(config)
    return {"success": True, "result": result}


@router.get("/results")
async def list_results(
    limit: int = Query(50, ge=0),
    type: Optional[str] = Query(None),
    engine: JobEngine = Depends(get_engine),
):
    results = engine.perf_tools.results
    return {"results": results.list(limit, type), "total": len(results)}


@router.get("/results/{result_id}")
async def get_result(result_id: int, engine: JobEngine = Depends(get_engine)):
    return engine.perf_tools.results.get(result_id)


@router.delete("/results/{result_id}")
async def delete_result(result_id: int, engine: JobEngine = Depends(get_engine)):
    engine.perf_tools.results.delete(result_id)
    return {"success": True, "message": "Test result deleted"}
