"""System status and observability API.

Reports broker connectivity, live jobs, scheduler state and job history
counts. Protected by ENABLE_SYSTEM_STATUS env var.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from config import settings
from services.job_engine import JobEngine, get_engine

router = APIRouter()


class ScheduledTask(BaseModel):
    """One APScheduler job."""

    id: str
    name: Optional[str] = None
    next_run: Optional[datetime] = None


class SchedulerStatus(BaseModel):
    """Scheduler health status."""

    enabled: bool
    running: bool
    tasks: List[ScheduledTask]


class BrokerStatus(BaseModel):
    connected: bool
    brokers: List[str] = []
    client_id: Optional[str] = None


class LiveJobsStatus(BaseModel):
    total: int
    by_type: Dict[str, int]
    observers: int


class HistoryCounts(BaseModel):
    """Job history counts (extra queries)."""

    total: int = 0
    by_status: Dict[str, int] = {}
    failed_24h: int = 0


class SystemStatusResponse(BaseModel):
    """Full system status response."""

    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: datetime
    broker: BrokerStatus
    scheduler: SchedulerStatus
    jobs: LiveJobsStatus
    history: Optional[HistoryCounts] = None


def get_scheduler_status() -> SchedulerStatus:
    from jobs import scheduler as scheduler_module

    scheduler = scheduler_module.scheduler
    tasks = []
    if scheduler is not None:
        for job in scheduler.get_jobs():
            tasks.append(ScheduledTask(
                id=job.id,
                name=job.name,
                next_run=getattr(job, "next_run_time", None),
            ))
    return SchedulerStatus(
        enabled=settings.enable_scheduler,
        running=scheduler is not None,
        tasks=tasks,
    )


async def get_history_counts(engine: JobEngine) -> HistoryCounts:
    summary = await engine.store.summary()
    day_ago = datetime.utcnow() - timedelta(days=1)
    failed_24h = await engine.store.count_all(status="failed", start_date=day_ago)
    return HistoryCounts(
        total=summary["total"],
        by_status=summary["byStatus"],
        failed_24h=failed_24h,
    )


def determine_health_status(broker: BrokerStatus, scheduler: SchedulerStatus) -> str:
    """Determine overall system health.

    Returns:
        "healthy" - broker connected and scheduler running (when enabled)
        "degraded" - no broker connection, or the scheduler is not running
    """
    if not broker.connected:
        return "degraded"
    if scheduler.enabled and not scheduler.running:
        return "degraded"
    return "healthy"


@router.get("/status", response_model=SystemStatusResponse)
async def get_system_status(
    include_counts: bool = Query(
        False, description="Include job history counts (extra queries)"
    ),
    engine: JobEngine = Depends(get_engine),
):
    """Get comprehensive system status.

    Use ?include_counts=true for job history statistics.

    This endpoint is protected by the ENABLE_SYSTEM_STATUS env var.
    """
    if not settings.enable_system_status:
        raise HTTPException(
            status_code=404,
            detail="System status endpoint is disabled",
        )

    info = engine.connection.info
    broker = BrokerStatus(
        connected=engine.connection.connected,
        brokers=info.brokers if info else [],
        client_id=info.client_id if info else None,
    )
    scheduler = get_scheduler_status()
    entries = engine.registry.entries()
    jobs = LiveJobsStatus(
        total=len(entries),
        by_type=dict(Counter(e.job_type for e in entries)),
        observers=engine.broadcaster.subscriber_count,
    )

    response = SystemStatusResponse(
        status=determine_health_status(broker, scheduler),
        timestamp=datetime.now(timezone.utc),
        broker=broker,
        scheduler=scheduler,
        jobs=jobs,
    )

    if include_counts:
        response.history = await get_history_counts(engine)

    return response
