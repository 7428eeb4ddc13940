"""FastAPI application entry point."""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from sqlalchemy import text

from config import settings
from database import init_db, close_db


class JSONFormatter(logging.Formatter):
    """JSON log formatter for hosted deployments."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


# Configure logging - use JSON in production, plain text locally
log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
handler = logging.StreamHandler()

if os.environ.get("RAILWAY_ENVIRONMENT") or os.environ.get("JSON_LOGS"):
    handler.setFormatter(JSONFormatter())
else:
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))

logging.basicConfig(level=log_level, handlers=[handler])
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    logger.info("Starting Kafka Load Tester...")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    from services.job_engine import JobEngine
    engine = JobEngine()
    app.state.engine = engine

    # Use ENABLE_SCHEDULER=false to disable in multi-process deployments
    if settings.enable_scheduler:
        try:
            from jobs.scheduler import start_scheduler
            await start_scheduler(engine)
            logger.info("Scheduler started")
        except Exception as e:
            logger.warning(f"Scheduler not started: {e}")
    else:
        logger.info("Scheduler disabled via ENABLE_SCHEDULER=false")

    logger.info("Startup complete")
    yield

    # Shutdown
    logger.info("Shutting down...")
    if settings.enable_scheduler:
        try:
            from jobs.scheduler import stop_scheduler
            await stop_scheduler()
        except Exception as e:
            logger.warning(f"Scheduler shutdown failed: {e}")
    await engine.shutdown()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Kafka Load Tester",
    description="Produce, consume and load-test Kafka topics with live statistics",
    version="1.0.0",
    lifespan=lifespan,
)


# Health check endpoint
@app.get("/api/health")
async def health_check():
    """Health check with database reachability."""
    from database import async_session_maker

    result = {"status": "healthy", "service": "kafka-load-tester"}

    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception:
        # Server is up even if the database is not
        result["status"] = "degraded"
        result["note"] = "Database is not reachable"

    engine = getattr(app.state, "engine", None)
    if engine is not None:
        result["kafkaConnected"] = engine.connection.connected
        result["runningJobs"] = len(engine.registry)

    return result


# API info endpoint
@app.get("/api/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": "Kafka Load Tester API",
        "version": "1.0.0",
        "features": [
            "Continuous and count-bounded producers",
            "Consumers with sequence gap analysis",
            "Rate-limited producer and consumer load tests",
            "Latency percentiles and error breakdowns",
            "Live updates over WebSocket",
        ],
    }


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Return once the client goes away. Observers never send anything we use."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/ws")
async def events_socket(websocket: WebSocket):
    """Stream job events to one observer. No replay for late joiners."""
    await websocket.accept()
    broadcaster = app.state.engine.broadcaster
    subscription = broadcaster.subscribe()
    logger.info(f"WebSocket observer connected ({broadcaster.subscriber_count} total)")
    disconnected = asyncio.ensure_future(_wait_for_disconnect(websocket))
    try:
        await websocket.send_json({"type": "connected"})
        while True:
            next_event = asyncio.ensure_future(subscription.get())
            done, _ = await asyncio.wait(
                {next_event, disconnected},
                timeout=15,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if disconnected in done:
                next_event.cancel()
                logger.info("WebSocket observer disconnected")
                break
            if next_event in done:
                await websocket.send_json(next_event.result())
                continue
            next_event.cancel()
            if subscription.closed:
                # pruned for falling behind
                await websocket.close()
                break
    except WebSocketDisconnect:
        logger.info("WebSocket observer disconnected")
    finally:
        disconnected.cancel()
        broadcaster.unsubscribe(subscription)


# Include API routers
from api import consume, jobs, kafka, loadtest, perftools, produce, profiles, system
from api.errors import register_error_handlers

register_error_handlers(app)

app.include_router(kafka.router, prefix="/api/kafka", tags=["Kafka"])
app.include_router(produce.router, prefix="/api/produce", tags=["Produce"])
app.include_router(consume.router, prefix="/api/consume", tags=["Consume"])
app.include_router(profiles.router, prefix="/api/loadtest/profiles", tags=["Load Test Profiles"])
app.include_router(loadtest.router, prefix="/api/loadtest", tags=["Load Test"])
app.include_router(perftools.router, prefix="/api/loadtest", tags=["Kafka Perf Tools"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])
app.include_router(system.router, prefix="/api/system", tags=["System"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
