"""Map domain exceptions to HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from errors import (
    BrokerError,
    BrokerNotConnectedError,
    ConfigurationError,
    JobConfigError,
    JobNotFoundError,
    JobPersistenceError,
    KafkaTesterError,
    PerfResultNotFoundError,
    PerfToolError,
    PerfToolNotFoundError,
)

logger = logging.getLogger(__name__)


_EXCEPTION_STATUS = {
    BrokerNotConnectedError: 400,
    JobConfigError: 400,
    ConfigurationError: 400,
    PerfToolNotFoundError: 400,
    JobNotFoundError: 404,
    PerfResultNotFoundError: 404,
    BrokerError: 502,
    KafkaTesterError: 500,
}


def _make_handler(status_code: int):
    async def _handler(request: Request, exc: KafkaTesterError) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "message": exc.message},
        )

    return _handler


async def _persistence_handler(request: Request, exc: JobPersistenceError) -> JSONResponse:
    # The job did finish; report its stats even though they were not saved
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": exc.message,
            "jobId": exc.job_id,
            "stats": exc.stats,
        },
    )


async def _perf_tool_handler(request: Request, exc: PerfToolError) -> JSONResponse:
    logger.error(f"Perf test failed: {exc.message}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": exc.message, "error": exc.output},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register domain exception handlers on the FastAPI app."""
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))
    app.add_exception_handler(JobPersistenceError, _persistence_handler)
    app.add_exception_handler(PerfToolError, _perf_tool_handler)
