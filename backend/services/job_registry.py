"""Registry of live jobs and their lifecycle.

The registry is the only place that decides whether a job is live. Every way
a job can end (manual stop, duration deadline, count or sequence limit,
loop crash) goes through ``stop()``, which is idempotent: concurrent callers
share one finalization and later callers get ``None``.

Stop sequence: cancel the job's token, let the loop finish its current
tick, disconnect the broker resource, freeze the stats, write the final
record, publish the terminal event once, and only then unregister.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from config import settings
from errors import JobPersistenceError
from services.cancellation import CancellationToken
from services.events import EventBroadcaster, TERMINAL_EVENTS, make_event
from services.job_store import JobStore
from services.stats import StatsAccumulator

logger = logging.getLogger(__name__)


@dataclass
class LiveJob:
    """In-memory handle for a running job. Only its own work loop mutates it."""

    job_id: str
    job_type: str
    handle: Any  # BrokerProducer / BrokerConsumer owned by this job
    config: dict
    accumulator: StatsAccumulator
    token: CancellationToken
    name: Optional[str] = None
    stats: dict = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_update: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task: Optional[asyncio.Task] = None
    stopping: Optional[asyncio.Future] = None
    final_stats: Optional[dict] = None
    final_status: Optional[str] = None
    error: Optional[str] = None
    terminal_published: bool = False

    @property
    def status(self) -> str:
        if self.final_stats is not None:
            return self.final_status or "completed"
        if self.stopping is not None:
            return "stopping"
        return "running"

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "type": self.job_type,
            "name": self.name,
            "config": self.config,
            "stats": self.stats,
            "status": self.status,
            "startTime": self.started_at.isoformat(),
            "lastUpdate": self.last_update.isoformat(),
        }


class JobRegistry:
    """jobId -> LiveJob map plus the shared stop path."""

    def __init__(
        self,
        store: JobStore,
        broadcaster: EventBroadcaster,
        stop_grace_seconds: Optional[float] = None,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.stop_grace_seconds = (
            stop_grace_seconds if stop_grace_seconds is not None else settings.stop_grace_seconds
        )
        self._jobs: Dict[str, LiveJob] = {}
        self._background: Set[asyncio.Task] = set()

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def register(
        self,
        job_id: str,
        job_type: str,
        handle: Any,
        config: dict,
        accumulator: StatsAccumulator,
        token: Optional[CancellationToken] = None,
        name: Optional[str] = None,
    ) -> LiveJob:
        """Insert a live entry. Must happen before the loop's first unit of work."""
        if job_id in self._jobs:
            raise ValueError(f"Job {job_id} is already registered")
        entry = LiveJob(
            job_id=job_id,
            job_type=job_type,
            handle=handle,
            config=config,
            accumulator=accumulator,
            token=token or CancellationToken(),
            name=name,
            stats=accumulator.snapshot(),
        )
        self._jobs[job_id] = entry
        logger.info(f"[{job_id[:8]}] Registered {job_type} job")
        return entry

    def unregister(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def get(self, job_id: str) -> Optional[LiveJob]:
        return self._jobs.get(job_id)

    def running_ids(self) -> List[str]:
        return list(self._jobs)

    def entries(self, job_type: Optional[str] = None) -> List[LiveJob]:
        return [e for e in self._jobs.values() if job_type is None or e.job_type == job_type]

    async def update_stats(self, job_id: str, partial: dict) -> bool:
        """Merge a stats update into the live entry and persist it.

        Returns False (and does nothing) when the job is gone or already
        stopping, which covers callbacks that arrive after a stop. A failed
        write is logged only; the live entry stays authoritative.
        """
        entry = self._jobs.get(job_id)
        if entry is None or entry.stopping is not None:
            return False

        entry.stats = {**entry.stats, **partial}
        entry.last_update = datetime.now(timezone.utc)
        try:
            await self.store.update(job_id, entry.stats, "running")
        except Exception as e:
            logger.warning(f"[{job_id[:8]}] Failed to persist stats snapshot: {e}")
        return True

    async def list_running(self, job_type: Optional[str] = None) -> List[dict]:
        """Snapshot of live jobs merged with their durable records."""
        jobs = []
        for entry in self.entries(job_type):
            try:
                record = await self.store.get_by_id(entry.job_id)
            except Exception as e:
                logger.error(f"[{entry.job_id[:8]}] Error getting job record: {e}")
                record = None
            item = entry.to_dict()
            if entry.final_stats is None:
                item["stats"] = entry.accumulator.snapshot()
            item["job"] = record
            if record and not item["name"]:
                item["name"] = record.get("name")
            jobs.append(item)
        return jobs

    async def stop(
        self,
        job_id: str,
        status: str = "completed",
        reason: str = "stopped",
    ) -> Optional[dict]:
        """Stop a job and return its final stats.

        Unknown or already-finished jobs return None. Callers racing on the
        same job all wait for the one finalization in progress. Raises
        JobPersistenceError if the final record could not be written; the
        entry then stays registered so a later stop can retry the write.
        """
        entry = self._jobs.get(job_id)
        if entry is None:
            return None

        if entry.stopping is None or entry.stopping.done():
            from_loop = entry.task is not None and asyncio.current_task() is entry.task
            entry.stopping = asyncio.ensure_future(
                self._finish(entry, status, reason, wait_for_loop=not from_loop)
            )
            entry.stopping.add_done_callback(_retrieve_exception)
        return await asyncio.shield(entry.stopping)

    def request_stop(self, job_id: str, status: str = "completed", reason: str = "stopped") -> None:
        """Schedule ``stop()`` in the background. Used by loops ending themselves."""
        if job_id not in self._jobs:
            return
        task = asyncio.ensure_future(self.stop(job_id, status=status, reason=reason))
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background stop failed: {error}")

    async def stop_all(self, job_type: Optional[str] = None) -> Dict[str, Optional[dict]]:
        """Stop every live job (optionally of one type). Persistence failures are logged."""
        job_ids = [e.job_id for e in self.entries(job_type)]
        results = await asyncio.gather(
            *(self.stop(job_id) for job_id in job_ids),
            return_exceptions=True,
        )
        stopped = {}
        for job_id, result in zip(job_ids, results):
            if isinstance(result, JobPersistenceError):
                logger.error(f"[{job_id[:8]}] {result}")
                stopped[job_id] = result.stats
            elif isinstance(result, Exception):
                logger.error(f"[{job_id[:8]}] Stop failed: {result}")
                stopped[job_id] = None
            else:
                stopped[job_id] = result
        return stopped

    async def _finish(
        self,
        entry: LiveJob,
        status: str,
        reason: str,
        wait_for_loop: bool = True,
    ) -> dict:
        job_id = entry.job_id

        if entry.final_stats is None:
            entry.token.cancel(reason)
            if wait_for_loop:
                await self._drain_loop(entry)
            await self._disconnect(entry)

            entry.final_stats = entry.accumulator.finalize()
            if entry.error:
                entry.final_stats["error"] = entry.error
            entry.final_status = status
            entry.stats = entry.final_stats
            logger.info(f"[{job_id[:8]}] {entry.job_type} job {status} ({reason})")

        try:
            record = await self.store.update(job_id, entry.final_stats, entry.final_status)
        except Exception as e:
            logger.error(f"[{job_id[:8]}] Failed to persist final stats: {e}")
            self._publish_terminal(entry)
            raise JobPersistenceError(job_id, dict(entry.final_stats), e)

        if record is None:
            logger.warning(f"[{job_id[:8]}] Job record disappeared before finalization")
        self._publish_terminal(entry)
        self.unregister(job_id)
        return dict(entry.final_stats)

    async def _drain_loop(self, entry: LiveJob) -> None:
        """Give the loop a grace period to finish its current tick, then cancel it."""
        task = entry.task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"[{entry.job_id[:8]}] Loop did not stop in time, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        except Exception as e:
            logger.error(f"[{entry.job_id[:8]}] Loop ended with error: {e}")

    async def _disconnect(self, entry: LiveJob) -> None:
        if entry.handle is None:
            return
        try:
            await entry.handle.disconnect()
        except Exception as e:
            logger.warning(f"[{entry.job_id[:8]}] Error disconnecting broker resource: {e}")

    def _publish_terminal(self, entry: LiveJob) -> None:
        if entry.terminal_published:
            return
        entry.terminal_published = True
        event_type = TERMINAL_EVENTS.get(entry.job_type, "job-complete")
        self.broadcaster.publish(make_event(event_type, {
            "jobId": entry.job_id,
            "type": entry.job_type,
            "name": entry.name,
            "status": entry.final_status,
            "stats": entry.final_stats,
        }))


def _retrieve_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
