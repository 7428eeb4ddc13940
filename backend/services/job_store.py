"""Durable job history backed by the ``jobs`` table."""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, desc, and_, func, delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from models.job import Job, generate_job_name

logger = logging.getLogger(__name__)


class JobStore:
    """Create, update, query and delete job records.

    Every call opens its own short-lived session so concurrent jobs never
    share a transaction.
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        if session_maker is None:
            from database import async_session_maker
            session_maker = async_session_maker
        self._session_maker = session_maker

    async def create(
        self,
        job_type: str,
        name: Optional[str],
        config: dict,
        stats: Optional[dict] = None,
    ) -> dict:
        """Insert a new ``running`` record and return it."""
        job = Job(
            type=job_type,
            name=name or generate_job_name(job_type),
            config=config or {},
            stats=stats or {},
            status="running",
        )
        async with self._session_maker() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        return job.to_dict()

    async def update(self, job_id: str, stats: dict, status: str = "completed") -> Optional[dict]:
        """Replace a record's stats and status. Returns None if it does not exist."""
        async with self._session_maker() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return None
            if status == "completed":
                job.mark_completed(stats)
            elif status == "failed":
                job.mark_failed(stats)
            else:
                job.mark_running(stats)
            await session.commit()
            await session.refresh(job)
            return job.to_dict()

    async def mark_failed(self, job_id: str, error_message: str) -> Optional[dict]:
        """Close a record as failed, keeping its stats and noting the error."""
        async with self._session_maker() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return None
            job.mark_failed(error_message=error_message)
            await session.commit()
            await session.refresh(job)
            return job.to_dict()

    async def get_by_id(self, job_id: str) -> Optional[dict]:
        async with self._session_maker() as session:
            job = await session.get(Job, job_id)
            return job.to_dict() if job else None

    def _filters(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> list:
        filters = []
        if job_type:
            filters.append(Job.type == job_type)
        if status:
            filters.append(Job.status == status)
        if start_date:
            filters.append(Job.created_at >= start_date)
        if end_date:
            filters.append(Job.created_at <= end_date)
        return filters

    async def list_all(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[dict]:
        """List records newest first, optionally filtered."""
        query = select(Job)
        filters = self._filters(job_type, status, start_date, end_date)
        if filters:
            query = query.where(and_(*filters))
        query = query.order_by(desc(Job.created_at)).offset(offset)
        if limit:
            query = query.limit(limit)

        async with self._session_maker() as session:
            result = await session.execute(query)
            return [job.to_dict() for job in result.scalars().all()]

    async def count_all(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> int:
        query = select(func.count()).select_from(Job)
        filters = self._filters(job_type, status, start_date, end_date)
        if filters:
            query = query.where(and_(*filters))
        async with self._session_maker() as session:
            result = await session.execute(query)
            return result.scalar() or 0

    async def delete(self, job_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(delete(Job).where(Job.id == job_id))
            await session.commit()
            return result.rowcount > 0

    async def summary(self) -> dict:
        """Totals by type and status plus the ten most recent jobs."""
        async with self._session_maker() as session:
            by_type = await session.execute(
                select(Job.type, func.count()).group_by(Job.type)
            )
            by_status = await session.execute(
                select(Job.status, func.count()).group_by(Job.status)
            )
            type_counts = {row[0]: row[1] for row in by_type.all()}
            status_counts = {row[0]: row[1] for row in by_status.all()}

        return {
            "total": sum(type_counts.values()),
            "byType": type_counts,
            "byStatus": status_counts,
            "recent": await self.list_all(limit=10),
        }

    async def mark_orphaned_failed(self, live_ids: Iterable[str]) -> int:
        """Fail ``running`` records that have no live job behind them.

        Such records are left over from a crash or restart. Returns the
        number of records closed.
        """
        live_ids = set(live_ids)
        async with self._session_maker() as session:
            result = await session.execute(select(Job).where(Job.status == "running"))
            orphans = [job for job in result.scalars().all() if job.id not in live_ids]
            for job in orphans:
                job.mark_failed(error_message="Job was interrupted before it finished")
            await session.commit()

        for job in orphans:
            logger.warning(f"[{job.id[:8]}] Marked orphaned {job.type} job as failed")
        return len(orphans)
