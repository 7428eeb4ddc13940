"""Job history model.

Persists every produce/consume/load-test run so results survive restarts
and can be listed, compared and deleted after the live job is gone.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


JOB_TYPES = ("produce", "consume", "loadtest-producer", "loadtest-consumer")
TERMINAL_STATUSES = ("completed", "failed")


def generate_job_name(job_type: str, now: Optional[datetime] = None) -> str:
    """Build a default job label like ``loadtest-producer-20240101-153000``."""
    now = now or datetime.now()
    return f"{job_type}-{now.strftime('%Y%m%d')}-{now.strftime('%H%M%S')}"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Job(Base):
    """A tracked produce, consume or load-test run.

    The record is created when the job starts (status "running"), refreshed
    with stats snapshots while it runs, and frozen when it completes or
    fails.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # Job identification
    type: Mapped[str] = mapped_column(String(32), index=True)
    name: Mapped[str] = mapped_column(String(255))

    # Start parameters and statistics (JSON blobs)
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    stats: Mapped[dict] = mapped_column(JSON, default=dict)

    # Timing
    start_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Status: "running", "completed", "failed"
    status: Mapped[str] = mapped_column(String(16), default="running", index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_jobs_type_created_at", "type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Job {self.id}: {self.type} {self.status}>"

    def mark_running(self, stats: dict) -> None:
        """Store an in-progress stats snapshot."""
        self.stats = stats
        self.status = "running"
        self.updated_at = datetime.utcnow()

    def mark_completed(self, stats: dict) -> None:
        """Freeze final stats and close the job."""
        self.stats = stats
        self.status = "completed"
        self.end_time = datetime.utcnow()
        self.updated_at = self.end_time

    def mark_failed(self, stats: Optional[dict] = None, error_message: Optional[str] = None) -> None:
        """Close the job as failed, keeping whatever stats were gathered."""
        stats = dict(stats if stats is not None else (self.stats or {}))
        if error_message:
            stats["error"] = error_message[:500]  # Truncate long errors
        self.stats = stats
        self.status = "failed"
        self.end_time = datetime.utcnow()
        self.updated_at = self.end_time

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate job duration in seconds."""
        if self.end_time and self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def to_dict(self) -> dict:
        """Serialize with the camelCase keys the dashboards expect."""
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "config": self.config or {},
            "stats": self.stats or {},
            "startTime": _isoformat(self.start_time),
            "endTime": _isoformat(self.end_time),
            "status": self.status,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }
