"""Bounded per-job log of produced/consumed units."""

from collections import OrderedDict, deque
from typing import List, Optional

from config import settings


class JobLogBook:
    """Keeps the latest log entries for the most recent jobs.

    Each job holds at most ``per_job_limit`` entries; once more than
    ``max_jobs`` jobs have logs, the oldest job's log is evicted.
    """

    def __init__(self, per_job_limit: Optional[int] = None, max_jobs: Optional[int] = None):
        self.per_job_limit = per_job_limit or settings.job_log_limit
        self.max_jobs = max_jobs or settings.job_log_jobs
        self._logs: "OrderedDict[str, deque]" = OrderedDict()

    def append(self, job_id: str, entry: dict) -> None:
        log = self._logs.get(job_id)
        if log is None:
            log = deque(maxlen=self.per_job_limit)
            self._logs[job_id] = log
            while len(self._logs) > self.max_jobs:
                self._logs.popitem(last=False)
        log.append(entry)

    def get(self, job_id: str, limit: int = 1000, offset: int = 0) -> List[dict]:
        log = self._logs.get(job_id)
        if not log:
            return []
        return list(log)[offset:offset + limit]

    def count(self, job_id: str) -> int:
        return len(self._logs.get(job_id, ()))

    def has(self, job_id: str) -> bool:
        return job_id in self._logs

    def clear(self, job_id: str) -> bool:
        return self._logs.pop(job_id, None) is not None
