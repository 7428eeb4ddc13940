"""Database models."""

from .job import Job
from .profile import LoadTestProfile

__all__ = [
    "Job",
    "LoadTestProfile",
]
