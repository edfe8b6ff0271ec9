"""Job store. In-memory by default; jobs live only as long as the process."""
import itertools
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import fields, replace
from typing import Optional

from oggconverter.conversion.models import ConversionJob, utcnow

logger = logging.getLogger("converter.store")

_JOB_FIELDS = {f.name for f in fields(ConversionJob)}
# Assigned by the store, never by callers
_READONLY_FIELDS = {"id", "created_at"}


class JobStore(ABC):
    """Storage contract for conversion jobs.

    Implementations must be safe for concurrent use: background workers
    update jobs while request handlers read and list them.
    """

    @abstractmethod
    def create(self, **values) -> ConversionJob:
        """Store a new job with a fresh id and creation time."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[ConversionJob]:
        """Return the job, or None if it does not exist."""

    @abstractmethod
    def update(self, job_id: str, **values) -> Optional[ConversionJob]:
        """Shallow-merge values into the job. Returns None if it does not exist."""

    @abstractmethod
    def list(self) -> list[ConversionJob]:
        """All jobs, newest first."""

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Remove the job. Returns whether anything was removed."""


def _check_fields(values: dict) -> None:
    unknown = set(values) - _JOB_FIELDS
    if unknown:
        raise TypeError(f"Unknown job fields: {', '.join(sorted(unknown))}")
    readonly = set(values) & _READONLY_FIELDS
    if readonly:
        raise TypeError(f"Read-only job fields: {', '.join(sorted(readonly))}")


class InMemoryJobStore(JobStore):
    """Lock-guarded dict of jobs. Returns copies so callers never share a record."""

    def __init__(self):
        self._jobs: dict[str, ConversionJob] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def create(self, **values) -> ConversionJob:
        _check_fields(values)
        job = ConversionJob(id=str(uuid.uuid4()), created_at=utcnow(), **values)
        with self._lock:
            self._jobs[job.id] = job
            self._order[job.id] = next(self._seq)
        logger.debug("Created job %s (%s)", job.id, job.filename)
        return replace(job)

    def get(self, job_id: str) -> Optional[ConversionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def update(self, job_id: str, **values) -> Optional[ConversionJob]:
        _check_fields(values)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            job = replace(job, **values)
            self._jobs[job_id] = job
            return replace(job)

    def list(self) -> list[ConversionJob]:
        with self._lock:
            jobs = [replace(j) for j in self._jobs.values()]
            order = dict(self._order)
        jobs.sort(key=lambda j: (j.created_at, order[j.id]), reverse=True)
        return jobs

    def delete(self, job_id: str) -> bool:
        with self._lock:
            self._order.pop(job_id, None)
            removed = self._jobs.pop(job_id, None) is not None
        if removed:
            logger.debug("Deleted job %s", job_id)
        return removed
