"""
Job record store contract and the in-memory implementation.

Every producer (webhook, poller, background task) writes through
``update_if_not_terminal``, which serializes updates per request id and
refuses to touch a record that already reached COMPLETED or FAILED.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from errors import JobAlreadyExistsError
from models import JobRecord, JobStatus, JobUpdate, can_transition, next_timestamp, resolve_update

logger = logging.getLogger(__name__)

ChangeListener = Callable[[JobRecord], None]


@dataclass(frozen=True)
class UpdateResult:
    job: Optional[JobRecord]
    applied: bool

    @property
    def found(self) -> bool:
        return self.job is not None


class JobStore(ABC):
    """Durable mapping from request id to job state"""

    def __init__(self, listener: Optional[ChangeListener] = None):
        self._listener = listener

    def set_listener(self, listener: Optional[ChangeListener]):
        self._listener = listener

    def _notify(self, job: JobRecord):
        if self._listener is None:
            return
        try:
            self._listener(job)
        except Exception as e:
            # The write already happened; waiters fall back to periodic re-checks
            logger.warning(f"Change notification for job {job.request_id} failed: {e}")

    @abstractmethod
    def get(self, request_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    def create(self, request_id: str, prompt: Optional[str]) -> JobRecord:
        """Create a PENDING record; raises JobAlreadyExistsError on duplicates"""

    @abstractmethod
    def update_if_not_terminal(self, request_id: str, update: JobUpdate) -> UpdateResult:
        """Apply ``update`` unless the record is terminal or it would move status backwards"""

    @abstractmethod
    def list(self, status: Optional[JobStatus] = None, skip: int = 0, limit: int = 100) -> List[JobRecord]:
        ...

    @abstractmethod
    def delete_older_than(self, cutoff: datetime) -> int:
        """Retention hook; returns number of deleted records"""

    def append_log(self, request_id: str, message: str) -> UpdateResult:
        """Append a note to a non-terminal job's logs without changing its status"""
        job = self.get(request_id)
        if job is None:
            return UpdateResult(job=None, applied=False)
        if job.is_terminal:
            return UpdateResult(job=job, applied=False)
        return self.update_if_not_terminal(
            request_id, JobUpdate(status=job.status, note=message)
        )


class InMemoryJobStore(JobStore):
    """Process-local store, one lock per request id"""

    def __init__(self, listener: Optional[ChangeListener] = None):
        super().__init__(listener)
        self._jobs: Dict[str, JobRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, request_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(request_id)
            if lock is None:
                lock = self._locks[request_id] = threading.Lock()
            return lock

    def get(self, request_id: str) -> Optional[JobRecord]:
        return self._jobs.get(request_id)

    def create(self, request_id: str, prompt: Optional[str]) -> JobRecord:
        with self._lock_for(request_id):
            if request_id in self._jobs:
                raise JobAlreadyExistsError(request_id)
            now = next_timestamp()
            job = JobRecord(
                request_id=request_id,
                status=JobStatus.PENDING,
                prompt=prompt,
                created_at=now,
                updated_at=now,
            )
            self._jobs[request_id] = job
        self._notify(job)
        return job

    def update_if_not_terminal(self, request_id: str, update: JobUpdate) -> UpdateResult:
        with self._lock_for(request_id):
            current = self._jobs.get(request_id)
            if current is None:
                return UpdateResult(job=None, applied=False)
            if not can_transition(current.status, update.status):
                logger.debug(f"Ignoring {update.status.value} for job {request_id} in {current.status.value}")
                return UpdateResult(job=current, applied=False)
            job = current.model_copy(update=resolve_update(current, update))
            self._jobs[request_id] = job
        self._notify(job)
        return UpdateResult(job=job, applied=True)

    def list(self, status: Optional[JobStatus] = None, skip: int = 0, limit: int = 100) -> List[JobRecord]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[skip:skip + limit]

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._guard:
            stale = [rid for rid, job in self._jobs.items() if job.created_at < cutoff]
            for rid in stale:
                del self._jobs[rid]
                self._locks.pop(rid, None)
        return len(stale)
