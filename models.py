from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

MOCK_REQUEST_ID = "mock-request-id"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return _RANK[self]

    @classmethod
    def parse(cls, value) -> Optional["JobStatus"]:
        """Map a provider/status string to a JobStatus, or None if unknown"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.IN_QUEUE: 1,
    JobStatus.IN_PROGRESS: 2,
    JobStatus.COMPLETED: 3,
    JobStatus.FAILED: 3,
}


class JobRecord(BaseModel):
    """Immutable snapshot of a stored job"""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    request_id: str
    status: JobStatus = JobStatus.PENDING
    prompt: Optional[str] = None
    result_url: Optional[str] = None
    error: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class JobUpdate(BaseModel):
    """A requested mutation of a job record"""

    status: JobStatus
    result_url: Optional[str] = None
    error: Optional[str] = None
    logs: Optional[List[str]] = None
    # Local annotation appended after any provider lines
    note: Optional[str] = None


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    """Status only moves forward, and never once terminal"""
    if current.is_terminal:
        return False
    return new.rank >= current.rank


LOCAL_NOTE_PREFIX = "Status check failed: "


def is_local_note(line: str) -> bool:
    """Notes this service adds to a job's logs, as opposed to provider lines"""
    return line.startswith(LOCAL_NOTE_PREFIX)


def merge_logs(existing: List[str], incoming: Optional[List[str]]) -> List[str]:
    """Append-only merge of provider log lines.

    Providers resend their full log on every poll. Incoming lines are lined up
    against the provider lines already stored (local notes are skipped), and
    only the part past the overlap is appended.
    """
    existing = list(existing or [])
    if not incoming:
        return existing
    incoming = [str(line) for line in incoming]
    provider_lines = [line for line in existing if not is_local_note(line)]

    if incoming[:len(provider_lines)] == provider_lines:
        return existing + incoming[len(provider_lines):]
    if provider_lines[:len(incoming)] == incoming:
        return existing

    # Longest stored tail that the incoming batch starts with
    overlap = 0
    for size in range(min(len(provider_lines), len(incoming)), 0, -1):
        if provider_lines[-size:] == incoming[:size]:
            overlap = size
            break
    return existing + incoming[overlap:]


def next_timestamp(previous: Optional[datetime] = None) -> datetime:
    """utcnow(), nudged forward so updated_at strictly advances"""
    now = datetime.utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def resolve_update(record: JobRecord, update: JobUpdate) -> dict:
    """Field values to write when ``update`` is applied to ``record``.

    Enforces result_url iff COMPLETED and error iff FAILED.
    """
    if update.status == JobStatus.COMPLETED and not update.result_url:
        raise ValueError("COMPLETED update requires a result_url")
    if update.status == JobStatus.FAILED and not update.error:
        raise ValueError("FAILED update requires an error message")

    logs = merge_logs(record.logs, update.logs)
    if update.note:
        logs.append(update.note)

    return {
        "status": update.status,
        "result_url": update.result_url if update.status == JobStatus.COMPLETED else None,
        "error": update.error if update.status == JobStatus.FAILED else None,
        "logs": logs,
        "updated_at": next_timestamp(record.updated_at),
        "version": record.version + 1,
    }
