"""
Poll fallback: works out a job's current status without waiting for a webhook.

The store is consulted first; only non-terminal jobs cost a provider call.
Whatever the provider reports is written back through the same conditional
update the webhook uses, so a late poll can never undo a webhook result.
"""

import logging
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import List, Optional

from errors import ProviderError
from job_store import JobStore
from models import LOCAL_NOTE_PREFIX, MOCK_REQUEST_ID, JobRecord, JobStatus, JobUpdate
from monitoring import job_finished
from provider import FalQueueClient, error_message, first_image_url

logger = logging.getLogger(__name__)

STATUS_UNAVAILABLE = "Could not fetch latest status"


@dataclass
class StatusReport:
    status: JobStatus
    result_url: Optional[str] = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    transient: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal and not self.transient

    @classmethod
    def from_record(cls, job: JobRecord, **overrides) -> "StatusReport":
        values = dict(status=job.status, result_url=job.result_url, error=job.error, logs=list(job.logs))
        values.update(overrides)
        return cls(**values)

    def to_response(self) -> dict:
        body = {"status": self.status.value}
        if self.result_url:
            body["resultUrl"] = self.result_url
        if self.error:
            body["error"] = self.error
        if self.logs:
            body["logs"] = self.logs
        return body


def _persist(store: JobStore, job: Optional[JobRecord], request_id: str, update: JobUpdate) -> StatusReport:
    if job is None:
        return StatusReport(status=update.status, result_url=update.result_url,
                            error=update.error, logs=update.logs or [])

    result = store.update_if_not_terminal(request_id, update)
    if result.job is None:
        return StatusReport(status=update.status, result_url=update.result_url,
                            error=update.error, logs=update.logs or [])
    if result.applied and result.job.is_terminal:
        job_finished(result.job)
    # Report what the store holds; a racing webhook may have won
    return StatusReport.from_record(result.job)


def _completed_update(provider: FalQueueClient, request_id: str, logs: List[str]) -> JobUpdate:
    try:
        output = provider.result(request_id)
    except ProviderError as e:
        if not e.is_client_error:
            raise
        # 4xx on the result means the run itself failed
        return JobUpdate(status=JobStatus.FAILED, error=e.detail or str(e), logs=logs)

    error = error_message(output)
    result_url = first_image_url(output)
    if result_url and not error:
        return JobUpdate(status=JobStatus.COMPLETED, result_url=result_url, logs=logs)
    return JobUpdate(status=JobStatus.FAILED, error=error or "Provider returned no images", logs=logs)


def reconcile_status(store: JobStore, provider: Optional[FalQueueClient], request_id: str) -> StatusReport:
    if request_id == MOCK_REQUEST_ID:
        return StatusReport(status=JobStatus.COMPLETED)

    job = store.get(request_id)
    if job is not None and job.is_terminal:
        return StatusReport.from_record(job)

    if provider is None:
        if job is None:
            raise ProviderError("Provider is not configured")
        return StatusReport.from_record(job, transient=True, error=STATUS_UNAVAILABLE)

    try:
        remote = provider.status(request_id)
        logger.info(f"Job {request_id} status from fal: {remote.status}")

        if remote.status == JobStatus.COMPLETED.value:
            if remote.error:
                update = JobUpdate(status=JobStatus.FAILED, error=remote.error, logs=remote.logs)
            else:
                update = _completed_update(provider, request_id, remote.logs)
            return _persist(store, job, request_id, update)

        if remote.status in (JobStatus.FAILED.value, "ERROR"):
            update = JobUpdate(
                status=JobStatus.FAILED,
                error=remote.error or f"Provider reported status {remote.status}",
                logs=remote.logs,
            )
            return _persist(store, job, request_id, update)

        status = JobStatus.parse(remote.status)
        if status is None:
            logger.warning(f"Job {request_id}: unrecognised provider status {remote.status!r}")
            if job is None:
                return StatusReport(status=JobStatus.PENDING, logs=remote.logs)
            return StatusReport.from_record(job)

        return _persist(store, job, request_id, JobUpdate(status=status, logs=remote.logs))

    except ProviderError as e:
        logger.error(f"Error fetching status from fal for job {request_id}: {e}")
        if job is None:
            raise
        noted = store.append_log(request_id, f"{LOCAL_NOTE_PREFIX}{e}")
        latest = noted.job or job
        if latest.is_terminal:
            return StatusReport.from_record(latest)
        return StatusReport.from_record(latest, transient=True, error=STATUS_UNAVAILABLE)


def check_after_grace(store: JobStore, provider: Optional[FalQueueClient], grace: float, request_id: str):
    """Store read while a webhook may still arrive; provider poll once ``grace`` seconds have passed"""
    job = store.get(request_id)
    if job is None or job.is_terminal or provider is None:
        return job
    if datetime.utcnow() - job.created_at < timedelta(seconds=grace):
        return job
    return reconcile_status(store, provider, request_id)
