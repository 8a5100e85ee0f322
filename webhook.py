"""Applies provider push notifications (webhooks) to job records."""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from job_store import JobStore, UpdateResult
from models import JobStatus, JobUpdate
from monitoring import job_finished, webhook_count
from provider import error_message, first_image_url

logger = logging.getLogger(__name__)


class WebhookNotification(BaseModel):
    request_id: Optional[str] = None
    gateway_request_id: Optional[str] = None
    status: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    logs: Optional[List[Any]] = None

    def log_messages(self) -> List[str]:
        return [l.get("message", "") if isinstance(l, dict) else str(l) for l in (self.logs or [])]


def to_update(notification: WebhookNotification) -> JobUpdate:
    logs = notification.log_messages()
    if notification.status == "OK" and not notification.error:
        result_url = first_image_url(notification.payload)
        if result_url:
            return JobUpdate(status=JobStatus.COMPLETED, result_url=result_url, logs=logs)
        return JobUpdate(status=JobStatus.FAILED, error="Provider returned no images", logs=logs)

    error = (
        notification.error
        or error_message(notification.payload)
        or f"Provider reported status {notification.status}"
    )
    return JobUpdate(status=JobStatus.FAILED, error=error, logs=logs)


def apply_webhook(store: JobStore, notification: WebhookNotification) -> Optional[UpdateResult]:
    """Apply one notification; returns None when the job is unknown"""
    request_id = notification.request_id
    if store.get(request_id) is None:
        # Might be from a previous server instance
        logger.warning(f"Webhook for unknown job: {request_id}")
        webhook_count.labels(outcome="unknown").inc()
        return None

    update = to_update(notification)
    result = store.update_if_not_terminal(request_id, update)

    if not result.applied:
        logger.info(f"Duplicate/late webhook for job {request_id} ignored ({result.job.status.value if result.job else 'gone'})")
        webhook_count.labels(outcome="ignored").inc()
        return result

    webhook_count.labels(outcome="applied").inc()
    job = result.job
    if job.status == JobStatus.COMPLETED:
        logger.info(f"Job {request_id} COMPLETED. Result: {job.result_url}")
    else:
        logger.info(f"Job {request_id} FAILED: {job.error}")
    job_finished(job)
    return result
