import time
import logging
from datetime import datetime, timedelta
from typing import Optional

from rq import Queue, Retry

from config import settings
from database import SqlJobStore
from errors import JobStillRunningError
from events import make_events
from provider import FalQueueClient
from reconciler import reconcile_status

logger = logging.getLogger(__name__)

_store: Optional[SqlJobStore] = None
_provider: Optional[FalQueueClient] = None

def get_store() -> SqlJobStore:
    """Worker-side store; publishes changes so API waiters see them"""
    global _store
    if _store is None:
        events = make_events(settings.redis_url)
        _store = SqlJobStore(listener=events.publish)
    return _store

def get_provider() -> Optional[FalQueueClient]:
    global _provider
    if _provider is None and settings.provider_configured:
        _provider = FalQueueClient(
            settings.fal_key,
            settings.fal_model,
            base_url=settings.fal_queue_url,
            timeout=settings.provider_timeout
        )
    return _provider

def reconcile_job(request_id: str) -> str:
    """Poll the provider for a job whose webhook has not (yet) arrived.

    Raises JobStillRunningError while the job is not terminal so RQ retries
    it on the configured intervals.
    """
    start_time = time.time()
    logger.info(f"Reconciling job {request_id}")

    report = reconcile_status(get_store(), get_provider(), request_id)

    logger.info(
        f"Job {request_id}: reconcile finished in {time.time() - start_time:.2f}s "
        f"with status {report.status.value}{' (transient)' if report.transient else ''}"
    )

    if not report.is_terminal:
        raise JobStillRunningError(f"Job {request_id} is still {report.status.value}")

    return report.status.value

def reconcile_delay() -> float:
    """Seconds before the first background poll; webhook mode waits out the grace period first"""
    if settings.webhook_enabled:
        return settings.reconcile_delay + settings.webhook_grace_seconds
    return settings.reconcile_delay

def schedule_reconcile(queue: Queue, request_id: str):
    """Enqueue the background poll fallback for a freshly submitted job"""
    delay = reconcile_delay()
    queue.enqueue_in(
        timedelta(seconds=delay),
        reconcile_job,
        request_id,
        retry=Retry(max=settings.max_retries, interval=settings.retry_intervals),
        job_timeout=int(settings.provider_timeout * 3),
        description=f"reconcile {request_id}"
    )
    logger.info(f"Job {request_id}: background reconcile scheduled in {delay}s")

def cleanup_old_jobs() -> int:
    """Delete job records past the retention window"""
    logger.info("Starting cleanup of old jobs")

    cutoff_date = datetime.utcnow() - timedelta(days=settings.job_retention_days)
    try:
        removed = get_store().delete_older_than(cutoff_date)
    except Exception as e:
        logger.error(f"Cleanup process failed: {e}")
        raise

    logger.info(f"Cleanup completed, removed {removed} old jobs")
    return removed
