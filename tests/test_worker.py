import pytest
from datetime import datetime, timedelta
from unittest.mock import Mock, patch
from rq import Retry

from errors import JobStillRunningError
from job_store import InMemoryJobStore
from models import JobStatus, JobUpdate
from provider import ProviderStatus
from worker_tasks import cleanup_old_jobs, reconcile_job, schedule_reconcile

class TestWorkerTasks:

    @patch('worker_tasks.get_provider')
    @patch('worker_tasks.get_store')
    def test_reconcile_job_completes(self, mock_get_store, mock_get_provider):
        """Terminal provider status finishes the task"""
        store = InMemoryJobStore()
        store.create("req-1", "p")
        provider = Mock()
        provider.status.return_value = ProviderStatus(status="COMPLETED")
        provider.result.return_value = {"images": [{"url": "https://x/out.png"}]}
        mock_get_store.return_value = store
        mock_get_provider.return_value = provider

        assert reconcile_job("req-1") == "COMPLETED"
        assert store.get("req-1").result_url == "https://x/out.png"

    @patch('worker_tasks.get_provider')
    @patch('worker_tasks.get_store')
    def test_reconcile_job_still_running_raises(self, mock_get_store, mock_get_provider):
        """Non-terminal status raises so RQ retries"""
        store = InMemoryJobStore()
        store.create("req-1", "p")
        provider = Mock()
        provider.status.return_value = ProviderStatus(status="IN_PROGRESS")
        mock_get_store.return_value = store
        mock_get_provider.return_value = provider

        with pytest.raises(JobStillRunningError):
            reconcile_job("req-1")
        assert store.get("req-1").status == JobStatus.IN_PROGRESS

    @patch('worker_tasks.get_provider')
    @patch('worker_tasks.get_store')
    def test_reconcile_job_skips_provider_for_terminal_job(self, mock_get_store, mock_get_provider):
        """A webhook already finished the job"""
        store = InMemoryJobStore()
        store.create("req-1", "p")
        store.update_if_not_terminal("req-1", JobUpdate(status=JobStatus.FAILED, error="nsfw"))
        provider = Mock()
        mock_get_store.return_value = store
        mock_get_provider.return_value = provider

        assert reconcile_job("req-1") == "FAILED"
        provider.status.assert_not_called()

    def test_schedule_reconcile_enqueues_with_retry(self):
        queue = Mock()

        schedule_reconcile(queue, "req-1")

        queue.enqueue_in.assert_called_once()
        args, kwargs = queue.enqueue_in.call_args
        assert isinstance(args[0], timedelta)
        assert args[1] is reconcile_job
        assert args[2] == "req-1"
        assert isinstance(kwargs["retry"], Retry)

    def test_schedule_reconcile_waits_out_webhook_grace(self, monkeypatch):
        from config import settings

        monkeypatch.setattr(settings, "webhook_url", "https://me/api/makeup/webhook")
        monkeypatch.setattr(settings, "webhook_grace_seconds", 60)
        queue = Mock()

        schedule_reconcile(queue, "req-1")

        delay = queue.enqueue_in.call_args.args[0]
        assert delay == timedelta(seconds=settings.reconcile_delay + 60)

    @patch('worker_tasks.get_store')
    def test_cleanup_old_jobs(self, mock_get_store):
        store = Mock()
        store.delete_older_than.return_value = 4
        mock_get_store.return_value = store

        assert cleanup_old_jobs() == 4
        cutoff = store.delete_older_than.call_args.args[0]
        assert cutoff < datetime.utcnow() - timedelta(days=1)

class TestWorkerEntrypoint:

    @patch('worker.cleanup_old_jobs')
    def test_cleanup_command(self, mock_cleanup):
        import worker

        mock_cleanup.return_value = 2
        assert worker.main(["worker.py", "cleanup"]) == 0
        mock_cleanup.assert_called_once()

    def test_worker_requires_redis(self):
        import worker

        assert worker.main(["worker.py"]) == 1
