import asyncio
from contextlib import asynccontextmanager
from unittest.mock import Mock

import pytest

from errors import JobFailedError, SubscriptionError, WaitTimeoutError
from events import JobEvents
from job_store import InMemoryJobStore
from models import JobStatus, JobUpdate
from waiter import JobWaiter

DONE = JobUpdate(status=JobStatus.COMPLETED, result_url="https://x/out.png")


async def until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def make_waiter(events, check, **kwargs):
    options = dict(timeout=2.0, recheck_interval=1.0, max_resubscribes=2, resubscribe_delay=0.01)
    options.update(kwargs)
    return JobWaiter(events, check, **options)


class BrokenEvents(JobEvents):
    """Every subscription attempt fails"""

    def __init__(self):
        self.attempts = 0

    def publish(self, job):
        pass

    @asynccontextmanager
    async def subscribe(self, request_id):
        self.attempts += 1
        raise SubscriptionError("redis down")
        yield


def test_already_terminal_resolves_without_subscribing(store):
    store.create("req-1", "p")
    store.update_if_not_terminal("req-1", DONE)
    events = Mock(spec=JobEvents)

    outcome = asyncio.run(make_waiter(events, store.get).wait("req-1"))

    assert outcome.status == JobStatus.COMPLETED
    assert outcome.result_url == "https://x/out.png"
    events.subscribe.assert_not_called()


def test_already_failed_raises_job_failed(store):
    store.create("req-1", "p")
    store.update_if_not_terminal("req-1", JobUpdate(status=JobStatus.FAILED, error="nsfw"))

    with pytest.raises(JobFailedError) as exc_info:
        asyncio.run(make_waiter(Mock(spec=JobEvents), store.get).wait("req-1"))
    assert exc_info.value.error == "nsfw"


def test_resolves_on_change_notification(store, events):
    store.create("req-1", "p")

    async def scenario():
        task = asyncio.create_task(make_waiter(events, store.get, recheck_interval=10).wait("req-1"))
        await until(lambda: events.subscriber_count("req-1") == 1)

        store.update_if_not_terminal("req-1", JobUpdate(status=JobStatus.IN_PROGRESS))
        await asyncio.sleep(0.02)
        assert not task.done()

        store.update_if_not_terminal("req-1", DONE)
        outcome = await task
        return outcome

    outcome = asyncio.run(scenario())
    assert outcome.result_url == "https://x/out.png"
    assert events.subscriber_count("req-1") == 0


def test_failure_notification_raises(store, events):
    store.create("req-1", "p")

    async def scenario():
        task = asyncio.create_task(make_waiter(events, store.get, recheck_interval=10).wait("req-1"))
        await until(lambda: events.subscriber_count("req-1") == 1)
        store.update_if_not_terminal("req-1", JobUpdate(status=JobStatus.FAILED, error="GPU exploded"))
        await task

    with pytest.raises(JobFailedError, match="GPU exploded"):
        asyncio.run(scenario())
    assert events.subscriber_count("req-1") == 0


def test_update_between_check_and_subscribe_is_not_missed(events):
    # No listener: the completion is never published
    store = InMemoryJobStore()
    store.create("req-1", "p")
    calls = []

    def check(request_id):
        calls.append(request_id)
        job = store.get(request_id)
        if len(calls) == 1:
            store.update_if_not_terminal(request_id, DONE)
        return job

    outcome = asyncio.run(make_waiter(events, check, recheck_interval=10).wait("req-1"))

    assert outcome.status == JobStatus.COMPLETED
    assert len(calls) == 2


def test_periodic_recheck_catches_missed_notification(events):
    store = InMemoryJobStore()
    store.create("req-1", "p")

    async def scenario():
        task = asyncio.create_task(make_waiter(events, store.get, recheck_interval=0.05).wait("req-1"))
        await until(lambda: events.subscriber_count("req-1") == 1)
        store.update_if_not_terminal("req-1", DONE)
        return await task

    outcome = asyncio.run(scenario())
    assert outcome.result_url == "https://x/out.png"


def test_timeout_resolves_with_timeout_error(store, events):
    store.create("req-1", "p")

    with pytest.raises(WaitTimeoutError) as exc_info:
        asyncio.run(make_waiter(events, store.get, timeout=0.1, recheck_interval=0.02).wait("req-1"))

    assert exc_info.value.timeout == 0.1
    assert not isinstance(exc_info.value, JobFailedError)
    assert events.subscriber_count("req-1") == 0
    assert store.get("req-1").status == JobStatus.PENDING


def test_transport_error_resubscribes(store, events):
    store.create("req-1", "p")

    async def scenario():
        task = asyncio.create_task(make_waiter(events, store.get, recheck_interval=10, resubscribe_delay=0.2).wait("req-1"))
        await until(lambda: events.subscriber_count("req-1") == 1)

        events.disconnect_all("channel dropped")
        await until(lambda: events.subscriber_count("req-1") == 0)
        await until(lambda: events.subscriber_count("req-1") == 1)
        assert not task.done()

        store.update_if_not_terminal("req-1", DONE)
        return await task

    outcome = asyncio.run(scenario())
    assert outcome.status == JobStatus.COMPLETED


def test_transport_errors_fall_back_to_rechecks():
    store = InMemoryJobStore()
    store.create("req-1", "p")
    events = BrokenEvents()
    checks = []

    def check(request_id):
        checks.append(request_id)
        if len(checks) == 6:
            store.update_if_not_terminal(request_id, DONE)
        return store.get(request_id)

    outcome = asyncio.run(make_waiter(events, check, recheck_interval=0.01).wait("req-1"))

    assert outcome.status == JobStatus.COMPLETED
    # initial attempt plus max_resubscribes
    assert events.attempts == 3


def test_transport_errors_still_time_out():
    store = InMemoryJobStore()
    store.create("req-1", "p")

    with pytest.raises(WaitTimeoutError):
        asyncio.run(make_waiter(BrokenEvents(), store.get, timeout=0.1, recheck_interval=0.01).wait("req-1"))


def test_multiple_waiters_fan_out(store, events):
    store.create("req-1", "p")

    async def scenario():
        waiters = [
            asyncio.create_task(make_waiter(events, store.get, recheck_interval=10).wait("req-1"))
            for _ in range(3)
        ]
        await until(lambda: events.subscriber_count("req-1") == 3)
        store.update_if_not_terminal("req-1", DONE)
        return await asyncio.gather(*waiters)

    outcomes = asyncio.run(scenario())
    assert [o.result_url for o in outcomes] == ["https://x/out.png"] * 3
    assert events.subscriber_count("req-1") == 0


def test_caller_cancellation_releases_subscription(store, events):
    store.create("req-1", "p")

    async def scenario():
        task = asyncio.create_task(make_waiter(events, store.get, recheck_interval=10).wait("req-1"))
        await until(lambda: events.subscriber_count("req-1") == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert events.subscriber_count("req-1") == 0


def test_resolves_once_when_signals_coincide(store, events):
    """Notification, re-check and timeout all firing together still yield a single outcome"""
    store.create("req-1", "p")
    resolutions = []

    async def scenario():
        waiter = make_waiter(events, store.get, timeout=0.3, recheck_interval=0.01)
        task = asyncio.create_task(waiter.wait("req-1"))
        await until(lambda: events.subscriber_count("req-1") == 1)
        store.update_if_not_terminal("req-1", DONE)
        # Later signals for the same job must be inert
        store.update_if_not_terminal("req-1", JobUpdate(status=JobStatus.FAILED, error="late"))
        resolutions.append(await task)
        await asyncio.sleep(0.4)

    asyncio.run(scenario())
    assert len(resolutions) == 1
    assert resolutions[0].status == JobStatus.COMPLETED
    assert events.subscriber_count("req-1") == 0


def test_async_check_supported(store, events):
    store.create("req-1", "p")
    store.update_if_not_terminal("req-1", DONE)

    async def check(request_id):
        return store.get(request_id)

    outcome = asyncio.run(make_waiter(events, check).wait("req-1"))
    assert outcome.status == JobStatus.COMPLETED


def test_check_errors_are_retried_until_terminal(events):
    from sqlalchemy.exc import OperationalError

    store = InMemoryJobStore()
    store.create("req-1", "p")
    calls = []

    def check(request_id):
        calls.append(request_id)
        if len(calls) < 3:
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        store.update_if_not_terminal(request_id, DONE)
        return store.get(request_id)

    outcome = asyncio.run(make_waiter(events, check, recheck_interval=0.01).wait("req-1"))

    assert outcome.status == JobStatus.COMPLETED
    assert events.subscriber_count("req-1") == 0


def test_check_errors_still_time_out(events):
    def check(request_id):
        raise RuntimeError("store unreachable")

    with pytest.raises(WaitTimeoutError):
        asyncio.run(make_waiter(events, check, timeout=0.1, recheck_interval=0.01).wait("req-1"))


def test_zero_timeout_resolves_terminal_job(store):
    store.create("req-1", "p")
    store.update_if_not_terminal("req-1", DONE)

    outcome = asyncio.run(make_waiter(Mock(spec=JobEvents), store.get, timeout=0).wait("req-1"))
    assert outcome.result_url == "https://x/out.png"


def test_zero_timeout_on_running_job_times_out(store, events):
    store.create("req-1", "p")

    with pytest.raises(WaitTimeoutError):
        asyncio.run(make_waiter(events, store.get, timeout=0).wait("req-1"))
    assert events.subscriber_count("req-1") == 0
