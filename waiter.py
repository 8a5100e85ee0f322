"""
Wait for a job to reach a terminal state.

A wait is a single coroutine, so it can only resolve once. An immediate state
check runs first, outside the timeout, so an already terminal job resolves even
with a zero timeout and no subscription is opened. Otherwise it races two signal
sources inside one timeout:

1. change notifications for the request id, with a re-check right after the
   subscription is confirmed and a periodic re-check while the channel is
   quiet;
2. the wall-clock timeout, which cancels whatever is in flight.

The subscription lives in an ``async with`` block, so success, failure,
timeout and caller cancellation all release it on the same path.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from errors import JobFailedError, JobServiceError, SubscriptionError, WaitTimeoutError
from events import JobEvents
from models import JobStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobOutcome:
    request_id: str
    status: JobStatus
    result_url: Optional[str] = None


def _is_terminal(snapshot) -> bool:
    return snapshot is not None and snapshot.is_terminal


class JobWaiter:
    def __init__(
        self,
        events: JobEvents,
        check: Callable[[str], Any],
        timeout: float = 300.0,
        recheck_interval: float = 5.0,
        max_resubscribes: int = 3,
        resubscribe_delay: float = 2.0,
    ):
        """
        Args:
            events: change-notification bus to subscribe to
            check: returns the current snapshot for a request id (anything
                with ``status``, ``result_url``, ``error`` and ``is_terminal``)
                or None; may be sync (run in a thread) or async
            timeout: overall bound on the wait, in seconds
            recheck_interval: re-check the state after this long without events
            max_resubscribes: transport failures tolerated before falling back
                to periodic re-checks only
            resubscribe_delay: pause before re-checking after a transport failure
        """
        self.events = events
        self.check = check
        self.timeout = timeout
        self.recheck_interval = recheck_interval
        self.max_resubscribes = max_resubscribes
        self.resubscribe_delay = resubscribe_delay

    async def wait(self, request_id: str) -> JobOutcome:
        """Resolve with the COMPLETED outcome.

        Raises:
            JobFailedError: the job ended in FAILED
            WaitTimeoutError: no terminal state within ``timeout``
        """
        snapshot = await self._check(request_id)
        if not _is_terminal(snapshot):
            try:
                snapshot = await asyncio.wait_for(self._run(request_id), self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out after {self.timeout}s waiting for job {request_id}")
                raise WaitTimeoutError(request_id, self.timeout) from None

        if snapshot.status == JobStatus.FAILED:
            raise JobFailedError(request_id, snapshot.error or "Job failed")
        return JobOutcome(request_id=request_id, status=snapshot.status, result_url=snapshot.result_url)

    async def _check(self, request_id: str):
        try:
            if asyncio.iscoroutinefunction(self.check):
                return await self.check(request_id)
            return await asyncio.to_thread(self.check, request_id)
        except JobServiceError as e:
            logger.warning(f"State check for job {request_id} failed: {e}")
            return None
        except Exception as e:
            # Store or transport hiccup; the next re-check or the timeout settles it
            logger.error(f"State check for job {request_id} raised {type(e).__name__}: {e}", exc_info=True)
            return None

    async def _run(self, request_id: str):
        failures = 0
        while failures <= self.max_resubscribes:
            try:
                return await self._follow(request_id)
            except SubscriptionError as e:
                failures += 1
                logger.warning(f"Subscription for job {request_id} failed ({failures}/{self.max_resubscribes}): {e}")

            await asyncio.sleep(self.resubscribe_delay)
            snapshot = await self._check(request_id)
            if _is_terminal(snapshot):
                return snapshot

        logger.warning(f"Giving up on subscriptions for job {request_id}, re-checking every {self.recheck_interval}s")
        while True:
            await asyncio.sleep(self.recheck_interval)
            snapshot = await self._check(request_id)
            if _is_terminal(snapshot):
                return snapshot

    async def _follow(self, request_id: str):
        async with self.events.subscribe(request_id) as subscription:
            # The terminal update may have landed before the subscription was active
            snapshot = await self._check(request_id)
            if _is_terminal(snapshot):
                return snapshot

            while True:
                try:
                    event = await asyncio.wait_for(subscription.get(), self.recheck_interval)
                except asyncio.TimeoutError:
                    snapshot = await self._check(request_id)
                    if _is_terminal(snapshot):
                        return snapshot
                    continue

                if event.request_id == request_id and event.is_terminal:
                    return event
