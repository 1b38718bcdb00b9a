"""
Bounded-concurrency admission for conversion jobs.

At most ``limit`` jobs run at once. Further jobs wait in a FIFO list for up to
``queue_timeout`` seconds; when the list is full they are rejected straight
away. A released slot is handed directly to the oldest waiter, so a newly
arriving job can never overtake a queued one.

Thread Safety:
    The controller lives on the event loop thread. Shared state is read and
    written without an intervening ``await``, which makes ``acquire`` and
    ``release`` linearizable with respect to each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, Tuple

from .errors import ClientDisconnectedError, ServerBusyError
from .models import Job, JobState

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]

ADMITTED = "admitted"
EXPIRED = "expired"
DISCONNECTED = "disconnected"


class AdmissionController:
    def __init__(
        self,
        limit: int = 1,
        max_queue_length: int = 20,
        queue_timeout: float = 30.0,
        poll_interval: float = 0.5,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.max_queue_length = max_queue_length
        self.queue_timeout = queue_timeout
        self.poll_interval = poll_interval
        self._active = 0
        self._waiters: Deque[Tuple[Job, asyncio.Future]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._waiters)

    def snapshot(self) -> Dict[str, int]:
        return {
            "active": self.active,
            "queued": self.queued,
            "max_concurrent": self.limit,
            "max_queue_length": self.max_queue_length,
        }

    async def acquire(self, job: Job, disconnected: Optional[DisconnectCheck] = None) -> None:
        """
        Admit a job, waiting in the queue if every slot is taken.

        Args:
            job: The job asking for a slot; its state is advanced here
            disconnected: Optional coroutine polled while queued; when it
                returns True the entry is dropped

        Raises:
            ServerBusyError: Queue full, or queue deadline expired
            ClientDisconnectedError: The client went away while queued
        """
        if self._active < self.limit and not self._waiters:
            self._active += 1
            job.transition(JobState.RUNNING, message="Admitted without queueing.")
            logger.info(f"Job {job.id} running ({self._active}/{self.limit} active)")
            return

        if len(self._waiters) >= self.max_queue_length:
            job.transition(JobState.REJECTED, error=ServerBusyError.code, message="Queue is full.")
            logger.warning(f"Job {job.id} rejected: queue full ({len(self._waiters)} waiting)")
            raise ServerBusyError()

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append((job, future))
        job.transition(JobState.QUEUED)
        logger.info(f"Job {job.id} queued ({len(self._waiters)} in queue)")

        try:
            outcome = await self._wait(future, disconnected)
        except BaseException:
            self._give_up(job, future)
            if job.state == JobState.QUEUED:
                job.transition(JobState.REJECTED, error=ClientDisconnectedError.code, message="Wait cancelled.")
            elif job.state == JobState.RUNNING:
                job.transition(JobState.FAILED, error=ClientDisconnectedError.code, message="Cancelled on admission.")
            raise

        if outcome == ADMITTED:
            return

        self._give_up(job, future)
        if outcome == DISCONNECTED:
            job.transition(JobState.REJECTED, error=ClientDisconnectedError.code, message="Client disconnected.")
            logger.info(f"Job {job.id} dropped from queue: client disconnected")
            raise ClientDisconnectedError()

        job.transition(JobState.REJECTED, error=ServerBusyError.code, message="Queue wait deadline expired.")
        logger.warning(f"Job {job.id} rejected after waiting {self.queue_timeout}s in queue")
        raise ServerBusyError()

    async def _wait(self, future: asyncio.Future, disconnected: Optional[DisconnectCheck]) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.queue_timeout
        while not future.done():
            remaining = deadline - loop.time()
            if remaining <= 0:
                return EXPIRED
            timeout = min(remaining, self.poll_interval) if disconnected is not None else remaining
            await asyncio.wait({future}, timeout=timeout)
            if future.done():
                break
            if disconnected is not None and await disconnected() and not future.done():
                return DISCONNECTED
        return ADMITTED

    def _give_up(self, job: Job, future: asyncio.Future) -> None:
        """
        Remove a waiter that is leaving the queue. If a slot was handed to it
        in the meantime the slot is passed on, so it cannot leak.
        """
        try:
            self._waiters.remove((job, future))
        except ValueError:
            pass

        if future.done() and not future.cancelled():
            self._release_slot()
        else:
            future.cancel()

    def release(self, job: Job) -> None:
        """Free the job's slot and hand it to the oldest waiter, if any."""
        logger.info(f"Job {job.id} released its slot ({job.state.value})")
        self._release_slot()

    def _release_slot(self) -> None:
        while self._waiters:
            waiter, future = self._waiters.popleft()
            if future.done():
                continue
            future.set_result(None)
            waiter.transition(JobState.RUNNING, message="Admitted from queue.")
            logger.info(f"Job {waiter.id} running after queueing ({len(self._waiters)} still queued)")
            return
        self._active -= 1
