"""Background processing of location jobs with bounded retries."""
from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

import structlog

from geoenrich.observability.metrics import MetricsRegistry
from geoenrich.observability.tracing import clear_job_context, log_retry, set_job_context
from geoenrich.orchestrator.jobs import DEFAULT_BASE_DELAY_SECONDS, DEFAULT_MAX_ATTEMPTS, LocationJob
from geoenrich.orchestrator.queue import JobQueue
from geoenrich.resolve.models import LocationRecord
from geoenrich.resolve.resolver import GeoResolver

LOGGER = structlog.get_logger(__name__)

UpdateCallback = Callable[[str, LocationRecord], Union[Awaitable[None], None]]


class JobOutcome(str, Enum):
    UPDATED = "updated"
    NO_IP_ADDRESS = "no_ip_address"
    LOCATION_NOT_FOUND = "location_not_found"
    FAILED = "failed"


class LocationWorker:
    """Drains a `JobQueue`, resolving each address and handing the result on.

    A resolver that finds nothing is a soft failure: the job completes
    without calling ``update`` and is not retried. Only exceptions raised
    while processing (including a per-job timeout or a failing ``update``)
    reschedule the job, with the delay doubling from ``base_delay`` until
    ``max_attempts`` is reached; then the job is logged and dropped.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        resolver: GeoResolver,
        update: UpdateCallback,
        metrics: Optional[MetricsRegistry] = None,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        job_timeout: Optional[float] = None,
        poll_interval: float = 0.1,
    ) -> None:
        self._queue = queue
        self._resolver = resolver
        self._update = update
        self._metrics = metrics or MetricsRegistry()
        self._base_delay = base_delay
        self._max_attempts = max_attempts
        self._job_timeout = job_timeout
        self._poll_interval = poll_interval

    @property
    def queue(self) -> JobQueue:
        return self._queue

    def enqueue(self, record_id: str, ip_address: Optional[str]) -> LocationJob:
        """Persist a lookup for ``record_id`` and return without waiting for it."""
        job = LocationJob(record_id=record_id, ip_address=ip_address or "", max_attempts=self._max_attempts)
        self._queue.put_nowait(job)
        self._metrics.incr("jobs_enqueued")
        LOGGER.info("job_enqueued", job_id=job.job_id, record_id=record_id, ip=job.ip_address)
        return job

    async def _deliver(self, record_id: str, record: LocationRecord) -> None:
        result = self._update(record_id, record)
        if inspect.isawaitable(result):
            await result

    async def process(self, job: LocationJob) -> JobOutcome:
        """Run a single attempt. Exceptions are left to the caller."""
        if not job.ip_address:
            LOGGER.warning("job_missing_ip", record_id=job.record_id)
            return JobOutcome.NO_IP_ADDRESS
        record = await self._resolver.resolve(job.ip_address)
        if record is None:
            LOGGER.warning("location_not_found", ip=job.ip_address, record_id=job.record_id)
            return JobOutcome.LOCATION_NOT_FOUND
        await self._deliver(job.record_id, record)
        LOGGER.info("record_updated", record_id=job.record_id, provider=record.provider.value)
        return JobOutcome.UPDATED

    async def _attempt(self, job: LocationJob) -> JobOutcome:
        if self._job_timeout:
            return await asyncio.wait_for(self.process(job), timeout=self._job_timeout)
        return await self.process(job)

    async def run_job(self, job: LocationJob) -> Optional[JobOutcome]:
        """Process a dequeued job, scheduling a retry or dropping it on failure."""
        job.mark_started()
        set_job_context(job_id=job.job_id, record_id=job.record_id, attempt=job.attempts)
        try:
            try:
                outcome = await self._attempt(job)
            except Exception as error:
                job.mark_failed(error)
                if job.should_retry():
                    delay = job.backoff_delay(self._base_delay)
                    self._metrics.incr("jobs_retried")
                    log_retry(attempt=job.attempts, delay_seconds=delay, reason=job.last_error or "")
                    self._queue.retry_later(job, delay)
                else:
                    self._metrics.incr("jobs_dropped")
                    LOGGER.error("job_dropped", attempts=job.attempts, reason=job.last_error)
                return None
            job.mark_succeeded()
            if outcome is JobOutcome.UPDATED:
                self._metrics.incr("jobs_completed")
            else:
                self._metrics.incr("jobs_soft_failed")
            return outcome
        finally:
            clear_job_context()

    async def run(self, *, concurrency: int = 1, stop_when_idle: bool = False) -> None:
        """Consume jobs until cancelled, or until the queue is idle when requested."""

        async def worker() -> None:
            while True:
                try:
                    job = await asyncio.wait_for(self._queue.dequeue(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    if stop_when_idle and self._queue.idle():
                        break
                    continue
                try:
                    await self.run_job(job)
                finally:
                    await self._queue.task_done(job)

        await asyncio.gather(*(worker() for _ in range(max(concurrency, 1))))

    async def drain(self, *, concurrency: int = 1) -> None:
        """Process every pending job, including scheduled retries, then return."""
        await self.run(concurrency=concurrency, stop_when_idle=True)

    async def process_directly(self, record_id: str, ip_address: Optional[str]) -> JobOutcome:
        """Resolve and update in one attempt, bypassing the durable queue."""
        job = LocationJob(record_id=record_id, ip_address=ip_address or "", max_attempts=1)
        try:
            return await self._attempt(job)
        except Exception:
            LOGGER.exception("direct_processing_failed", record_id=record_id, ip=job.ip_address)
            return JobOutcome.FAILED
