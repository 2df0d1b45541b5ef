"""Durable queue for location lookup jobs."""
from __future__ import annotations

import asyncio
import os
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Set

import orjson
import structlog

from geoenrich.orchestrator.jobs import PENDING, LocationJob

LOGGER = structlog.get_logger(__name__)

_DATETIME_FIELDS = ("created_at", "next_attempt_at")


def _encode(job: LocationJob) -> bytes:
    payload = asdict(job)
    for key, value in list(payload.items()):
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
    return orjson.dumps(payload)


def _decode(line: str) -> LocationJob:
    data = orjson.loads(line)
    for key in _DATETIME_FIELDS:
        if isinstance(data.get(key), str):
            data[key] = datetime.fromisoformat(data[key])
    return LocationJob(**data)


def read_jobs(path: Path) -> List[LocationJob]:
    """Return the jobs persisted at ``path`` without taking ownership of the file."""
    if not path.exists():
        return []
    return [_decode(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


class JobQueue:
    """In-memory queue with JSONL persistence for crash recovery.

    Pending, in-flight and delayed jobs are all written to disk, so a job is
    only forgotten once it completes or exhausts its attempts. Jobs found on
    disk at start-up are queued again immediately.
    """

    def __init__(self, *, path: Path) -> None:
        self._path = path
        self._queue: asyncio.Queue[LocationJob] = asyncio.Queue()
        self._inflight: Dict[str, LocationJob] = {}
        self._delayed: Dict[str, LocationJob] = {}
        self._timers: Set[asyncio.Task] = set()
        self._lock = threading.Lock()
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        restored = read_jobs(self._path)
        for job in restored:
            job.status = PENDING
            job.next_attempt_at = None
            self._queue.put_nowait(job)
        if restored:
            LOGGER.info("queue_restored", path=str(self._path), jobs=len(restored))

    def _persist(self) -> None:
        items: List[LocationJob] = list(self._inflight.values())
        items.extend(self._queue._queue)  # type: ignore[attr-defined]
        items.extend(self._delayed.values())
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with self._lock:
            with tmp_path.open("wb") as handle:
                for job in items:
                    handle.write(_encode(job))
                    handle.write(b"\n")
            os.replace(tmp_path, self._path)

    def put_nowait(self, job: LocationJob) -> None:
        """Add a job without waiting and persist the updated state."""
        job.status = PENDING
        self._queue.put_nowait(job)
        self._persist()

    async def dequeue(self) -> LocationJob:
        """Obtain the next job, blocking until one is available."""
        job = await self._queue.get()
        self._inflight[job.job_id] = job
        self._persist()
        return job

    def retry_later(self, job: LocationJob, delay: float) -> None:
        """Park an in-flight job and put it back on the queue after ``delay`` seconds."""
        self._inflight.pop(job.job_id, None)
        job.schedule_retry(delay)
        self._delayed[job.job_id] = job
        self._persist()
        timer = asyncio.get_running_loop().create_task(self._release_after(job, delay))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _release_after(self, job: LocationJob, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._delayed.pop(job.job_id, None) is not None:
            self.put_nowait(job)

    async def task_done(self, job: LocationJob) -> None:
        """Mark the dequeued job as handled and persist state."""
        self._inflight.pop(job.job_id, None)
        self._queue.task_done()
        self._persist()

    async def clear(self) -> None:
        """Remove all jobs from the queue and truncate the persistence file."""
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
                self._queue.task_done()
            except asyncio.QueueEmpty:
                break
        self._inflight.clear()
        self._delayed.clear()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text("", encoding="utf-8")

    def empty(self) -> bool:
        """Return True when no jobs are waiting to be dequeued."""
        return self._queue.empty()

    def idle(self) -> bool:
        """Return True when nothing is pending, in flight or waiting to retry."""
        return self._queue.empty() and not self._inflight and not self._delayed

    def jobs(self) -> List[LocationJob]:
        """Return every job the queue still owns."""
        items = list(self._inflight.values())
        items.extend(self._queue._queue)  # type: ignore[attr-defined]
        items.extend(self._delayed.values())
        return items

    def __len__(self) -> int:
        return self._queue.qsize() + len(self._inflight) + len(self._delayed)
