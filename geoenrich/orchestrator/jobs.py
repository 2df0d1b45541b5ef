"""Definitions for location lookup jobs and their lifecycle."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 2.0

PENDING = "pending"
PROCESSING = "processing"
RETRY = "retry"
COMPLETED = "completed"
FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LocationJob:
    """Represents a queued request to attach a location to a record."""

    record_id: str
    ip_address: str
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    status: str = PENDING
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    next_attempt_at: Optional[datetime] = None
    metadata: Dict[str, object] = field(default_factory=dict)

    def mark_started(self) -> None:
        """Transition the job into the processing state."""
        self.status = PROCESSING
        self.attempts += 1
        self.next_attempt_at = None

    def mark_succeeded(self) -> None:
        """Mark the job as completed."""
        self.status = COMPLETED

    def mark_failed(self, error: BaseException) -> None:
        """Record a failure and capture the error message."""
        self.status = FAILED if self.attempts >= self.max_attempts else RETRY
        self.last_error = f"{type(error).__name__}: {error}"

    def should_retry(self) -> bool:
        """Return True when the job is eligible for another attempt."""
        return self.status == RETRY and self.attempts < self.max_attempts

    def backoff_delay(self, base_delay: float = DEFAULT_BASE_DELAY_SECONDS) -> float:
        """Seconds to wait before the next attempt, doubling per failed attempt."""
        return base_delay * 2 ** max(self.attempts - 1, 0)

    def schedule_retry(self, delay: float) -> None:
        self.next_attempt_at = _utcnow() + timedelta(seconds=delay)
