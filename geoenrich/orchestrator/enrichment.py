"""Caller-side helpers for attaching locations to newly created records."""
from __future__ import annotations

import inspect
from typing import Awaitable, Callable, Mapping, Optional, TypeVar, Union

import structlog

from geoenrich.orchestrator.worker import LocationWorker

LOGGER = structlog.get_logger(__name__)

P = TypeVar("P")

CreateFn = Callable[[P], Union[Awaitable[str], str]]


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str]) -> Optional[str]:
    """Return the originating client address of a request.

    The first entry of ``X-Forwarded-For`` wins for clients behind proxies;
    otherwise the socket's remote address is used as-is, including any
    ``::ffff:`` prefix.
    """
    for name, value in headers.items():
        if name.lower() == "x-forwarded-for" and value:
            first = value.split(",")[0].strip()
            if first:
                return first
    return remote_addr or None


async def create_and_enqueue(
    create: CreateFn,
    payload: P,
    *,
    ip_address: Optional[str],
    worker: LocationWorker,
) -> str:
    """Create a record, then queue the location lookup for its identifier."""
    result = create(payload)
    record_id = await result if inspect.isawaitable(result) else result
    if not ip_address:
        LOGGER.info("location_lookup_skipped", record_id=record_id, reason="no_ip_address")
        return record_id
    worker.enqueue(record_id, ip_address)
    return record_id
