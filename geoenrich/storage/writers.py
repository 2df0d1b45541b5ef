"""JSONL sink that receives resolved locations for records."""
from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import orjson
import structlog

from geoenrich.resolve.models import LocationRecord

LOGGER = structlog.get_logger(__name__)


class JsonlLocationSink:
    """Appends ``{"record_id", "location"}`` lines; usable as an update callback."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def __call__(self, record_id: str, record: LocationRecord) -> None:
        line = orjson.dumps({"record_id": record_id, "location": record.to_payload()})
        with self._lock:
            with self._path.open("ab") as handle:
                handle.write(line)
                handle.write(b"\n")

    def __iter__(self) -> Iterator[Dict[str, object]]:
        if not self._path.exists():
            return
        with self._path.open("rb") as handle:
            for line in handle:
                if line.strip():
                    yield orjson.loads(line)


def summarise_updates(path: Path) -> Dict[str, object]:
    """Count written updates per provider."""
    providers: Counter[str] = Counter()
    records = set()
    for row in JsonlLocationSink(path):
        providers[str(row["location"].get("provider"))] += 1
        records.add(row["record_id"])
    return {"updates": sum(providers.values()), "records": len(records), "providers": dict(providers)}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _location_name(city: object, country: object) -> str:
    if city and country:
        return f"{city}, {country}"
    return str(city or country or "Unknown Location")


def _created_within(location: Dict[str, object], start: datetime, end: datetime) -> bool:
    raw = location.get("createdAt")
    if not isinstance(raw, str):
        return False
    try:
        created = _as_utc(datetime.fromisoformat(raw))
    except ValueError:
        LOGGER.warning("location_bad_timestamp", created_at=raw)
        return False
    return start <= created <= end


def aggregate_locations(
    path: Path,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Dict[str, object]]:
    """Group delivered locations by coordinate pair for map rendering.

    Each point carries a display name (``city, country`` falling back to
    either part, then ``Unknown Location``) taken from the first row seen at
    that coordinate, and the number of updates sharing it. The window only
    applies when both ``start`` and ``end`` are given; bounds are inclusive,
    naive bounds are read as UTC, and rows without a usable ``createdAt`` are
    left out of a windowed view.
    """
    window = None
    if start is not None and end is not None:
        window = (_as_utc(start), _as_utc(end))

    points: Dict[Tuple[float, float], Dict[str, object]] = {}
    for row in JsonlLocationSink(path):
        location = row.get("location")
        if not isinstance(location, dict):
            continue
        latitude = location.get("latitude")
        longitude = location.get("longitude")
        if latitude is None or longitude is None:
            LOGGER.warning("location_missing_coordinates", record_id=row.get("record_id"))
            continue
        if window and not _created_within(location, *window):
            continue
        key = (latitude, longitude)
        if key in points:
            points[key]["connectionCount"] += 1
            continue
        points[key] = {
            "latitude": latitude,
            "longitude": longitude,
            "locationName": _location_name(location.get("city"), location.get("country")),
            "connectionCount": 1,
        }
    return list(points.values())
