"""Pydantic models for resolved locations."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Provider(str, Enum):
    """Geolocation sources, in the order they are normally consulted."""

    IPAPI_CO = "ipapi.co"
    IP_API_COM = "ip-api.com"
    GOOGLE = "google"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocationRecord(BaseModel):
    """Canonical location attached to a record once an IP address resolves."""

    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    city: str = ""
    region: str = ""
    country: str = ""
    country_code: str = ""
    timezone: Optional[str] = None
    provider: Provider
    created_at: datetime = Field(default_factory=_utcnow)
    accuracy: Optional[float] = Field(default=None, description="Radius in metres, Google only")

    @field_validator("latitude", "longitude")
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("coordinates must be finite numbers")
        return value

    @field_validator("city", "region", "country", "country_code", mode="before")
    @classmethod
    def _blank_if_missing(cls, value: object) -> object:
        return "" if value is None else value

    def to_payload(self) -> Dict[str, object]:
        """Return the JSON-safe shape stored on contact documents."""
        payload: Dict[str, object] = {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "city": self.city,
            "region": self.region,
            "country": self.country,
            "countryCode": self.country_code,
            "timezone": self.timezone,
            "provider": self.provider.value,
            "createdAt": self.created_at.isoformat(),
        }
        if self.accuracy is not None:
            payload["accuracy"] = self.accuracy
        return payload
