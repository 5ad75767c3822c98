"""
Dispatch tunables.

Read from the RIDE_DISPATCH settings dict, e.g.:

    RIDE_DISPATCH = {
        "OFFER_TIMEOUT_SECONDS": 60,
        "INITIAL_RADIUS_METERS": 1000,
        "RADIUS_STEP_METERS": 1000,
        "MAX_RADIUS_METERS": 10000,
    }
"""

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional, Tuple

from .radius import RadiusExpander

# settings key -> DispatchConfig field
SETTING_KEYS = {
    "OFFER_TIMEOUT_SECONDS": "offer_timeout_seconds",
    "INITIAL_RADIUS_METERS": "initial_radius_meters",
    "RADIUS_STEP_METERS": "radius_step_meters",
    "MAX_RADIUS_METERS": "max_radius_meters",
    "RADIUS_SCHEDULE_METERS": "radius_schedule_meters",
    "GEO_RETRY_ATTEMPTS": "geo_retry_attempts",
    "GEO_RETRY_BACKOFF_SECONDS": "geo_retry_backoff_seconds",
    "NOTIFY_TIMEOUT_SECONDS": "notify_timeout_seconds",
    "MAX_OFFERS": "max_offers",
    "LEASE_SECONDS": "lease_seconds",
    "GEO_INDEX_BACKEND": "geo_index_backend",
    "PRICING_FUNCTION": "pricing_function",
}


@dataclass(frozen=True)
class DispatchConfig:
    offer_timeout_seconds: float = 60.0
    initial_radius_meters: float = 1000.0
    radius_step_meters: float = 1000.0
    max_radius_meters: float = 10000.0
    radius_schedule_meters: Tuple[float, ...] = ()
    geo_retry_attempts: int = 3
    geo_retry_backoff_seconds: float = 0.5
    notify_timeout_seconds: float = 5.0
    max_offers: Optional[int] = None
    lease_seconds: float = 180.0
    geo_index_backend: str = "database"
    pricing_function: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "radius_schedule_meters", tuple(self.radius_schedule_meters or ()))
        if self.offer_timeout_seconds <= 0:
            raise ValueError("OFFER_TIMEOUT_SECONDS must be positive")
        if self.initial_radius_meters <= 0 or self.max_radius_meters <= 0:
            raise ValueError("Search radii must be positive")
        if self.geo_retry_attempts < 1:
            raise ValueError("GEO_RETRY_ATTEMPTS must be at least 1")
        if self.max_offers is not None and self.max_offers < 1:
            raise ValueError("MAX_OFFERS must be at least 1 when set")
        if self.lease_seconds <= self.offer_timeout_seconds:
            raise ValueError("LEASE_SECONDS must be longer than OFFER_TIMEOUT_SECONDS")
        if self.geo_index_backend not in ("database", "redis"):
            raise ValueError(f"Unknown GEO_INDEX_BACKEND: {self.geo_index_backend}")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "DispatchConfig":
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in raw.items():
            name = SETTING_KEYS.get(key, key.lower())
            if name in known:
                values[name] = value
        return cls(**values)

    def radius_expander(self) -> RadiusExpander:
        return RadiusExpander(step_meters=self.radius_step_meters, schedule=self.radius_schedule_meters)


def get_dispatch_config(overrides: Optional[Mapping[str, Any]] = None) -> DispatchConfig:
    """Build the DispatchConfig from Django settings, with optional overrides."""
    from django.conf import settings

    raw = dict(getattr(settings, "RIDE_DISPATCH", {}))
    raw.update(overrides or {})
    return DispatchConfig.from_mapping(raw)
