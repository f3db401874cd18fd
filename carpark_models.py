"""Data model and error taxonomy shared by the Park&Ride pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any


# ── Errors ───────────────────────────────────────────────────────────

class SourceError(Exception):
    """Base class for every failure raised by a data source adapter."""


class SourceUnavailable(SourceError):
    """Network call failed or returned a non-success status."""


class MalformedResponse(SourceUnavailable):
    """Payload did not have the expected shape; never partially trusted."""


class RateLimited(SourceUnavailable):
    """The REST occupancy endpoint signalled a quota / rate limit."""


class ConfigurationError(SourceError):
    """An adapter was called without a required URL or API key."""


# ── Records ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SourceRecord:
    """One facility as decoded at an adapter boundary.

    Numeric fields are kept exactly as the source sent them (strings, ints,
    None); the pipeline parses them defensively.
    """
    name: str
    facility_id: str | None = None
    total: Any = None
    occupied: Any = None
    available: Any = None
    latitude: Any = None
    longitude: Any = None
    tsn: str | None = None
    time: str | None = None
    month: str | None = None


@dataclass(frozen=True)
class Occupancy:
    total: int = 0
    occupied: int = 0
    time: str = ""
    month: str = ""
    loop: str = ""


@dataclass(frozen=True)
class Facility:
    facility_id: str
    facility_name: str
    latitude: float | None = None
    longitude: float | None = None
    tsn: str | None = None
    occupancy: Occupancy = field(default_factory=Occupancy)
    spots_free: int = 0
    park_id: str | None = None

    @property
    def position(self) -> tuple[float, float] | None:
        """(lat, lon), or None when the facility is unresolved."""
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)

    @property
    def is_resolved(self) -> bool:
        return self.position is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["resolved"] = self.is_resolved
        return data


def free_spots(total: int, occupied: int) -> int:
    """Free spots for a snapshot, clamped to 0..total."""
    return min(max(0, total - occupied), max(0, total))


@dataclass
class FetchResult:
    """Outcome of one refresh cycle.

    ``source`` names the source that served the data (None when every
    source failed).  ``is_demo`` is set whenever the data did not come from
    the primary live source.
    """
    facilities: list[Facility] = field(default_factory=list)
    source: str | None = None
    is_demo: bool = False
    missing_coordinates: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.facilities:
            return "no data"
        return "degraded" if self.is_demo else "live"
