"""
carpark_coordinates.py — static Park&Ride coordinate table and name lookup.

The GraphQL feed and the scraper carry no geometry, so positions come from
this table.  Coordinates are approximate station locations.

Lookup order (see resolve_coordinates):
  1. exact match on the canonical name
  2. substring containment in either direction, first key in table order
  3. containment against the station part of a "Park&Ride - <station>" name

Known limitation: when several keys satisfy containment the first one in
table order wins, which is not necessarily the closest name.
"""

import logging
import re
from types import MappingProxyType
from typing import NamedTuple

logger = logging.getLogger(__name__)


class CoordinateEntry(NamedTuple):
    latitude: float
    longitude: float
    tsn: str | None = None


PARKRIDE_PREFIX = "park&ride - "

_HISTORICAL_RE = re.compile(r"\s*\((?:historical\s+only|historical)\)\s*", re.IGNORECASE)
_STATION_RE = re.compile(r"park&ride\s*-\s*(.+)", re.IGNORECASE)


# ── Coordinate table ─────────────────────────────────────────────────
# Keys are canonical names (see canonical_name).  Order matters: fuzzy
# lookups return the first containing key.

_TABLE = (
    # Metro stations (Sydney Metro Northwest)
    ("park&ride - tallawong", -33.6896, 150.9068, "TWG"),
    ("park&ride - kellyville", -33.7135, 150.9490, "KVE"),
    ("park&ride - bella vista", -33.7299, 150.9577, "BVA"),
    ("park&ride - hills showground", -33.7275, 150.9856, "HSG"),
    ("park&ride - cherrybrook", -33.7375, 151.0033, "CBK"),

    # Train stations
    ("park&ride - ashfield", -33.8889, 151.1256, "AFD"),
    ("park&ride - beverly hills", -33.9481, 151.0806, "BVH"),
    ("park&ride - brookvale", -33.7608, 151.2650, "BKV"),
    ("park&ride - campbelltown farrow rd (north)", -34.0667, 150.8167, "CTN"),
    ("park&ride - campbelltown hurley st", -34.0667, 150.8167, "CTN"),
    ("park&ride - dee why", -33.7500, 151.3000, "DYH"),
    ("park&ride - edmondson park (south)", -33.9600, 150.8600, "EDP"),
    ("park&ride - gordon", -33.7562, 151.1540, "GDN"),
    ("park&ride - hornsby", -33.7025, 151.0994, "HBY"),
    ("park&ride - kogarah", -33.9631, 151.1356, "KGH"),
    ("park&ride - leppington", -33.9500, 150.8000, "LEP"),
    ("park&ride - macquarie park", -33.7800, 151.1200, "MQP"),
    ("park&ride - emu plains", -33.7500, 150.6500, "EMP"),
    ("park&ride - gosford", -33.4267, 151.3428, "GFD"),
    ("park&ride - kiama", -34.6717, 150.8544, "KIA"),
    ("park&ride - penrith (at-grade)", -33.7500, 150.7000, "PNT"),
    ("park&ride - penrith (multi-level)", -33.7500, 150.7000, "PNT"),
    ("park&ride - revesby", -33.9500, 151.0167, "RVB"),
    ("park&ride - riverwood", -33.9500, 151.0500, "RWD"),
    ("park&ride - schofields", -33.7000, 150.8667, "SFS"),
    ("park&ride - seven hills", -33.7738, 150.9351, "SEV"),
    ("park&ride - st marys", -33.7667, 150.7667, "SMS"),
    ("park&ride - sutherland", -34.0333, 151.0667, "STL"),
    ("park&ride - tallawong p1", -33.6896, 150.9068, "TWG"),
    ("park&ride - tallawong p2", -33.6896, 150.9068, "TWG"),
    ("park&ride - tallawong p3", -33.6896, 150.9068, "TWG"),
    ("park&ride - kellyville (north)", -33.7135, 150.9490, "KVE"),
    ("park&ride - kellyville (south)", -33.7135, 150.9490, "KVE"),
    ("park&ride - warriewood", -33.6833, 151.3000, "WWD"),
    ("park&ride - warwick farm", -33.9167, 150.9333, "WKF"),
    ("park&ride - west ryde", -33.8083, 151.0833, "WRD"),
    ("park&ride - gordon henry st (north)", -33.7562, 151.1540, "GDN"),
    ("park&ride - lindfield village green", -33.7750, 151.1667, "LFD"),
    ("park&ride - manly vale", -33.7833, 151.2667, "MLV"),
    ("park&ride - mona vale", -33.6833, 151.3000, "MNV"),
    ("park&ride - narrabeen", -33.7167, 151.3000, "NBN"),
    ("park&ride - north rocks", -33.7833, 151.0167, "NRK"),
    ("park&ride - wynyard", -33.8667, 151.2000, "WYD"),

    # Common variations used by older feeds and the demo data
    ("tallawong station car park", -33.6896, 150.9068, "TWG"),
    ("kellyville station car park", -33.7135, 150.9490, "KVE"),
    ("bella vista station", -33.7299, 150.9577, "BVA"),
    ("hills showground station", -33.7275, 150.9856, "HSG"),
    ("cherrybrook station", -33.7375, 151.0033, "CBK"),
)

CARPARK_COORDINATES = MappingProxyType({
    key: CoordinateEntry(lat, lon, tsn) for key, lat, lon, tsn in _TABLE
})


# ── Name normalisation ───────────────────────────────────────────────

def clean_facility_name(name: str) -> str:
    """Strip "(historical only)" / "(historical)" markers, any case."""
    if not name:
        return ""
    cleaned = name
    # Repeat until stable: removing one marker can join the halves of another.
    while True:
        stripped = re.sub(r"\s+", " ", _HISTORICAL_RE.sub(" ", cleaned))
        if stripped == cleaned:
            break
        cleaned = stripped
    return cleaned.strip()


def canonical_name(name: str) -> str:
    """Canonical lookup key: cleaned and lower-cased."""
    return clean_facility_name(name).lower()


# ── Lookup ───────────────────────────────────────────────────────────

def _find_containing(fragment: str) -> CoordinateEntry | None:
    for key, entry in CARPARK_COORDINATES.items():
        if fragment in key or key in fragment:
            return entry
    return None


def _find_station(station: str) -> CoordinateEntry | None:
    for key, entry in CARPARK_COORDINATES.items():
        bare_key = key.replace(PARKRIDE_PREFIX, "")
        if station in key or bare_key in station:
            return entry
    return None


def resolve_coordinates(name: str, warn: bool = True) -> CoordinateEntry | None:
    """Return the table entry for a facility name, or None if unknown.

    ``warn=False`` suppresses the per-name warning; the pipeline uses it and
    logs all misses of a cycle in one line instead.
    """
    key = canonical_name(name)
    if key:
        entry = CARPARK_COORDINATES.get(key)
        if entry is not None:
            return entry

        entry = _find_containing(key)
        if entry is not None:
            return entry

        match = _STATION_RE.search(key)
        if match:
            station = match.group(1).strip()
            if station:
                entry = _find_station(station)
                if entry is not None:
                    return entry

    if warn:
        logger.warning(f"No coordinates found for carpark: {name!r}")
    return None
