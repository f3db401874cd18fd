"""
carpark_pipeline.py — reconcile Park&Ride sources into one facility list.

Stages for every refresh cycle:
  1. Fetch      — try the sources in priority order; the first one that
                  yields a non-empty list wins, the rest are fallbacks
  2. Normalise  — parse counts defensively, clean names, compute free spots
  3. Identify   — synthesise stable ids where the source has none
  4. Merge      — (REST source) attach occupancy by id, then by fuzzy name;
                  scraped counts when the occupancy phase is unavailable
  5. Locate     — backfill missing positions from the coordinate table

A failed or empty source is logged and skipped.  When every source fails
the result is an empty list, never an exception.
"""

import logging
import math
import re
from dataclasses import replace
from datetime import datetime
from typing import Callable, Mapping

import requests

import tfnsw_sources
from carpark_coordinates import clean_facility_name, resolve_coordinates
from carpark_models import (
    Facility, FetchResult, Occupancy, SourceError, SourceRecord, free_spots,
)
from config import (
    SOURCE_PRIORITY, USE_MOCK_FALLBACK, WORD_OVERLAP_THRESHOLD, SCRAPE_TOTAL_FACTOR,
    TIME_LABEL_FORMAT, MONTH_LABEL_FORMAT,
)

logger = logging.getLogger(__name__)

PRIMARY_SOURCE = "graphql"

_PREFIX_RE = re.compile(r"^Park&Ride\s*-\s*", re.IGNORECASE)


# ── Normalisation ────────────────────────────────────────────────────

def parse_int(value) -> int:
    """Parse a count; anything missing, non-numeric or negative becomes 0."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, number)


def parse_coordinate(value) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def synthesize_facility_id(index: int, name: str) -> str:
    """Stable id from a record's list position and cleaned name."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return f"{index}-{slug}" if slug else str(index)


def _time_labels(now: datetime | None) -> tuple[str, str]:
    now = now or datetime.now()
    return now.strftime(TIME_LABEL_FORMAT), now.strftime(MONTH_LABEL_FORMAT)


def build_occupancy(record: SourceRecord, now: datetime | None = None) -> Occupancy:
    """Occupancy snapshot from a source record.

    Capacity is ``total`` when the source sends it, otherwise free + occupied.
    Records carrying only free spaces (scraped data) get an estimated total
    of free * SCRAPE_TOTAL_FACTOR.
    """
    occupied = parse_int(record.occupied)
    if record.total is not None:
        total = parse_int(record.total)
    elif record.available is not None and record.occupied is None:
        available = parse_int(record.available)
        total = available * SCRAPE_TOTAL_FACTOR
        occupied = total - available
    else:
        total = parse_int(record.available) + occupied

    time_label, month_label = _time_labels(now)
    return Occupancy(
        total=total,
        occupied=occupied,
        time=record.time or time_label,
        month=record.month or month_label,
    )


def record_position(record: SourceRecord) -> tuple[float, float] | None:
    """(lat, lon) carried by a record; (0, 0) counts as no position."""
    latitude = parse_coordinate(record.latitude)
    longitude = parse_coordinate(record.longitude)
    if latitude is None or longitude is None or (latitude == 0 and longitude == 0):
        return None
    return latitude, longitude


def normalize_record(record: SourceRecord, index: int, now: datetime | None = None) -> Facility:
    """Facility from a source record, before coordinate backfill."""
    name = clean_facility_name(record.name)
    occupancy = build_occupancy(record, now)
    latitude, longitude = record_position(record) or (None, None)

    facility_id = str(record.facility_id) if record.facility_id not in (None, "") else None
    return Facility(
        facility_id=facility_id or synthesize_facility_id(index, name),
        facility_name=name,
        latitude=latitude,
        longitude=longitude,
        tsn=record.tsn or None,
        occupancy=occupancy,
        spots_free=free_spots(occupancy.total, occupancy.occupied),
    )


def locate_facility(facility: Facility) -> Facility:
    """Fill position (and tsn when absent) from the coordinate table."""
    if facility.is_resolved:
        return facility
    entry = resolve_coordinates(facility.facility_name, warn=False)
    if entry is None:
        return facility
    return replace(
        facility,
        latitude=entry.latitude,
        longitude=entry.longitude,
        tsn=facility.tsn or entry.tsn,
    )


def _unique_ids(facilities: list[Facility]) -> list[Facility]:
    seen: dict[str, int] = {}
    result = []
    for facility in facilities:
        count = seen.get(facility.facility_id, 0) + 1
        seen[facility.facility_id] = count
        if count > 1:
            new_id = f"{facility.facility_id}-{count}"
            while new_id in seen:
                count += 1
                new_id = f"{facility.facility_id}-{count}"
            seen[new_id] = 1
            logger.warning(f"Duplicate facility id {facility.facility_id!r} renamed to {new_id!r}")
            facility = replace(facility, facility_id=new_id)
        result.append(facility)
    return result


def normalize_records(records: list[SourceRecord], now: datetime | None = None) -> list[Facility]:
    """Normalise and de-duplicate one source's records, without locating them."""
    return _unique_ids([normalize_record(record, index, now) for index, record in enumerate(records)])


def locate_facilities(facilities: list[Facility]) -> tuple[list[Facility], list[str]]:
    """Backfill positions; returns the facilities and the sorted unresolved names."""
    located = [locate_facility(facility) for facility in facilities]
    missing = sorted({f.facility_name for f in located if not f.is_resolved})
    if missing:
        logger.warning(
            f"No coordinates for {len(missing)} carparks (kept, unresolved): "
            f"{', '.join(missing)}"
        )
    return located, missing


def reconcile(records: list[SourceRecord], now: datetime | None = None) -> tuple[list[Facility], list[str]]:
    """Normalise, de-duplicate and locate one source's records.

    Returns the facilities and the sorted names that stayed unresolved.
    """
    return locate_facilities(normalize_records(records, now))


# ── Occupancy merge ──────────────────────────────────────────────────

def _normalize_for_match(name: str) -> str:
    name = _PREFIX_RE.sub("", clean_facility_name(name or ""))
    return re.sub(r"\s+", " ", name).strip().lower()


def names_match(a: str, b: str) -> bool:
    """Fuzzy facility name comparison used when ids are not shared.

    Both names lose the "Park&Ride -" prefix and are whitespace/case
    normalised.  They match when equal, or when one contains the other and
    at least WORD_OVERLAP_THRESHOLD of the shorter name's word count is
    shared.
    """
    left = _normalize_for_match(a)
    right = _normalize_for_match(b)
    if not left or not right:
        return False
    if left == right:
        return True
    if left in right or right in left:
        left_words = left.split(" ")
        right_words = right.split(" ")
        common = [w for w in left_words if w in right_words]
        return len(common) >= min(len(left_words), len(right_words)) * WORD_OVERLAP_THRESHOLD
    return False


def _entry_name(entry) -> str:
    return getattr(entry, 'name', None) or ''


def match_occupancy(facility: Facility, occupancy_map: Mapping):
    """Entry for a facility: by id first, then by fuzzy name; None if absent."""
    entry = occupancy_map.get(facility.facility_id)
    if entry is not None:
        return entry
    for key, candidate in occupancy_map.items():
        name = _entry_name(candidate) or str(key)
        if names_match(facility.facility_name, name):
            return candidate
    return None


def apply_occupancy(facilities: list[Facility], occupancy_map: Mapping,
                    now: datetime | None = None) -> list[Facility]:
    """Attach occupancy to facilities; unmatched entries are dropped.

    Map values are SourceRecord (REST occupancy phase) or Occupancy
    (``fetch_occupancy_only`` output, matched by id only).  A SourceRecord
    also supplies tsn and position where the facility has none.
    """
    merged = []
    matched = 0
    for facility in facilities:
        entry = match_occupancy(facility, occupancy_map)
        if entry is None:
            merged.append(facility)
            continue
        matched += 1
        occupancy = entry if isinstance(entry, Occupancy) else build_occupancy(entry, now)
        changes = {
            'occupancy': occupancy,
            'spots_free': free_spots(occupancy.total, occupancy.occupied),
        }
        if isinstance(entry, SourceRecord):
            if not facility.tsn and entry.tsn:
                changes['tsn'] = entry.tsn
            position = record_position(entry)
            if position is not None and not facility.is_resolved:
                changes['latitude'], changes['longitude'] = position
        merged.append(replace(facility, **changes))

    logger.info(f"Matched occupancy for {matched}/{len(facilities)} facilities")
    return merged


def apply_scraped_occupancy(facilities: list[Facility], scraped: Mapping[str, dict]) -> list[Facility]:
    """Overlay scraped free-space counts on an existing facility list.

    Scraped names are free text, so matching is by name only.  Known
    capacity is kept; otherwise it is estimated from the free count.
    """
    merged = []
    for facility in facilities:
        item = None
        bare_name = _PREFIX_RE.sub("", facility.facility_name).strip()
        if bare_name in scraped:
            item = scraped[bare_name]
        else:
            for key in scraped:
                if names_match(facility.facility_name, key):
                    item = scraped[key]
                    break
        if item is None:
            merged.append(facility)
            continue

        spaces = parse_int(item.get('spaces', item.get('availableSpaces')))
        total = facility.occupancy.total or spaces * SCRAPE_TOTAL_FACTOR
        spaces = min(spaces, total)
        occupancy = Occupancy(
            total=total,
            occupied=max(0, total - spaces),
            time=facility.occupancy.time,
            month=facility.occupancy.month,
            loop=facility.occupancy.loop,
        )
        merged.append(replace(facility, occupancy=occupancy,
                               spots_free=free_spots(occupancy.total, occupancy.occupied)))
    return merged


# ── Pipeline ─────────────────────────────────────────────────────────

class CarparkPipeline:
    """Runs the source priority chain.

    ``sources`` is an ordered list of ``(name, fetch)`` pairs where ``fetch``
    returns either a list of SourceRecord or a ready list of Facility.
    """

    def __init__(self, sources: list[tuple[str, Callable]] | None = None, store=None,
                 rest_client=None, scraper=None, use_mock=USE_MOCK_FALLBACK):
        self.rest_client = rest_client or tfnsw_sources.CarparkApiClient(store=store)
        self.scraper = scraper or tfnsw_sources.ScraperClient()
        self.use_mock = use_mock
        self.sources = sources if sources is not None else self.default_sources()

    def default_sources(self) -> list[tuple[str, Callable]]:
        available = {
            'graphql': tfnsw_sources.GraphQLClient().fetch_records,
            'scrape': self.scraper.fetch_records,
            'rest': self.fetch_rest_facilities,
            'mock': tfnsw_sources.fetch_mock_records,
        }
        order = list(SOURCE_PRIORITY)
        if self.use_mock and 'mock' not in order:
            order.append('mock')
        return [(name, available[name]) for name in order]

    def fetch_rest_facilities(self) -> list[Facility]:
        """REST source: facility list, then occupancy merged by id / name.

        When the occupancy phase yields nothing (quota exhausted, network
        down) scraped free-space counts are overlaid instead.  Positions from
        the occupancy entries take precedence over the coordinate table.
        """
        now = datetime.now()
        facilities = normalize_records(self.rest_client.fetch_records(), now)
        if not facilities:
            return []
        occupancy = self.rest_client.fetch_occupancy()
        if occupancy:
            facilities = apply_occupancy(facilities, occupancy, now)
        else:
            facilities = self._overlay_scraped(facilities)
        located, _ = locate_facilities(facilities)
        return located

    def _overlay_scraped(self, facilities: list[Facility]) -> list[Facility]:
        try:
            scraped = self.scraper.fetch_scraped()
        except (SourceError, requests.exceptions.RequestException) as e:
            logger.warning(f"Car park list served without occupancy numbers: {e}")
            return facilities
        logger.info(f"Overlaying scraped occupancy for {len(scraped)} carparks")
        return apply_scraped_occupancy(facilities, scraped)

    def fetch_facilities(self) -> FetchResult:
        now = datetime.now()
        for name, fetch in self.sources:
            try:
                data = fetch()
            except (SourceError, requests.exceptions.RequestException) as e:
                logger.warning(f"Source {name!r} failed: {e}")
                continue

            if not data:
                logger.warning(f"Source {name!r} returned no data")
                continue

            if isinstance(data[0], Facility):
                facilities = _unique_ids(list(data))
                missing = sorted(f.facility_name for f in facilities if not f.is_resolved)
            else:
                facilities, missing = reconcile(data, now)

            logger.info(f"Loaded {len(facilities)} facilities from {name!r}")
            return FetchResult(
                facilities=facilities,
                source=name,
                is_demo=name != PRIMARY_SOURCE,
                missing_coordinates=missing,
            )

        logger.error("All data sources failed; returning an empty facility list")
        return FetchResult()

    def fetch_occupancy_only(self) -> dict[str, Occupancy]:
        """Occupancy by facility id from the REST API; {} when unavailable."""
        now = datetime.now()
        return {
            facility_id: build_occupancy(record, now)
            for facility_id, record in self.rest_client.fetch_occupancy().items()
        }


def fetch_facilities() -> FetchResult:
    return CarparkPipeline().fetch_facilities()


def fetch_occupancy_only() -> dict[str, Occupancy]:
    return CarparkPipeline().fetch_occupancy_only()
