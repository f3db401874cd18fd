"""Sorted, searched and nearest-N views over a reconciled facility list.

Everything here is a pure function of its inputs; views are recomputed
whenever the list or the reference point changes.
"""

import locale

from geo import distance_to
from config import (
    NEAREST_COUNT, BUSY_RATIO, FILLING_RATIO,
    METRO_STATIONS_WITH_REALTIME_DATA, METRO_STATION_FACILITY_IDS,
)

SORT_OPTIONS = ('distance', 'name', 'availability')


def name_sort_key(facility) -> str:
    return locale.strxfrm(facility.facility_name.casefold())


def sort_facilities(facilities: list, by: str = 'distance', reference=None) -> list:
    """Return a new list sorted by name, free spots or distance.

    name          ascending, locale-aware
    availability  most free spots first
    distance      nearest first from ``reference`` (lat, lon); facilities
                  without a position always come last, in input order.
                  Without a reference the input order is kept.

    All sorts are stable.
    """
    if by == 'name':
        return sorted(facilities, key=name_sort_key)
    if by == 'availability':
        return sorted(facilities, key=lambda f: -f.spots_free)
    if by == 'distance':
        if reference is None:
            return list(facilities)
        located, unresolved = _split_by_distance(facilities, reference)
        located.sort(key=lambda pair: pair[0])
        return [f for _, f in located] + unresolved
    raise ValueError(f"Unknown sort option {by!r}; expected one of {', '.join(SORT_OPTIONS)}")


def _split_by_distance(facilities, reference):
    located, unresolved = [], []
    for facility in facilities:
        d = distance_to(reference, facility)
        if d is None or d != d:
            unresolved.append(facility)
        else:
            located.append((d, facility))
    return located, unresolved


def search_facilities(facilities: list, query: str) -> list:
    """Facilities whose name, station code or id contain every query word.

    A blank query matches nothing (the results dropdown stays closed).
    """
    tokens = (query or '').strip().lower().split()
    if not tokens:
        return []

    matches = []
    for facility in facilities:
        searchable = f"{facility.facility_name} {facility.tsn or ''} {facility.facility_id}".lower()
        if all(token in searchable for token in tokens):
            matches.append(facility)
    return matches


def nearest_facilities(facilities: list, reference, n: int = NEAREST_COUNT) -> list:
    """The n closest located facilities to reference, ties in input order."""
    if reference is None or n <= 0:
        return []
    located, _ = _split_by_distance(facilities, reference)
    located.sort(key=lambda pair: pair[0])
    return [f for _, f in located[:n]]


def visible_facilities(facilities: list) -> list:
    """Facilities that can be placed on the map."""
    return [f for f in facilities if f.is_resolved]


def availability_status(facility) -> str:
    total = facility.occupancy.total
    if total <= 0:
        return "No Data"
    ratio = facility.spots_free / total
    if ratio < BUSY_RATIO:
        return "Full / Busy"
    if ratio < FILLING_RATIO:
        return "Filling Up"
    return "Good Availability"


def has_realtime_occupancy(facility) -> bool:
    """True for the Metro facilities that report live occupancy."""
    if facility.facility_id in METRO_STATION_FACILITY_IDS:
        return True
    name = facility.facility_name.lower()
    return any(station.lower() in name for station in METRO_STATIONS_WITH_REALTIME_DATA)
