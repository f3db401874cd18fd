"""Distance helpers and the GeoJSON map layer for reconciled facilities."""

import json
import logging
import math
from datetime import datetime

from shapely.geometry import Point, mapping

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance in km between two points.

    NaN inputs give NaN; callers guard with is_valid_position first.
    """
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    if a > 1.0:
        a = 1.0  # rounding near antipodes
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_valid_position(lat, lon) -> bool:
    """True when both values are finite numbers."""
    try:
        return math.isfinite(float(lat)) and math.isfinite(float(lon))
    except (TypeError, ValueError):
        return False


def distance_to(reference: tuple[float, float] | None, facility) -> float | None:
    """Distance in km from reference to a facility, None if either is unknown."""
    if reference is None or facility.position is None:
        return None
    if not is_valid_position(*reference):
        return None
    return haversine_km(reference[0], reference[1], facility.latitude, facility.longitude)


def format_distance(km: float) -> str:
    """Short label: metres below 1 km ("850m"), otherwise one decimal ("1.2km")."""
    if km < 1:
        return f"{km * 1000:.0f}m"
    return f"{km:.1f}km"


# ── GeoJSON map layer ────────────────────────────────────────────────

def facilities_to_geojson(facilities: list) -> dict:
    """Build a Point FeatureCollection of the resolved facilities.

    Unresolved facilities have no place on the map and are left out.
    """
    features = []
    skipped = 0
    for facility in facilities:
        if not facility.is_resolved:
            skipped += 1
            continue
        # GeoJSON is (lon, lat)
        point = Point(facility.longitude, facility.latitude)
        features.append({
            'type': 'Feature',
            'geometry': mapping(point),
            'properties': {
                'id': facility.facility_id,
                'name': facility.facility_name,
                'tsn': facility.tsn,
                'total': facility.occupancy.total,
                'occupied': facility.occupancy.occupied,
                'spots_free': facility.spots_free,
                'time': facility.occupancy.time,
            },
        })

    if skipped:
        logger.warning(f"{skipped} facilities without coordinates left off the map layer")

    return {
        'type': 'FeatureCollection',
        'timestamp': datetime.now().isoformat(),
        'features': features,
    }


def write_geojson(path: str, facilities: list) -> bool:
    """Write the map layer to path; returns False on I/O failure."""
    data = facilities_to_geojson(facilities)
    try:
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)
    except IOError as e:
        logger.error(f"Error saving GeoJSON: {e}")
        return False
    logger.info(f"GeoJSON with {len(data['features'])} facilities saved to {path}")
    return True
