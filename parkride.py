#!/usr/bin/env python3
"""
parkride.py — NSW Park&Ride live availability from the command line.

Fetches the reconciled facility list and prints it sorted, searched or as
the "nearest locations" overlay.  Optionally writes a GeoJSON map layer.

Usage:
    python3 parkride.py                          # list, nearest first from Seven Hills
    python3 parkride.py --sort availability      # most free spots first
    python3 parkride.py --search "twg"           # search name / zone / id
    python3 parkride.py --near=-33.70,150.90 --nearest
    python3 parkride.py --geojson out.geojson    # map layer of located facilities
    python3 parkride.py --watch 60               # refresh every minute
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict

from carpark_list import (
    SORT_OPTIONS, sort_facilities, search_facilities, nearest_facilities,
    visible_facilities, availability_status, has_realtime_occupancy,
)
from carpark_pipeline import CarparkPipeline
from config import DEFAULT_LOCATION, NEAREST_COUNT, OUTPUT_GEOJSON, LOG_FILE, USE_MOCK_FALLBACK
from geo import distance_to, format_distance, write_geojson
from kv_store import MemoryStore

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    'live': "Live data",
    'degraded': "Using fallback data (primary source unavailable)",
    'no data': "No parking data available",
}


def configure_logging(log_file=None, verbose=False):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def parse_location(value: str) -> tuple[float, float]:
    """Parse "lat,lon" into a tuple."""
    parts = value.split(',')
    if len(parts) != 2:
        raise argparse.ArgumentTypeError("Location must be LAT,LON")
    try:
        return float(parts[0]), float(parts[1])
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid location: {value!r}")


def format_row(facility, reference=None) -> str:
    free = facility.spots_free
    total = facility.occupancy.total
    d = distance_to(reference, facility)
    where = format_distance(d) if d is not None else "no location"
    updated = f" @ {facility.occupancy.time}" if facility.occupancy.time else ""
    return (
        f"{facility.facility_name:<45} {free:>5}/{total:<5} free  "
        f"{availability_status(facility):<17} {where:>8}  zone {facility.tsn or 'N/A'}{updated}"
    )


def render(result, args) -> list[str]:
    """Lines to print for one fetched snapshot."""
    facilities = result.facilities
    if args.realtime_only:
        facilities = [f for f in facilities if has_realtime_occupancy(f)]
    if args.hide_unresolved:
        facilities = visible_facilities(facilities)

    lines = [f"[{result.status}] {STATUS_MESSAGES[result.status]}"
             + (f", source: {result.source}" if result.source else "")]

    if args.search is not None:
        matches = search_facilities(facilities, args.search)
        lines.append(f"{len(matches)} match(es) for {args.search!r}")
        lines.extend(format_row(f, args.near) for f in matches)
        return lines

    if args.nearest:
        lines.append("Nearest locations:")
        lines.extend(format_row(f, args.near)
                     for f in nearest_facilities(facilities, args.near, args.count))
        return lines

    lines.extend(format_row(f, args.near)
                 for f in sort_facilities(facilities, args.sort, args.near))
    return lines


def run_once(pipeline, args, previous=None):
    """One refresh cycle; keeps ``previous`` when nothing could be fetched."""
    if args.occupancy_only:
        occupancy = pipeline.fetch_occupancy_only()
        print(json.dumps({fid: asdict(o) for fid, o in occupancy.items()}, indent=2))
        return previous, bool(occupancy)

    result = pipeline.fetch_facilities()
    if not result.facilities and previous is not None:
        logger.warning("Refresh failed; keeping the previous snapshot")
        result = previous

    if args.json:
        print(json.dumps({
            'status': result.status,
            'source': result.source,
            'is_demo': result.is_demo,
            'missing_coordinates': result.missing_coordinates,
            'facilities': [f.to_dict() for f in result.facilities],
        }, indent=2))
    else:
        for line in render(result, args):
            print(line)

    if args.geojson and result.facilities:
        if not write_geojson(args.geojson, result.facilities):
            return result, False

    return result, bool(result.facilities)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='NSW Park&Ride live car park availability',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--sort', choices=SORT_OPTIONS, default='distance',
                        help='Sort order for the list (default: distance)')
    parser.add_argument('--near', type=parse_location, default=DEFAULT_LOCATION,
                        metavar='LAT,LON', help='Reference location (default: Seven Hills)')
    parser.add_argument('--search', metavar='QUERY',
                        help='Search name, zone (e.g. TWG) or id')
    parser.add_argument('--nearest', action='store_true',
                        help='Show only the nearest locations')
    parser.add_argument('--count', type=int, default=NEAREST_COUNT,
                        help=f'Number of nearest locations (default: {NEAREST_COUNT})')
    parser.add_argument('--realtime-only', action='store_true',
                        help='Only facilities that report live occupancy')
    parser.add_argument('--hide-unresolved', action='store_true',
                        help='Hide facilities without coordinates')
    parser.add_argument('--occupancy-only', action='store_true',
                        help='Print occupancy by facility id from the REST API')
    parser.add_argument('--mock', action='store_true', default=USE_MOCK_FALLBACK,
                        help='Fall back to built-in demo data when every source fails')
    parser.add_argument('--json', action='store_true', help='Print JSON instead of a table')
    parser.add_argument('--geojson', nargs='?', const=OUTPUT_GEOJSON, metavar='PATH',
                        help=f'Write a GeoJSON map layer (default path: {OUTPUT_GEOJSON})')
    parser.add_argument('--watch', type=float, metavar='SECONDS',
                        help='Refresh repeatedly at this interval')
    parser.add_argument('--log-file', nargs='?', const=LOG_FILE, metavar='PATH',
                        help=f'Also write logs to a file (default path: {LOG_FILE})')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file, args.verbose)

    pipeline = CarparkPipeline(store=MemoryStore(), use_mock=args.mock)

    if not args.watch:
        _, ok = run_once(pipeline, args)
        return ok

    previous = None
    try:
        while True:
            previous, _ = run_once(pipeline, args, previous)
            time.sleep(args.watch)
    except KeyboardInterrupt:
        logger.info("Stopped")
    return True


def cli():
    sys.exit(0 if main() else 1)


if __name__ == '__main__':
    cli()
