# config.py — NSW Park&Ride occupancy pipeline configuration
# Edit this file to change endpoints, retry policy, source order, etc.
# API keys and endpoints can also be supplied through the environment.

import os

# ── Endpoints ────────────────────────────────────────────────────────
# Primary source: transportnsw.info GraphQL widget feed (name, free, occupied).
GRAPHQL_URL = os.environ.get("TFNSW_GRAPHQL_URL", "https://transportnsw.info/api/graphql")
GRAPHQL_QUERY = "query{result:widgets{pnrLocations{name spots occupancy}}}"
GRAPHQL_USER_AGENT = "NSW-Park-Ride-Checker/1.0"

# Secondary source: Open Data car park API.  GET {CARPARK_API_URL} returns the
# facility id -> name mapping, GET {CARPARK_API_URL}/occupancy the occupancy.
CARPARK_API_URL = os.environ.get("TFNSW_CARPARK_URL", "https://api.transport.nsw.gov.au/v1/carpark")
TFNSW_API_KEY = os.environ.get("TFNSW_API_KEY", "")

# Scrape source: scraper service wrapping the Park&Ride web page.
SCRAPER_URL = os.environ.get("PARKRIDE_SCRAPER_URL", "http://localhost:3001/api/scrape/carpark-occupancy")
PARKRIDE_PAGE_URL = (
    "https://transportnsw.info/travel-info/ways-to-get-around/drive/parking/"
    "transport-parkride-car-parks"
)

# ── HTTP / retry ─────────────────────────────────────────────────────
REQUEST_TIMEOUT = 30

# Occupancy phase of the REST source: fixed backoff, bounded retries.
# MAX_RETRIES counts retries, so the request is attempted MAX_RETRIES + 1 times.
MAX_RETRIES = 2
RETRY_DELAY = 2.0

# Lower-cased fragments that mark a response body as a quota / rate-limit error.
RATE_LIMIT_MARKERS = ("quota", "rate limit", "rate-limit", "too many requests")

# Seconds the REST id -> name mapping stays in the key-value store (if any).
FACILITY_LIST_TTL = 3600

# ── Source priority ──────────────────────────────────────────────────
# Tried in order; the first source that yields a non-empty list wins.
SOURCE_PRIORITY = ["graphql", "scrape", "rest"]

# Append the built-in demo data as a last resort.  Results served from it are
# always flagged as degraded.
USE_MOCK_FALLBACK = os.environ.get("PARKRIDE_USE_MOCK", "").lower() in ("1", "true", "yes")

# ── Reconciliation ───────────────────────────────────────────────────
# Fraction of the shorter name's words that must also appear in the other
# name for a containment match to count (fuzzy occupancy matching).
WORD_OVERLAP_THRESHOLD = 0.5

# Scraped data only carries free spaces.  When no capacity is known the total
# is estimated as free * SCRAPE_TOTAL_FACTOR.
SCRAPE_TOTAL_FACTOR = 2

# Time / month label formats used when a source carries no timestamp.
TIME_LABEL_FORMAT = "%H:%M"
MONTH_LABEL_FORMAT = "%b"

# ── Location / list views ────────────────────────────────────────────
# Reference point used when no location is given (Seven Hills Park&Ride).
DEFAULT_LOCATION = (-33.7738, 150.9351)

# Number of entries in the "nearest locations" overlay.
NEAREST_COUNT = 3

# Free-spot ratios below which a facility is shown as busy / filling up.
BUSY_RATIO = 0.1
FILLING_RATIO = 0.3

# ── Real-time facilities ─────────────────────────────────────────────
# Only these Sydney Metro Park&Ride facilities report live occupancy.
METRO_STATIONS_WITH_REALTIME_DATA = [
    "Tallawong",
    "Bella Vista",
    "Hills Showground",
    "Cherrybrook",
    "Kellyville",
]

METRO_STATION_FACILITY_IDS = [
    "26",  # Tallawong P1
    "27",  # Tallawong P2
    "28",  # Tallawong P3
    "31",  # Bella Vista
    "32",  # Hills Showground
    "33",  # Cherrybrook
    "29",  # Kellyville (north)
    "30",  # Kellyville (south)
]

# ── Output files ─────────────────────────────────────────────────────
OUTPUT_GEOJSON = "parkride_facilities.geojson"
LOG_FILE = "parkride.log"
