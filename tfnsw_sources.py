"""
tfnsw_sources.py — adapters for the Park&Ride data sources.

Each adapter decodes its own payload shape (arrays, keyed objects, nested
occupancy blocks) into SourceRecord values; the reconciliation pipeline
never sees the raw JSON.

  GraphQLClient     transportnsw.info widget feed: name, free, occupied
  CarparkApiClient  Open Data REST API: id -> name, then occupancy by id
  ScraperClient     Park&Ride web page via the scraper service
  fetch_mock_records  built-in demo data
"""

import logging
import re
import time
from datetime import datetime

import requests
from bs4 import BeautifulSoup

from carpark_models import (
    SourceRecord, SourceUnavailable, MalformedResponse, RateLimited, ConfigurationError,
)
from config import (
    GRAPHQL_URL, GRAPHQL_QUERY, GRAPHQL_USER_AGENT,
    CARPARK_API_URL, TFNSW_API_KEY, SCRAPER_URL,
    REQUEST_TIMEOUT, MAX_RETRIES, RETRY_DELAY, RATE_LIMIT_MARKERS,
    FACILITY_LIST_TTL, TIME_LABEL_FORMAT, MONTH_LABEL_FORMAT,
)

logger = logging.getLogger(__name__)

FACILITY_NAMES_KEY = "carpark:facility-names"

# "Park&Ride - Ashfield168 spaces" (the page glues name and count together)
_SPACES_RE = re.compile(r"Park&Ride\s*-\s*([^\d]+?)\s*(\d+)\s+spaces", re.IGNORECASE)


def _is_success(response) -> bool:
    return 200 <= response.status_code < 300


def _decode_json(response, source: str):
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponse(f"{source}: response is not JSON ({e})") from e


# ── Primary: GraphQL ─────────────────────────────────────────────────

class GraphQLClient:
    """Fetches name, free and occupied counts in one GraphQL request."""

    def __init__(self, url=GRAPHQL_URL, timeout=REQUEST_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def fetch_records(self) -> list[SourceRecord]:
        if not self.url:
            raise ConfigurationError("GraphQL URL is not configured")

        try:
            response = requests.post(
                self.url,
                json={'query': GRAPHQL_QUERY},
                headers={'content-type': 'application/json', 'user-agent': GRAPHQL_USER_AGENT},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise SourceUnavailable(f"GraphQL request failed: {e}") from e

        if not _is_success(response):
            raise SourceUnavailable(f"GraphQL API error: {response.status_code}")

        payload = _decode_json(response, "GraphQL")
        try:
            locations = payload['data']['result']['widgets']['pnrLocations']
        except (KeyError, TypeError) as e:
            raise MalformedResponse(f"GraphQL payload missing pnrLocations ({e!r})") from e
        if not isinstance(locations, list):
            raise MalformedResponse("GraphQL pnrLocations is not a list")

        records = []
        for location in locations:
            if not isinstance(location, dict):
                raise MalformedResponse(f"GraphQL location is not an object: {location!r}")
            name = location.get('name')
            if not name:
                continue
            records.append(SourceRecord(
                name=str(name),
                available=location.get('spots'),
                occupied=location.get('occupancy'),
            ))

        logger.info(f"GraphQL returned {len(records)} Park&Ride locations")
        return records


# ── Secondary: Open Data REST API ────────────────────────────────────

def _message_labels(message_date) -> tuple[str | None, str | None]:
    """Time and month labels from an ISO timestamp such as MessageDate."""
    if not message_date:
        return None, None
    try:
        stamp = datetime.fromisoformat(str(message_date))
    except ValueError:
        return None, None
    return stamp.strftime(TIME_LABEL_FORMAT), stamp.strftime(MONTH_LABEL_FORMAT)


def decode_occupancy_entry(facility_id: str, entry: dict) -> SourceRecord:
    """Decode one occupancy entry.

    Accepts the flat shape ``{total, occupied, time, month}`` and the Open
    Data shape ``{spots, occupancy: {total, ...}, location, MessageDate}``
    where ``spots`` is the capacity and ``occupancy.total`` the number of
    parked vehicles.
    """
    nested = entry.get('occupancy')
    if isinstance(nested, dict):
        if 'spots' in entry:
            total = entry.get('spots')
            occupied = nested.get('occupied', nested.get('total'))
        else:
            total = nested.get('total')
            occupied = nested.get('occupied')
        time_label = nested.get('time')
        month_label = nested.get('month')
    else:
        total = entry.get('total')
        occupied = entry.get('occupied')
        time_label = entry.get('time')
        month_label = entry.get('month')

    if not time_label:
        time_label, fallback_month = _message_labels(entry.get('MessageDate'))
        month_label = month_label or fallback_month

    location = entry.get('location') if isinstance(entry.get('location'), dict) else {}
    return SourceRecord(
        name=str(entry.get('facility_name') or ''),
        facility_id=str(facility_id),
        total=total,
        occupied=occupied,
        latitude=location.get('latitude'),
        longitude=location.get('longitude'),
        tsn=entry.get('tsn') or None,
        time=time_label,
        month=month_label,
    )


class CarparkApiClient:
    """Two-phase REST client: facility names first, occupancy second.

    The occupancy phase retries on rate limits and network errors with a
    fixed delay, then gives up with an empty result.  The facility list is
    usable on its own.
    """

    def __init__(self, base_url=CARPARK_API_URL, api_key=TFNSW_API_KEY, store=None,
                 timeout=REQUEST_TIMEOUT):
        self.base_url = base_url.rstrip('/') if base_url else base_url
        self.api_key = api_key
        self.store = store
        self.timeout = timeout
        self.max_retries = MAX_RETRIES
        self.retry_delay = RETRY_DELAY

    def _headers(self) -> dict:
        return {'Authorization': f'apikey {self.api_key}', 'Accept': 'application/json'}

    def _check_configured(self):
        if not self.base_url or not self.api_key:
            raise ConfigurationError("TfNSW car park API URL or key is not configured")

    def fetch_facility_names(self) -> dict[str, str]:
        """Return the facility id -> name mapping."""
        self._check_configured()

        if self.store is not None:
            cached = self.store.get(FACILITY_NAMES_KEY)
            if isinstance(cached, dict) and cached:
                logger.info(f"Using cached facility list ({len(cached)} facilities)")
                return dict(cached)
            if cached is not None:
                logger.warning("Discarding unusable cached facility list")
                self.store.delete(FACILITY_NAMES_KEY)

        try:
            response = requests.get(self.base_url, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise SourceUnavailable(f"Car park list request failed: {e}") from e

        if not _is_success(response):
            raise SourceUnavailable(f"Car park list error: {response.status_code}")

        payload = _decode_json(response, "Car park list")
        names = {}
        if isinstance(payload, dict):
            for facility_id, name in payload.items():
                if not isinstance(name, str):
                    raise MalformedResponse(f"Facility {facility_id} has no name")
                names[str(facility_id)] = name
        elif isinstance(payload, list):
            for item in payload:
                if not isinstance(item, dict) or 'facility_id' not in item:
                    raise MalformedResponse(f"Unexpected facility entry: {item!r}")
                names[str(item['facility_id'])] = str(item.get('facility_name') or '')
        else:
            raise MalformedResponse("Car park list is neither an object nor an array")

        if self.store is not None and names:
            self.store.set(FACILITY_NAMES_KEY, names, ttl=FACILITY_LIST_TTL)

        logger.info(f"Car park API listed {len(names)} facilities")
        return names

    def _is_rate_limited(self, response) -> bool:
        if response.status_code == 429:
            return True
        body = (response.text or '').lower()
        return any(marker in body for marker in RATE_LIMIT_MARKERS)

    def _get_with_retry(self, url: str):
        """GET url, retrying rate limits and network errors.

        Makes at most ``max_retries + 1`` attempts, sleeping ``retry_delay``
        between them.  Any other HTTP error is raised straight away.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                response = requests.get(url, headers=self._headers(), timeout=self.timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                error = SourceUnavailable(f"Network error: {e}")
            else:
                if _is_success(response):
                    return response
                if not self._is_rate_limited(response):
                    raise SourceUnavailable(f"Occupancy API error: {response.status_code}")
                error = RateLimited(f"Rate limited (HTTP {response.status_code})")

            if attempt > self.max_retries:
                raise error
            logger.warning(
                f"{error} on attempt {attempt}/{self.max_retries + 1}, "
                f"retrying in {self.retry_delay}s"
            )
            time.sleep(self.retry_delay)

    def fetch_occupancy(self) -> dict[str, SourceRecord]:
        """Return occupancy records keyed by facility id; {} when unavailable."""
        try:
            self._check_configured()
            response = self._get_with_retry(f"{self.base_url}/occupancy")
            payload = _decode_json(response, "Occupancy")
        except RateLimited as e:
            logger.warning(f"Occupancy data unavailable after {self.max_retries} retries: {e}")
            return {}
        except (SourceUnavailable, ConfigurationError, requests.exceptions.RequestException) as e:
            logger.warning(f"Occupancy data unavailable: {e}")
            return {}

        if isinstance(payload, dict):
            items = payload.items()
        elif isinstance(payload, list):
            items = ((item.get('facility_id'), item) for item in payload if isinstance(item, dict))
        else:
            logger.warning("Occupancy payload is neither an object nor an array")
            return {}

        occupancy = {}
        for facility_id, entry in items:
            if facility_id is None or not isinstance(entry, dict):
                continue
            occupancy[str(facility_id)] = decode_occupancy_entry(facility_id, entry)

        logger.info(f"Occupancy data for {len(occupancy)} facilities")
        return occupancy

    def fetch_records(self) -> list[SourceRecord]:
        """Facility list records (no occupancy); see fetch_occupancy."""
        names = self.fetch_facility_names()
        return [SourceRecord(name=name, facility_id=fid) for fid, name in names.items()]


# ── Scrape ───────────────────────────────────────────────────────────

def parse_parkride_html(html: str) -> dict[str, dict]:
    """Extract ``{name: {name, spaces}}`` from rendered Park&Ride page HTML.

    Entries look like "Park&Ride - Bella Vista482 spaces".  The first
    non-zero count seen for a name is kept.
    """
    soup = BeautifulSoup(html, 'html.parser')
    data = {}
    for element in soup.find_all(['button', 'a']) + soup.find_all(attrs={'role': 'button'}):
        text = element.get_text(' ')
        if 'Park&Ride' not in text or 'spaces' not in text:
            continue
        match = _SPACES_RE.search(text)
        if not match:
            continue
        name = re.sub(r'\s+', ' ', match.group(1)).strip()
        spaces = int(match.group(2))
        if name not in data or data[name]['spaces'] == 0:
            data[name] = {'name': name, 'spaces': spaces}
    return data


class ScraperClient:
    """Reads scraped occupancy from the scraper service.

    The service answers with JSON ``{name: {name, spaces}}``.  An endpoint
    serving the rendered page itself (text/html) is parsed directly.
    """

    def __init__(self, url=SCRAPER_URL, timeout=REQUEST_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def fetch_scraped(self) -> dict[str, dict]:
        if not self.url:
            raise ConfigurationError("Scraper URL is not configured")

        try:
            response = requests.get(self.url, headers={'Accept': 'application/json'},
                                    timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise SourceUnavailable(f"Scraper request failed: {e}") from e

        if not _is_success(response):
            raise SourceUnavailable(f"Scraper error: {response.status_code}")

        content_type = str(response.headers.get('content-type', ''))
        if 'html' in content_type:
            data = parse_parkride_html(response.text)
        else:
            payload = _decode_json(response, "Scraper")
            if not isinstance(payload, dict):
                raise MalformedResponse("Scraper response is not an object")
            data = {}
            for key, item in payload.items():
                if not isinstance(item, dict) or 'name' not in item:
                    continue
                spaces = item.get('spaces', item.get('availableSpaces'))
                if spaces is None:
                    continue
                data[key] = {'name': item['name'], 'spaces': spaces}

        if not data:
            raise MalformedResponse("No carpark data found in scraper response")

        logger.info(f"Scraped {len(data)} carparks")
        return data

    def fetch_records(self) -> list[SourceRecord]:
        return [
            SourceRecord(name=str(item['name']), available=item['spaces'])
            for item in self.fetch_scraped().values()
        ]


# ── Demo data ────────────────────────────────────────────────────────

MOCK_CARPARKS = [
    SourceRecord(name="Tallawong Station Car Park", facility_id="1", total=1000, occupied=850,
                 latitude="-33.6896", longitude="150.9068", tsn="TWG", time="12:00", month="Oct"),
    SourceRecord(name="Kellyville Station Car Park", facility_id="2", total=1360, occupied=200,
                 latitude="-33.7135", longitude="150.9490", tsn="KVE", time="12:05", month="Oct"),
    SourceRecord(name="Bella Vista Station", facility_id="3", total=800, occupied=795,
                 latitude="-33.7299", longitude="150.9577", tsn="BVA", time="12:10", month="Oct"),
    SourceRecord(name="Hills Showground Station", facility_id="4", total=600, occupied=300,
                 latitude="-33.7275", longitude="150.9856", tsn="HSG", time="12:15", month="Oct"),
    SourceRecord(name="Gordon Station Car Park", facility_id="5", total=200, occupied=180,
                 latitude="-33.7562", longitude="151.1540", tsn="GDN", time="12:15", month="Oct"),
]


def fetch_mock_records() -> list[SourceRecord]:
    logger.warning("Serving built-in demo data")
    return list(MOCK_CARPARKS)
