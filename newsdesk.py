"""
NewsDesk Core
Headline ingestion for a read-only news endpoint.

Pipeline:
- Fetch a category from the configured upstream (GNews JSON API or RSS feed)
- Normalize heterogeneous records into one article shape
- Clean markup/entities and score relevance
- Cache per (category, limit) with per-category TTL and stale-on-error fallback
- Count upstream calls per calendar day
"""
import sys
import os
import json
import re
import logging
import time
import threading
from collections import OrderedDict, defaultdict, deque, namedtuple
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import feedparser
import requests
from requests.exceptions import Timeout, RequestException, SSLError, ConnectionError as ReqConnectionError

from text_cleaner import clean_text, calculate_relevance

VERSION = '1.0.0'

# =============================================================================
# CONFIGURATION
# =============================================================================

LOG_LEVEL = os.environ.get('NEWSDESK_LOG_LEVEL', 'INFO')

BACKEND_GNEWS = 'gnews'
BACKEND_RSS = 'rss'
BACKENDS = (BACKEND_GNEWS, BACKEND_RSS)
BACKEND = os.environ.get('NEWSDESK_BACKEND', BACKEND_GNEWS).lower()

GNEWS_API_KEY = os.environ.get('GNEWS_API_KEY', '')
GNEWS_BASE_URL = os.environ.get('NEWSDESK_GNEWS_BASE_URL', 'https://gnews.io/api/v4')
GNEWS_MAX_PER_REQUEST = 100
LANG = os.environ.get('NEWSDESK_LANG', 'pt')
COUNTRY = os.environ.get('NEWSDESK_COUNTRY', 'br')

GOOGLE_NEWS_RSS = 'https://news.google.com/rss'
RSS_LOCALE_PARAMS = {
    'hl': f'{LANG}-{COUNTRY.upper()}',
    'gl': COUNTRY.upper(),
    'ceid': os.environ.get('NEWSDESK_RSS_CEID', f'{COUNTRY.upper()}:{LANG}-419'),
}

DEFAULT_TIMEOUT_MS = int(os.environ.get('NEWSDESK_TIMEOUT_MS', '8000'))
USER_AGENT = 'Mozilla/5.0 (compatible; NewsDesk/1.0; headline aggregator)'

USAGE_WARN_THRESHOLD = int(os.environ.get('NEWSDESK_USAGE_WARN_THRESHOLD', '90'))
CACHE_MAX_ENTRIES = int(os.environ.get('NEWSDESK_CACHE_MAX_ENTRIES', '500'))
CATEGORIES_PATH = os.environ.get('NEWSDESK_CATEGORIES_PATH', '')

DEFAULT_CATEGORY = 'home'
DEFAULT_LIMIT = 20
MAX_LIMIT = 50
MIN_TITLE_LENGTH = 10
SUMMARY_MAX_LENGTH = 300
SUMMARY_ELLIPSIS = '...'
SUMMARY_PLACEHOLDER = 'Resumo não disponível.'
SOURCE_PLACEHOLDER = 'Fonte Desconhecida'

SORT_RECENT = 'recent'
SORT_RELEVANT = 'relevant'

HOUR = 60 * 60

# Volatile categories get shorter TTLs
DEFAULT_CATEGORIES: Dict[str, Dict] = {
    'home': {
        'ttl_seconds': 2 * HOUR,
        'gnews': {'endpoint': 'top-headlines', 'params': {'category': 'general'}},
        'rss': {'url': GOOGLE_NEWS_RSS},
    },
    'world': {
        'ttl_seconds': 4 * HOUR,
        'gnews': {'endpoint': 'top-headlines', 'params': {'category': 'world'}},
        'rss': {'url': f'{GOOGLE_NEWS_RSS}/headlines/section/topic/WORLD'},
    },
    'politics': {
        'ttl_seconds': 2 * HOUR,
        'gnews': {
            'endpoint': 'search',
            'params': {
                'q': 'política OR governo OR eleição OR congresso OR ministério',
                'sortby': 'publishedAt',
            },
        },
        'rss': {
            'url': f'{GOOGLE_NEWS_RSS}/search',
            'params': {'q': 'política OR governo OR eleição OR congresso OR ministério'},
        },
    },
    'business': {
        'ttl_seconds': 4 * HOUR,
        'gnews': {'endpoint': 'top-headlines', 'params': {'category': 'business'}},
        'rss': {'url': f'{GOOGLE_NEWS_RSS}/headlines/section/topic/BUSINESS'},
    },
    'tech': {
        'ttl_seconds': 6 * HOUR,
        'gnews': {'endpoint': 'top-headlines', 'params': {'category': 'technology'}},
        'rss': {'url': f'{GOOGLE_NEWS_RSS}/headlines/section/topic/TECHNOLOGY'},
    },
    'science': {
        'ttl_seconds': 8 * HOUR,
        'gnews': {'endpoint': 'top-headlines', 'params': {'category': 'science'}},
        'rss': {'url': f'{GOOGLE_NEWS_RSS}/headlines/section/topic/SCIENCE'},
    },
    'sports': {
        'ttl_seconds': 3 * HOUR,
        'gnews': {'endpoint': 'top-headlines', 'params': {'category': 'sports'}},
        'rss': {'url': f'{GOOGLE_NEWS_RSS}/headlines/section/topic/SPORTS'},
    },
}

# =============================================================================
# LOGGING SETUP
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """JSON-structured logging formatter for observability."""

    EXTRA_FIELDS = ('category', 'duration_ms', 'article_count', 'error_type', 'request_count')

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


handler = logging.StreamHandler(sys.stderr)
handler.setFormatter(StructuredFormatter())
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    handlers=[handler]
)
logger = logging.getLogger('newsdesk')

# =============================================================================
# METRICS COLLECTION
# =============================================================================

# How a get_news call was answered
OUTCOME_FRESH = 'fresh'
OUTCOME_FETCHED = 'fetched'
OUTCOME_STALE = 'stale'
OUTCOME_UNAVAILABLE = 'unavailable'
OUTCOME_INVALID = 'invalid'
OUTCOMES = (OUTCOME_FRESH, OUTCOME_FETCHED, OUTCOME_STALE, OUTCOME_UNAVAILABLE, OUTCOME_INVALID)

LATENCY_SAMPLES = 500


class Metrics:
    """
    Thread-safe service counters, exposed on /api/metrics.

    Tracks how each news request was answered, how each upstream fetch
    ended (``ok`` or the UpstreamError/ParseError type), how many raw
    records were skipped or filtered out, and recent fetch latencies.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._started = time.time()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._outcomes: Dict[str, int] = dict.fromkeys(OUTCOMES, 0)
        self._fetches: Dict[str, int] = defaultdict(int)
        self._records = {'kept': 0, 'skipped': 0, 'filtered': 0}
        self._latencies: Deque[float] = deque(maxlen=LATENCY_SAMPLES)

    def request_outcome(self, outcome: str) -> None:
        with self._lock:
            self._outcomes[outcome] += 1

    def fetch_result(self, result: str, duration_ms: Optional[float] = None) -> None:
        with self._lock:
            self._fetches[result] += 1
            if duration_ms is not None:
                self._latencies.append(duration_ms)

    def records(self, kept: int = 0, skipped: int = 0, filtered: int = 0) -> None:
        with self._lock:
            self._records['kept'] += kept
            self._records['skipped'] += skipped
            self._records['filtered'] += filtered

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()

    def snapshot(self) -> Dict:
        with self._lock:
            latencies = list(self._latencies)
            snapshot = {
                'uptime_seconds': round(time.time() - self._started, 3),
                'requests': dict(self._outcomes),
                'fetches': dict(self._fetches),
                'records': dict(self._records),
            }
        if latencies:
            snapshot['fetch_latency_ms'] = {
                'samples': len(latencies),
                'last': latencies[-1],
                'avg': round(sum(latencies) / len(latencies), 2),
                'max': max(latencies),
            }
        return snapshot

# =============================================================================
# ERRORS
# =============================================================================

class NewsError(Exception):
    """Base error; ``status_code`` is the HTTP status the error maps to."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidRequest(NewsError):
    """Bad method or unknown category. Never touches cache or upstream."""

    status_code = 400


class UpstreamError(NewsError):
    """Transport failure, non-2xx status or an error field in the provider body."""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, error_type: str = 'upstream_error'):
        super().__init__(message)
        self.status = status
        self.error_type = error_type


class ParseError(NewsError):
    """Provider payload could not be decoded as JSON or XML."""

    status_code = 502
    error_type = 'parse_error'


class NewsUnavailable(NewsError):
    """A batch failed and there is no cached entry to fall back on."""

    status_code = 500

# =============================================================================
# CATEGORY CONFIGURATION
# =============================================================================

def validate_category_entry(entry: Any) -> Tuple[bool, str]:
    """Validate one category configuration entry."""
    if not isinstance(entry, dict):
        return False, "Category entry must be an object"

    ttl = entry.get('ttl_seconds')
    if not isinstance(ttl, int) or isinstance(ttl, bool) or ttl <= 0:
        return False, "ttl_seconds must be a positive integer"

    gnews = entry.get('gnews')
    rss = entry.get('rss')
    if gnews is None and rss is None:
        return False, "At least one of 'gnews' or 'rss' is required"
    if gnews is not None and (not isinstance(gnews, dict) or not gnews.get('endpoint')):
        return False, "gnews entry requires an endpoint"
    if rss is not None and (not isinstance(rss, dict) or not rss.get('url')):
        return False, "rss entry requires a url"

    return True, ""


def load_categories(path: Optional[str] = CATEGORIES_PATH) -> Dict[str, Dict]:
    """Built-in category table, optionally overridden from a JSON file."""
    categories = {name: dict(entry) for name, entry in DEFAULT_CATEGORIES.items()}
    if not path:
        return categories

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.error("Categories file not found: %s", path)
        return categories
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in categories file: %s", str(e))
        return categories
    except PermissionError:
        logger.error("Permission denied reading categories: %s", path)
        return categories

    if not isinstance(data, dict):
        logger.error("Categories file must be a JSON object keyed by category")
        return categories

    for name, entry in data.items():
        valid, error = validate_category_entry(entry)
        if not valid:
            logger.warning("Skipping category '%s': %s", name, error)
            continue
        categories[str(name).lower()] = entry

    logger.info("Loaded %d categories from %s", len(categories), path)
    return categories


CATEGORIES = load_categories()

# =============================================================================
# DATE PARSING
# =============================================================================

DATE_FORMATS = [
    '%Y-%m-%dT%H:%M:%S%z',
    '%Y-%m-%dT%H:%M:%S.%f%z',
    '%Y-%m-%dT%H:%M%z',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%d %H:%M:%S%z',
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d',
    '%a, %d %b %Y %H:%M:%S %z',  # RFC 822
    '%a, %d %b %Y %H:%M %z',
    '%d %b %Y %H:%M:%S %z',
    '%d %b %Y',
]


def _to_utc(dt: datetime) -> Optional[datetime]:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        # Offsets that push year 1 or 9999 out of range
        return None


@lru_cache(maxsize=1000)
def _parse_date_string(date_str: str) -> Optional[datetime]:
    date_str = date_str.strip()
    if not date_str:
        return None

    # Handle common timezone abbreviations
    date_str = date_str.replace('GMT', '+0000').replace('UTC', '+0000')

    for fmt in DATE_FORMATS:
        try:
            dt = datetime.strptime(date_str, fmt)
        except ValueError:
            continue
        return _to_utc(dt)

    try:
        dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
    except ValueError:
        return None
    return _to_utc(dt)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a provider date into an aware UTC datetime, or None."""
    if not value or not isinstance(value, str):
        return None
    return _parse_date_string(value)


def format_timestamp(dt: datetime) -> str:
    """ISO 8601 in UTC with millisecond precision, e.g. 2024-01-02T00:00:00.000Z"""
    return dt.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')

# =============================================================================
# ARTICLE NORMALIZATION
# =============================================================================

SCHEMA_GNEWS = 'gnews'
SCHEMA_RSS = 'rss'

# Field names per raw record shape: url, date, source name, provider id
SCHEMA_FIELDS = {
    SCHEMA_GNEWS: ('url', 'publishedAt', 'name', 'id'),
    SCHEMA_RSS: ('link', 'pubDate', 'text', 'guid'),
}


def as_list(value: Any) -> List:
    """Coerce a one-or-many provider value into a list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_string(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, tuple)):
        return ''
    return str(value).strip()


def extract_domain(url: str) -> str:
    """Hostname of ``url`` without a leading ``www.``; empty string if unparseable."""
    if not url:
        return ''
    try:
        hostname = urlparse(url).hostname or ''
    except ValueError:
        return ''
    if hostname.startswith('www.'):
        hostname = hostname[4:]
    return hostname


def truncate_summary(summary: str, max_length: int = SUMMARY_MAX_LENGTH) -> str:
    if len(summary) > max_length:
        return summary[:max_length] + SUMMARY_ELLIPSIS
    return summary


def normalize_article(raw: Dict, index: int, schema: str = SCHEMA_GNEWS,
                      now: Optional[datetime] = None) -> Dict:
    """
    Map a raw provider record into the canonical article shape.

    Missing or malformed fields fall back to defaults; this never drops a
    record. Use ``is_displayable`` to filter out short titles.

    Args:
        raw: GNews article object or RSS item record
        index: Position in the batch, used for the id when the provider has none
        schema: SCHEMA_GNEWS or SCHEMA_RSS
        now: Fallback publish time (defaults to the current time)
    """
    if schema not in SCHEMA_FIELDS:
        raise ValueError(f"Unknown record schema: {schema}")
    url_field, date_field, name_field, id_field = SCHEMA_FIELDS[schema]

    title = clean_text(raw.get('title'))
    summary = truncate_summary(clean_text(raw.get('description')))
    url = _as_string(raw.get(url_field))

    source = raw.get('source')
    if not isinstance(source, dict):
        source = {}
    source_name = clean_text(source.get(name_field)) or extract_domain(url) or SOURCE_PLACEHOLDER
    source_url = _as_string(source.get('url')) or url

    timestamp = parse_timestamp(raw.get(date_field)) or now or datetime.now(timezone.utc)

    provider_id = _as_string(raw.get(id_field)) or None

    return {
        'id': provider_id or str(index + 1),
        'title': title,
        'summary': summary or SUMMARY_PLACEHOLDER,
        'url': url,
        'source': source_name,
        'sourceUrl': source_url,
        'publishedAt': format_timestamp(timestamp),
        'relevance': calculate_relevance(title, summary),
        'timestamp': timestamp,
        'imageUrl': _as_string(raw.get('image')) or None,
        'author': clean_text(raw.get('author')) or None,
        'originalId': provider_id,
    }


def is_displayable(article: Dict) -> bool:
    """Articles with empty or too-short titles are not surfaced."""
    title = article.get('title') or ''
    return len(title) > MIN_TITLE_LENGTH

# =============================================================================
# HTTP FETCHING
# =============================================================================

RawBatch = namedtuple('RawBatch', ['records', 'schema', 'total_available'])

_session = None
_session_lock = threading.Lock()


def get_session() -> requests.Session:
    """Get or create a requests session with connection pooling."""
    global _session

    with _session_lock:
        if _session is None:
            _session = requests.Session()
            _session.headers.update({
                'User-Agent': USER_AGENT,
                'Accept': 'application/json, application/rss+xml, application/xml, text/xml, */*',
                'Accept-Encoding': 'gzip, deflate',
            })
            adapter = requests.adapters.HTTPAdapter(
                pool_connections=10,
                pool_maxsize=20,
                max_retries=0
            )
            _session.mount('http://', adapter)
            _session.mount('https://', adapter)
        return _session


def _entry_image(entry: Dict) -> Optional[str]:
    for media in as_list(entry.get('media_content')) + as_list(entry.get('media_thumbnail')):
        if isinstance(media, dict) and media.get('url'):
            return media['url']
    for enclosure in as_list(entry.get('enclosures')):
        if not isinstance(enclosure, dict):
            continue
        if str(enclosure.get('type', '')).startswith('image') and enclosure.get('href'):
            return enclosure['href']
    return None


def rss_record(entry: Dict) -> Dict:
    """Flatten a feedparser entry into an RSS item record."""
    source = entry.get('source')
    if not isinstance(source, dict):
        source = {}
    return {
        'title': entry.get('title'),
        'description': entry.get('summary') or entry.get('description'),
        'link': entry.get('link'),
        'pubDate': entry.get('published') or entry.get('updated'),
        'source': {'text': source.get('title'), 'url': source.get('href')},
        'guid': entry.get('id'),
        'author': entry.get('author'),
        'image': _entry_image(entry),
    }


class FeedFetcher:
    """
    Fetches raw records for a category from the configured backend.

    ``gnews`` calls the GNews search/top-headlines API; ``rss`` reads the
    category's feed. Either way ``fetch_raw`` hands back a list of raw
    records or raises UpstreamError/ParseError.
    """

    def __init__(self, backend: str = BACKEND, categories: Optional[Dict[str, Dict]] = None,
                 session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT_MS / 1000,
                 api_key: str = GNEWS_API_KEY, base_url: str = GNEWS_BASE_URL,
                 metrics: Optional[Metrics] = None):
        if backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{backend}', expected one of {BACKENDS}")
        self.backend = backend
        self.categories = categories if categories is not None else CATEGORIES
        self._session = session
        self.timeout = timeout
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.metrics = metrics or Metrics()

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = get_session()
        return self._session

    def fetch_raw(self, category: str, limit: int = DEFAULT_LIMIT) -> RawBatch:
        config = self.categories.get(category)
        if config is None:
            raise InvalidRequest(f"Unknown category: {category}")

        start_time = time.time()
        try:
            if self.backend == BACKEND_RSS:
                batch = self._fetch_rss(category, config)
            else:
                batch = self._fetch_gnews(category, config, limit)
        except (UpstreamError, ParseError) as e:
            self.metrics.fetch_result(e.error_type, (time.time() - start_time) * 1000)
            raise
        self.metrics.fetch_result('ok', (time.time() - start_time) * 1000)
        return batch

    def _get(self, url: str, params: Dict, category: str) -> requests.Response:
        """Single GET attempt; every failure mode becomes UpstreamError."""
        start_time = time.time()
        try:
            response = self.session.get(
                url,
                params=params,
                headers={'User-Agent': USER_AGENT},
                timeout=self.timeout,
            )
        except Timeout:
            raise UpstreamError(f"Timeout after {self.timeout:.1f}s fetching {category}",
                                error_type='timeout') from None
        except SSLError as e:
            raise UpstreamError(f"SSL error: {e}", error_type='ssl_error') from e
        except ReqConnectionError as e:
            raise UpstreamError(f"Connection error: {e}", error_type='connection_error') from e
        except RequestException as e:
            raise UpstreamError(f"Request error: {e}", error_type='request_error') from e

        duration_ms = (time.time() - start_time) * 1000

        if not response.ok:
            raise UpstreamError(f"HTTP {response.status_code}: {response.reason}",
                                status=response.status_code, error_type='http_error')

        logger.debug("Fetched %s in %.1fms", category, duration_ms,
                     extra={'category': category, 'duration_ms': duration_ms})
        return response

    def _fetch_gnews(self, category: str, config: Dict, limit: int) -> RawBatch:
        query = config.get('gnews')
        if not query:
            raise UpstreamError(f"Category '{category}' has no GNews query", error_type='config_error')
        if not self.api_key:
            raise UpstreamError("GNEWS_API_KEY is not configured", error_type='config_error')

        url = f"{self.base_url}/{query['endpoint']}"
        params = {'lang': LANG, 'country': COUNTRY, 'nullable': 'image'}
        params.update(query.get('params') or {})
        params['max'] = min(limit, GNEWS_MAX_PER_REQUEST)

        logger.info("Fetching %s from GNews %s", category, url, extra={'category': category})
        params['apikey'] = self.api_key
        response = self._get(url, params, category)

        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"Invalid JSON from GNews: {e}") from e
        if not isinstance(data, dict):
            raise ParseError("Unexpected GNews payload: expected a JSON object")

        error = data.get('error') or data.get('errors')
        if error:
            if isinstance(error, (list, tuple)):
                error = '; '.join(str(e) for e in error)
            raise UpstreamError(f"GNews error: {error}", status=response.status_code,
                                error_type='provider_error')

        records = as_list(data.get('articles'))
        total = data.get('totalArticles')
        return RawBatch(records, SCHEMA_GNEWS, total if isinstance(total, int) else len(records))

    def _fetch_rss(self, category: str, config: Dict) -> RawBatch:
        feed_config = config.get('rss')
        if not feed_config:
            raise UpstreamError(f"Category '{category}' has no RSS feed", error_type='config_error')

        params = dict(RSS_LOCALE_PARAMS)
        params.update(feed_config.get('params') or {})

        logger.info("Fetching %s from RSS %s", category, feed_config['url'], extra={'category': category})
        response = self._get(feed_config['url'], params, category)

        feed = feedparser.parse(response.content)
        entries = as_list(feed.get('entries'))
        if feed.get('bozo') and not entries:
            raise ParseError(f"Malformed feed for {category}: "
                             f"{feed.get('bozo_exception', 'unknown error')}")

        records = [rss_record(entry) for entry in entries]
        return RawBatch(records, SCHEMA_RSS, len(entries))

# =============================================================================
# REQUEST USAGE
# =============================================================================

class RequestUsageTracker:
    """Counts upstream calls per calendar day and warns past a threshold."""

    def __init__(self, warn_threshold: int = USAGE_WARN_THRESHOLD,
                 today: Callable[[], date] = date.today):
        self._lock = threading.Lock()
        self._today = today
        self._count = 0
        self._date = today()
        self.warn_threshold = warn_threshold

    def track(self) -> int:
        today = self._today()
        with self._lock:
            if self._date != today:
                self._date = today
                self._count = 1
            else:
                self._count += 1
            count = self._count

        logger.info("Upstream request #%d today", count, extra={'request_count': count})
        if count >= self.warn_threshold:
            logger.warning("High number of upstream requests today: %d", count,
                           extra={'request_count': count})
        return count

    @property
    def count(self) -> int:
        with self._lock:
            return self._count if self._date == self._today() else 0

    def summary(self) -> str:
        return f"{self.count} requests today"

    def reset(self) -> None:
        with self._lock:
            self._count = 0
            self._date = self._today()

# =============================================================================
# CACHING
# =============================================================================

CacheEntry = namedtuple('CacheEntry', ['data', 'fetched_at', 'total_available'])


class NewsCache:
    """Thread-safe (category, limit) cache; entries are replaced wholesale, never mutated."""

    def __init__(self, max_entries: int = CACHE_MAX_ENTRIES,
                 clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._cache: 'OrderedDict[Tuple[str, int], CacheEntry]' = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock

    def get(self, key: Tuple[str, int]) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                self._cache.move_to_end(key)
            return entry

    def put(self, key: Tuple[str, int], data: List[Dict],
            total_available: Optional[int] = None) -> CacheEntry:
        entry = CacheEntry(tuple(data), self._clock(), total_available)
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = entry

            if len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)
        return entry

    def is_fresh(self, entry: CacheEntry, ttl_seconds: float) -> bool:
        return self._clock() - entry.fetched_at < ttl_seconds

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def stats(self) -> Dict:
        with self._lock:
            return {
                'size': len(self._cache),
                'maxEntries': self._max_entries,
                'keys': [f"{category}_{limit}" for category, limit in self._cache],
            }

# =============================================================================
# RESPONSE HELPERS
# =============================================================================

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


LEADING_INT_PATTERN = re.compile(r'^\s*([+-]?\d+)')


def clamp_limit(limit: Any) -> int:
    """
    Integer limit capped at MAX_LIMIT.

    Strings are read up to their first non-digit, so "10.5" and "10abc" give 10.
    Values with no leading integer, or below 1, use the default.
    """
    if isinstance(limit, (int, float)) and not isinstance(limit, bool):
        try:
            value = int(limit)
        except (ValueError, OverflowError):
            return DEFAULT_LIMIT
    else:
        match = LEADING_INT_PATTERN.match(limit) if isinstance(limit, str) else None
        if not match:
            return DEFAULT_LIMIT
        value = int(match.group(1))
    if value < 1:
        return DEFAULT_LIMIT
    return min(value, MAX_LIMIT)


def _sort_time(article: Dict) -> datetime:
    return article.get('timestamp') or parse_timestamp(article.get('publishedAt')) or _EPOCH


def sort_articles(articles: List[Dict], sort: Optional[str] = SORT_RECENT) -> List[Dict]:
    """'relevant' orders by relevance, anything else by publish time; newest/highest first."""
    if sort == SORT_RELEVANT:
        return sorted(articles, key=lambda a: a.get('relevance', 0), reverse=True)
    return sorted(articles, key=_sort_time, reverse=True)


def public_article(article: Dict) -> Dict:
    return {k: v for k, v in article.items() if k != 'timestamp'}

# =============================================================================
# NEWS SERVICE
# =============================================================================

NewsResult = namedtuple('NewsResult', ['articles', 'cached', 'stale', 'fetched_at', 'total_available'])


class NewsService:
    """
    Orchestrates fetch, normalize, filter and cache for one category.

    One instance lives for the process lifetime and is shared by all HTTP
    requests. Concurrent misses on the same key may both call upstream;
    the last write wins.
    """

    def __init__(self, fetcher: Optional[FeedFetcher] = None, cache: Optional[NewsCache] = None,
                 usage: Optional[RequestUsageTracker] = None,
                 categories: Optional[Dict[str, Dict]] = None,
                 metrics: Optional[Metrics] = None):
        self.categories = categories if categories is not None else CATEGORIES
        self.metrics = metrics or Metrics()
        self.fetcher = fetcher or FeedFetcher(categories=self.categories, metrics=self.metrics)
        self.cache = cache or NewsCache()
        self.usage = usage or RequestUsageTracker()

    def is_valid_category(self, category: Any) -> bool:
        return isinstance(category, str) and category in self.categories

    def get_news(self, category: str = DEFAULT_CATEGORY, limit: Any = DEFAULT_LIMIT) -> NewsResult:
        if not self.is_valid_category(category):
            self.metrics.request_outcome(OUTCOME_INVALID)
            raise InvalidRequest(f"Invalid category: {category}")

        limit = clamp_limit(limit)
        key = (category, limit)
        ttl = self.categories[category]['ttl_seconds']

        entry = self.cache.get(key)
        if entry is not None and self.cache.is_fresh(entry, ttl):
            logger.info("Cache hit for %s", category, extra={'category': category})
            self.metrics.request_outcome(OUTCOME_FRESH)
            return NewsResult(list(entry.data), True, False, entry.fetched_at, entry.total_available)

        start_time = time.time()
        try:
            batch = self._fetch(category, limit)
            articles = self._normalize_batch(batch, category)
        except (UpstreamError, ParseError) as e:
            return self._fallback(key, e)

        entry = self.cache.put(key, articles, batch.total_available)
        duration_ms = (time.time() - start_time) * 1000
        self.metrics.request_outcome(OUTCOME_FETCHED)
        logger.info("Processed %d articles for %s (%s available)",
                    len(articles), category, batch.total_available,
                    extra={'category': category, 'article_count': len(articles),
                           'duration_ms': round(duration_ms, 2)})
        return NewsResult(list(entry.data), False, False, entry.fetched_at, entry.total_available)

    def _fetch(self, category: str, limit: int) -> RawBatch:
        self.usage.track()
        return self.fetcher.fetch_raw(category, limit)

    def _normalize_batch(self, batch: RawBatch, category: str) -> List[Dict]:
        now = datetime.now(timezone.utc)
        articles = []
        skipped = dropped = 0

        for index, raw in enumerate(batch.records):
            if not isinstance(raw, dict):
                logger.warning("Skipping non-object record #%d for %s", index, category,
                               extra={'category': category})
                skipped += 1
                continue
            try:
                article = normalize_article(raw, index, batch.schema, now)
            except Exception as e:
                logger.warning("Error normalizing record #%d for %s: %s", index, category, str(e),
                               extra={'category': category})
                skipped += 1
                continue

            if is_displayable(article):
                articles.append(article)
            else:
                dropped += 1

        if dropped:
            logger.debug("Dropped %d short-title records for %s", dropped, category,
                         extra={'category': category})
        self.metrics.records(kept=len(articles), skipped=skipped, filtered=dropped)
        return articles

    def _fallback(self, key: Tuple[str, int], error: NewsError) -> NewsResult:
        category = key[0]
        error_type = getattr(error, 'error_type', type(error).__name__)
        logger.error("Error fetching news for %s: %s", category, error.message,
                     extra={'category': category, 'error_type': error_type})

        entry = self.cache.get(key)
        if entry is not None:
            logger.warning("Returning stale cached data for %s", category,
                           extra={'category': category, 'article_count': len(entry.data)})
            self.metrics.request_outcome(OUTCOME_STALE)
            return NewsResult(list(entry.data), True, True, entry.fetched_at, entry.total_available)

        self.metrics.request_outcome(OUTCOME_UNAVAILABLE)
        raise NewsUnavailable(f"Failed to fetch news: {error.message}") from error

    def reset(self) -> None:
        """Drop cached entries, the usage counter and metrics."""
        self.cache.clear()
        self.usage.reset()
        self.metrics.reset()

    def health(self) -> Dict:
        return {
            "status": "healthy",
            "version": VERSION,
            "backend": self.fetcher.backend,
            "categories": list(self.categories),
            "cache": self.cache.stats(),
            "apiUsage": self.usage.summary(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    def metrics_snapshot(self) -> Dict:
        return {
            "metrics": self.metrics.snapshot(),
            "cache": self.cache.stats(),
            "usage": {
                "count": self.usage.count,
                "warnThreshold": self.usage.warn_threshold,
            },
            "config": {
                "backend": self.fetcher.backend,
                "timeoutSeconds": self.fetcher.timeout,
                "ttlSeconds": {name: c['ttl_seconds'] for name, c in self.categories.items()},
            },
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
