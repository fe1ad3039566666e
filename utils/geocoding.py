import json
import logging
import ssl
import time
from config import (
    DATA_DIR,
    GEOCODER_MIN_INTERVAL_SECONDS,
    GEOCODER_USER_AGENT,
    GEOCODING_CACHE_EXPIRATION_DAYS,
    GEOCODING_CACHE_FILE,
)
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from dateutil.parser import parse as parse_date
from geopy.exc import GeocoderServiceError, GeocoderTimedOut, GeocoderUnavailable
from geopy.geocoders import Nominatim
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GeocodeResult:
    """Display fields for a coordinate"""

    name: str | None
    address: str | None
    category: str | None


class GeocodingCache:
    """Reverse geocoding results stored as JSON, keyed by rounded coordinate, with expiration"""

    def __init__(
        self, cache_file: Path = DATA_DIR / GEOCODING_CACHE_FILE, expiration_days: int = GEOCODING_CACHE_EXPIRATION_DAYS
    ):
        self.cache_file = cache_file
        self.expiration_days = expiration_days
        self.cache_data = self._load_cache()
        self.session_hits = 0
        self.session_misses = 0

    @property
    def metadata(self) -> dict:
        return self.cache_data['metadata']

    @property
    def entries(self) -> dict:
        return self.cache_data['entries']

    def _load_cache(self) -> dict:
        """Load cache from file, starting fresh if it is missing or unreadable"""
        try:
            with open(self.cache_file) as f:
                data = json.load(f)
        except FileNotFoundError:
            data = None
        except (json.JSONDecodeError, OSError):
            logger.warning(f"Could not read geocoding cache {self.cache_file}, starting fresh")
            data = None

        if isinstance(data, dict) and 'metadata' in data and 'entries' in data:
            return data
        if data is not None:
            logger.warning("Geocoding cache has an unknown layout, starting fresh")

        now = datetime.now(UTC).isoformat()
        return {
            'metadata': {
                'version': '1.0',
                'created': now,
                'last_updated': now,
                'total_entries': 0,
                'cache_hits': 0,
                'cache_misses': 0,
                'expiration_days': self.expiration_days,
            },
            'entries': {},
        }

    @staticmethod
    def cache_key(latitude: float, longitude: float) -> str:
        return f"reverse_{latitude:.6f}_{longitude:.6f}"

    def _is_expired(self, entry: dict) -> bool:
        try:
            stored_at = parse_date(entry['timestamp'])
        except (KeyError, TypeError, ValueError, OverflowError):
            return True
        return datetime.now(UTC) - stored_at > timedelta(days=self.expiration_days)

    def _remove(self, keys: list[str]) -> None:
        for key in keys:
            del self.entries[key]
        self.metadata['total_entries'] = max(0, self.metadata.get('total_entries', 0) - len(keys))

    def _touch(self) -> None:
        self.metadata['last_updated'] = datetime.now(UTC).isoformat()

    def get(self, latitude: float, longitude: float) -> GeocodeResult | None:
        key = self.cache_key(latitude, longitude)
        entry = self.entries.get(key)

        if entry is not None and not self._is_expired(entry):
            self.session_hits += 1
            self.metadata['cache_hits'] = self.metadata.get('cache_hits', 0) + 1
            stored = entry.get('response') or {}
            return GeocodeResult(stored.get('name'), stored.get('address'), stored.get('category'))

        self.session_misses += 1
        self.metadata['cache_misses'] = self.metadata.get('cache_misses', 0) + 1
        if entry is not None:
            self._remove([key])
        return None

    def set(self, latitude: float, longitude: float, result: GeocodeResult):
        key = self.cache_key(latitude, longitude)
        if key not in self.entries:
            self.metadata['total_entries'] = self.metadata.get('total_entries', 0) + 1

        self.entries[key] = {
            'timestamp': datetime.now(UTC).isoformat(),
            'query': {'latitude': latitude, 'longitude': longitude},
            'response': {'name': result.name, 'address': result.address, 'category': result.category},
        }
        self._touch()
        self._save_cache()

    def clean_expired(self) -> int:
        expired = [key for key, entry in self.entries.items() if self._is_expired(entry)]
        if expired:
            self._remove(expired)
            self._touch()
            self._save_cache()
            logger.info(f"Removed {len(expired)} expired geocoding entries")
        return len(expired)

    def clear(self):
        count = len(self.entries)
        self.cache_data['entries'] = {}
        self.metadata['total_entries'] = 0
        self._touch()
        self._save_cache()
        logger.info(f"Removed all {count} geocoding entries")

    def get_stats(self) -> dict:
        hits = self.metadata.get('cache_hits', 0)
        misses = self.metadata.get('cache_misses', 0)
        lookups = hits + misses

        return {
            'total_entries': self.metadata.get('total_entries', 0),
            'cache_hits': hits,
            'cache_misses': misses,
            'hit_ratio_percent': round(hits / lookups * 100, 1) if lookups else 0,
            'session_hits': self.session_hits,
            'session_misses': self.session_misses,
            'expiration_days': self.expiration_days,
            'created': self.metadata.get('created'),
            'last_updated': self.metadata.get('last_updated'),
        }

    def _save_cache(self):
        self.cache_file.parent.mkdir(parents=True, exist_ok=True)
        self.cache_file.write_text(json.dumps(self.cache_data, indent=2))


class ReverseGeocoder:
    """Coordinate -> (name, address, category) using Nominatim, cached and rate limited"""

    def __init__(self, cache: GeocodingCache | None = None, geocoder=None, min_interval: float = GEOCODER_MIN_INTERVAL_SECONDS):
        if geocoder is None:
            ssl_context = ssl.create_default_context()
            geocoder = Nominatim(user_agent=GEOCODER_USER_AGENT, ssl_context=ssl_context)
        self.geocoder = geocoder
        self.cache = cache
        self.min_interval = min_interval
        self.last_api_call = float('-inf')

    def enforce_rate_limit(self):
        """Nominatim's usage policy allows about one request per second"""
        wait = self.last_api_call + self.min_interval - time.monotonic()
        if wait > 0:
            logger.debug(f"Waiting {wait:.2f}s before the next geocoding request")
            time.sleep(wait)
        self.last_api_call = time.monotonic()

    def reverse(self, latitude: float, longitude: float) -> GeocodeResult:
        """Reverse geocode a coordinate. All fields are None when the lookup fails."""
        if self.cache is not None:
            cached = self.cache.get(latitude, longitude)
            if cached is not None:
                return cached

        try:
            self.enforce_rate_limit()
            location = self.geocoder.reverse((latitude, longitude), exactly_one=True, language='en')
        except (GeocoderTimedOut, GeocoderUnavailable, GeocoderServiceError) as e:
            logger.warning(f"Geocoding failed for {latitude}, {longitude}: {e}")
            return GeocodeResult(None, None, None)

        if location is None:
            return GeocodeResult(None, None, None)

        result = self.parse_response(location.raw)
        if self.cache is not None and result.name:
            self.cache.set(latitude, longitude, result)
        return result

    @staticmethod
    def parse_response(raw: dict) -> GeocodeResult:
        """Pick display name, address and category out of a Nominatim response"""
        address = raw.get('address') or {}
        name = (
            raw.get('name')
            or address.get('amenity')
            or address.get('tourism')
            or address.get('road')
            or address.get('city')
            or address.get('town')
            or address.get('village')
            or address.get('suburb')
            or 'Unknown Location'
        )

        kind = raw.get('type') or raw.get('category') or raw.get('class')
        if kind and kind not in ('yes', 'unclassified'):
            category = kind.replace('_', ' ').title()
        else:
            category = address.get('state') or 'Place'

        return GeocodeResult(name=name, address=raw.get('display_name'), category=category)
