from decouple import config
from pathlib import Path

# Directory paths
DATA_DIR = Path(config('DATA_DIR', default='data'))

# File names
PLACES_DB_FILE = 'places.json'
GEOCODING_CACHE_FILE = 'geocoding_cache.json'

# Geographic constants
NEARBY_RADIUS_METERS = config('NEARBY_RADIUS_METERS', default=50.0, cast=float)  # Same radius for lookup and merge
MONITORING_DISTANCE_METERS = config('MONITORING_DISTANCE_METERS', default=50.0, cast=float)
DISTANCE_FILTER_METERS = config('DISTANCE_FILTER_METERS', default=10.0, cast=float)
PHOTO_DUPLICATE_RADIUS_METERS = config('PHOTO_DUPLICATE_RADIUS_METERS', default=100.0, cast=float)

# Tracking timers
CHECKPOINT_INTERVAL_SECONDS = config('CHECKPOINT_INTERVAL_SECONDS', default=1.0, cast=float)
MERGE_INITIAL_DELAY_SECONDS = config('MERGE_INITIAL_DELAY_SECONDS', default=3.0, cast=float)
MERGE_INTERVAL_SECONDS = config('MERGE_INTERVAL_SECONDS', default=10.0, cast=float)
SINGLE_UPDATE_TIMEOUT_SECONDS = config('SINGLE_UPDATE_TIMEOUT_SECONDS', default=5.0, cast=float)
SIGNIFICANT_STAY_THRESHOLD_SECONDS = config('SIGNIFICANT_STAY_THRESHOLD_SECONDS', default=600.0, cast=float)
PAUSE_MONITORING_IN_BACKGROUND = config('PAUSE_MONITORING_IN_BACKGROUND', default=False, cast=bool)

# Persistence retry policy
PERSISTENCE_RETRY_ATTEMPTS = config('PERSISTENCE_RETRY_ATTEMPTS', default=3, cast=int)
PERSISTENCE_RETRY_WAIT_SECONDS = config('PERSISTENCE_RETRY_WAIT_SECONDS', default=0.5, cast=float)

# Geocoding
GEOCODING_CACHE_EXPIRATION_DAYS = 30
GEOCODER_USER_AGENT = config('GEOCODER_USER_AGENT', default='footprints/1.0')
GEOCODER_MIN_INTERVAL_SECONDS = 1.0

# Place naming
AUTO_LOCATION_NAME = 'Auto Location ({timestamp})'
MANUAL_LOCATION_NAME = 'My Location ({timestamp})'
PHOTO_LOCATION_NAME = 'Photo Location ({timestamp})'
LOCATION_CATEGORY = 'Location'
PLACE_TIMESTAMP_FORMAT = '%b %d, %Y at %I:%M %p'

# Validation constants
MIN_VALID_LATITUDE = -90.0
MAX_VALID_LATITUDE = 90.0
MIN_VALID_LONGITUDE = -180.0
MAX_VALID_LONGITUDE = 180.0
