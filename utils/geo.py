import logging
from config import (
    MAX_VALID_LATITUDE,
    MAX_VALID_LONGITUDE,
    MIN_VALID_LATITUDE,
    MIN_VALID_LONGITUDE,
)
from geopy.distance import geodesic

logger = logging.getLogger(__name__)


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate great-circle distance in meters between two coordinates"""
    try:
        return geodesic((lat1, lon1), (lat2, lon2)).meters
    except ValueError as e:
        logger.warning(f"Error calculating distance: {e}")
        return float('inf')


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """Validate coordinate ranges"""
    return MIN_VALID_LATITUDE <= lat <= MAX_VALID_LATITUDE and MIN_VALID_LONGITUDE <= lon <= MAX_VALID_LONGITUDE


def format_duration(seconds: float) -> str:
    """Format a stay duration as '1h 2m 3s', '2m 3s' or '3s'"""
    total = int(seconds)
    hours = total // 3600
    minutes = total % 3600 // 60
    secs = total % 60

    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
