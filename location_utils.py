"""
Location utilities for check-in, arrival and route ordering.

Location is best effort everywhere in field execution: a missing fix, a denied
permission or a slow GPS never blocks a transition. It degrades to an unknown
0/0 reading instead.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from math import radians, cos, sin, asin, sqrt
from typing import Optional

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371000


@dataclass(frozen=True)
class LocationReading:
    latitude: float = 0.0
    longitude: float = 0.0
    accuracy: Optional[float] = None
    known: bool = False

    def as_params(self):
        """Latitude/longitude pair as sent to the backend"""
        return {'latitude': self.latitude, 'longitude': self.longitude}


UNKNOWN_LOCATION = LocationReading()


def calculate_distance(lat1, lon1, lat2, lon2):
    """
    Calculate the great circle distance between two points
    on the earth (specified in decimal degrees)

    Returns distance in meters
    """
    try:
        lon1, lat1, lon2, lat2 = map(radians, [float(lon1), float(lat1), float(lon2), float(lat2)])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid coordinates: {str(e)}")

    # Haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat/2)**2 + cos(lat1) * cos(lat2) * sin(dlon/2)**2
    c = 2 * asin(sqrt(a))
    return c * EARTH_RADIUS_METERS


def calculate_distance_km(lat1, lon1, lat2, lon2):
    return calculate_distance(lat1, lon1, lat2, lon2) / 1000.0


def parse_coordinates(coordinates_str):
    """
    Parse a "latitude,longitude" string into a LocationReading.
    Anything unparseable is an unknown reading.
    """
    if not coordinates_str:
        return UNKNOWN_LOCATION
    parts = str(coordinates_str).split(',')
    if len(parts) != 2:
        return UNKNOWN_LOCATION
    try:
        return reading_from_values(float(parts[0]), float(parts[1]))
    except ValueError:
        return UNKNOWN_LOCATION


def reading_from_values(latitude, longitude, accuracy=None):
    """Build a reading from raw values, None for either coordinate means unknown"""
    if latitude is None or longitude is None:
        return UNKNOWN_LOCATION
    lat = float(latitude)
    lng = float(longitude)
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        logger.warning(f"Discarding out of range location reading {lat},{lng}")
        return UNKNOWN_LOCATION
    return LocationReading(
        latitude=lat,
        longitude=lng,
        accuracy=float(accuracy) if accuracy is not None else None,
        known=True
    )


def capture_location(provider, timeout):
    """
    Ask a location provider for a fix, waiting at most `timeout` seconds.

    The provider is any callable returning a LocationReading, a (lat, lng) or
    (lat, lng, accuracy) tuple, or None. It runs on a worker thread so that a
    hung GPS cannot hold up the calling operation; on timeout the worker is
    abandoned and the reading is unknown.

    Returns:
        LocationReading (UNKNOWN_LOCATION on timeout, denial or error)
    """
    if provider is None:
        return UNKNOWN_LOCATION

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='location')
    future = executor.submit(provider)
    try:
        raw = future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning(f"Location capture timed out after {timeout}s, continuing with unknown location")
        return UNKNOWN_LOCATION
    except PermissionError:
        logger.warning("Location permission denied, continuing with unknown location")
        return UNKNOWN_LOCATION
    except Exception as e:
        logger.warning(f"Location capture failed: {str(e)}, continuing with unknown location")
        return UNKNOWN_LOCATION
    finally:
        executor.shutdown(wait=False)

    if raw is None:
        return UNKNOWN_LOCATION
    if isinstance(raw, LocationReading):
        return raw
    try:
        return reading_from_values(*raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Location provider returned an unusable value {raw!r}: {str(e)}")
        return UNKNOWN_LOCATION
