"""
Suggested visiting order for a route's remaining stops.

A plain nearest-neighbour walk: good enough to propose an order to the agent,
not an optimiser. Stops without coordinates keep their planned order and go
after the ones that can be placed.
"""
from datetime import timedelta
import logging

from location_utils import calculate_distance_km
from timezone_utils import get_utc_now

logger = logging.getLogger(__name__)

DEFAULT_SPEED_KMH = 30.0
DEFAULT_SERVICE_MINUTES = 15


def _has_coordinates(stop):
    try:
        return stop.latitude is not None and stop.longitude is not None and not (
            float(stop.latitude) == 0.0 and float(stop.longitude) == 0.0
        )
    except (TypeError, ValueError):
        return False


def suggest_visiting_order(stops, start_lat=None, start_lng=None,
                           speed_kmh=DEFAULT_SPEED_KMH, service_minutes=DEFAULT_SERVICE_MINUTES,
                           start_time=None):
    """
    Propose an order for the given stops.

    Args:
        stops: Stop entities (terminal stops are ignored)
        start_lat/start_lng: where the agent is now; defaults to the first placeable stop
        speed_kmh: average travel speed used for arrival estimates
        service_minutes: time spent at each stop
        start_time: departure time (UTC), defaults to now

    Returns: dict with the ordered legs and totals
    """
    open_stops = sorted((s for s in stops if not s.is_terminal), key=lambda s: s.sequence)
    placeable = [s for s in open_stops if _has_coordinates(s)]
    unplaceable = [s for s in open_stops if not _has_coordinates(s)]

    if start_lat is None or start_lng is None:
        if placeable:
            start_lat, start_lng = placeable[0].latitude, placeable[0].longitude

    current_time = start_time or get_utc_now()
    legs = []
    total_km = 0.0
    remaining = list(placeable)
    here = (start_lat, start_lng)

    while remaining:
        nearest = min(remaining, key=lambda s: calculate_distance_km(here[0], here[1], s.latitude, s.longitude))
        distance = calculate_distance_km(here[0], here[1], nearest.latitude, nearest.longitude)
        travel_minutes = distance / speed_kmh * 60 if speed_kmh else 0
        current_time = current_time + timedelta(minutes=travel_minutes)
        legs.append({
            'stop_idx': nearest.idx,
            'sequence': nearest.sequence,
            'name': nearest.name,
            'distance_km': round(distance, 2),
            'estimated_arrival': current_time.isoformat(),
        })
        total_km += distance
        current_time = current_time + timedelta(minutes=service_minutes)
        here = (nearest.latitude, nearest.longitude)
        remaining.remove(nearest)

    for stop in unplaceable:
        legs.append({
            'stop_idx': stop.idx,
            'sequence': stop.sequence,
            'name': stop.name,
            'distance_km': None,
            'estimated_arrival': None,
        })

    if unplaceable:
        logger.info(f"{len(unplaceable)} stop(s) have no coordinates and keep their planned order")

    return {
        "ok": True,
        "order": [leg['stop_idx'] for leg in legs],
        "legs": legs,
        "total_distance_km": round(total_km, 2),
        "unplaced_stops": len(unplaceable),
    }
