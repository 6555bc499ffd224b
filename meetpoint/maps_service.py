import googlemaps
from googlemaps.exceptions import ApiError
from typing import Dict, List, Optional
import logging
import math
import os

from .geometry import Coordinate, destination_point
from .optimization_config import TravelMode
from .travel_matrix import TravelTimeMatrix

logger = logging.getLogger(__name__)


# --- Module-level constants ---
DISTANCE_MATRIX_MAX_DEST = int(os.getenv('MATRIX_MAX_DESTINATIONS', '25'))   # conservative chunk size for DM requests
GOOGLE_TRAVEL_MODES = {
    TravelMode.DRIVING_CAR: 'driving',
    TravelMode.CYCLING_REGULAR: 'bicycling',
    TravelMode.FOOT_WALKING: 'walking',
}
# Upper-bound speeds used to size reachability sampling rays (km/h)
REACHABILITY_SPEED_KMH = {
    TravelMode.DRIVING_CAR: 60.0,
    TravelMode.CYCLING_REGULAR: 18.0,
    TravelMode.FOOT_WALKING: 5.0,
}
REACHABILITY_BEARINGS = 12
REACHABILITY_RADIUS_FRACTIONS = (0.25, 0.5, 0.75, 1.0)
REACHABILITY_MIN_FRACTION = 0.05


class GoogleMapsService:
    """Travel time matrix, geocoding and reachability via Google Maps APIs"""

    def __init__(self, api_key: str):
        if not api_key or api_key == "your_api_key_here":
            raise ValueError("Valid Google Maps API key is required")
        self.client = googlemaps.Client(key=api_key)

    def geocode_address(self, address: str) -> Optional[Dict]:
        """
        Geocode an address using Google Maps Geocoding API
        Returns formatted address and coordinates
        """
        try:
            result = self.client.geocode(address)
        except ApiError as e:
            logger.warning(f"Geocoding error for '{address}': {e}")
            return None
        if not result:
            return None
        location = result[0]
        return {
            'formatted_address': location['formatted_address'],
            'lat': location['geometry']['location']['lat'],
            'lng': location['geometry']['location']['lng']
        }

    def _duration_rows(self, origins: List[Coordinate], destinations: List[Coordinate], mode: str) -> List[List[Optional[float]]]:
        """Seconds from each origin to each destination; None where Google found no route.
        Chunks destinations to respect API limits.
        """
        def fmt(pt: Coordinate) -> str:
            return f"{pt.lat},{pt.lng}"

        origin_strs = [fmt(o) for o in origins]
        rows = len(origins)
        cols = len(destinations)
        matrix: List[List[Optional[float]]] = [[None for _ in range(cols)] for _ in range(rows)]

        for start in range(0, cols, DISTANCE_MATRIX_MAX_DEST):
            end = min(start + DISTANCE_MATRIX_MAX_DEST, cols)
            dest_strs = [fmt(d) for d in destinations[start:end]]
            dm = self.client.distance_matrix(
                origins=origin_strs,
                destinations=dest_strs,
                mode=mode,
            )
            if not dm or 'rows' not in dm:
                raise ApiError('INVALID_RESPONSE', 'Distance Matrix response has no rows')
            for i, row in enumerate(dm.get('rows', [])):
                for j, el in enumerate(row.get('elements', [])):
                    dur = el.get('duration', {}).get('value') if el else None
                    if el and el.get('status') == 'OK' and dur is not None:
                        matrix[i][start + j] = dur
        return matrix

    def compute_travel_time_matrix(self, origins: List[Coordinate], destinations: List[Coordinate],
                                   travel_mode: TravelMode) -> TravelTimeMatrix:
        """Travel times in minutes as a rows x cols matrix (rows = origins).
        Unreachable elements are None. API errors propagate to the caller.
        """
        if not origins or not destinations:
            raise ValueError("Origins and destinations are required for a travel time matrix")
        mode = GOOGLE_TRAVEL_MODES[travel_mode]
        seconds = self._duration_rows(origins, destinations, mode)
        minutes = [[round(v / 60, 1) if v is not None else None for v in row] for row in seconds]
        logger.info(f"Distance Matrix: {len(origins)}x{len(destinations)} ({mode})")
        return TravelTimeMatrix(list(origins), list(destinations), minutes, travel_mode)

    def compute_reachability_polygon(self, center: Coordinate, travel_time_minutes: float,
                                     travel_mode: TravelMode) -> List[Coordinate]:
        """Approximate area reachable from ``center`` within ``travel_time_minutes``.

        Samples points on rays at fixed bearings, times them from the centre in
        one Distance Matrix request, and keeps the furthest reachable sample per
        bearing. Returns a closed ring.
        """
        max_m = REACHABILITY_SPEED_KMH[travel_mode] * 1000.0 * travel_time_minutes / 60.0
        bearings = [2 * math.pi * k / REACHABILITY_BEARINGS for k in range(REACHABILITY_BEARINGS)]
        samples = [
            destination_point(center, b, max_m * f)
            for b in bearings for f in REACHABILITY_RADIUS_FRACTIONS
        ]
        seconds = self._duration_rows([center], samples, GOOGLE_TRAVEL_MODES[travel_mode])[0]

        per_ray = len(REACHABILITY_RADIUS_FRACTIONS)
        ring: List[Coordinate] = []
        for k, b in enumerate(bearings):
            best = destination_point(center, b, max_m * REACHABILITY_MIN_FRACTION)
            for f_idx in range(per_ray):
                dur = seconds[k * per_ray + f_idx]
                if dur is not None and dur <= travel_time_minutes * 60:
                    best = samples[k * per_ray + f_idx]
            ring.append(best)
        ring.append(ring[0])
        return ring
