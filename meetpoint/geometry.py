"""Geometric primitives used to build candidate meeting points.

All functions are pure. Distances in kilometres are converted to degrees with
``KM_PER_DEGREE``; see ``bounding_box`` for the longitude handling.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple


# --- Module-level constants ---
KM_PER_DEGREE = 111.0
EARTH_RADIUS_M = 6371000.0
MIN_COS_LAT = 0.01              # keeps longitude padding finite near the poles
GRID_MIN_RESOLUTION = 1
GRID_MAX_RESOLUTION = 20
REFINEMENT_MAX_TOP_K = 20
REFINEMENT_MIN_RADIUS_KM = 0.1
REFINEMENT_MAX_RADIUS_KM = 10.0
REFINEMENT_MIN_RESOLUTION = 2
REFINEMENT_MAX_RESOLUTION = 10
REFINEMENT_MERGE_THRESHOLD_M = 100.0   # ~0.0009 deg


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    @classmethod
    def from_dict(cls, data: Dict) -> 'Coordinate':
        """Build from a ``{'lat', 'lng'}`` dict, also accepting latitude/longitude keys."""
        lat = data['lat'] if 'lat' in data else data['latitude']
        lng = data['lng'] if 'lng' in data else data['longitude']
        return cls(float(lat), float(lng))

    def to_dict(self) -> Dict:
        return {'lat': self.lat, 'lng': self.lng}


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    def contains(self, c: Coordinate) -> bool:
        return self.south <= c.lat <= self.north and self.west <= c.lng <= self.east


def validate_coordinate_bounds(c: Coordinate) -> bool:
    """True when both fields are finite numbers inside the legal lat/lng ranges."""
    if c is None:
        return False
    try:
        lat, lng = float(c.lat), float(c.lng)
    except (TypeError, ValueError, AttributeError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def geographic_centroid(coords: Sequence[Coordinate]) -> Coordinate:
    """Arithmetic mean of latitudes and longitudes."""
    if not coords:
        raise ValueError("At least one coordinate is required for centroid calculation")
    n = len(coords)
    return Coordinate(
        sum(c.lat for c in coords) / n,
        sum(c.lng for c in coords) / n,
    )


def _median(values: List[float]) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2.0


def median_coordinate(coords: Sequence[Coordinate]) -> Coordinate:
    """Independent median per axis. The result need not be one of the inputs."""
    if not coords:
        raise ValueError("At least one coordinate is required for median calculation")
    return Coordinate(
        _median([c.lat for c in coords]),
        _median([c.lng for c in coords]),
    )


def pairwise_midpoints(coords: Sequence[Coordinate]) -> List[Tuple[int, int, Coordinate]]:
    """Midpoint of every unordered pair as ``(i, j, midpoint)`` with i < j, i outer."""
    out: List[Tuple[int, int, Coordinate]] = []
    for i in range(len(coords)):
        for j in range(i + 1, len(coords)):
            a, b = coords[i], coords[j]
            out.append((i, j, Coordinate((a.lat + b.lat) / 2.0, (a.lng + b.lng) / 2.0)))
    return out


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def km_to_lat_degrees(km: float) -> float:
    return km / KM_PER_DEGREE


def km_to_lng_degrees(km: float, at_lat: float) -> float:
    """Longitude span of ``km`` at latitude ``at_lat``."""
    cos_lat = max(MIN_COS_LAT, math.cos(math.radians(at_lat)))
    return km / (KM_PER_DEGREE * cos_lat)


def bounding_box(coords: Sequence[Coordinate], padding_km: float) -> BoundingBox:
    """Min/max box around ``coords`` padded by ``padding_km`` on every side.

    Latitude padding is ``km / 111``. Longitude padding is divided by the
    cosine of the box's mid latitude so the padding is the same ground
    distance on both axes. The result is clamped to legal coordinate ranges.
    """
    if not coords:
        raise ValueError("No coordinates provided for bounding box calculation")
    if padding_km is None or not math.isfinite(padding_km) or padding_km < 0:
        raise ValueError(f"Invalid padding: {padding_km}km. Must be a non-negative number")

    north = max(c.lat for c in coords)
    south = min(c.lat for c in coords)
    east = max(c.lng for c in coords)
    west = min(c.lng for c in coords)

    lat_pad = km_to_lat_degrees(padding_km)
    lng_pad = km_to_lng_degrees(padding_km, (north + south) / 2.0)

    return BoundingBox(
        north=_clamp(north + lat_pad, -90.0, 90.0),
        south=_clamp(south - lat_pad, -90.0, 90.0),
        east=_clamp(east + lng_pad, -180.0, 180.0),
        west=_clamp(west - lng_pad, -180.0, 180.0),
    )


def generate_grid(bbox: BoundingBox, resolution: int) -> List[Coordinate]:
    """``resolution`` x ``resolution`` cell-centre points, row-major from the south-west."""
    if bbox is None:
        raise ValueError("A bounding box is required for grid generation")
    if not isinstance(resolution, int) or isinstance(resolution, bool) \
            or resolution < GRID_MIN_RESOLUTION or resolution > GRID_MAX_RESOLUTION:
        raise ValueError(
            f"Invalid grid resolution: {resolution}. "
            f"Must be an integer between {GRID_MIN_RESOLUTION} and {GRID_MAX_RESOLUTION}"
        )
    if bbox.north < bbox.south or bbox.east < bbox.west:
        raise ValueError("Bounding box must have north >= south and east >= west")

    lat_step = (bbox.north - bbox.south) / resolution
    lng_step = (bbox.east - bbox.west) / resolution
    points: List[Coordinate] = []
    for i in range(resolution):
        lat = bbox.south + (i + 0.5) * lat_step
        for j in range(resolution):
            points.append(Coordinate(lat, bbox.west + (j + 0.5) * lng_step))
    return points


def local_bounding_box(center: Coordinate, radius_km: float) -> BoundingBox:
    """Square box of half-width ``radius_km`` around ``center``."""
    lat_pad = km_to_lat_degrees(radius_km)
    lng_pad = km_to_lng_degrees(radius_km, center.lat)
    return BoundingBox(
        north=_clamp(center.lat + lat_pad, -90.0, 90.0),
        south=_clamp(center.lat - lat_pad, -90.0, 90.0),
        east=_clamp(center.lng + lng_pad, -180.0, 180.0),
        west=_clamp(center.lng - lng_pad, -180.0, 180.0),
    )


def dedupe_coordinates(coords: Sequence[Coordinate], threshold_deg: float) -> List[Coordinate]:
    """Keep first-seen coordinates; drop later ones within ``threshold_deg`` on both axes."""
    kept: List[Coordinate] = []
    for c in coords:
        if all(abs(c.lat - k.lat) >= threshold_deg or abs(c.lng - k.lng) >= threshold_deg for k in kept):
            kept.append(c)
    return kept


def generate_local_refinement(
    candidates: Sequence[Tuple[Coordinate, float]],
    top_k: int,
    radius_km: float,
    fine_resolution: int,
) -> List[Coordinate]:
    """Fine grids around the ``top_k`` candidates with the lowest max travel time.

    ``candidates`` are ``(coordinate, max_travel_time)`` pairs. The sort is
    stable so equal travel times keep their input order. Points from
    neighbouring grids closer than ~100 m are merged, first one wins.
    """
    if not candidates:
        raise ValueError("No candidates provided for local refinement generation")
    if not isinstance(top_k, int) or top_k < 1 or top_k > REFINEMENT_MAX_TOP_K:
        raise ValueError(f"Invalid topK value: {top_k}. Must be between 1 and {REFINEMENT_MAX_TOP_K}")
    if radius_km is None or not (REFINEMENT_MIN_RADIUS_KM <= radius_km <= REFINEMENT_MAX_RADIUS_KM):
        raise ValueError(
            f"Invalid refinement radius: {radius_km}km. "
            f"Must be between {REFINEMENT_MIN_RADIUS_KM} and {REFINEMENT_MAX_RADIUS_KM}"
        )
    if not isinstance(fine_resolution, int) \
            or fine_resolution < REFINEMENT_MIN_RESOLUTION or fine_resolution > REFINEMENT_MAX_RESOLUTION:
        raise ValueError(
            f"Invalid fine grid resolution: {fine_resolution}. "
            f"Must be between {REFINEMENT_MIN_RESOLUTION} and {REFINEMENT_MAX_RESOLUTION}"
        )

    selected = sorted(candidates, key=lambda c: c[1])[:top_k]
    points: List[Coordinate] = []
    for center, _ in selected:
        points.extend(generate_grid(local_bounding_box(center, radius_km), fine_resolution))
    return dedupe_coordinates(points, REFINEMENT_MERGE_THRESHOLD_M / (KM_PER_DEGREE * 1000.0))


def haversine_m(p1: Coordinate, p2: Coordinate) -> float:
    """Great-circle distance in metres."""
    lat1, lon1 = math.radians(p1.lat), math.radians(p1.lng)
    lat2, lon2 = math.radians(p2.lat), math.radians(p2.lng)
    dlat = lat2 - lat1; dlon = lon2 - lon1
    a = math.sin(dlat/2)**2 + math.cos(lat1)*math.cos(lat2)*math.sin(dlon/2)**2
    return EARTH_RADIUS_M * 2*math.atan2(math.sqrt(a), math.sqrt(1-a))


def destination_point(origin: Coordinate, bearing_rad: float, distance_m: float) -> Coordinate:
    """Offset ``origin`` by ``distance_m`` along ``bearing_rad`` (planar, small distances)."""
    R = 6378137.0
    lat = math.radians(origin.lat)
    dlat = (distance_m * math.cos(bearing_rad)) / R
    dlng = (distance_m * math.sin(bearing_rad)) / (R * max(MIN_COS_LAT, math.cos(lat)))
    return Coordinate(
        _clamp(origin.lat + math.degrees(dlat), -90.0, 90.0),
        _clamp(origin.lng + math.degrees(dlng), -180.0, 180.0),
    )
