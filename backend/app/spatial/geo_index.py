"""
geo_index.py - Circular geofence geometry for the safety scanner.

Provides:
    - Haversine distance between two (lat, lon) points, in metres
    - Zone membership test (every zone whose circle contains a point)
    - Nearest-zone lookup with stable tie-breaking
    - DANGER-over-SAFE precedence when several zones overlap

All distances are in **metres**. Coordinates are in **decimal degrees**.
Everything here is pure: no I/O, no clocks, no shared state.

═══════════════════════════════════════════════════════════════════════════
HAVERSINE
═══════════════════════════════════════════════════════════════════════════

Given two points P1(φ1, λ1) and P2(φ2, λ2):

    a = sin²(Δφ / 2) + cos(φ1) · cos(φ2) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

with R = 6 371 000 m. The zone radius check is boundary-inclusive:

    point ∈ zone  ⇔  d(point, zone.center) ≤ zone.radius_m

═══════════════════════════════════════════════════════════════════════════
BOUNDING-BOX PRE-FILTER
═══════════════════════════════════════════════════════════════════════════

Each zone's circle is enclosed in a lat/lon rectangle. Points outside the
rectangle are rejected with four float comparisons before any trig runs.
The rectangle is padded slightly so that rounding at the edge can never
reject a point the haversine check would accept.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from backend.app.alerts.models import Zone


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_M: float = 6_371_000.0

# Relative padding applied to the bounding box (0.1 %)
_BBOX_PADDING = 1.001


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GeoPoint:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """
    Great-circle distance between two points using the Haversine formula.

    Parameters
    ----------
    a, b : GeoPoint

    Returns
    -------
    float
        Distance in metres (unrounded, so boundary checks stay exact).

    Examples
    --------
    >>> distance_meters(GeoPoint(0, 0), GeoPoint(0, 0))
    0.0
    """
    d_lat = b.lat_rad - a.lat_rad
    d_lon = b.lon_rad - a.lon_rad

    h = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(a.lat_rad)
        * math.cos(b.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )
    # Floating error can push h a hair above 1 for antipodal points
    h = min(1.0, h)

    c = 2.0 * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))
    return EARTH_RADIUS_M * c


def destination_point(origin: GeoPoint, bearing_deg: float, distance_m: float) -> GeoPoint:
    """
    Point reached by travelling ``distance_m`` from ``origin`` on a bearing.

    Inverse of :func:`distance_meters` on the same sphere; used to place
    test fixtures and simulated pings at an exact distance from a zone.
    """
    angular = distance_m / EARTH_RADIUS_M
    bearing = math.radians(bearing_deg)

    lat2 = math.asin(
        math.sin(origin.lat_rad) * math.cos(angular)
        + math.cos(origin.lat_rad) * math.sin(angular) * math.cos(bearing)
    )
    lon2 = origin.lon_rad + math.atan2(
        math.sin(bearing) * math.sin(angular) * math.cos(origin.lat_rad),
        math.cos(angular) - math.sin(origin.lat_rad) * math.sin(lat2),
    )
    lon_deg = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    return GeoPoint(math.degrees(lat2), lon_deg)


# ---------------------------------------------------------------------------
# Bounding-box pre-filter
# ---------------------------------------------------------------------------

def _bounding_box(center: GeoPoint, radius_m: float) -> Tuple[float, float, float, float]:
    """
    Compute (min_lat, max_lat, min_lon, max_lon) enclosing the circle.

    Uses spherical approximation, padded by ``_BBOX_PADDING``.
    """
    angular = (radius_m * _BBOX_PADDING) / EARTH_RADIUS_M

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    cos_lat = math.cos(center.lat_rad)
    if cos_lat > 1e-10 and max_lat < 90.0 and min_lat > -90.0:
        delta_lon = math.degrees(math.asin(min(1.0, math.sin(angular) / cos_lat)))
    else:
        delta_lon = 180.0  # circle touches a pole: every longitude is "near"

    return (
        max(min_lat, -90.0),
        min(max_lat, 90.0),
        center.longitude - delta_lon,
        center.longitude + delta_lon,
    )


def _inside_bbox(point: GeoPoint, bbox: Tuple[float, float, float, float]) -> bool:
    min_lat, max_lat, min_lon, max_lon = bbox
    if not (min_lat <= point.latitude <= max_lat):
        return False
    if max_lon - min_lon >= 360.0:
        return True
    lon = point.longitude
    # Boxes may straddle the antimeridian; test the shifted copies as well
    return any(min_lon <= lon + shift <= max_lon for shift in (-360.0, 0.0, 360.0))


# ---------------------------------------------------------------------------
# Zone queries
# ---------------------------------------------------------------------------

def contains(zone: "Zone", point: GeoPoint) -> bool:
    """True if ``point`` lies inside ``zone`` (boundary inclusive)."""
    if zone.radius_m < 0:
        return False
    if not _inside_bbox(point, _bounding_box(zone.center, zone.radius_m)):
        return False
    return distance_meters(point, zone.center) <= zone.radius_m


def zones_containing(point: GeoPoint, zones: Iterable["Zone"]) -> List["Zone"]:
    """
    Every zone whose circle contains ``point``, in input order.

    Parameters
    ----------
    point : GeoPoint
    zones : iterable of Zone

    Returns
    -------
    list of Zone
        Possibly several; the caller decides precedence
        (see :func:`governing_zone`).
    """
    return [zone for zone in zones if contains(zone, point)]


def nearest_zone(point: GeoPoint, zones: Sequence["Zone"]) -> Optional["Zone"]:
    """
    Zone whose centre is closest to ``point``.

    Ties keep the earliest zone in input order. Returns None for an
    empty sequence.
    """
    best: Optional["Zone"] = None
    best_dist = math.inf
    for zone in zones:
        dist = distance_meters(point, zone.center)
        if dist < best_dist:  # strict: the first of equal distances wins
            best, best_dist = zone, dist
    return best


def governing_zone(point: GeoPoint, zones: Sequence["Zone"]) -> Optional["Zone"]:
    """
    Zone that determines a point's safety classification.

    DANGER zones take priority over SAFE zones; among zones of the
    winning kind, the nearest one is returned.
    """
    from backend.app.alerts.models import ZoneKind

    matches = zones_containing(point, zones)
    if not matches:
        return None

    danger = [z for z in matches if z.kind == ZoneKind.DANGER]
    if danger:
        return nearest_zone(point, danger)
    return nearest_zone(point, matches)


def format_distance(meters: float) -> str:
    """
    Format a distance for alert messages.

    >>> format_distance(450.4)
    '450 m'
    >>> format_distance(3726.6)
    '3.73 km'
    """
    if meters < 1000.0:
        return f"{int(round(meters))} m"
    return f"{meters / 1000.0:.2f} km"
