"""
Great-circle helpers used by the radius and bounds filters.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float | None, lon1: float | None, lat2: float | None, lon2: float | None) -> float | None:
    """Distance in km between two points; ``None`` if any coordinate is missing.

    Registered as an SQLite function, hence the NULL-tolerant signature.
    """
    if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
        return None
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    def contains(self, latitude: float | None, longitude: float | None) -> bool:
        if latitude is None or longitude is None:
            return False
        return self.south <= latitude <= self.north and self.west <= longitude <= self.east


def radius_prefilter(lat: float, lon: float, radius_km: float) -> BoundingBox:
    """A box guaranteed to enclose the circle, used to narrow rows before haversine."""
    dlat = math.degrees(radius_km / EARTH_RADIUS_KM)
    north = min(90.0, lat + dlat)
    south = max(-90.0, lat - dlat)
    if north >= 90.0 or south <= -90.0:
        return BoundingBox(north=north, south=south, east=180.0, west=-180.0)
    cos_lat = math.cos(math.radians(max(abs(north), abs(south))))
    dlon = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat)) if cos_lat > 1e-12 else 180.0
    if dlon >= 180.0 or lon - dlon < -180.0 or lon + dlon > 180.0:
        # Circle touches the antimeridian: only latitude narrows.
        return BoundingBox(north=north, south=south, east=180.0, west=-180.0)
    return BoundingBox(north=north, south=south, east=lon + dlon, west=lon - dlon)


def valid_coordinates(lat: float | None, lon: float | None) -> tuple[float, float] | None:
    """``(lat, lon)`` when both are finite and inside WGS84 bounds, else ``None``."""
    if lat is None or lon is None:
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return lat, lon
