"""
Geographic helpers: Haversine distance and validation of device locations.

Locations arrive GeoJSON-style, ``{"type": "Point", "coordinates": [lng, lat], "address": ...}``.
"""
import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

from app.core.exceptions import ValidationFailedError

EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeoPoint:
    lng: float
    lat: float
    address: Optional[str] = None

    def as_geojson(self) -> dict:
        return {"type": "Point", "coordinates": [self.lng, self.lat], "address": self.address}


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_m(lat1, lon1, lat2, lon2) / 1000


def distance_between_m(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_m(a.lat, a.lng, b.lat, b.lng)


def normalize_coordinates(coords: Sequence[Any]) -> Tuple[float, float]:
    """Return ``(lng, lat)`` from a GeoJSON-ordered pair. Pairs are never reordered."""
    if coords is None or len(coords) < 2:
        raise ValidationFailedError(
            "Location coordinates must have at least 2 values [longitude, latitude]",
            field="coordinates",
        )
    try:
        first, second = float(coords[0]), float(coords[1])
    except (TypeError, ValueError):
        raise ValidationFailedError("Location coordinates must be numbers", field="coordinates")

    if math.isnan(first) or math.isnan(second):
        raise ValidationFailedError("Location coordinates must be numbers", field="coordinates")
    return first, second


def validate_coordinates(coords: Sequence[Any], address: Optional[str] = None) -> GeoPoint:
    lng, lat = normalize_coordinates(coords)

    if lng < -180 or lng > 180:
        raise ValidationFailedError("Longitude must be between -180 and 180", field="coordinates")
    if lat < -90 or lat > 90:
        raise ValidationFailedError("Latitude must be between -90 and 90", field="coordinates")
    # (0, 0) is what a device reports when location services are off
    if lng == 0 and lat == 0:
        raise ValidationFailedError(
            "Invalid coordinates detected. Please ensure location services are enabled.",
            field="coordinates",
        )
    return GeoPoint(lng=lng, lat=lat, address=address)


def validate_location(location: Any) -> GeoPoint:
    """Validate a GeoJSON-ish mapping (or pydantic model) into a ``GeoPoint``."""
    if location is None:
        raise ValidationFailedError("Location is required", field="location")

    if hasattr(location, "model_dump"):
        location = location.model_dump()
    if not isinstance(location, dict):
        raise ValidationFailedError("Location must be an object with coordinates", field="location")

    coords = location.get("coordinates")
    if not isinstance(coords, (list, tuple)):
        raise ValidationFailedError("Location must have coordinates array", field="location")
    return validate_coordinates(coords, location.get("address"))


def locations_are_equal(a: Optional[GeoPoint], b: Optional[GeoPoint], tolerance_m: float = 10.0) -> bool:
    if a is None or b is None:
        return False
    return distance_between_m(a, b) <= tolerance_m


def point_or_none(lat: Optional[float], lng: Optional[float]) -> Optional[GeoPoint]:
    if lat is None or lng is None:
        return None
    return GeoPoint(lng=lng, lat=lat)
