"""Great-circle distance and bounding box helpers."""

import math
from typing import Final

EARTH_RADIUS_METERS: Final = 6_371_000.0

# ~500m at Singapore's latitude
AMENITY_BOX_OFFSET_DEGREES: Final = 0.0045


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> int:
    """Haversine distance between two points, in whole metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_METERS * c)


def bounding_box_extents(
    lat: float, lon: float, offset: float = AMENITY_BOX_OFFSET_DEGREES
) -> str:
    """OneMap ``extents`` parameter: "minLon,minLat,maxLon,maxLat"."""
    return f"{lon - offset},{lat - offset},{lon + offset},{lat + offset}"
