"""
Geographic index for SOS fan-out

Great-circle distance and "who is within radius R of point P" queries
over the user directory's last known locations.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from resqmob.models.alert import GeoPoint, UserRef
from .collaborators import BoundingBox, UserDirectory


EARTH_RADIUS_METERS = 6_371_000.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two coordinates

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def bounding_box(center: GeoPoint, radius_meters: float) -> BoundingBox:
    """
    Smallest lat/lon box containing the circle around center.

    Falls back to the full longitude range near the poles and when the
    circle crosses the antimeridian.
    """
    angular_rad = radius_meters / EARTH_RADIUS_METERS
    angular = math.degrees(angular_rad) * (1 + 1e-9) + 1e-9
    min_lat = max(-90.0, center.latitude - angular)
    max_lat = min(90.0, center.latitude + angular)

    cos_lat = math.cos(math.radians(center.latitude))
    if max_lat >= 90.0 or min_lat <= -90.0 or cos_lat < 1e-6:
        return min_lat, max_lat, -180.0, 180.0

    ratio = math.sin(min(angular_rad, math.pi / 2)) / cos_lat
    if ratio >= 1.0 or angular_rad >= math.pi / 2:
        return min_lat, max_lat, -180.0, 180.0

    # Small pad keeps float rounding from clipping users on the boundary
    lon_delta = math.degrees(math.asin(ratio)) * (1 + 1e-9) + 1e-9
    min_lon = center.longitude - lon_delta
    max_lon = center.longitude + lon_delta
    if min_lon < -180.0 or max_lon > 180.0:
        return min_lat, max_lat, -180.0, 180.0

    return min_lat, max_lat, min_lon, max_lon


class GeoIndex:
    """Radius queries over the user directory"""

    def __init__(self, directory: UserDirectory, max_location_age: Optional[timedelta] = None):
        self.logger = logging.getLogger(__name__)
        self.directory = directory
        self.max_location_age = max_location_age

    async def find_within_radius(
        self,
        center: GeoPoint,
        radius_meters: float,
        exclude_radius_meters: float = 0.0,
        requester_id: Optional[str] = None
    ) -> List[UserRef]:
        """
        Find users near a point

        Args:
            center: Query origin
            radius_meters: Outer bound, inclusive
            exclude_radius_meters: Users at or inside this distance were already
                reached by a smaller radius and are left out
            requester_id: User issuing the query, never returned

        Returns:
            Users ordered by distance from center (may be empty)
        """
        if radius_meters <= 0 or radius_meters <= exclude_radius_meters:
            return []

        candidates = await self.directory.users_in_box(bounding_box(center, radius_meters))
        cutoff = None
        if self.max_location_age is not None:
            cutoff = datetime.utcnow() - self.max_location_age

        matches = []
        for user in candidates:
            if user.user_id == requester_id or user.location is None:
                continue
            if cutoff is not None and (user.location_updated_at is None or user.location_updated_at < cutoff):
                continue

            distance = distance_between(center, user.location)
            if distance > radius_meters:
                continue
            if exclude_radius_meters > 0 and distance <= exclude_radius_meters:
                continue
            matches.append((distance, user))

        matches.sort(key=lambda item: item[0])
        self.logger.debug(
            f"Found {len(matches)} users within {radius_meters:.0f}m "
            f"(excluding {exclude_radius_meters:.0f}m) of {center.latitude:.6f}, {center.longitude:.6f}"
        )
        return [user for _, user in matches]
