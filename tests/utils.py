"""
Test utilities and helper functions for ResQMob testing.
"""
import asyncio
import math
from typing import Callable, Optional

from resqmob.models.alert import GeoPoint, UserRef
from resqmob.services.sos.geo_index import EARTH_RADIUS_METERS


# Dhaka, the origin used throughout the scenarios
ORIGIN = GeoPoint(latitude=23.8103, longitude=90.4125)


def offset_north(origin: GeoPoint, meters: float) -> GeoPoint:
    """Point exactly `meters` north of origin along the meridian"""
    return GeoPoint(origin.latitude + math.degrees(meters / EARTH_RADIUS_METERS), origin.longitude)


async def add_user(directory, user_id: str, location: Optional[GeoPoint] = None, name: str = "",
                   push_token: Optional[str] = "auto", notifications_enabled: bool = True) -> UserRef:
    """Register a user with a push token and an optional position"""
    if push_token == "auto":
        push_token = f"ExponentPushToken[{user_id}]"
    user = UserRef(user_id=user_id, name=name, push_token=push_token,
                   notifications_enabled=notifications_enabled)
    await directory.upsert_user(user)
    if location is not None:
        await directory.update_location(user_id, GeoPoint(location.latitude, location.longitude))
    return user


class AsyncTestHelper:
    """Helper class for async testing operations."""

    @staticmethod
    async def wait_for_condition(condition: Callable[[], bool], timeout: float = 1.0) -> bool:
        """Wait for a condition to become true."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while loop.time() - start_time < timeout:
            if condition():
                return True
            await asyncio.sleep(0.01)
        return condition()
