"""
Mock collaborators for the SOS engine.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from resqmob.models.alert import Alert, DeliveryChannel, GeoPoint
from resqmob.services.sos.collaborators import ChatRoomCreator, LocationResolver
from resqmob.services.sos.errors import LocationUnavailableError
from resqmob.services.sos.geo_index import GeoIndex
from resqmob.services.sos.notification_dispatcher import NotificationTransport, NotificationTransportError


@dataclass
class SentMessage:
    address: str
    title: str
    body: str
    data: Dict[str, Any]


class RecordingTransport(NotificationTransport):
    """Records every delivery; addresses in fail_for are rejected."""

    def __init__(self, channel: DeliveryChannel = DeliveryChannel.PUSH,
                 fail_for: Iterable[str] = (), delay: float = 0.0):
        self.channel = channel
        self.fail_for = set(fail_for)
        self.delay = delay
        self.sent: List[SentMessage] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def send(self, address: str, title: str, body: str,
                   data: Optional[Dict[str, Any]] = None) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if address in self.fail_for:
                raise NotificationTransportError(f"simulated failure for {address}")
            self.sent.append(SentMessage(address, title, body, dict(data or {})))
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True

    def addresses(self, title: Optional[str] = None) -> List[str]:
        return [m.address for m in self.sent if title is None or m.title == title]

    def titles(self) -> List[str]:
        return [m.title for m in self.sent]


def push_token(user_id: str) -> str:
    """Token assigned to users by tests.utils.add_user"""
    return f"ExponentPushToken[{user_id}]"


class StaticLocationResolver(LocationResolver):
    """Returns fixed positions, optionally after a delay."""

    def __init__(self, locations: Optional[Dict[str, GeoPoint]] = None, delay: float = 0.0):
        self.locations = dict(locations or {})
        self.delay = delay
        self.calls: List[str] = []

    async def get_current_location(self, user_id: str) -> GeoPoint:
        self.calls.append(user_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        location = self.locations.get(user_id)
        if location is None:
            raise LocationUnavailableError(f"GPS unavailable for {user_id}")
        return location


class FailingChatRoomCreator(ChatRoomCreator):

    async def create_room(self, alert: Alert) -> str:
        raise RuntimeError("chat backend unavailable")


class BlockingGeoIndex(GeoIndex):
    """GeoIndex whose queries wait until released."""

    def __init__(self, inner: GeoIndex):
        super().__init__(inner.directory, inner.max_location_age)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def find_within_radius(self, center, radius_meters, exclude_radius_meters=0.0, requester_id=None):
        self.entered.set()
        await self.release.wait()
        return await super().find_within_radius(center, radius_meters, exclude_radius_meters, requester_id)


class SlowGeoIndex(GeoIndex):
    """GeoIndex that never answers within the query timeout."""

    def __init__(self, inner: GeoIndex, delay: float = 5.0):
        super().__init__(inner.directory, inner.max_location_age)
        self.delay = delay

    async def find_within_radius(self, center, radius_meters, exclude_radius_meters=0.0, requester_id=None):
        await asyncio.sleep(self.delay)
        return await super().find_within_radius(center, radius_meters, exclude_radius_meters, requester_id)
