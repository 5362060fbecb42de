"""
External collaborators of the SOS engine

Interfaces for the services the engine consumes (location resolution,
user directory, emergency contacts, chat rooms, reverse geocoding) plus
in-memory implementations used by the memory backend and the tests.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import aiohttp

from resqmob.models.alert import Alert, EmergencyContact, GeoPoint, UserRef
from .errors import LocationUnavailableError


BoundingBox = Tuple[float, float, float, float]  # min_lat, max_lat, min_lon, max_lon


class UserDirectory(ABC):
    """User directory and last-known-location store"""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRef]:
        pass

    @abstractmethod
    async def upsert_user(self, user: UserRef) -> None:
        pass

    @abstractmethod
    async def update_location(self, user_id: str, location: GeoPoint,
                              when: Optional[datetime] = None) -> None:
        pass

    @abstractmethod
    async def users_in_box(self, box: BoundingBox) -> List[UserRef]:
        """Users whose last known location falls inside the bounding box"""
        pass


class ContactsStore(ABC):
    """Emergency contacts of alert owners"""

    @abstractmethod
    async def get_contacts(self, user_id: str) -> List[EmergencyContact]:
        pass


class ChatRoomCreator(ABC):
    """Opens the coordination chat room of an alert"""

    @abstractmethod
    async def create_room(self, alert: Alert) -> str:
        """Create the room and return its id"""
        pass


class LocationResolver(ABC):
    """Resolves the current position of a user"""

    @abstractmethod
    async def get_current_location(self, user_id: str) -> GeoPoint:
        """Return the position or raise LocationUnavailableError"""
        pass


class ReverseGeocoder(ABC):
    """Turns coordinates into a human-readable address"""

    @abstractmethod
    async def reverse_geocode(self, latitude: float, longitude: float) -> Optional[str]:
        pass


class InMemoryUserDirectory(UserDirectory):
    """Dictionary-backed user directory"""

    def __init__(self):
        self.users: Dict[str, UserRef] = {}

    async def get_user(self, user_id: str) -> Optional[UserRef]:
        return self.users.get(user_id)

    async def upsert_user(self, user: UserRef) -> None:
        self.users[user.user_id] = user

    async def update_location(self, user_id: str, location: GeoPoint,
                              when: Optional[datetime] = None) -> None:
        user = self.users.get(user_id)
        if user is None:
            user = UserRef(user_id=user_id)
            self.users[user_id] = user
        user.location = location
        user.location_updated_at = when or datetime.utcnow()

    async def users_in_box(self, box: BoundingBox) -> List[UserRef]:
        min_lat, max_lat, min_lon, max_lon = box
        return [
            user for user in self.users.values()
            if user.location is not None
            and min_lat <= user.location.latitude <= max_lat
            and min_lon <= user.location.longitude <= max_lon
        ]


class InMemoryContactsStore(ContactsStore):
    """Dictionary-backed contacts store"""

    def __init__(self):
        self.contacts: Dict[str, List[EmergencyContact]] = {}

    def add_contact(self, user_id: str, contact: EmergencyContact):
        self.contacts.setdefault(user_id, []).append(contact)

    async def get_contacts(self, user_id: str) -> List[EmergencyContact]:
        return list(self.contacts.get(user_id, []))


class InMemoryChatRoomCreator(ChatRoomCreator):
    """Records chat rooms in memory"""

    def __init__(self):
        self.rooms: Dict[str, Dict] = {}

    async def create_room(self, alert: Alert) -> str:
        room_id = str(uuid.uuid4())
        self.rooms[room_id] = {
            'id': room_id,
            'name': f"Emergency Response - {alert.alert_type.value}",
            'alert_id': alert.id,
            'owner_id': alert.owner_id,
            'urgency_level': alert.urgency_level,
            'created_at': datetime.utcnow(),
        }
        return room_id


class DirectoryLocationResolver(LocationResolver):
    """
    Resolves a user's position from the last location reported to the
    user directory by their device.
    """

    def __init__(self, directory: UserDirectory):
        self.directory = directory

    async def get_current_location(self, user_id: str) -> GeoPoint:
        user = await self.directory.get_user(user_id)
        if user is None or user.location is None:
            raise LocationUnavailableError(f"No known location for user {user_id}")
        return user.location


class NominatimReverseGeocoder(ReverseGeocoder):
    """Reverse geocoding through an OpenStreetMap Nominatim endpoint"""

    def __init__(self, url: str = "https://nominatim.openstreetmap.org/reverse",
                 timeout: float = 5.0, user_agent: str = "ResQMob/1.0"):
        self.logger = logging.getLogger(__name__)
        self.url = url
        self.timeout = timeout
        self.user_agent = user_agent

    async def reverse_geocode(self, latitude: float, longitude: float) -> Optional[str]:
        params = {'lat': latitude, 'lon': longitude, 'format': 'json'}
        headers = {'User-Agent': self.user_agent}

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    self.url,
                    params=params,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        self.logger.warning(f"Reverse geocoding returned HTTP {response.status}")
                        return None
                    data = await response.json()
                    return data.get('display_name') or None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Reverse geocoding failed for {latitude:.6f}, {longitude:.6f}: {e}")
            return None
