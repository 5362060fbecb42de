"""
SQLite implementations of the SOS collaborators

User directory (with last known locations), emergency contacts, chat room
creation and the notification log, all on the shared DatabaseManager.
"""

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional

from resqmob.core.database import DatabaseManager
from resqmob.models.alert import (
    Alert, DeliveryChannel, DeliveryOutcome, EmergencyContact, GeoPoint,
    NotificationRecord, UserRef
)
from .collaborators import BoundingBox, ChatRoomCreator, ContactsStore, UserDirectory
from .notification_dispatcher import NotificationLog


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec='microseconds') if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteUserDirectory(UserDirectory):
    """Users table with last known positions"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def _row_to_user(self, row: sqlite3.Row) -> UserRef:
        location = None
        if row['location_lat'] is not None and row['location_lon'] is not None:
            location = GeoPoint(row['location_lat'], row['location_lon'], row['location_accuracy'])
        return UserRef(
            user_id=row['user_id'],
            name=row['name'] or "",
            location=location,
            location_updated_at=_from_iso(row['location_updated_at']),
            push_token=row['push_token'],
            notifications_enabled=bool(row['notifications_enabled']),
        )

    async def get_user(self, user_id: str) -> Optional[UserRef]:
        rows = self.db.execute_query("SELECT * FROM users WHERE user_id = ?", (user_id,))
        return self._row_to_user(rows[0]) if rows else None

    async def upsert_user(self, user: UserRef) -> None:
        location = user.location
        self.db.execute_update("""
            INSERT INTO users (
                user_id, name, push_token, notifications_enabled,
                location_lat, location_lon, location_accuracy, location_updated_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT (user_id) DO UPDATE SET
                name = excluded.name,
                push_token = excluded.push_token,
                notifications_enabled = excluded.notifications_enabled,
                location_lat = excluded.location_lat,
                location_lon = excluded.location_lon,
                location_accuracy = excluded.location_accuracy,
                location_updated_at = excluded.location_updated_at,
                updated_at = CURRENT_TIMESTAMP
        """, (
            user.user_id, user.name, user.push_token, user.notifications_enabled,
            location.latitude if location else None,
            location.longitude if location else None,
            location.accuracy if location else None,
            _to_iso(user.location_updated_at or (datetime.utcnow() if location else None)),
        ))

    async def update_location(self, user_id: str, location: GeoPoint,
                              when: Optional[datetime] = None) -> None:
        self.db.execute_update("""
            INSERT INTO users (user_id, location_lat, location_lon, location_accuracy, location_updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (user_id) DO UPDATE SET
                location_lat = excluded.location_lat,
                location_lon = excluded.location_lon,
                location_accuracy = excluded.location_accuracy,
                location_updated_at = excluded.location_updated_at,
                updated_at = CURRENT_TIMESTAMP
        """, (user_id, location.latitude, location.longitude, location.accuracy,
              _to_iso(when or datetime.utcnow())))

    async def users_in_box(self, box: BoundingBox) -> List[UserRef]:
        min_lat, max_lat, min_lon, max_lon = box
        rows = self.db.execute_query("""
            SELECT * FROM users
            WHERE location_lat BETWEEN ? AND ?
              AND location_lon BETWEEN ? AND ?
        """, (min_lat, max_lat, min_lon, max_lon))
        return [self._row_to_user(row) for row in rows]


class SqliteContactsStore(ContactsStore):
    """emergency_contacts table"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def add_contact(self, user_id: str, contact: EmergencyContact):
        self.db.execute_update("""
            INSERT INTO emergency_contacts (user_id, name, phone, relationship, is_primary, notification_enabled)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (user_id, contact.name, contact.phone, contact.relationship,
              contact.is_primary, contact.notification_enabled))

    async def get_contacts(self, user_id: str) -> List[EmergencyContact]:
        rows = self.db.execute_query(
            "SELECT * FROM emergency_contacts WHERE user_id = ? ORDER BY is_primary DESC, id",
            (user_id,)
        )
        return [
            EmergencyContact(
                name=row['name'],
                phone=row['phone'],
                relationship=row['relationship'] or "",
                is_primary=bool(row['is_primary']),
                notification_enabled=bool(row['notification_enabled']),
            )
            for row in rows
        ]


class SqliteChatRoomCreator(ChatRoomCreator):
    """Registers the coordination room in the chat_rooms table"""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def create_room(self, alert: Alert) -> str:
        room_id = str(uuid.uuid4())
        self.db.execute_update("""
            INSERT INTO chat_rooms (id, alert_id, name, room_type, owner_id, urgency_level)
            VALUES (?, ?, ?, 'emergency', ?, ?)
        """, (room_id, alert.id, f"Emergency Response - {alert.alert_type.value}",
              alert.owner_id, alert.urgency_level))
        self.logger.debug(f"Created chat room {room_id} for alert {alert.id}")
        return room_id


class SqliteNotificationLog(NotificationLog):
    """notifications table"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def append(self, records: List[NotificationRecord]) -> None:
        self.db.execute_many("""
            INSERT INTO notifications (recipient, alert_id, channel, outcome, title, error, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [
            (r.recipient, r.alert_id, r.channel.value, r.outcome.value, r.title, r.error, _to_iso(r.timestamp))
            for r in records
        ])

    async def get_records(self, alert_id: Optional[str] = None) -> List[NotificationRecord]:
        if alert_id is None:
            rows = self.db.execute_query("SELECT * FROM notifications ORDER BY id")
        else:
            rows = self.db.execute_query(
                "SELECT * FROM notifications WHERE alert_id = ? ORDER BY id", (alert_id,)
            )
        return [
            NotificationRecord(
                recipient=row['recipient'],
                alert_id=row['alert_id'],
                channel=DeliveryChannel(row['channel']),
                outcome=DeliveryOutcome(row['outcome']),
                title=row['title'] or "",
                error=row['error'],
                timestamp=_from_iso(row['timestamp']),
            )
            for row in rows
        ]
