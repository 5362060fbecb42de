"""
Alert Store

Owns the canonical Alert and Responder records. Every mutation of an
alert is serialized through a per-alert lock, and alert creation through
a per-owner lock, so concurrent escalations, responses and resolutions
of the same alert never interleave. Callers always receive copies.
"""

import asyncio
import copy
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from resqmob.core.database import DatabaseManager
from resqmob.models.alert import (
    Alert, AlertStatus, AlertType, GeoPoint, Responder, ResponderStatus
)
from .errors import ConflictError, InvalidTransitionError, NotFoundError, PermissionDeniedError


class AlertStore(ABC):
    """Interface and shared invariant checks for alert persistence"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._alert_locks: Dict[str, asyncio.Lock] = {}
        self._owner_locks: Dict[str, asyncio.Lock] = {}

    def _alert_lock(self, alert_id: str) -> asyncio.Lock:
        lock = self._alert_locks.get(alert_id)
        if lock is None:
            lock = self._alert_locks[alert_id] = asyncio.Lock()
        return lock

    def _owner_lock(self, owner_id: str) -> asyncio.Lock:
        lock = self._owner_locks.get(owner_id)
        if lock is None:
            lock = self._owner_locks[owner_id] = asyncio.Lock()
        return lock

    @abstractmethod
    async def create(self, alert: Alert) -> Alert:
        """Persist a new active alert; ConflictError if the owner already has one"""
        pass

    @abstractmethod
    async def get(self, alert_id: str) -> Alert:
        """Return a copy of the alert; NotFoundError if absent"""
        pass

    @abstractmethod
    async def update_escalation(self, alert_id: str, new_level: int, new_radius: float) -> Alert:
        """Advance the escalation level by exactly one step"""
        pass

    @abstractmethod
    async def upsert_responder(self, alert_id: str, responder: Responder) -> Alert:
        """Insert or replace the (alert, user) responder entry"""
        pass

    @abstractmethod
    async def resolve(self, alert_id: str, owner_id: str, status: AlertStatus) -> Alert:
        """Move an active alert to a terminal status"""
        pass

    @abstractmethod
    async def expire(self, alert_id: str, inactive_before: datetime) -> Optional[Alert]:
        """
        Resolve the alert if it is still active and has seen no activity
        since inactive_before. Returns the resolved alert, or None if it
        was left untouched.
        """
        pass

    @abstractmethod
    async def set_chat_room(self, alert_id: str, room_id: str) -> Alert:
        pass

    @abstractmethod
    async def list_active(self) -> List[Alert]:
        pass

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> List[Alert]:
        """All alerts of an owner, newest first"""
        pass

    @abstractmethod
    async def get_active_for_owner(self, owner_id: str) -> Optional[Alert]:
        pass

    def _check_new_alert(self, alert: Alert):
        if alert.status != AlertStatus.ACTIVE:
            raise InvalidTransitionError(f"New alert {alert.id} must be active")
        if alert.escalation_level != 1:
            raise InvalidTransitionError(f"New alert {alert.id} must start at escalation level 1")

    def _check_escalation(self, alert: Alert, new_level: int, new_radius: float):
        if not alert.is_active():
            raise InvalidTransitionError(f"Alert {alert.id} is {alert.status.value}, cannot escalate")
        if new_level != alert.escalation_level + 1:
            raise InvalidTransitionError(
                f"Alert {alert.id} escalation must go from level {alert.escalation_level} "
                f"to {alert.escalation_level + 1}, got {new_level}"
            )
        if new_radius < alert.notification_radius:
            raise InvalidTransitionError(
                f"Alert {alert.id} radius cannot shrink from {alert.notification_radius} to {new_radius}"
            )

    def _check_resolve(self, alert: Alert, owner_id: str, status: AlertStatus):
        if alert.owner_id != owner_id:
            raise PermissionDeniedError(f"Only the owner can resolve alert {alert.id}")
        if not status.is_terminal:
            raise InvalidTransitionError(f"{status.value} is not a terminal status")
        if not alert.is_active():
            raise InvalidTransitionError(f"Alert {alert.id} is already {alert.status.value}")


class InMemoryAlertStore(AlertStore):
    """Dictionary-backed store"""

    def __init__(self):
        super().__init__()
        self.alerts: Dict[str, Alert] = {}

    def _require(self, alert_id: str) -> Alert:
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    def _active_for_owner(self, owner_id: str) -> Optional[Alert]:
        for alert in self.alerts.values():
            if alert.owner_id == owner_id and alert.is_active():
                return alert
        return None

    async def create(self, alert: Alert) -> Alert:
        self._check_new_alert(alert)
        async with self._owner_lock(alert.owner_id):
            existing = self._active_for_owner(alert.owner_id)
            if existing is not None:
                raise ConflictError(alert.owner_id, existing.id)
            if alert.id in self.alerts:
                raise ConflictError(alert.owner_id, alert.id)

            stored = copy.deepcopy(alert)
            stored.responder_count = len(stored.responders)
            self.alerts[stored.id] = stored
            return copy.deepcopy(stored)

    async def get(self, alert_id: str) -> Alert:
        return copy.deepcopy(self._require(alert_id))

    async def update_escalation(self, alert_id: str, new_level: int, new_radius: float) -> Alert:
        async with self._alert_lock(alert_id):
            alert = self._require(alert_id)
            self._check_escalation(alert, new_level, new_radius)
            alert.escalation_level = new_level
            alert.notification_radius = new_radius
            alert.touch()
            return copy.deepcopy(alert)

    async def upsert_responder(self, alert_id: str, responder: Responder) -> Alert:
        async with self._alert_lock(alert_id):
            alert = self._require(alert_id)
            if not alert.is_active():
                raise NotFoundError(f"Alert {alert_id} is no longer active")

            existing = alert.get_responder(responder.user_id)
            if existing is not None:
                existing.status = responder.status
                existing.distance_meters = responder.distance_meters
                existing.eta_minutes = responder.eta_minutes
                existing.estimated_arrival = responder.estimated_arrival
                existing.updated_at = responder.updated_at
            else:
                entry = copy.deepcopy(responder)
                entry.alert_id = alert_id
                alert.responders.append(entry)

            alert.responder_count = len(alert.responders)
            alert.touch()
            return copy.deepcopy(alert)

    async def resolve(self, alert_id: str, owner_id: str, status: AlertStatus) -> Alert:
        async with self._alert_lock(alert_id):
            alert = self._require(alert_id)
            self._check_resolve(alert, owner_id, status)
            now = datetime.utcnow()
            alert.status = status
            alert.resolved_at = now
            alert.touch(now)
            return copy.deepcopy(alert)

    async def expire(self, alert_id: str, inactive_before: datetime) -> Optional[Alert]:
        async with self._alert_lock(alert_id):
            alert = self.alerts.get(alert_id)
            if alert is None or not alert.is_active() or alert.last_activity_at >= inactive_before:
                return None
            now = datetime.utcnow()
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.updated_at = now
            return copy.deepcopy(alert)

    async def set_chat_room(self, alert_id: str, room_id: str) -> Alert:
        async with self._alert_lock(alert_id):
            alert = self._require(alert_id)
            alert.chat_room_id = room_id
            alert.updated_at = datetime.utcnow()
            return copy.deepcopy(alert)

    async def list_active(self) -> List[Alert]:
        return [copy.deepcopy(a) for a in self.alerts.values() if a.is_active()]

    async def list_by_owner(self, owner_id: str) -> List[Alert]:
        alerts = [a for a in self.alerts.values() if a.owner_id == owner_id]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return [copy.deepcopy(a) for a in alerts]

    async def get_active_for_owner(self, owner_id: str) -> Optional[Alert]:
        alert = self._active_for_owner(owner_id)
        return copy.deepcopy(alert) if alert else None


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec='microseconds') if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteAlertStore(AlertStore):
    """
    SQLite-backed store

    The schema backs the in-process locks with a partial unique index
    (one active alert per owner) and UNIQUE(alert_id, user_id) on
    responders; writes run in BEGIN IMMEDIATE transactions.
    """

    def __init__(self, db: DatabaseManager):
        super().__init__()
        self.db = db

    def _load(self, conn: sqlite3.Connection, alert_id: str) -> Optional[Alert]:
        row = conn.execute("SELECT * FROM sos_alerts WHERE id = ?", (alert_id,)).fetchone()
        if row is None:
            return None
        responders = conn.execute(
            "SELECT * FROM sos_responders WHERE alert_id = ? ORDER BY position",
            (alert_id,)
        ).fetchall()
        return self._row_to_alert(row, responders)

    def _require(self, conn: sqlite3.Connection, alert_id: str) -> Alert:
        alert = self._load(conn, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    def _row_to_alert(self, row: sqlite3.Row, responder_rows: List[sqlite3.Row]) -> Alert:
        return Alert(
            id=row['id'],
            owner_id=row['owner_id'],
            alert_type=AlertType(row['alert_type']),
            urgency_level=row['urgency_level'],
            status=AlertStatus(row['status']),
            location=GeoPoint(
                latitude=row['location_lat'],
                longitude=row['location_lon'],
                accuracy=row['location_accuracy'],
                address=row['location_address'],
            ),
            message=row['message'],
            created_at=_from_iso(row['created_at']),
            resolved_at=_from_iso(row['resolved_at']),
            escalation_level=row['escalation_level'],
            notification_radius=row['notification_radius'],
            responders=[self._row_to_responder(r) for r in responder_rows],
            responder_count=row['responder_count'],
            confirmations=row['confirmations'],
            is_anonymous=bool(row['is_anonymous']),
            media_urls=json.loads(row['media_urls']) if row['media_urls'] else [],
            chat_room_id=row['chat_room_id'],
            updated_at=_from_iso(row['updated_at']),
            last_activity_at=_from_iso(row['last_activity_at']),
        )

    def _row_to_responder(self, row: sqlite3.Row) -> Responder:
        return Responder(
            id=row['id'],
            alert_id=row['alert_id'],
            user_id=row['user_id'],
            status=ResponderStatus(row['status']),
            distance_meters=row['distance_meters'],
            eta_minutes=row['eta_minutes'],
            estimated_arrival=_from_iso(row['estimated_arrival']),
            updated_at=_from_iso(row['updated_at']),
        )

    def _active_id_for_owner(self, conn: sqlite3.Connection, owner_id: str) -> Optional[str]:
        row = conn.execute(
            "SELECT id FROM sos_alerts WHERE owner_id = ? AND status = 'active'",
            (owner_id,)
        ).fetchone()
        return row['id'] if row else None

    async def create(self, alert: Alert) -> Alert:
        self._check_new_alert(alert)
        async with self._owner_lock(alert.owner_id):
            try:
                with self.db.transaction() as conn:
                    conn.execute("""
                        INSERT INTO sos_alerts (
                            id, owner_id, alert_type, urgency_level, status,
                            location_lat, location_lon, location_accuracy, location_address,
                            message, created_at, resolved_at, escalation_level,
                            notification_radius, responder_count, confirmations,
                            is_anonymous, media_urls, chat_room_id, updated_at, last_activity_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        alert.id, alert.owner_id, alert.alert_type.value, alert.urgency_level,
                        alert.status.value, alert.location.latitude, alert.location.longitude,
                        alert.location.accuracy, alert.location.address, alert.message,
                        _to_iso(alert.created_at), _to_iso(alert.resolved_at),
                        alert.escalation_level, alert.notification_radius, 0,
                        alert.confirmations, alert.is_anonymous, json.dumps(alert.media_urls),
                        alert.chat_room_id, _to_iso(alert.updated_at), _to_iso(alert.last_activity_at)
                    ))
                    return self._require(conn, alert.id)
            except sqlite3.IntegrityError:
                active_id = None
                with self.db.get_connection() as conn:
                    active_id = self._active_id_for_owner(conn, alert.owner_id)
                raise ConflictError(alert.owner_id, active_id)

    async def get(self, alert_id: str) -> Alert:
        with self.db.get_connection() as conn:
            return self._require(conn, alert_id)

    async def update_escalation(self, alert_id: str, new_level: int, new_radius: float) -> Alert:
        async with self._alert_lock(alert_id):
            with self.db.transaction() as conn:
                alert = self._require(conn, alert_id)
                self._check_escalation(alert, new_level, new_radius)
                now = _to_iso(datetime.utcnow())
                conn.execute("""
                    UPDATE sos_alerts
                    SET escalation_level = ?, notification_radius = ?,
                        updated_at = ?, last_activity_at = ?
                    WHERE id = ?
                """, (new_level, new_radius, now, now, alert_id))
                return self._require(conn, alert_id)

    async def upsert_responder(self, alert_id: str, responder: Responder) -> Alert:
        async with self._alert_lock(alert_id):
            with self.db.transaction() as conn:
                alert = self._require(conn, alert_id)
                if not alert.is_active():
                    raise NotFoundError(f"Alert {alert_id} is no longer active")

                conn.execute("""
                    INSERT INTO sos_responders (
                        id, alert_id, user_id, status, distance_meters,
                        eta_minutes, estimated_arrival, position, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?,
                        (SELECT COALESCE(MAX(position), -1) + 1 FROM sos_responders WHERE alert_id = ?),
                        ?)
                    ON CONFLICT (alert_id, user_id) DO UPDATE SET
                        status = excluded.status,
                        distance_meters = excluded.distance_meters,
                        eta_minutes = excluded.eta_minutes,
                        estimated_arrival = excluded.estimated_arrival,
                        updated_at = excluded.updated_at
                """, (
                    responder.id, alert_id, responder.user_id, responder.status.value,
                    responder.distance_meters, responder.eta_minutes,
                    _to_iso(responder.estimated_arrival), alert_id, _to_iso(responder.updated_at)
                ))

                now = _to_iso(datetime.utcnow())
                conn.execute("""
                    UPDATE sos_alerts
                    SET responder_count = (SELECT COUNT(*) FROM sos_responders WHERE alert_id = ?),
                        updated_at = ?, last_activity_at = ?
                    WHERE id = ?
                """, (alert_id, now, now, alert_id))
                return self._require(conn, alert_id)

    async def resolve(self, alert_id: str, owner_id: str, status: AlertStatus) -> Alert:
        async with self._alert_lock(alert_id):
            with self.db.transaction() as conn:
                alert = self._require(conn, alert_id)
                self._check_resolve(alert, owner_id, status)
                now = _to_iso(datetime.utcnow())
                conn.execute("""
                    UPDATE sos_alerts
                    SET status = ?, resolved_at = ?, updated_at = ?, last_activity_at = ?
                    WHERE id = ? AND status = 'active'
                """, (status.value, now, now, now, alert_id))
                return self._require(conn, alert_id)

    async def expire(self, alert_id: str, inactive_before: datetime) -> Optional[Alert]:
        async with self._alert_lock(alert_id):
            with self.db.transaction() as conn:
                now = _to_iso(datetime.utcnow())
                cursor = conn.execute("""
                    UPDATE sos_alerts
                    SET status = 'resolved', resolved_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'active' AND last_activity_at < ?
                """, (now, now, alert_id, _to_iso(inactive_before)))
                if cursor.rowcount == 0:
                    return None
                return self._require(conn, alert_id)

    async def set_chat_room(self, alert_id: str, room_id: str) -> Alert:
        async with self._alert_lock(alert_id):
            with self.db.transaction() as conn:
                self._require(conn, alert_id)
                conn.execute(
                    "UPDATE sos_alerts SET chat_room_id = ?, updated_at = ? WHERE id = ?",
                    (room_id, _to_iso(datetime.utcnow()), alert_id)
                )
                return self._require(conn, alert_id)

    def _load_many(self, conn: sqlite3.Connection, rows: List[sqlite3.Row]) -> List[Alert]:
        alerts = []
        for row in rows:
            responders = conn.execute(
                "SELECT * FROM sos_responders WHERE alert_id = ? ORDER BY position",
                (row['id'],)
            ).fetchall()
            alerts.append(self._row_to_alert(row, responders))
        return alerts

    async def list_active(self) -> List[Alert]:
        with self.db.get_connection() as conn:
            rows = conn.execute("SELECT * FROM sos_alerts WHERE status = 'active'").fetchall()
            return self._load_many(conn, rows)

    async def list_by_owner(self, owner_id: str) -> List[Alert]:
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sos_alerts WHERE owner_id = ? ORDER BY created_at DESC",
                (owner_id,)
            ).fetchall()
            return self._load_many(conn, rows)

    async def get_active_for_owner(self, owner_id: str) -> Optional[Alert]:
        with self.db.get_connection() as conn:
            alert_id = self._active_id_for_owner(conn, owner_id)
            return self._load(conn, alert_id) if alert_id else None
